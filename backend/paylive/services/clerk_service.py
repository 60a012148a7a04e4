"""Clerk identity service.

WHAT: Verifies Clerk session tokens and reads the Clerk user profile
WHY: Every shipment route needs the caller's Stripe customer id, which
     Clerk keeps in the user's `public_metadata.stripe_id`, and owner/admin
     checks need `public_metadata.role`

REFERENCES:
    - Clerk Backend API: https://clerk.com/docs/reference/backend-api
    - Manual JWT verification: https://clerk.com/docs/backend-requests/handling/manual-jwt
"""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx
from jose import JWTError, jwt

logger = logging.getLogger(__name__)

CLERK_API_BASE = "https://api.clerk.com/v1"


class ClerkAuthError(Exception):
    """Raised when a session token cannot be verified."""


@dataclass
class ClerkIdentity:
    """Authenticated caller."""

    clerk_id: str
    stripe_customer_id: Optional[str] = None
    role: Optional[str] = None
    email: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return (self.role or "").lower() == "admin"


def verify_session_token(token: str, jwt_key: Optional[str]) -> dict:
    """Verify a Clerk session JWT with the instance PEM public key.

    Raises:
        ClerkAuthError: token missing, invalid, expired or key not configured
    """
    if not token:
        raise ClerkAuthError("Missing session token")
    if not jwt_key:
        raise ClerkAuthError("CLERK_JWT_KEY is not configured")
    try:
        claims = jwt.decode(
            token,
            jwt_key.replace("\\n", "\n"),
            algorithms=["RS256"],
            options={"verify_aud": False},
        )
    except JWTError as e:
        raise ClerkAuthError(f"Invalid session token: {e}") from e
    if not claims.get("sub"):
        raise ClerkAuthError("Session token has no subject")
    return claims


async def get_clerk_user(clerk_id: str, secret_key: Optional[str]) -> Optional[dict]:
    """Fetch user details from Clerk.

    Returns:
        User data dict if found, None otherwise
    """
    if not secret_key:
        logger.error("[CLERK] CLERK_SECRET_KEY not configured")
        return None

    url = f"{CLERK_API_BASE}/users/{clerk_id}"

    try:
        async with httpx.AsyncClient() as client:
            response = await client.get(
                url,
                headers={"Authorization": f"Bearer {secret_key}"},
                timeout=10.0,
            )

            if response.status_code == 200:
                return response.json()
            elif response.status_code == 404:
                logger.warning(f"[CLERK] User {clerk_id} not found in Clerk")
                return None
            else:
                logger.error(
                    f"[CLERK] Failed to get user {clerk_id}: "
                    f"status={response.status_code}"
                )
                return None

    except httpx.HTTPError as e:
        logger.exception(f"[CLERK] HTTP error getting user {clerk_id}: {e}")
        return None


def identity_from_user(clerk_id: str, user: Optional[dict]) -> ClerkIdentity:
    metadata = (user or {}).get("public_metadata") or {}
    email = None
    addresses = (user or {}).get("email_addresses") or []
    if addresses:
        email = addresses[0].get("email_address")
    return ClerkIdentity(
        clerk_id=clerk_id,
        stripe_customer_id=metadata.get("stripe_id"),
        role=metadata.get("role"),
        email=email,
    )
