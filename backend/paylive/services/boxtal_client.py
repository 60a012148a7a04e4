"""Boxtal shipping API client.

WHAT:
    Async wrapper for:
    - Boxtal Shipping API v3.1 (OAuth2 client credentials): parcel points,
      shipping orders, shipping documents, tracking
    - Legacy v1 rating API (HTTP Basic): price quotes ("cotation")
    - Webhook signature verification (HMAC-SHA256, `x-bxt-signature`)

WHY:
    One client instance owns its access token cache, so token expiry is an
    explicit, testable object instead of module-level state. Requests that
    come back 401 drop the cached token and are retried once.

REFERENCES:
    - https://developer.boxtal.com/
    - paylive/services/shipping_order.py (order payloads)
"""

import asyncio
import hashlib
import hmac
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import httpx

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.boxtal.com"
DEFAULT_V1_BASE_URL = "https://www.envoimoinscher.com/api/v1"
TOKEN_PATH = "/iam/account-app/token"
SHIPPING_API_PREFIX = "/shipping/v3.1"


class BoxtalAPIError(Exception):
    """Custom exception for Boxtal API errors."""

    def __init__(self, message: str, status_code: Optional[int] = None, errors: Optional[Any] = None):
        super().__init__(message)
        self.status_code = status_code
        self.errors = errors


class BoxtalTokenCache:
    """Access token holder with an injectable clock.

    A token is served until `skew_seconds` before its expiry so that a
    request started just before expiry does not reach Boxtal with a dead
    token.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic, skew_seconds: float = 30.0):
        self._clock = clock
        self._skew = skew_seconds
        self._token: Optional[str] = None
        self._expires_at: float = 0.0

    def get(self) -> Optional[str]:
        if self._token and self._clock() < self._expires_at - self._skew:
            return self._token
        return None

    def store(self, token: str, expires_in: float) -> None:
        self._token = token
        self._expires_at = self._clock() + float(expires_in)

    def clear(self) -> None:
        self._token = None
        self._expires_at = 0.0


def verify_boxtal_signature(raw_body: bytes, signature: Optional[str], secret: str) -> bool:
    """Check the hex HMAC-SHA256 of the raw request body."""
    if not signature or not secret:
        return False
    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower())


class BoxtalClient:
    """Client for Boxtal's v3.1 shipping API and legacy v1 rating API.

    Usage:
        client = BoxtalClient(access_key="...", secret_key="...")
        order = await client.create_shipping_order(payload)
        docs = await client.get_shipping_documents(order["content"]["id"])
    """

    def __init__(
        self,
        access_key: Optional[str],
        secret_key: Optional[str],
        base_url: str = DEFAULT_BASE_URL,
        v1_user: Optional[str] = None,
        v1_password: Optional[str] = None,
        v1_base_url: str = DEFAULT_V1_BASE_URL,
        token_cache: Optional[BoxtalTokenCache] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
    ):
        self.access_key = access_key
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.v1_user = v1_user
        self.v1_password = v1_password
        self.v1_base_url = v1_base_url.rstrip("/")
        self.token_cache = token_cache or BoxtalTokenCache()
        self._transport = transport
        self._timeout = timeout

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Issue one HTTP call. Transport failures surface as a 503 BoxtalAPIError."""
        try:
            async with self._client() as client:
                return await client.request(method, url, **kwargs)
        except httpx.RequestError as e:
            logger.warning(f"[BOXTAL_CLIENT] Request error on {method} {url}: {e!r}")
            raise BoxtalAPIError(f"Boxtal unreachable: {e}", status_code=503) from e

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    async def get_access_token(self) -> str:
        cached = self.token_cache.get()
        if cached:
            return cached

        if not self.access_key or not self.secret_key:
            raise BoxtalAPIError("Boxtal credentials are not configured", status_code=500)

        response = await self._send(
            "POST",
            f"{self.base_url}{TOKEN_PATH}",
            auth=(self.access_key, self.secret_key),
        )

        if response.status_code >= 400:
            logger.error(f"[BOXTAL_CLIENT] Token request failed: HTTP {response.status_code}")
            raise BoxtalAPIError(
                "Boxtal authentication failed",
                status_code=response.status_code,
                errors=_safe_json(response),
            )

        data = response.json()
        token = data.get("accessToken")
        if not token:
            raise BoxtalAPIError("Boxtal token response has no accessToken", status_code=502, errors=data)

        self.token_cache.store(token, data.get("expiresIn") or 0)
        logger.info(f"[BOXTAL_CLIENT] New access token (expires in {data.get('expiresIn')}s)")
        return token

    # ------------------------------------------------------------------
    # v3.1 requests
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        retry_on_unauthorized: bool = True,
    ) -> Any:
        token = await self.get_access_token()
        url = f"{self.base_url}{SHIPPING_API_PREFIX}{path}"

        response = await self._send(
            method,
            url,
            params=params,
            json=json,
            headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
        )

        if response.status_code == 401 and retry_on_unauthorized:
            logger.info("[BOXTAL_CLIENT] Token rejected, refreshing once")
            self.token_cache.clear()
            return await self._request(method, path, params=params, json=json, retry_on_unauthorized=False)

        if response.status_code >= 400:
            body = _safe_json(response)
            logger.error(f"[BOXTAL_CLIENT] {method} {path} failed: HTTP {response.status_code} {body}")
            raise BoxtalAPIError(
                f"Boxtal {method} {path} failed",
                status_code=response.status_code,
                errors=body,
            )

        if not response.content:
            return {}
        return response.json()

    async def search_parcel_points(self, params: Dict[str, Any]) -> Any:
        return await self._request("GET", "/parcel-point", params=params)

    async def create_shipping_order(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        order = await self._request("POST", "/shipping-order", json=payload)
        logger.info(f"[BOXTAL_CLIENT] Shipping order created: {(order.get('content') or {}).get('id')}")
        return order

    async def get_shipping_order(self, shipping_order_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/shipping-order/{shipping_order_id}")

    async def cancel_shipping_order(self, shipping_order_id: str) -> Dict[str, Any]:
        result = await self._request("DELETE", f"/shipping-order/{shipping_order_id}")
        logger.info(f"[BOXTAL_CLIENT] Shipping order cancelled: {shipping_order_id}")
        return result

    async def get_shipping_documents(self, shipping_order_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/shipping-order/{shipping_order_id}/shipping-document")

    async def get_tracking(self, shipping_order_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/shipping-order/{shipping_order_id}/tracking")

    async def download_document(self, url: str) -> bytes:
        """Download a label PDF from the URL returned by Boxtal."""
        response = await self._send("GET", url)
        if response.status_code >= 400:
            raise BoxtalAPIError("Label download failed", status_code=response.status_code)
        return response.content

    # ------------------------------------------------------------------
    # Legacy v1 rating API
    # ------------------------------------------------------------------

    async def get_rates(self, params: Dict[str, Any]) -> str:
        """Price quotes from the legacy v1 `cotation` endpoint (XML body)."""
        if not self.v1_user or not self.v1_password:
            raise BoxtalAPIError("Boxtal v1 credentials are not configured", status_code=500)

        response = await self._send(
            "GET",
            f"{self.v1_base_url}/cotation",
            params=params,
            auth=(self.v1_user, self.v1_password),
        )

        if response.status_code >= 400:
            logger.error(f"[BOXTAL_CLIENT] v1 cotation failed: HTTP {response.status_code}")
            raise BoxtalAPIError("Boxtal cotation failed", status_code=response.status_code, errors=response.text)
        return response.text


def _safe_json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


def first_label_document(documents: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Pick the LABEL document (or the first one) from a documents response."""
    docs = documents.get("content") if isinstance(documents, dict) else documents
    if not isinstance(docs, list) or not docs:
        return None
    for doc in docs:
        if isinstance(doc, dict) and doc.get("type") == "LABEL" and doc.get("url"):
            return doc
    first = docs[0]
    return first if isinstance(first, dict) and first.get("url") else None


def first_tracking_url(tracking: Dict[str, Any]) -> Optional[str]:
    """First `packageTrackingUrl` found in a tracking response."""
    content = tracking.get("content") if isinstance(tracking, dict) else None
    if isinstance(content, list):
        for event in content:
            if isinstance(event, dict) and event.get("packageTrackingUrl"):
                return event["packageTrackingUrl"]
        return None
    if isinstance(content, dict):
        return content.get("packageTrackingUrl")
    return None


async def fetch_label_with_retry(
    client: BoxtalClient,
    shipping_order_id: str,
    attempts: int = 2,
    delay_seconds: float = 10.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Tuple[Optional[Dict[str, Any]], Optional[bytes]]:
    """Fetch and download the label PDF, which Boxtal generates asynchronously.

    Returns:
        (document, pdf bytes), or (None, None) when no label was ready
        after `attempts` tries.
    """
    for attempt in range(1, attempts + 1):
        try:
            documents = await client.get_shipping_documents(shipping_order_id)
            label = first_label_document(documents)
            if label:
                return label, await client.download_document(label["url"])
            logger.info(f"[BOXTAL_CLIENT] No label yet for {shipping_order_id} (attempt {attempt}/{attempts})")
        except BoxtalAPIError as e:
            logger.warning(f"[BOXTAL_CLIENT] Label fetch attempt {attempt}/{attempts} failed: {e}")
        if attempt < attempts:
            await sleep(delay_seconds)
    return None, None
