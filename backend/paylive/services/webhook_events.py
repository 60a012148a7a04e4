"""Webhook delivery log.

WHAT: Idempotency bookkeeping shared by the Stripe and Boxtal webhooks
WHY: Both providers redeliver; a delivery whose key is already recorded is
     acknowledged without being processed again
"""

import hashlib
import logging
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..models import WebhookEvent, WebhookProviderEnum

logger = logging.getLogger(__name__)


def stripe_event_key(event: dict) -> str:
    return f"stripe:{event.get('id')}"


def boxtal_event_key(event: dict, raw_body: bytes) -> str:
    """Boxtal events carry no id: type + order + body digest."""
    digest = hashlib.sha256(raw_body).hexdigest()[:32]
    return f"boxtal:{event.get('type')}:{event.get('shippingOrderId')}:{digest}"


def is_event_processed(event_key: str, db: Session) -> bool:
    existing = db.query(WebhookEvent.id).filter(WebhookEvent.event_key == event_key).first()
    return existing is not None


def record_event(
    event_key: str,
    provider: WebhookProviderEnum,
    event_type: str,
    object_id: Optional[str],
    payload: Any,
    result: str,
    db: Session,
) -> bool:
    """Insert the delivery row.

    Returns:
        False when a concurrent delivery recorded the same key first.
    """
    db.add(
        WebhookEvent(
            provider=provider,
            event_key=event_key,
            event_type=event_type or "unknown",
            object_id=object_id,
            payload_json=payload,
            processing_result=result[:500] if result else result,
        )
    )
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info(f"[WEBHOOK] {event_key} already recorded by a concurrent delivery")
        return False
    return True
