"""Fulfillment saga (outbox) and reconciliation job.

WHAT:
    - `ShipmentSagaStore`: writes the intent row for a payment before any
      external effect, then one step row per effect (Boxtal order, label,
      tracking URL, credit ledger, Stripe balance cache, emails).
    - `retry_partial_sagas`: resumes the retryable steps of sagas left in
      `partial` status. Runs as an arq cron job.

WHY:
    A checkout touches Stripe, Boxtal, the database and the mailer. When one
    of them fails halfway, the saga rows say exactly which effects happened,
    so the job can finish the rest instead of an operator reading logs.

REFERENCES:
    - paylive/services/checkout_reconciler.py (writes the sagas)
    - paylive/workers/arq_worker.py (schedules the retry job)
"""

import logging
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..models import (
    FulfillmentSaga,
    FulfillmentSagaStep,
    SagaStatusEnum,
    SagaStepStatusEnum,
    Shipment,
)
from ..telemetry import capture_exception
from .boxtal_client import BoxtalAPIError, fetch_label_with_retry, first_tracking_url
from .credit_ledger import get_balance, sync_balance_cache
from .email_service import EmailAttachment
from .shipping_order import delivery_cost_from_order

logger = logging.getLogger(__name__)

STEP_SUPERSEDE = "supersede_open_shipment"
STEP_CREDIT_LEDGER = "credit_ledger"
STEP_CREDIT_CACHE = "credit_cache_sync"
STEP_BOXTAL_ORDER = "boxtal_order"
STEP_SHIPMENT_ROW = "shipment_row"
STEP_STOCK = "stock_reservation"
STEP_CART_CLEANUP = "cart_cleanup"
STEP_LABEL = "label_document"
STEP_TRACKING = "tracking_url"
STEP_CUSTOMER_EMAIL = "customer_email"
STEP_OWNER_EMAIL = "owner_email"

# Steps the reconciliation job knows how to resume
RETRYABLE_STEPS = (STEP_BOXTAL_ORDER, STEP_LABEL, STEP_TRACKING, STEP_CREDIT_CACHE)


class ShipmentSagaStore:
    """Persistence for fulfillment sagas.

    Every write commits, so the recorded progress survives a crash of the
    webhook handler.
    """

    def __init__(self, db: Session):
        self.db = db

    def get(self, payment_id: str) -> Optional[FulfillmentSaga]:
        return self.db.query(FulfillmentSaga).filter(FulfillmentSaga.payment_id == payment_id).first()

    def begin(
        self,
        payment_id: str,
        session_id: Optional[str] = None,
        event_id: Optional[str] = None,
        customer_stripe_id: Optional[str] = None,
        store_id: Optional[int] = None,
        payload: Optional[dict] = None,
    ) -> Optional[FulfillmentSaga]:
        """Insert the intent row.

        Returns:
            The new saga, or None when another delivery already owns this
            payment (unique `payment_id`).
        """
        saga = FulfillmentSaga(
            payment_id=payment_id,
            session_id=session_id,
            event_id=event_id,
            customer_stripe_id=customer_stripe_id,
            store_id=store_id,
            status=SagaStatusEnum.started,
            payload=payload,
            attempts=0,
        )
        self.db.add(saga)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.info(f"[SAGA] Payment {payment_id} already has a saga, skipping")
            return None
        logger.info(f"[SAGA] Started saga {saga.id} for payment {payment_id}")
        return saga

    def get_step(self, saga: FulfillmentSaga, name: str) -> Optional[FulfillmentSagaStep]:
        return next((step for step in saga.steps if step.name == name), None)

    def mark_step(
        self,
        saga: FulfillmentSaga,
        name: str,
        status: SagaStepStatusEnum,
        result: Optional[dict] = None,
        error: Optional[object] = None,
    ) -> FulfillmentSagaStep:
        status = SagaStepStatusEnum(status)
        step = self.get_step(saga, name)
        if step is None:
            step = FulfillmentSagaStep(name=name, attempts=0)
            saga.steps.append(step)

        step.status = status
        if status in (SagaStepStatusEnum.succeeded, SagaStepStatusEnum.failed):
            step.attempts = (step.attempts or 0) + 1
        if result is not None:
            step.result = result
        step.last_error = str(error)[:2000] if error else None
        if error:
            saga.last_error = f"{name}: {str(error)[:2000]}"
        self.db.commit()

        log = logger.warning if status == SagaStepStatusEnum.failed else logger.info
        log(f"[SAGA] {saga.payment_id} step {name} -> {status.value}")
        return step

    def failed_steps(self, saga: FulfillmentSaga) -> List[str]:
        return [step.name for step in saga.steps if step.status == SagaStepStatusEnum.failed]

    def finish(
        self,
        saga: FulfillmentSaga,
        status: Optional[SagaStatusEnum] = None,
        error: Optional[object] = None,
    ) -> FulfillmentSaga:
        """Close the saga.

        Without an explicit status the saga is `partial` while a retryable
        step is failed, `completed` otherwise.
        """
        if status is None:
            pending = [name for name in self.failed_steps(saga) if name in RETRYABLE_STEPS]
            status = SagaStatusEnum.partial if pending else SagaStatusEnum.completed
        saga.status = SagaStatusEnum(status)
        if error:
            saga.last_error = str(error)[:2000]
        self.db.commit()
        logger.info(f"[SAGA] {saga.payment_id} finished as {saga.status.value}")
        return saga


# =============================================================================
# RECONCILIATION JOB
# =============================================================================

async def _retry_boxtal_order(store: ShipmentSagaStore, saga: FulfillmentSaga, shipment: Shipment, boxtal) -> bool:
    payload = shipment.boxtal_shipping_json
    if not payload:
        store.mark_step(saga, STEP_BOXTAL_ORDER, SagaStepStatusEnum.failed, error="no stored shipping order payload")
        return False
    try:
        order = await boxtal.create_shipping_order(payload)
    except BoxtalAPIError as e:
        store.mark_step(saga, STEP_BOXTAL_ORDER, SagaStepStatusEnum.failed, error=e)
        return False

    content = order.get("content") or {}
    shipment.shipment_id = content.get("id")
    shipment.status = content.get("status")
    cost = delivery_cost_from_order(order)
    if cost is not None:
        shipment.delivery_cost = Decimal(f"{cost:.2f}")
    shipment.boxtal_shipment_creation_failed = False
    store.mark_step(saga, STEP_BOXTAL_ORDER, SagaStepStatusEnum.succeeded, result={"id": shipment.shipment_id})
    return True


async def _retry_label(store, saga, shipment, boxtal, email, label_attempts: int, label_delay: float) -> None:
    if shipment.document_created:
        store.mark_step(saga, STEP_LABEL, SagaStepStatusEnum.succeeded, result={"url": shipment.document_url})
        return
    document, content = await fetch_label_with_retry(
        boxtal, shipment.shipment_id, attempts=label_attempts, delay_seconds=label_delay
    )
    if not document:
        store.mark_step(saga, STEP_LABEL, SagaStepStatusEnum.failed, error="label not available yet")
        return

    shipment.document_created = True
    shipment.document_url = document.get("url")
    store.mark_step(saga, STEP_LABEL, SagaStepStatusEnum.succeeded, result={"url": shipment.document_url})

    owner = shipment.store
    if owner is not None and content:
        await email.send_store_owner_label(
            to=owner.owner_email,
            store_name=owner.name,
            shipment_id=shipment.shipment_id,
            label=EmailAttachment(filename=f"etiquette-{shipment.shipment_id}.pdf", content=content),
        )


async def _retry_tracking(store, saga, shipment, boxtal) -> None:
    if shipment.tracking_url:
        store.mark_step(saga, STEP_TRACKING, SagaStepStatusEnum.succeeded, result={"url": shipment.tracking_url})
        return
    try:
        tracking = await boxtal.get_tracking(shipment.shipment_id)
    except BoxtalAPIError as e:
        store.mark_step(saga, STEP_TRACKING, SagaStepStatusEnum.failed, error=e)
        return
    url = first_tracking_url(tracking)
    if not url:
        store.mark_step(saga, STEP_TRACKING, SagaStepStatusEnum.failed, error="no tracking url yet")
        return
    shipment.tracking_url = url
    store.mark_step(saga, STEP_TRACKING, SagaStepStatusEnum.succeeded, result={"url": url})


async def retry_saga(
    db: Session,
    saga: FulfillmentSaga,
    boxtal,
    stripe_gateway,
    email,
    label_attempts: int = 1,
    label_delay: float = 0.0,
) -> FulfillmentSaga:
    """Run one reconciliation pass over a partial saga's failed steps."""
    store = ShipmentSagaStore(db)
    saga.attempts = (saga.attempts or 0) + 1
    db.commit()

    failed = set(store.failed_steps(saga))
    shipment = db.get(Shipment, saga.shipment_id) if saga.shipment_id else None

    if shipment is not None:
        if STEP_BOXTAL_ORDER in failed:
            await _retry_boxtal_order(store, saga, shipment, boxtal)
        if shipment.shipment_id:
            if STEP_LABEL in failed:
                await _retry_label(store, saga, shipment, boxtal, email, label_attempts, label_delay)
            if STEP_TRACKING in failed:
                await _retry_tracking(store, saga, shipment, boxtal)

    if STEP_CREDIT_CACHE in failed and saga.customer_stripe_id:
        balance = get_balance(db, saga.customer_stripe_id)
        synced = sync_balance_cache(
            stripe_gateway,
            saga.customer_stripe_id,
            balance,
            idempotency_key=f"credit-cache:{saga.payment_id}:{saga.attempts}:{balance}",
        )
        store.mark_step(
            saga,
            STEP_CREDIT_CACHE,
            SagaStepStatusEnum.succeeded if synced else SagaStepStatusEnum.failed,
            result={"balance_cents": balance},
            error=None if synced else "stripe metadata update failed",
        )

    return store.finish(saga)


async def retry_partial_sagas(
    db: Session,
    boxtal,
    stripe_gateway,
    email,
    retry_limit: int = 5,
    label_attempts: int = 1,
    label_delay: float = 0.0,
) -> Dict[str, int]:
    """Resume every partial saga that has not used up its retries.

    Returns:
        Counters: retried, completed, still_partial, errors
    """
    sagas = (
        db.query(FulfillmentSaga)
        .filter(
            FulfillmentSaga.status == SagaStatusEnum.partial,
            FulfillmentSaga.attempts < retry_limit,
        )
        .order_by(FulfillmentSaga.id)
        .all()
    )
    summary = {"retried": 0, "completed": 0, "still_partial": 0, "errors": 0}

    for saga in sagas:
        summary["retried"] += 1
        try:
            saga = await retry_saga(
                db, saga, boxtal, stripe_gateway, email,
                label_attempts=label_attempts, label_delay=label_delay,
            )
        except Exception as e:
            db.rollback()
            summary["errors"] += 1
            logger.exception(f"[SAGA] Retry failed for saga {saga.id}: {e}")
            capture_exception(e, extra={"saga_id": saga.id, "payment_id": saga.payment_id})
            continue

        if saga.status == SagaStatusEnum.completed:
            summary["completed"] += 1
            continue

        summary["still_partial"] += 1
        if saga.attempts >= retry_limit:
            await email.send_admin_error(
                subject="Commande incomplète après relances",
                message="Des étapes de traitement restent en échec après toutes les relances automatiques.",
                context={
                    "payment_id": saga.payment_id,
                    "shipment_id": saga.shipment_id,
                    "failed_steps": ", ".join(ShipmentSagaStore(db).failed_steps(saga)),
                    "last_error": saga.last_error,
                },
            )

    logger.info(f"[SAGA] Reconciliation pass: {summary}")
    return summary
