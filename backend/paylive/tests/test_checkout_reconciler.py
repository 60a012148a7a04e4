"""Checkout reconciler tests.

Covers the `checkout.session.completed` flows: normal order, partial sold
out, fully sold out (blocked), edit of an open shipment, credit-only
payment, Boxtal failure with saga retry, and webhook redelivery.
"""

import asyncio
import json

import httpx
import stripe

from paylive.models import (
    CartItem,
    CreditLedgerEntry,
    CreditReasonEnum,
    FulfillmentSaga,
    SagaStatusEnum,
    SagaStepStatusEnum,
    Shipment,
)
from paylive.services.boxtal_client import BoxtalClient
from paylive.services.checkout_reconciler import CheckoutReconciler, split_line_items
from paylive.services.credit_ledger import get_balance
from paylive.services.shipment_saga import (
    STEP_BOXTAL_ORDER,
    STEP_LABEL,
    STEP_TRACKING,
    retry_partial_sagas,
)

BUYER_ID = "cus_buyer"


def _line(product_id, name, amount, quantity=1):
    return {
        "price": {"product": {"id": product_id, "name": name}},
        "description": name,
        "quantity": quantity,
        "amount_total": amount,
        "amount_subtotal": amount,
    }


def _session(store, session_id="cs_1", payment_id="pi_1", amount=1500, **metadata):
    values = {
        "store_id": str(store.id),
        "product_reference": "prod_A;prod_B",
        "delivery_method": "pickup_point",
        "delivery_network": "MONR-CpourToi",
        "pickup_point": json.dumps({"code": "MONR-0001"}),
    }
    values.update(metadata)
    return {
        "id": session_id,
        "payment_intent": payment_id,
        "customer": BUYER_ID,
        "amount_total": amount,
        "metadata": values,
        "shipping_cost": {"amount_total": 500},
        "total_details": {"breakdown": {"discounts": []}},
    }


def _cart(db, store, *references):
    for reference in references:
        db.add(CartItem(store_id=store.id, customer_stripe_id=BUYER_ID, product_reference=reference, value=10.0))
    db.commit()


def _reconcile(db, fake_stripe, fake_boxtal, fake_email, settings, session, event_id="evt_1"):
    reconciler = CheckoutReconciler(db, fake_stripe, fake_boxtal, fake_email, settings)
    return asyncio.run(reconciler.reconcile(session, event_id=event_id))


def _ledger(db):
    return {
        e.idempotency_key: (e.reason, e.delta_cents)
        for e in db.query(CreditLedgerEntry).filter_by(customer_stripe_id=BUYER_ID)
    }


def test_split_line_items_separates_regularisation():
    products, regularisations = split_line_items([
        _line("prod_A", "Robe", 1000),
        _line("prod_R", "Régularisation livraison", 200),
    ])

    assert [p.product_id for p in products] == ["prod_A"]
    assert [r.amount_total for r in regularisations] == [200]


def test_order_creates_shipment_reserves_stock_and_emails(
    test_db_session, test_store, test_stock, fake_stripe, fake_boxtal, fake_email, test_settings
):
    _cart(test_db_session, test_store, "prod_A", "prod_B")
    fake_stripe.line_items["cs_1"] = [_line("prod_A", "Robe", 1000), _line("prod_B", "Sac", 500)]

    outcome = _reconcile(test_db_session, fake_stripe, fake_boxtal, fake_email, test_settings, _session(test_store))

    assert outcome.action == "created"
    assert outcome.credited_cents == 0
    shipment = test_db_session.get(Shipment, outcome.shipment_id)
    assert shipment.shipment_id == "bxt_1"
    assert shipment.line_items == [
        {"reference": "prod_A", "quantity": 1, "description": None},
        {"reference": "prod_B", "quantity": 1, "description": None},
    ]
    assert shipment.product_reference == "prod_A**1;prod_B**1"
    assert float(shipment.delivery_cost) == 6.0
    assert float(shipment.estimated_delivery_cost) == 5.0
    assert shipment.document_created is True
    assert shipment.tracking_url == "https://track.boxtal.test/bxt_1"
    assert fake_boxtal.created[0]["shipment"]["pickupPointCode"] == "MONR-0001"

    test_db_session.refresh(test_stock["Robe"])
    assert (test_stock["Robe"].quantity, test_stock["Robe"].bought) == (4, 1)
    assert test_db_session.query(CartItem).count() == 0

    assert fake_email.kinds() == ["customer_confirmation", "store_owner_notification"]
    owner_mail = fake_email.sent[1][1]
    assert owner_mail["label"].content.startswith(b"%PDF")

    saga = test_db_session.query(FulfillmentSaga).filter_by(payment_id="pi_1").one()
    assert saga.status == SagaStatusEnum.completed
    assert saga.shipment_id == shipment.id


def test_replayed_session_is_a_duplicate(
    test_db_session, test_store, test_stock, fake_stripe, fake_boxtal, fake_email, test_settings
):
    _cart(test_db_session, test_store, "prod_A", "prod_B")
    fake_stripe.line_items["cs_1"] = [_line("prod_A", "Robe", 1000), _line("prod_B", "Sac", 500)]
    session = _session(test_store)

    first = _reconcile(test_db_session, fake_stripe, fake_boxtal, fake_email, test_settings, session)
    second = _reconcile(test_db_session, fake_stripe, fake_boxtal, fake_email, test_settings, session, event_id="evt_2")

    assert first.action == "created"
    assert second.action == "duplicate"
    assert test_db_session.query(Shipment).count() == 1
    assert len(fake_boxtal.created) == 1
    assert fake_email.kinds().count("customer_confirmation") == 1


def test_sold_out_item_is_credited(
    test_db_session, test_store, test_stock, fake_stripe, fake_boxtal, fake_email, test_settings
):
    # prod_B was bought by someone else before this checkout completed
    _cart(test_db_session, test_store, "prod_A")
    fake_stripe.line_items["cs_1"] = [_line("prod_A", "Robe", 1000), _line("prod_B", "Sac", 500)]

    outcome = _reconcile(test_db_session, fake_stripe, fake_boxtal, fake_email, test_settings, _session(test_store))

    assert outcome.action == "created"
    assert outcome.credited_cents == 500
    assert outcome.missing_references == ["prod_B"]

    shipment = test_db_session.get(Shipment, outcome.shipment_id)
    assert [item["reference"] for item in shipment.line_items] == ["prod_A"]
    assert shipment.customer_spent_amount == 1000
    assert shipment.store_earnings_amount == 1000

    assert _ledger(test_db_session) == {
        f"opening-balance:{BUYER_ID}": (CreditReasonEnum.opening_balance, 0),
        "sold-out:cs_1": (CreditReasonEnum.sold_out_refund, 500),
    }
    assert get_balance(test_db_session, BUYER_ID) == 500
    assert fake_stripe.customers[BUYER_ID]["metadata"]["credit_balance"] == "500"
    assert fake_email.sent[0][1]["credited_cents"] == 500


def test_sold_out_credit_applied_once_on_redelivery(
    test_db_session, test_store, test_stock, fake_stripe, fake_boxtal, fake_email, test_settings
):
    _cart(test_db_session, test_store, "prod_A")
    fake_stripe.line_items["cs_1"] = [_line("prod_A", "Robe", 1000), _line("prod_B", "Sac", 500)]
    session = _session(test_store)

    _reconcile(test_db_session, fake_stripe, fake_boxtal, fake_email, test_settings, session)
    _reconcile(test_db_session, fake_stripe, fake_boxtal, fake_email, test_settings, session, event_id="evt_2")

    assert get_balance(test_db_session, BUYER_ID) == 500


def test_nothing_available_blocks_and_credits_everything(
    test_db_session, test_store, test_stock, fake_stripe, fake_boxtal, fake_email, test_settings
):
    fake_stripe.line_items["cs_1"] = [_line("prod_A", "Robe", 1000), _line("prod_B", "Sac", 500)]

    outcome = _reconcile(test_db_session, fake_stripe, fake_boxtal, fake_email, test_settings, _session(test_store))

    assert outcome.action == "blocked"
    assert outcome.credited_cents == 1500
    assert test_db_session.query(Shipment).count() == 0
    assert fake_boxtal.created == []
    assert get_balance(test_db_session, BUYER_ID) == 1500
    assert fake_stripe.payment_intent_updates[0][:2] == ("pi_1", {"blocked_reason": "out_of_stock"})
    assert fake_email.kinds() == ["admin_error"]

    saga = test_db_session.query(FulfillmentSaga).filter_by(payment_id="pi_1").one()
    assert saga.status == SagaStatusEnum.blocked


def test_credit_use_topup_and_promotion(
    test_db_session, test_store, test_stock, fake_stripe, fake_boxtal, fake_email, test_settings
):
    fake_stripe.customers[BUYER_ID]["metadata"] = {"credit_balance": "800"}
    _cart(test_db_session, test_store, "prod_A")
    fake_stripe.line_items["cs_1"] = [_line("prod_A", "Robe", 1000)]
    session = _session(
        test_store,
        amount=900,
        product_reference="prod_A",
        credit_applied_cents="300",
        temp_credit_topup_cents="100",
    )
    session["total_details"] = {
        "breakdown": {
            "discounts": [
                {"amount": 100, "discount": {"promotion_code": {"code": "LEA10"}}},
                {"amount": 50, "discount": {"promotion_code": {"code": "PAYLIVE-WELCOME"}}},
                {"amount": 300, "discount": {"promotion_code": {"code": "CREDIT-XYZ"}}},
            ]
        }
    }

    outcome = _reconcile(test_db_session, fake_stripe, fake_boxtal, fake_email, test_settings, session)

    shipment = test_db_session.get(Shipment, outcome.shipment_id)
    assert shipment.promo_code == "LEA10,PAYLIVE-WELCOME"
    # Only the store's own promotion is taken from its earnings
    assert shipment.store_earnings_amount == 900
    assert _ledger(test_db_session) == {
        f"opening-balance:{BUYER_ID}": (CreditReasonEnum.opening_balance, 800),
        "credit-applied:cs_1": (CreditReasonEnum.credit_applied, -300),
        "credit-topup:cs_1": (CreditReasonEnum.credit_topup, 100),
    }
    assert get_balance(test_db_session, BUYER_ID) == 600


def test_delivery_debt_settlement_only_credits(
    test_db_session, test_store, fake_stripe, fake_boxtal, fake_email, test_settings
):
    fake_stripe.customers[BUYER_ID]["metadata"] = {"credit_balance": "-200"}
    fake_stripe.line_items["cs_debt"] = [_line("prod_R", "Régularisation livraison", 200)]
    session = _session(test_store, session_id="cs_debt", payment_id="pi_debt", amount=200, product_reference="")

    outcome = _reconcile(test_db_session, fake_stripe, fake_boxtal, fake_email, test_settings, session)

    assert outcome.action == "credited"
    assert test_db_session.query(Shipment).count() == 0
    assert get_balance(test_db_session, BUYER_ID) == 0
    assert fake_stripe.customers[BUYER_ID]["metadata"]["credit_balance"] == "0"


def test_edit_supersedes_open_shipment(
    test_db_session, test_store, test_stock, make_shipment, fake_stripe, fake_boxtal, fake_email, test_settings
):
    old = make_shipment(payment_id="pi_old", shipment_id="bxt_old", is_open_shipment=True)
    old_id = old.id
    test_db_session.add(CartItem(
        store_id=test_store.id, customer_stripe_id=BUYER_ID, product_reference="prod_A", value=10.0, payment_id="pi_old",
    ))
    _cart(test_db_session, test_store, "prod_B")
    fake_stripe.line_items["cs_2"] = [_line("prod_A", "Robe", 1000), _line("prod_B", "Sac", 500)]
    session = _session(test_store, session_id="cs_2", payment_id="pi_2", open_shipment_payment_id="pi_old")

    outcome = _reconcile(test_db_session, fake_stripe, fake_boxtal, fake_email, test_settings, session)

    assert outcome.action == "created"
    assert fake_boxtal.cancelled == ["bxt_old"]
    assert test_db_session.get(Shipment, old_id) is None
    assert test_db_session.query(CartItem).count() == 0
    assert fake_email.kinds() == ["customer_order_modified", "store_owner_order_modified"]


def test_failed_supersede_aborts_without_new_shipment(
    test_db_session, test_store, test_stock, make_shipment, fake_stripe, fake_boxtal, fake_email, test_settings
):
    make_shipment(payment_id="pi_old", shipment_id="bxt_old", is_open_shipment=True)
    _cart(test_db_session, test_store, "prod_A")
    fake_boxtal.fail_cancel = True
    fake_stripe.line_items["cs_2"] = [_line("prod_A", "Robe", 1000)]
    session = _session(
        test_store, session_id="cs_2", payment_id="pi_2", product_reference="prod_A", open_shipment_payment_id="pi_old"
    )

    outcome = _reconcile(test_db_session, fake_stripe, fake_boxtal, fake_email, test_settings, session)

    assert outcome.action == "aborted"
    assert test_db_session.query(Shipment).filter_by(payment_id="pi_2").count() == 0
    assert test_db_session.query(Shipment).filter_by(payment_id="pi_old").count() == 1
    assert fake_email.kinds() == ["admin_error"]
    saga = test_db_session.query(FulfillmentSaga).filter_by(payment_id="pi_2").one()
    assert saga.status == SagaStatusEnum.aborted


def test_store_pickup_skips_boxtal(
    test_db_session, test_store, test_stock, fake_stripe, fake_boxtal, fake_email, test_settings
):
    _cart(test_db_session, test_store, "prod_A")
    fake_stripe.line_items["cs_1"] = [_line("prod_A", "Robe", 1000)]
    session = _session(test_store, amount=1000, product_reference="prod_A", delivery_method="store_pickup")

    outcome = _reconcile(test_db_session, fake_stripe, fake_boxtal, fake_email, test_settings, session)

    shipment = test_db_session.get(Shipment, outcome.shipment_id)
    assert shipment.shipment_id is None
    assert shipment.boxtal_shipment_creation_failed is False
    assert fake_boxtal.created == []
    saga = test_db_session.query(FulfillmentSaga).filter_by(payment_id="pi_1").one()
    assert saga.status == SagaStatusEnum.completed


def test_unknown_store_is_reported(test_db_session, test_store, fake_stripe, fake_boxtal, fake_email, test_settings):
    session = _session(test_store, store_id="999", store_slug="nope")

    outcome = _reconcile(test_db_session, fake_stripe, fake_boxtal, fake_email, test_settings, session)

    assert outcome.action == "ignored"
    assert fake_email.kinds() == ["admin_error"]
    assert test_db_session.query(FulfillmentSaga).count() == 0


def test_boxtal_failure_leaves_partial_saga_then_retry_completes(
    test_db_session, test_store, test_stock, fake_stripe, fake_boxtal, fake_email, test_settings
):
    _cart(test_db_session, test_store, "prod_A")
    fake_stripe.line_items["cs_1"] = [_line("prod_A", "Robe", 1000)]
    fake_boxtal.fail_create = True
    session = _session(test_store, amount=1000, product_reference="prod_A")

    outcome = _reconcile(test_db_session, fake_stripe, fake_boxtal, fake_email, test_settings, session)

    shipment = test_db_session.get(Shipment, outcome.shipment_id)
    assert outcome.action == "created"
    assert shipment.shipment_id is None
    assert shipment.boxtal_shipment_creation_failed is True
    assert shipment.boxtal_shipping_json["shippingOfferCode"] == "MONR-CpourToi"
    assert "admin_error" in fake_email.kinds()

    saga = test_db_session.query(FulfillmentSaga).filter_by(payment_id="pi_1").one()
    assert saga.status == SagaStatusEnum.partial
    steps = {step.name: step.status for step in saga.steps}
    assert steps[STEP_BOXTAL_ORDER] == SagaStepStatusEnum.failed
    assert steps[STEP_LABEL] == SagaStepStatusEnum.failed
    assert steps[STEP_TRACKING] == SagaStepStatusEnum.failed

    fake_boxtal.fail_create = False
    summary = asyncio.run(
        retry_partial_sagas(test_db_session, boxtal=fake_boxtal, stripe_gateway=fake_stripe, email=fake_email)
    )

    assert summary == {"retried": 1, "completed": 1, "still_partial": 0, "errors": 0}
    test_db_session.refresh(shipment)
    assert shipment.shipment_id == "bxt_1"
    assert shipment.boxtal_shipment_creation_failed is False
    assert shipment.document_created is True
    assert shipment.tracking_url == "https://track.boxtal.test/bxt_1"
    test_db_session.refresh(saga)
    assert saga.status == SagaStatusEnum.completed
    assert "store_owner_label" in fake_email.kinds()


def test_retry_gives_up_and_alerts_admin(
    test_db_session, test_store, test_stock, fake_stripe, fake_boxtal, fake_email, test_settings
):
    _cart(test_db_session, test_store, "prod_A")
    fake_stripe.line_items["cs_1"] = [_line("prod_A", "Robe", 1000)]
    fake_boxtal.fail_create = True
    _reconcile(
        test_db_session, fake_stripe, fake_boxtal, fake_email, test_settings,
        _session(test_store, amount=1000, product_reference="prod_A"),
    )
    fake_email.sent.clear()

    for _ in range(3):
        asyncio.run(retry_partial_sagas(
            test_db_session, boxtal=fake_boxtal, stripe_gateway=fake_stripe, email=fake_email, retry_limit=2,
        ))

    saga = test_db_session.query(FulfillmentSaga).filter_by(payment_id="pi_1").one()
    assert saga.status == SagaStatusEnum.partial
    assert saga.attempts == 2
    assert fake_email.kinds() == ["admin_error"]


def test_unreachable_boxtal_still_records_the_shipment(
    test_db_session, test_store, test_stock, fake_stripe, fake_email, test_settings
):
    def handler(request):
        raise httpx.ConnectError("boxtal unreachable", request=request)

    boxtal = BoxtalClient(
        access_key="ak", secret_key="sk", base_url="https://boxtal.test", transport=httpx.MockTransport(handler)
    )
    _cart(test_db_session, test_store, "prod_A", "prod_B")
    fake_stripe.line_items["cs_1"] = [_line("prod_A", "Robe", 1000), _line("prod_B", "Sac", 500)]

    outcome = _reconcile(test_db_session, fake_stripe, boxtal, fake_email, test_settings, _session(test_store))

    assert outcome.action == "created"
    shipment = test_db_session.get(Shipment, outcome.shipment_id)
    assert shipment.boxtal_shipment_creation_failed is True
    assert shipment.boxtal_shipping_json["shipment"]["pickupPointCode"] == "MONR-0001"
    assert fake_email.kinds() == ["admin_error", "customer_confirmation", "store_owner_notification"]

    saga = test_db_session.query(FulfillmentSaga).filter_by(payment_id="pi_1").one()
    assert saga.status == SagaStatusEnum.partial
    steps = {step.name: step.status for step in saga.steps}
    assert steps[STEP_BOXTAL_ORDER] == SagaStepStatusEnum.failed


def test_stock_sold_elsewhere_after_payment_is_credited_with_shipping_share(
    test_db_session, test_store, test_stock, fake_stripe, fake_boxtal, fake_email, test_settings
):
    # Both items are still in the cart, but the last Sac sold before the webhook ran
    test_stock["Sac"].quantity = 0
    test_db_session.commit()
    _cart(test_db_session, test_store, "prod_A", "prod_B")
    fake_stripe.line_items["cs_1"] = [_line("prod_A", "Robe", 1000), _line("prod_B", "Sac", 500)]

    outcome = _reconcile(test_db_session, fake_stripe, fake_boxtal, fake_email, test_settings, _session(test_store))

    # 500 for the Sac plus half of the 500 shipping (1 of 2 units ships)
    assert outcome.action == "created"
    assert outcome.credited_cents == 750
    assert outcome.missing_references == ["prod_B"]

    shipment = test_db_session.get(Shipment, outcome.shipment_id)
    assert shipment.product_reference == "prod_A**1"
    assert shipment.customer_spent_amount == 750
    assert shipment.store_earnings_amount == 1000
    assert float(shipment.estimated_delivery_cost) == 2.5
    assert fake_boxtal.created[0]["shipment"]["packages"][0]["value"]["value"] == 10.0
    assert _ledger(test_db_session)["sold-out:cs_1"] == (CreditReasonEnum.sold_out_refund, 750)

    test_db_session.refresh(test_stock["Sac"])
    test_db_session.refresh(test_stock["Robe"])
    assert (test_stock["Sac"].quantity, test_stock["Sac"].bought) == (0, 1)
    assert (test_stock["Robe"].quantity, test_stock["Robe"].bought) == (4, 1)


def test_quantity_above_remaining_stock_is_shipped_partially(
    test_db_session, test_store, test_stock, fake_stripe, fake_boxtal, fake_email, test_settings
):
    test_stock["Robe"].quantity = 2
    test_db_session.commit()
    _cart(test_db_session, test_store, "prod_A")
    fake_stripe.line_items["cs_1"] = [_line("prod_A", "Robe", 3000, quantity=3)]
    session = _session(test_store, amount=3500, product_reference="prod_A**3")

    outcome = _reconcile(test_db_session, fake_stripe, fake_boxtal, fake_email, test_settings, session)

    # One unit of three (1000) plus the unshipped third of the shipping (500 - 333)
    assert outcome.credited_cents == 1167
    shipment = test_db_session.get(Shipment, outcome.shipment_id)
    assert shipment.product_reference == "prod_A**2"
    test_db_session.refresh(test_stock["Robe"])
    assert (test_stock["Robe"].quantity, test_stock["Robe"].bought) == (0, 2)


def test_no_stock_left_for_any_item_blocks(
    test_db_session, test_store, test_stock, fake_stripe, fake_boxtal, fake_email, test_settings
):
    test_stock["Robe"].quantity = 0
    test_stock["Sac"].quantity = 0
    test_db_session.commit()
    _cart(test_db_session, test_store, "prod_A", "prod_B")
    fake_stripe.line_items["cs_1"] = [_line("prod_A", "Robe", 1000), _line("prod_B", "Sac", 500)]

    outcome = _reconcile(test_db_session, fake_stripe, fake_boxtal, fake_email, test_settings, _session(test_store))

    assert outcome.action == "blocked"
    assert outcome.credited_cents == 1500
    assert test_db_session.query(Shipment).count() == 0
    assert fake_boxtal.created == []


def test_promotion_code_credit_takes_precedence(
    test_db_session, test_store, test_stock, fake_stripe, fake_boxtal, fake_email, test_settings
):
    fake_stripe.customers[BUYER_ID]["metadata"] = {"credit_balance": "800"}
    fake_stripe.promotion_codes["promo_credit"] = {
        "id": "promo_credit",
        "metadata": {"customer_credit_balance_amount_cents": "200"},
    }
    _cart(test_db_session, test_store, "prod_A")
    fake_stripe.line_items["cs_1"] = [_line("prod_A", "Robe", 1000)]
    session = _session(
        test_store,
        amount=800,
        product_reference="prod_A",
        credit_promo_code_id="promo_credit",
        credit_applied_cents="300",
    )

    _reconcile(test_db_session, fake_stripe, fake_boxtal, fake_email, test_settings, session)

    ledger = _ledger(test_db_session)
    assert ledger["promo-credit:cs_1"] == (CreditReasonEnum.promo_credit_applied, -200)
    assert "credit-applied:cs_1" not in ledger
    assert get_balance(test_db_session, BUYER_ID) == 600


def test_unreadable_promotion_code_falls_back_to_applied_credit(
    monkeypatch, test_db_session, test_store, test_stock, fake_stripe, fake_boxtal, fake_email, test_settings
):
    def missing_code(promotion_code_id):
        raise stripe.InvalidRequestError("No such promotion code", "id")

    monkeypatch.setattr(fake_stripe, "retrieve_promotion_code", missing_code)
    fake_stripe.customers[BUYER_ID]["metadata"] = {"credit_balance": "800"}
    _cart(test_db_session, test_store, "prod_A")
    fake_stripe.line_items["cs_1"] = [_line("prod_A", "Robe", 1000)]
    session = _session(
        test_store,
        amount=700,
        product_reference="prod_A",
        credit_promo_code_id="promo_gone",
        credit_applied_cents="300",
    )

    outcome = _reconcile(test_db_session, fake_stripe, fake_boxtal, fake_email, test_settings, session)

    assert outcome.action == "created"
    assert _ledger(test_db_session)["credit-applied:cs_1"] == (CreditReasonEnum.credit_applied, -300)
    assert get_balance(test_db_session, BUYER_ID) == 500
