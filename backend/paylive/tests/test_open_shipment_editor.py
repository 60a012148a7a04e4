"""Open-shipment editor tests (service level)."""

import asyncio

import pytest
from sqlalchemy.exc import IntegrityError

from paylive.models import CartItem, Shipment
from paylive.services import open_shipment_editor as editor
from paylive.services.clerk_service import ClerkIdentity

BUYER_ID = "cus_buyer"


def _stock(db, row):
    db.refresh(row)
    return row.quantity, row.bought


def test_open_restocks_items(test_db_session, test_stock, make_shipment):
    shipment = make_shipment()
    robe = test_stock["Robe"]

    opened = editor.open_shipment(test_db_session, BUYER_ID, shipment.id)

    assert opened.is_open_shipment is True
    assert _stock(test_db_session, robe) == (6, 0)


def test_opening_twice_is_a_no_op(test_db_session, test_stock, make_shipment):
    shipment = make_shipment()
    editor.open_shipment(test_db_session, BUYER_ID, shipment.id)
    editor.open_shipment(test_db_session, BUYER_ID, shipment.id)

    assert _stock(test_db_session, test_stock["Robe"]) == (6, 0)


def test_second_open_conflicts_without_force(test_db_session, test_stock, make_shipment):
    first = make_shipment()
    second = make_shipment(line_items=[{"reference": "prod_B", "quantity": 1}])
    editor.open_shipment(test_db_session, BUYER_ID, first.id)

    with pytest.raises(editor.OpenShipmentConflict) as exc:
        editor.open_shipment(test_db_session, BUYER_ID, second.id)

    assert exc.value.open_shipment.id == first.id
    assert exc.value.status_code == 409


def test_force_closes_the_other_open_shipment(test_db_session, test_store, test_stock, make_shipment):
    first = make_shipment()
    second = make_shipment(line_items=[{"reference": "prod_B", "quantity": 1}])
    editor.open_shipment(test_db_session, BUYER_ID, first.id)
    test_db_session.add(CartItem(
        store_id=test_store.id, customer_stripe_id=BUYER_ID, product_reference="prod_A",
        value=10.0, payment_id=first.payment_id,
    ))
    test_db_session.commit()

    editor.open_shipment(test_db_session, BUYER_ID, second.id, force=True)

    test_db_session.refresh(first)
    assert first.is_open_shipment is False
    assert second.is_open_shipment is True
    # first: reserved again; second: released
    assert _stock(test_db_session, test_stock["Robe"]) == (5, 1)
    assert _stock(test_db_session, test_stock["Sac"]) == (3, 0)
    assert test_db_session.query(CartItem).filter_by(payment_id=first.payment_id).count() == 0


def test_database_allows_one_open_shipment_per_store(test_db_session, make_shipment):
    make_shipment(is_open_shipment=True)

    with pytest.raises(IntegrityError):
        make_shipment(is_open_shipment=True)
    test_db_session.rollback()


def test_open_errors(test_db_session, make_shipment):
    cancelled = make_shipment(status="CANCELLED")
    delivered = make_shipment(is_final_destination=True)
    foreign = make_shipment(customer_stripe_id="cus_other")

    with pytest.raises(editor.ShipmentNotFound):
        editor.open_shipment(test_db_session, BUYER_ID, 999)
    with pytest.raises(editor.ShipmentForbidden):
        editor.open_shipment(test_db_session, BUYER_ID, foreign.id)
    with pytest.raises(editor.ShipmentNotEditable):
        editor.open_shipment(test_db_session, BUYER_ID, cancelled.id)
    with pytest.raises(editor.ShipmentNotEditable):
        editor.open_shipment(test_db_session, BUYER_ID, delivered.id)


def test_open_by_payment_and_active_lookup(test_db_session, test_store, test_stock, make_shipment):
    shipment = make_shipment(payment_id="pi_edit")

    editor.open_shipment_by_payment(test_db_session, BUYER_ID, "pi_edit", store_id=test_store.id)

    active = editor.get_active_open_shipment(test_db_session, BUYER_ID, test_store.id)
    assert active.id == shipment.id


def test_cancel_open_shipment_reserves_again_and_drops_rebuilt_carts(
    test_db_session, test_store, test_stock, make_shipment
):
    shipment = make_shipment(payment_id="pi_edit")
    editor.open_shipment(test_db_session, BUYER_ID, shipment.id)
    test_db_session.add_all([
        CartItem(store_id=test_store.id, customer_stripe_id=BUYER_ID, product_reference="prod_A",
                 value=10.0, payment_id="pi_edit"),
        CartItem(store_id=test_store.id, customer_stripe_id=BUYER_ID, product_reference="Bague", value=20.0),
    ])
    test_db_session.commit()

    closed = editor.cancel_open_shipment(test_db_session, BUYER_ID, test_store.id, payment_id="pi_edit")

    assert closed == [shipment.id]
    assert editor.get_active_open_shipment(test_db_session, BUYER_ID, test_store.id) is None
    assert _stock(test_db_session, test_stock["Robe"]) == (5, 1)
    assert [c.product_reference for c in test_db_session.query(CartItem).all()] == ["Bague"]


def test_cancel_without_open_shipment_closes_nothing(test_db_session, test_store):
    assert editor.cancel_open_shipment(test_db_session, BUYER_ID, test_store.id) == []


def test_rebuild_carts_from_payment(test_db_session, test_store, test_stock, make_shipment, fake_stripe):
    shipment = make_shipment(
        payment_id="pi_edit",
        session_id="cs_edit",
        line_items=[{"reference": "prod_A", "quantity": 2, "description": "Taille M"}, {"reference": "prod_Z", "quantity": 1}],
    )
    editor.open_shipment(test_db_session, BUYER_ID, shipment.id)
    fake_stripe.line_items["cs_edit"] = [
        {"price": {"product": {"id": "prod_A", "name": "Robe"}}, "quantity": 2, "amount_total": 1800, "amount_subtotal": 2000},
    ]

    rows = editor.rebuild_carts_from_payment(test_db_session, fake_stripe, BUYER_ID, "pi_edit")

    assert [(r.product_reference, r.quantity, r.value, r.description, r.payment_id) for r in rows] == [
        ("prod_A", 2, 10.0, "Taille M", "pi_edit"),
    ]


def test_rebuild_requires_open_shipment(test_db_session, make_shipment, fake_stripe):
    make_shipment(payment_id="pi_closed")

    with pytest.raises(editor.ShipmentNotEditable):
        editor.rebuild_carts_from_payment(test_db_session, fake_stripe, BUYER_ID, "pi_closed")


def test_cancel_shipment_restocks_and_alerts_admin(
    test_db_session, test_stock, make_shipment, fake_boxtal, fake_email
):
    shipment = make_shipment(shipment_id="bxt_5", status="PENDING")
    test_stock["Robe"].bought = 1
    test_db_session.commit()
    buyer = ClerkIdentity(clerk_id="user_buyer", stripe_customer_id=BUYER_ID)

    cancelled = asyncio.run(editor.cancel_shipment(test_db_session, fake_boxtal, fake_email, buyer, shipment.id))

    assert cancelled.status == "CANCELLED"
    assert cancelled.cancel_requested is True
    assert fake_boxtal.cancelled == ["bxt_5"]
    assert _stock(test_db_session, test_stock["Robe"]) == (6, 0)
    assert fake_email.kinds() == ["admin_error"]


def test_cancel_shipment_rules(test_db_session, make_shipment, fake_boxtal, fake_email):
    shipped = make_shipment(status="SHIPPED")
    other = ClerkIdentity(clerk_id="user_x", stripe_customer_id="cus_x")
    admin = ClerkIdentity(clerk_id="user_admin", role="admin")

    with pytest.raises(editor.ShipmentForbidden):
        asyncio.run(editor.cancel_shipment(test_db_session, fake_boxtal, fake_email, other, shipped.id))
    with pytest.raises(editor.ShipmentNotEditable):
        asyncio.run(editor.cancel_shipment(test_db_session, fake_boxtal, fake_email, admin, shipped.id))


def test_request_return_notifies_store(test_db_session, make_shipment, fake_email):
    shipment = make_shipment(shipment_id="bxt_7", status="DELIVERED")

    result = asyncio.run(editor.request_return(test_db_session, fake_email, BUYER_ID, shipment.id, reason="Trop petit"))

    assert result.return_requested is True
    kind, payload = fake_email.sent[0]
    assert kind == "return_request"
    assert payload["shipment_ref"] == "bxt_7"
    assert payload["reason"] == "Trop petit"
    assert test_db_session.get(Shipment, shipment.id).return_requested is True
