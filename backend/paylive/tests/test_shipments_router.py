"""HTTP tests for /api/shipments."""

from types import SimpleNamespace

import stripe

from paylive.models import Store
from paylive.services.clerk_service import ClerkIdentity
from paylive.services.invoice_renderer import render_invoice_pdf

BUYER_ID = "cus_buyer"


def test_customer_shipments_newest_first(client, make_shipment):
    older = make_shipment()
    newer = make_shipment(line_items=[{"reference": "prod_B", "quantity": 1}])
    older_id, newer_id = older.id, newer.id

    response = client.get("/api/shipments/customer", params={"stripeId": BUYER_ID, "storeSlug": "boutique-lea"})

    assert response.status_code == 200
    assert [s["id"] for s in response.json()["shipments"]] == [newer_id, older_id]
    assert response.json()["shipments"][0]["store"]["slug"] == "boutique-lea"


def test_customer_shipments_access_rules(client, make_shipment):
    make_shipment()

    assert client.get("/api/shipments/customer").status_code == 400
    assert client.get("/api/shipments/customer", params={"stripeId": "cus_other"}).status_code == 403
    assert client.get(
        "/api/shipments/customer", params={"stripeId": BUYER_ID, "storeSlug": "nope"}
    ).status_code == 404


def test_stores_for_customer(client, test_db_session, make_shipment):
    other = Store(name="Atelier", slug="atelier")
    test_db_session.add(other)
    test_db_session.commit()
    make_shipment()
    make_shipment(store_id=other.id)
    make_shipment()

    response = client.get(f"/api/shipments/stores-for-customer/{BUYER_ID}")

    assert response.json() == {"slugs": ["atelier", "boutique-lea"]}


def test_store_shipments_for_owner(client, act_as, make_shipment, owner_identity):
    make_shipment()

    assert client.get("/api/shipments/store/boutique-lea").status_code == 403

    act_as(owner_identity)
    body = client.get("/api/shipments/store/boutique-lea").json()
    assert body["store"]["slug"] == "boutique-lea"
    assert len(body["shipments"]) == 1


def test_open_shipment_conflict_returns_current_open(client, test_stock, make_shipment):
    first = make_shipment()
    second = make_shipment(line_items=[{"reference": "prod_B", "quantity": 1}])
    first_id, second_id = first.id, second.id

    assert client.post("/api/shipments/open-shipment", json={"shipmentId": first_id}).status_code == 200

    conflict = client.post("/api/shipments/open-shipment", json={"shipmentId": second_id})
    assert conflict.status_code == 409
    assert conflict.json()["openShipment"]["id"] == first_id
    assert "error" in conflict.json()

    forced = client.post("/api/shipments/open-shipment", json={"shipmentId": second_id, "force": True})
    assert forced.status_code == 200
    assert forced.json()["shipment"]["is_open_shipment"] is True

    active = client.get("/api/shipments/active-open-shipment", params={"storeId": second.store_id})
    assert active.json()["openShipment"]["id"] == second_id


def test_open_by_payment_and_cancel_open(client, test_stock, make_shipment):
    shipment = make_shipment(payment_id="pi_edit")
    shipment_id, store_id = shipment.id, shipment.store_id

    opened = client.post("/api/shipments/open-shipment-by-payment", json={"paymentId": "pi_edit"})
    assert opened.status_code == 200

    cancelled = client.post("/api/shipments/cancel-open-shipment", json={"storeId": store_id, "paymentId": "pi_edit"})
    assert cancelled.json() == {"success": True, "closed": [shipment_id]}

    active = client.get("/api/shipments/active-open-shipment", params={"storeId": store_id})
    assert active.json()["openShipment"] is None


def test_open_shipment_errors(client, make_shipment):
    foreign = make_shipment(customer_stripe_id="cus_other")

    assert client.post("/api/shipments/open-shipment", json={"shipmentId": 999}).status_code == 404
    response = client.post("/api/shipments/open-shipment", json={"shipmentId": foreign.id})
    assert response.status_code == 403
    assert isinstance(response.json()["error"], str)


def test_rebuild_carts_stripe_failure(client, test_stock, make_shipment, fake_stripe):
    shipment = make_shipment(payment_id="pi_edit", session_id="cs_edit")
    client.post("/api/shipments/open-shipment", json={"shipmentId": shipment.id})

    def boom(session_id):
        raise stripe.APIConnectionError("down")

    fake_stripe.list_checkout_line_items = boom

    response = client.post("/api/shipments/rebuild-carts-from-payment", json={"paymentId": "pi_edit"})
    assert response.status_code == 500


def test_rebuild_carts(client, test_stock, make_shipment, fake_stripe):
    shipment = make_shipment(payment_id="pi_edit", session_id="cs_edit")
    client.post("/api/shipments/open-shipment", json={"shipmentId": shipment.id})
    fake_stripe.line_items["cs_edit"] = [
        {"price": {"product": {"id": "prod_A", "name": "Robe"}}, "quantity": 1, "amount_total": 1500, "amount_subtotal": 1500},
    ]

    response = client.post("/api/shipments/rebuild-carts-from-payment", json={"paymentId": "pi_edit"})

    assert response.status_code == 200
    assert [(i["product_reference"], i["value"]) for i in response.json()["items"]] == [("prod_A", 15.0)]


def test_cancel_and_return_routes(client, test_stock, make_shipment, fake_boxtal, fake_email):
    pending = make_shipment(shipment_id="bxt_1", status="PENDING")
    delivered = make_shipment(shipment_id="bxt_2", status="DELIVERED", is_final_destination=True)

    cancelled = client.post(f"/api/shipments/{pending.id}/cancel")
    assert cancelled.status_code == 200
    assert cancelled.json()["shipment"]["status"] == "CANCELLED"
    assert fake_boxtal.cancelled == ["bxt_1"]

    assert client.post(f"/api/shipments/{delivered.id}/cancel").status_code == 400

    returned = client.post("/api/shipments/request-return", json={"shipmentId": delivered.id, "reason": "Abime"})
    assert returned.status_code == 200
    assert returned.json()["shipment"]["return_requested"] is True
    assert "return_request" in fake_email.kinds()


def test_boxtal_cancel_failure_is_500(client, make_shipment, fake_boxtal):
    shipment = make_shipment(shipment_id="bxt_1", status="PENDING")
    fake_boxtal.fail_cancel = True

    response = client.post(f"/api/shipments/{shipment.id}/cancel")

    assert response.status_code == 500
    assert response.json() == {"error": "Boxtal cancellation failed"}


def test_invoice_pdf(client, act_as, make_shipment):
    shipment = make_shipment(
        line_items=[{"reference": "prod_A", "quantity": 2, "description": "Robe rouge"}],
        paid_value=2500,
    )

    response = client.get(f"/api/shipments/{shipment.id}/invoice")

    assert response.status_code == 200
    assert response.headers["content-type"] == "application/pdf"
    assert f"facture-F-{shipment.id}.pdf" in response.headers["content-disposition"]
    assert response.content.startswith(b"%PDF")

    act_as(ClerkIdentity(clerk_id="user_x", stripe_customer_id="cus_x"))
    assert client.get(f"/api/shipments/{shipment.id}/invoice").status_code == 403
    assert client.get("/api/shipments/999/invoice").status_code == 404


def test_invoice_renders_without_customer():
    shipment = SimpleNamespace(
        id=7,
        created_at=None,
        line_items=None,
        product_reference="Robe**1;Sac**2(cuir)",
        paid_value=3000,
        estimated_delivery_cost=None,
        promo_code="LEA10",
        payment_id="pi_7",
    )
    store = SimpleNamespace(name="Boutique Lea", address=None, owner_email=None, tva_applicable=False)

    assert render_invoice_pdf(shipment, store, None).startswith(b"%PDF")
