"""Pytest configuration for PayLive tests

WHAT: Shared fixtures: in-memory database, fake Stripe/Boxtal/email
      services, FastAPI app with dependency overrides, model factories
WHY: Reconcilers and routes only talk to the outside world through the
     injected gateways, so the fakes below record every call and return
     canned Stripe/Boxtal payloads
REFERENCES:
    - paylive/main.py: FastAPI application
    - paylive/deps.py: Dependency injection
"""

import json
import os
from decimal import Decimal
from typing import Generator

import pytest
import stripe
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Ensure backend is in path
import sys
from pathlib import Path
BACKEND_ROOT = Path(__file__).resolve().parents[2]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

# Set test environment
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test")
os.environ.setdefault("BOXTAL_WEBHOOK_SECRET", "boxtal-test-secret")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379")

from paylive.services.boxtal_client import BoxtalAPIError  # noqa: E402
from paylive.services.clerk_service import ClerkIdentity  # noqa: E402
from paylive.services.email_service import EmailResult  # noqa: E402

BUYER_ID = "cus_buyer"
OWNER_CLERK_ID = "user_owner"


# ============================================================================
# Fakes
# ============================================================================

class FakeStripe:
    """In-memory stand-in for StripeGateway."""

    def __init__(self):
        self.customers = {
            BUYER_ID: {
                "id": BUYER_ID,
                "email": "lea@example.com",
                "name": "Lea Martin",
                "address": {"line1": "3 rue des Lilas", "postal_code": "75011", "city": "Paris", "country": "FR"},
                "metadata": {},
            }
        }
        self.line_items = {}
        self.sessions = {}
        self.payment_intents = {}
        self.promotion_codes = {}
        self.metadata_updates = []
        self.payment_intent_updates = []
        self.fail_metadata_update = False

    def construct_event(self, payload, signature):
        if signature != "valid":
            raise stripe.SignatureVerificationError("No signatures found matching the expected signature", signature)
        return json.loads(payload)

    def retrieve_customer(self, customer_id):
        return self.customers[customer_id]

    def update_customer_metadata(self, customer_id, metadata, idempotency_key=None):
        if self.fail_metadata_update:
            raise stripe.APIConnectionError("Stripe unreachable")
        self.metadata_updates.append((customer_id, dict(metadata), idempotency_key))
        self.customers[customer_id].setdefault("metadata", {}).update(metadata)
        return self.customers[customer_id]

    def retrieve_payment_intent(self, payment_intent_id):
        return self.payment_intents.get(payment_intent_id, {"id": payment_intent_id, "metadata": {}})

    def retrieve_checkout_session(self, session_id):
        return self.sessions.get(session_id, {"id": session_id})

    def find_checkout_session_for_payment(self, payment_intent_id):
        for session in self.sessions.values():
            if session.get("payment_intent") == payment_intent_id:
                return session
        return None

    def list_checkout_line_items(self, session_id):
        return self.line_items.get(session_id, [])

    def retrieve_promotion_code(self, promotion_code_id):
        return self.promotion_codes[promotion_code_id]

    def update_payment_intent_metadata(self, payment_intent_id, metadata, idempotency_key=None):
        self.payment_intent_updates.append((payment_intent_id, dict(metadata), idempotency_key))
        return {"id": payment_intent_id, "metadata": metadata}


class FakeBoxtal:
    """In-memory stand-in for BoxtalClient."""

    def __init__(self):
        self.created = []
        self.cancelled = []
        self.fail_create = False
        self.fail_cancel = False
        self.order_price_excl_tax = 5.0
        self.final_price_excl_tax = {}
        self.label_ready = True
        self._next_id = 1

    async def create_shipping_order(self, payload):
        if self.fail_create:
            raise BoxtalAPIError("Boxtal POST /shipping-order failed", status_code=503, errors={"message": "down"})
        order_id = f"bxt_{self._next_id}"
        self._next_id += 1
        self.created.append(payload)
        return {
            "content": {
                "id": order_id,
                "status": "PENDING",
                "deliveryPriceExclTax": {"value": self.order_price_excl_tax, "currency": "EUR"},
            }
        }

    async def get_shipping_order(self, shipping_order_id):
        value = self.final_price_excl_tax.get(shipping_order_id, self.order_price_excl_tax)
        return {"content": {"id": shipping_order_id, "deliveryPriceExclTax": {"value": value}}}

    async def cancel_shipping_order(self, shipping_order_id):
        if self.fail_cancel:
            raise BoxtalAPIError("Boxtal DELETE failed", status_code=500)
        self.cancelled.append(shipping_order_id)
        return {}

    async def get_shipping_documents(self, shipping_order_id):
        if not self.label_ready:
            return {"content": []}
        return {"content": [{"type": "LABEL", "url": f"https://labels.boxtal.test/{shipping_order_id}.pdf"}]}

    async def get_tracking(self, shipping_order_id):
        return {"content": [{"packageTrackingUrl": f"https://track.boxtal.test/{shipping_order_id}"}]}

    async def download_document(self, url):
        return b"%PDF-1.4 label"

    async def search_parcel_points(self, params):
        return {"content": [{"code": "MONR-0001", "name": "Relais Bastille"}], "params": params}

    async def get_rates(self, params):
        return "<cotation><offre/></cotation>"


class FakeEmail:
    """Records every email instead of sending it."""

    def __init__(self):
        self.sent = []
        self.fail = set()

    def _record(self, kind, kwargs):
        self.sent.append((kind, kwargs))
        if kind in self.fail:
            return EmailResult(success=False, error="send failed")
        return EmailResult(success=True, message_id=f"msg_{len(self.sent)}")

    def kinds(self):
        return [kind for kind, _ in self.sent]

    async def send_customer_confirmation(self, **kwargs):
        return self._record("customer_confirmation", kwargs)

    async def send_customer_order_modified(self, **kwargs):
        return self._record("customer_order_modified", kwargs)

    async def send_customer_tracking_update(self, **kwargs):
        return self._record("customer_tracking_update", kwargs)

    async def send_cart_recap(self, **kwargs):
        return self._record("cart_recap", kwargs)

    async def send_store_owner_notification(self, **kwargs):
        return self._record("store_owner_notification", kwargs)

    async def send_store_owner_order_modified(self, **kwargs):
        return self._record("store_owner_order_modified", kwargs)

    async def send_store_owner_label(self, **kwargs):
        return self._record("store_owner_label", kwargs)

    async def send_return_request(self, **kwargs):
        return self._record("return_request", kwargs)

    async def send_admin_error(self, **kwargs):
        return self._record("admin_error", kwargs)


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine():
    """Create in-memory test database engine."""
    # StaticPool: every thread of the TestClient sees the same in-memory database
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    from paylive.models import Base
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def test_db_session(test_db_engine) -> Generator[Session, None, None]:
    """Create test database session with rollback."""
    SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=test_db_engine
    )

    session = SessionLocal()
    yield session
    session.rollback()
    session.close()


# ============================================================================
# Service Fixtures
# ============================================================================

@pytest.fixture
def fake_stripe():
    return FakeStripe()


@pytest.fixture
def fake_boxtal():
    return FakeBoxtal()


@pytest.fixture
def fake_email():
    return FakeEmail()


@pytest.fixture
def test_settings():
    from paylive.deps import Settings

    return Settings(
        _env_file=None,
        STRIPE_WEBHOOK_SECRET="whsec_test",
        BOXTAL_WEBHOOK_SECRET="boxtal-test-secret",
        FRONTEND_URL="https://paylive.test",
        LABEL_FETCH_ATTEMPTS=1,
        LABEL_FETCH_DELAY_SECONDS=0.0,
    )


@pytest.fixture
def buyer_identity():
    return ClerkIdentity(clerk_id="user_buyer", stripe_customer_id=BUYER_ID, email="lea@example.com")


@pytest.fixture
def owner_identity():
    return ClerkIdentity(clerk_id=OWNER_CLERK_ID, role="store")


# ============================================================================
# Application & Client Fixtures
# ============================================================================

@pytest.fixture
def app(test_db_session, fake_stripe, fake_boxtal, fake_email, test_settings, buyer_identity):
    """Create FastAPI test application with every external service faked."""
    from paylive.main import create_app
    from paylive.database import get_db
    from paylive import deps

    test_app = create_app()

    def override_get_db():
        yield test_db_session

    test_app.dependency_overrides[get_db] = override_get_db
    test_app.dependency_overrides[deps.get_settings] = lambda: test_settings
    test_app.dependency_overrides[deps.get_stripe_gateway] = lambda: fake_stripe
    test_app.dependency_overrides[deps.get_boxtal_client] = lambda: fake_boxtal
    test_app.dependency_overrides[deps.get_email_service] = lambda: fake_email
    test_app.dependency_overrides[deps.get_current_identity] = lambda: buyer_identity

    return test_app


@pytest.fixture
def client(app) -> TestClient:
    """Create TestClient for HTTP testing."""
    return TestClient(app)


@pytest.fixture
def act_as(app):
    """Switch the authenticated caller of `app`."""
    from paylive.deps import get_current_identity

    def _act_as(identity):
        app.dependency_overrides[get_current_identity] = lambda: identity

    return _act_as


# ============================================================================
# Model Fixtures
# ============================================================================

@pytest.fixture
def test_store(test_db_session):
    """Create test store."""
    from paylive.models import Store

    store = Store(
        name="Boutique Lea",
        slug="boutique-lea",
        clerk_id=OWNER_CLERK_ID,
        owner_email="owner@example.com",
        address={"line1": "12 rue du Commerce", "postal_code": "69002", "city": "Lyon", "country": "FR"},
    )
    test_db_session.add(store)
    test_db_session.commit()
    test_db_session.refresh(store)
    return store


@pytest.fixture
def test_stock(test_db_session, test_store):
    """Two tracked products and one untracked product."""
    from paylive.models import StockItem

    rows = [
        StockItem(store_id=test_store.id, product_reference="Robe", product_stripe_id="prod_A",
                  quantity=5, bought=0, weight=0.3),
        StockItem(store_id=test_store.id, product_reference="Sac", product_stripe_id="prod_B",
                  quantity=2, bought=1, weight=0.5),
        StockItem(store_id=test_store.id, product_reference="Bague", quantity=None, bought=3),
    ]
    test_db_session.add_all(rows)
    test_db_session.commit()
    return {row.product_reference: row for row in rows}


@pytest.fixture
def make_shipment(test_db_session, test_store):
    """Factory for shipments of the test store."""
    from paylive.models import Shipment

    counter = {"n": 0}

    def _make(**overrides):
        counter["n"] += 1
        values = dict(
            payment_id=f"pi_existing_{counter['n']}",
            session_id=f"cs_existing_{counter['n']}",
            store_id=test_store.id,
            customer_stripe_id=BUYER_ID,
            line_items=[{"reference": "prod_A", "quantity": 1, "description": None}],
            product_reference="prod_A**1",
            paid_value=1000,
            estimated_delivery_cost=Decimal("5.00"),
            status="PENDING",
            delivery_method="pickup_point",
        )
        values.update(overrides)
        shipment = Shipment(**values)
        test_db_session.add(shipment)
        test_db_session.commit()
        test_db_session.refresh(shipment)
        return shipment

    return _make
