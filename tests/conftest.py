"""Shared fixtures: an in-memory database per test and fake outbound collaborators."""

import json
import os
from decimal import Decimal

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("RUN_MIGRATIONS_ON_STARTUP", "false")

import pytest
from fastapi.testclient import TestClient

from fulfillment.api.dependencies import get_admin_alerts, get_app_settings, get_gateway, get_mailer
from fulfillment.application.dispatcher import InvoiceDispatcher
from fulfillment.application.fulfillment import FulfillmentService, StockFailureCompensator
from fulfillment.core_settings import Settings
from fulfillment.domain.exceptions import EventVerificationError, GatewayError, NotificationError
from fulfillment.domain.models import Base, Coffee, CoffeeVariant, Equipment
from fulfillment.infrastructure.db import build_engine, build_session_factory, get_db, get_session_factory
from fulfillment.infrastructure.invoice_renderer import InvoiceRenderer
from fulfillment.infrastructure.payment_gateway import RefundResult
from fulfillment.main import app

VALID_SIGNATURE = "t=1,v1=valid"


class FakeGateway:
    """Accepts one signature value and records refunds instead of moving money."""

    def __init__(self):
        self.events = {}
        self.refunds = []
        self.refund_error = None

    def verify_signature(self, payload, signature_header):
        if signature_header != VALID_SIGNATURE:
            raise EventVerificationError("signature mismatch")
        return json.loads(payload)

    def retrieve_event(self, event_id):
        if event_id not in self.events:
            raise GatewayError(f"No such event: {event_id}", code="resource_missing")
        return self.events[event_id]

    def create_refund(self, payment_reference, amount_minor_units, metadata, idempotency_key):
        if self.refund_error:
            raise GatewayError(self.refund_error, code="card_declined")
        self.refunds.append({
            "payment_reference": payment_reference,
            "amount": amount_minor_units,
            "metadata": metadata,
            "idempotency_key": idempotency_key,
        })
        refund_id = f"re_{len(self.refunds)}"
        return RefundResult(id=refund_id, status="succeeded", raw={"id": refund_id})


class FakeMailer:
    def __init__(self):
        self.sent = []
        self.error = None

    def send(self, to_address, subject, html_body, attachment=None):
        if self.error:
            raise NotificationError(self.error)
        self.sent.append({"to": to_address, "subject": subject, "html": html_body, "attachment": attachment})


class FakeAlerts:
    def __init__(self):
        self.summaries = []
        self.error = None

    def notify(self, summary):
        if self.error:
            raise NotificationError(self.error)
        self.summaries.append(summary)
        return True


def payment_event(reference="pi_1", items=None, shipping="0.00", total=None, event_id="evt_1",
                  client=None, shipping_address=None, billing_address=None, currency="gbp", **extra_metadata):
    """A ``payment_intent.succeeded`` event shaped like the ones the storefront produces."""
    if items is None:
        items = [{"id": "var-a", "name": "House Blend 250g", "qty": 1, "unitPrice": 12.5, "totalPrice": 12.5}]
    subtotal = sum((Decimal(str(item.get("totalPrice", 0))) for item in items), Decimal("0"))
    if total is None:
        total = subtotal + Decimal(shipping)
    metadata = {
        "items": json.dumps(items),
        "subtotal": str(subtotal),
        "shipping": shipping,
        "total": str(total),
    }
    if client is not None:
        metadata["client"] = json.dumps(client)
    if shipping_address is not None:
        metadata["shippingAddress"] = json.dumps(shipping_address)
    if billing_address is not None:
        metadata["billingAddress"] = json.dumps(billing_address)
    metadata.update(extra_metadata)
    return {
        "id": event_id,
        "type": "payment_intent.succeeded",
        "data": {
            "object": {
                "id": reference,
                "object": "payment_intent",
                "amount": int(Decimal(str(total)) * 100),
                "amount_received": int(Decimal(str(total)) * 100),
                "currency": currency,
                "metadata": metadata,
            }
        },
    }


@pytest.fixture()
def settings():
    return Settings(
        DATABASE_URL="sqlite://",
        STRIPE_SECRET_KEY="sk_test_fulfillment",
        STRIPE_WEBHOOK_SECRET="whsec_fulfillment",
        BREVO_API_KEY="brevo-test-key",
        ADMIN_NOTIFICATION_EMAIL="ops@example-roastery.co.uk",
        TX_RETRY_BACKOFF_MS=0,
    )


@pytest.fixture()
def engine():
    engine = build_engine("sqlite://")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture()
def gateway():
    return FakeGateway()


@pytest.fixture()
def mailer():
    return FakeMailer()


@pytest.fixture()
def alerts():
    return FakeAlerts()


@pytest.fixture()
def dispatcher(session_factory, mailer, alerts, settings):
    return InvoiceDispatcher(session_factory, mailer, alerts, InvoiceRenderer(settings))


@pytest.fixture()
def compensator(session_factory, gateway, mailer, dispatcher):
    return StockFailureCompensator(session_factory, gateway, mailer, dispatcher)


@pytest.fixture()
def service(db, gateway, dispatcher, compensator, settings):
    return FulfillmentService(db, gateway, dispatcher, compensator, settings, sleep=lambda seconds: None)


@pytest.fixture()
def catalog(session_factory):
    """Two variants of one coffee (one sold out), a plain coffee and a dripper."""
    with session_factory() as session:
        session.add_all([
            Coffee(id="house", name="House Blend", slug="house-blend", stock=0, total_stock=5),
            CoffeeVariant(id="var-a", coffee_id="house", sku="HB-250", name="House Blend 250g", stock=5),
            CoffeeVariant(id="var-b", coffee_id="house", sku="HB-1KG", name="House Blend 1kg", stock=0),
            Coffee(id="espresso", name="Espresso Roast", slug="espresso-roast", stock=4, total_stock=4),
            Equipment(id="eq-v60", slug="v60-dripper", name="V60 Dripper", total_stock=3),
        ])
        session.commit()


@pytest.fixture()
def client(session_factory, gateway, mailer, alerts, settings):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_mailer] = lambda: mailer
    app.dependency_overrides[get_admin_alerts] = lambda: alerts
    app.dependency_overrides[get_app_settings] = lambda: settings
    yield TestClient(app)
    app.dependency_overrides.clear()
