"""Tests for the payment-confirmation pipeline."""

from sqlalchemy import func, select, update
from sqlalchemy.exc import OperationalError

from conftest import payment_event
from fulfillment.application import fulfillment as fulfillment_module
from fulfillment.application.fulfillment import FulfillmentService, Outcome, WebhookResult, is_transient
from fulfillment.domain.models import (
    AuditKind,
    Client,
    Coffee,
    CoffeeVariant,
    Invoice,
    Order,
    OrderAuditEntry,
)

CLIENT = {"firstName": "Jane", "lastName": "Doe", "email": "Jane@Example.com", "phone": "+44 7700 900123"}
SHIPPING = {"firstName": "Jane", "lastName": "Doe", "address": "1 High St", "city": "Leeds",
            "postalCode": "LS1 1AA", "country": "GB", "email": "jane@example.com"}


def two_items():
    return [
        {"id": "var-a", "name": "House Blend 250g", "qty": 2, "unitPrice": 12.5, "totalPrice": 25},
        {"id": "eq-v60", "name": "V60 Dripper", "qty": 1, "unitPrice": 20, "totalPrice": 20, "source": "equipment"},
    ]


def order_for(db, reference):
    db.expire_all()
    return db.scalars(select(Order).where(Order.payment_reference == reference)).one()


def audit_kinds(db, order_id):
    return db.scalars(
        select(OrderAuditEntry.kind).where(OrderAuditEntry.order_id == order_id).order_by(OrderAuditEntry.id)
    ).all()


def stock(db, model, key):
    db.expire_all()
    return db.get(model, key).stock


class TestPaymentSucceeded:
    def test_order_is_paid_with_items_stock_and_client(self, db, service, catalog, mailer, alerts):
        event = payment_event("pi_paid", items=two_items(), shipping="4.50", client=CLIENT,
                              shipping_address=SHIPPING)
        result = service.handle_event(event)

        assert result.outcome == Outcome.PROCESSED
        order = order_for(db, "pi_paid")
        assert order.status == "paid"
        assert order.order_number.startswith("ORD-")
        assert order.order_number.endswith(f"{order.id:06d}")
        assert float(order.total) == 49.5
        assert [item.product_id for item in order.items] == ["var-a", "eq-v60"]
        assert order.shipping_address["line1"] == "1 High St"
        assert order.client.email == "jane@example.com"
        assert stock(db, CoffeeVariant, "var-a") == 3
        assert db.get(Coffee, "house").total_stock == 3

        kinds = audit_kinds(db, order.id)
        assert kinds[:4] == ["claimed", "stock_change", "stock_change", "paid"]
        assert "invoice_sent" in kinds
        assert "admin_notified" in kinds
        assert mailer.sent[0]["to"] == "jane@example.com"
        assert alerts.summaries[0]["order_id"] == order.id

    def test_duplicate_delivery_is_a_noop(self, db, service, catalog, mailer):
        event = payment_event("pi_dup", client=CLIENT, shipping_address=SHIPPING)
        first = service.handle_event(event)

        def snapshot():
            db.expire_all()
            invoice = db.scalars(select(Invoice)).one()
            client = db.scalars(select(Client)).one()
            return {
                "stock": db.get(CoffeeVariant, "var-a").stock,
                "total_stock": db.get(Coffee, "house").total_stock,
                "invoice": (invoice.id, invoice.sent, invoice.sent_at, invoice.send_error, invoice.admin_notified),
                "client": (client.id, client.name, client.email, client.phone, client.address, client.meta,
                           client.updated_at),
                "audit": len(audit_kinds(db, first.order_id)),
                "orders": db.scalar(select(func.count()).select_from(Order)),
            }

        before = snapshot()
        second = service.handle_event(event)

        assert first.outcome == Outcome.PROCESSED
        assert second.outcome == Outcome.DUPLICATE
        assert second.acknowledged
        assert second.order_id == first.order_id
        assert snapshot() == before
        assert before["stock"] == 4
        assert before["invoice"][1] is True
        assert len(mailer.sent) == 1

    def test_one_sold_out_item_fails_the_whole_order(self, db, service, catalog, gateway):
        items = [
            {"id": "var-a", "name": "House Blend 250g", "qty": 2, "unitPrice": 12.5, "totalPrice": 25},
            {"id": "var-b", "name": "House Blend 1kg", "qty": 1, "unitPrice": 40, "totalPrice": 40},
        ]
        result = service.handle_event(payment_event("pi_1", items=items, client=CLIENT))

        assert result.outcome == Outcome.FAILED
        assert not result.acknowledged
        order = order_for(db, "pi_1")
        assert order.status == "failed"
        assert "var-b" in order.failure_reason
        assert order.items == []
        assert order.client_id is None
        assert stock(db, CoffeeVariant, "var-a") == 5
        assert db.get(Coffee, "house").total_stock == 5
        assert db.scalar(select(func.count()).select_from(Invoice)) == 0
        assert db.scalar(select(func.count()).select_from(Client)) == 0

    def test_stock_failure_refunds_automatically(self, db, service, catalog, gateway, mailer, alerts):
        items = [{"id": "var-b", "name": "House Blend 1kg", "qty": 1, "unitPrice": 40, "totalPrice": 40}]
        service.handle_event(payment_event("pi_sold_out", items=items, shipping_address=SHIPPING))

        assert gateway.refunds == [{
            "payment_reference": "pi_sold_out",
            "amount": 4000,
            "metadata": {"orderId": order_for(db, "pi_sold_out").id, "reason": "out_of_stock"},
            "idempotency_key": "refund_pi_sold_out_stock",
        }]
        assert mailer.sent[0]["to"] == "jane@example.com"
        assert alerts.summaries[0]["refunded"] == "yes"
        order = order_for(db, "pi_sold_out")
        assert order.status == "failed"
        assert audit_kinds(db, order.id)[-1] == "stock_refund"

    def test_stock_failure_without_auto_refund_alerts_admins(self, db, service, catalog, gateway, alerts, settings):
        settings.AUTO_REFUND_ON_STOCK_FAILURE = False
        items = [{"id": "var-b", "name": "House Blend 1kg", "qty": 1, "unitPrice": 40, "totalPrice": 40}]
        service.handle_event(payment_event("pi_manual", items=items))

        assert gateway.refunds == []
        assert "refund needed" in alerts.summaries[0]["subject"]

    def test_stock_failure_redelivery_changes_nothing(self, db, service, catalog, gateway):
        items = [{"id": "var-b", "name": "House Blend 1kg", "qty": 1, "unitPrice": 40, "totalPrice": 40}]
        event = payment_event("pi_again", items=items)
        service.handle_event(event)
        result = service.handle_event(event)

        assert result.outcome == Outcome.DUPLICATE
        assert len(gateway.refunds) == 1

    def test_invalid_payload_is_rejected_and_acknowledged(self, db, service, catalog):
        event = payment_event("pi_bad", total="99.00")
        result = service.handle_event(event)

        assert result.outcome == Outcome.REJECTED
        assert result.acknowledged
        order = order_for(db, "pi_bad")
        assert order.status == "failed"
        assert "does not match" in order.failure_reason
        assert stock(db, CoffeeVariant, "var-a") == 5

    def test_event_without_intent_id_is_rejected(self, service):
        event = payment_event("pi_x")
        del event["data"]["object"]["id"]
        assert service.handle_event(event) == WebhookResult(Outcome.REJECTED)

    def test_refetched_event_is_authoritative(self, db, service, catalog, gateway):
        delivered = payment_event("pi_fresh", event_id="evt_fresh", total="99.00")
        gateway.events["evt_fresh"] = payment_event("pi_fresh", event_id="evt_fresh")

        result = service.handle_event(delivered)

        assert result.outcome == Outcome.PROCESSED
        assert float(order_for(db, "pi_fresh").total) == 12.5

    def test_refetch_for_another_payment_is_ignored(self, db, service, catalog, gateway):
        gateway.events["evt_other"] = payment_event("pi_someone_else", event_id="evt_other")
        result = service.handle_event(payment_event("pi_mine", event_id="evt_other"))

        assert result.outcome == Outcome.PROCESSED
        assert order_for(db, "pi_mine").status == "paid"
        assert db.scalar(select(func.count()).select_from(Order)) == 1

    def test_concurrent_winner_turns_delivery_into_duplicate(self, db, service, catalog, monkeypatch):
        """The processing-to-paid flip is the gate, not the earlier status read."""
        original = service._authoritative_intent

        def finished_elsewhere(event_id, intent):
            db.execute(update(Order).where(Order.payment_reference == "pi_race").values(status="paid"))
            db.commit()
            return original(event_id, intent)

        monkeypatch.setattr(service, "_authoritative_intent", finished_elsewhere)
        result = service.handle_event(payment_event("pi_race"))

        assert result.outcome == Outcome.DUPLICATE
        assert stock(db, CoffeeVariant, "var-a") == 5


class TestTransientErrors:
    def test_transient_error_is_retried(self, db, service, catalog, monkeypatch):
        real_decrement = fulfillment_module.decrement_stock
        calls = []

        def flaky(session, product_id, source, quantity):
            calls.append(product_id)
            if len(calls) == 1:
                raise OperationalError("UPDATE coffee_variants", {}, Exception("database is locked"))
            return real_decrement(session, product_id, source, quantity)

        monkeypatch.setattr(fulfillment_module, "decrement_stock", flaky)
        result = service.handle_event(payment_event("pi_flaky"))

        assert result.outcome == Outcome.PROCESSED
        assert len(calls) == 2
        assert stock(db, CoffeeVariant, "var-a") == 4

    def test_exhausted_retries_leave_order_processing(self, db, service, catalog, monkeypatch, settings):
        def locked(*args):
            raise OperationalError("UPDATE coffee_variants", {}, Exception("database is locked"))

        monkeypatch.setattr(fulfillment_module, "decrement_stock", locked)
        result = service.handle_event(payment_event("pi_locked"))

        assert result.outcome == Outcome.RETRY
        assert not result.acknowledged
        order = order_for(db, "pi_locked")
        assert order.status == "processing"
        entry = db.scalars(
            select(OrderAuditEntry).where(OrderAuditEntry.kind == AuditKind.TRANSIENT_FAILURE.value)
        ).one()
        assert entry.data["attempts"] == settings.MAX_TX_RETRIES

    def test_unexpected_error_fails_the_order(self, db, service, catalog, monkeypatch):
        def broken(*args):
            raise RuntimeError("catalog unavailable")

        monkeypatch.setattr(fulfillment_module, "decrement_stock", broken)
        result = service.handle_event(payment_event("pi_broken"))

        assert result.outcome == Outcome.FAILED
        assert order_for(db, "pi_broken").failure_reason == "RuntimeError: catalog unavailable"

    def test_classification(self):
        assert is_transient(OperationalError("SELECT 1", {}, Exception("server closed the connection")))
        assert not is_transient(ValueError("nope"))


class TestOtherEvents:
    def test_refund_event_lands_in_audit_ledger(self, db, service, catalog):
        service.handle_event(payment_event("pi_refunded"))
        result = service.handle_event({
            "id": "evt_charge_refunded",
            "type": "charge.refunded",
            "data": {"object": {"id": "ch_1", "payment_intent": "pi_refunded", "amount_refunded": 500,
                                "status": "succeeded"}},
        })

        assert result.outcome == Outcome.PROCESSED
        entry = db.scalars(
            select(OrderAuditEntry).where(OrderAuditEntry.kind == AuditKind.GATEWAY_EVENT.value)
        ).one()
        assert entry.data["amount_refunded"] == 500
        assert order_for(db, "pi_refunded").status == "paid"

    def test_refund_event_for_unknown_payment_is_ignored(self, service):
        result = service.handle_event({
            "id": "evt_unknown", "type": "refund.updated", "data": {"object": {"payment_intent": "pi_nobody"}},
        })
        assert result.outcome == Outcome.IGNORED

    def test_unrelated_event_types_are_ignored(self, service):
        assert service.handle_event({"id": "evt_c", "type": "customer.created"}).outcome == Outcome.IGNORED


def test_background_work_goes_through_scheduler(db, gateway, dispatcher, compensator, settings, catalog):
    scheduled = []
    service = FulfillmentService(db, gateway, dispatcher, compensator, settings,
                                 schedule=lambda func, *args: scheduled.append(func.__name__))
    service.handle_event(payment_event("pi_scheduled"))

    assert scheduled == ["dispatch_invoice", "notify_admin"]
    assert db.scalar(select(func.count()).select_from(Invoice)) == 0
