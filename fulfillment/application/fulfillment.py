"""Payment-confirmation pipeline.

A ``payment_intent.succeeded`` event is turned into exactly one terminal
order state. The claim (an insert-or-nothing keyed by the payment
reference) is the only idempotency gate; everything after it runs once
per claimed order. Stock, identity and order details are written in one
transaction whose first statement flips the order from ``processing`` to
``paid``, so a concurrent delivery of the same event can never apply the
same stock changes twice.
"""

import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from fulfillment.application.audit import append_audit, write_audit
from fulfillment.application.checkout import parse_checkout
from fulfillment.application.dispatcher import InvoiceDispatcher
from fulfillment.application.identity import IdentityResolver
from fulfillment.application.inventory import decrement_stock
from fulfillment.application.schemas import CheckoutPayload
from fulfillment.core_settings import Settings
from fulfillment.domain.exceptions import (
    ClaimLostError,
    GatewayError,
    InsufficientStockError,
    NotificationError,
    PayloadValidationError,
)
from fulfillment.domain.models import AuditKind, Order, OrderItem, OrderStatus
from fulfillment.infrastructure.notifications import Mailer
from fulfillment.infrastructure.payment_gateway import PaymentGateway, to_minor_units
from shared.core import get_logger, set_request_context

logger = get_logger(__name__)

PAYMENT_SUCCEEDED = "payment_intent.succeeded"
REFUND_EVENTS = ("charge.refunded", "refund.updated")

# serialization failure, deadlock
TRANSIENT_PGCODES = {"40001", "40P01"}

INSERTS = {"postgresql": pg_insert, "sqlite": sqlite_insert}


class Outcome(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"
    IGNORED = "ignored"
    FAILED = "failed"
    RETRY = "retry"


@dataclass
class WebhookResult:
    outcome: Outcome
    order_id: Optional[int] = None

    @property
    def acknowledged(self) -> bool:
        """False means the gateway should deliver the event again."""
        return self.outcome not in (Outcome.FAILED, Outcome.RETRY)


def is_transient(exc: Exception) -> bool:
    if not isinstance(exc, DBAPIError):
        return False
    if exc.connection_invalidated:
        return True
    if getattr(exc.orig, "pgcode", None) in TRANSIENT_PGCODES:
        return True
    return isinstance(exc, OperationalError)


def order_number_for(order_id: int, when: datetime) -> str:
    return f"ORD-{when.year}-{order_id:06d}"


def run_now(func: Callable, *args, **kwargs) -> None:
    func(*args, **kwargs)


class StockFailureCompensator:
    """Gives the money back when an order failed for lack of stock."""

    def __init__(self, session_factory: sessionmaker, gateway: PaymentGateway, mailer: Mailer,
                 dispatcher: InvoiceDispatcher):
        self.session_factory = session_factory
        self.gateway = gateway
        self.mailer = mailer
        self.dispatcher = dispatcher

    def refund(self, order_id: int, payment_reference: str, amount_minor_units: int, currency: str,
               customer_email: Optional[str], reason: str) -> None:
        idempotency_key = f"refund_{payment_reference}_stock"
        try:
            result = self.gateway.create_refund(
                payment_reference,
                amount_minor_units,
                {"orderId": order_id, "reason": "out_of_stock"},
                idempotency_key,
            )
        except GatewayError as e:
            logger.error(f"Automatic refund failed for order {order_id}: {e}")
            write_audit(self.session_factory, order_id, AuditKind.STOCK_REFUND, succeeded=False,
                        idempotency_key=idempotency_key, error=str(e))
            refunded = False
        else:
            logger.info(f"Order {order_id} refunded automatically after a stock failure")
            write_audit(self.session_factory, order_id, AuditKind.STOCK_REFUND, succeeded=True,
                        idempotency_key=idempotency_key, refund_id=result.id, status=result.status,
                        amount_minor_units=amount_minor_units)
            refunded = True

        if refunded and customer_email:
            try:
                self.mailer.send(
                    customer_email,
                    "Sorry, we could not fulfil your order",
                    "<p>We are sorry, one of the items in your order sold out before we could "
                    "reserve it. Your payment has been refunded in full and should reach your "
                    "account within a few working days.</p>",
                )
            except NotificationError as e:
                logger.warning(f"Apology email for order {order_id} failed: {e}")

        self.dispatcher.alert_admins({
            "subject": f"Order {order_id} failed: out of stock",
            "order_id": order_id,
            "payment_reference": payment_reference,
            "reason": reason,
            "refunded": "yes" if refunded else "NO, refund manually",
            "amount": f"{amount_minor_units} {currency.upper()} minor units",
        })


class FulfillmentService:
    def __init__(
        self,
        db: Session,
        gateway: PaymentGateway,
        dispatcher: InvoiceDispatcher,
        compensator: StockFailureCompensator,
        settings: Settings,
        schedule: Callable = run_now,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.db = db
        self.gateway = gateway
        self.dispatcher = dispatcher
        self.compensator = compensator
        self.settings = settings
        self.schedule = schedule
        self.sleep = sleep

    def handle_event(self, event: dict) -> WebhookResult:
        event_type = event.get("type")
        set_request_context(event_id=event.get("id"))
        if event_type == PAYMENT_SUCCEEDED:
            return self.handle_payment_succeeded(event)
        if event_type in REFUND_EVENTS:
            return self.record_gateway_event(event)
        logger.info(f"Ignoring event type {event_type}")
        return WebhookResult(Outcome.IGNORED)

    def handle_payment_succeeded(self, event: dict) -> WebhookResult:
        event_id = event.get("id")
        intent = (event.get("data") or {}).get("object") or {}
        payment_reference = intent.get("id")
        if not payment_reference:
            logger.warning("Payment event without a payment intent id")
            return WebhookResult(Outcome.REJECTED)

        order = self.claim(payment_reference, event_id)
        order_id = order.id
        if order.status != OrderStatus.PROCESSING:
            logger.info(
                f"Order {order_id} already {order.status}, nothing to do",
                extra={'extra_fields': {'payment_reference': payment_reference}}
            )
            return WebhookResult(Outcome.DUPLICATE, order_id)

        intent = self._authoritative_intent(event_id, intent)
        try:
            checkout = parse_checkout(intent, self.settings)
        except PayloadValidationError as e:
            logger.warning(
                f"Rejecting payment {payment_reference}: {e}",
                extra={'extra_fields': {'order_id': order_id}}
            )
            self.mark_failed(order_id, str(e), event_id, stage="validation")
            return WebhookResult(Outcome.REJECTED, order_id)

        return self._commit_with_retries(order_id, payment_reference, intent, checkout, event_id)

    def claim(self, payment_reference: str, event_id: Optional[str]) -> Order:
        """Insert the placeholder order or find the one that already exists."""
        insert = INSERTS[self.db.get_bind().dialect.name]
        stmt = (
            insert(Order)
            .values(
                payment_reference=payment_reference,
                status=OrderStatus.PROCESSING.value,
                currency=self.settings.DEFAULT_CURRENCY,
                webhook_event_id=event_id,
            )
            .on_conflict_do_nothing(index_elements=["payment_reference"])
            .returning(Order.id)
        )
        inserted = self.db.execute(stmt).first()
        order = self.db.scalars(
            select(Order)
            .where(Order.payment_reference == payment_reference)
            .execution_options(populate_existing=True)
        ).one()
        if inserted is not None:
            append_audit(self.db, order.id, AuditKind.CLAIMED, event_id=event_id)
        self.db.commit()
        logger.info(
            f"Order {order.id} {'claimed' if inserted else 'found'} for {payment_reference}",
            extra={'extra_fields': {'status': order.status}}
        )
        return order

    def mark_failed(self, order_id: int, reason: str, event_id: Optional[str], **details) -> bool:
        """Fail a still-processing order in its own transaction."""
        result = self.db.execute(
            update(Order)
            .where(Order.id == order_id, Order.status == OrderStatus.PROCESSING.value)
            .values(
                status=OrderStatus.FAILED.value,
                failure_reason=reason,
                failed_at=datetime.utcnow(),
                webhook_event_id=event_id,
                version=Order.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.rollback()
            return False
        append_audit(self.db, order_id, AuditKind.FAILURE, reason=reason, event_id=event_id, **details)
        self.db.commit()
        return True

    def record_gateway_event(self, event: dict) -> WebhookResult:
        obj = (event.get("data") or {}).get("object") or {}
        payment_reference = obj.get("payment_intent")
        order = None
        if payment_reference:
            order = self.db.scalars(select(Order).where(Order.payment_reference == payment_reference)).first()
        if order is None:
            logger.info(f"No order for {event.get('type')} on {payment_reference}")
            return WebhookResult(Outcome.IGNORED)

        append_audit(
            self.db, order.id, AuditKind.GATEWAY_EVENT,
            event_id=event.get("id"),
            type=event.get("type"),
            object_id=obj.get("id"),
            status=obj.get("status"),
            amount=obj.get("amount"),
            amount_refunded=obj.get("amount_refunded"),
        )
        self.db.commit()
        return WebhookResult(Outcome.PROCESSED, order.id)

    def _authoritative_intent(self, event_id: Optional[str], delivered: dict) -> dict:
        if not event_id:
            return delivered
        try:
            fresh = self.gateway.retrieve_event(event_id)
        except GatewayError as e:
            logger.warning(f"Using delivered payload, event re-fetch failed: {e}")
            return delivered
        intent = (fresh.get("data") or {}).get("object") or {}
        if intent.get("id") != delivered.get("id"):
            logger.warning("Re-fetched event refers to another payment, using delivered payload")
            return delivered
        return intent

    def _commit_with_retries(self, order_id: int, payment_reference: str, intent: dict,
                             checkout: CheckoutPayload, event_id: Optional[str]) -> WebhookResult:
        attempts = max(1, self.settings.MAX_TX_RETRIES)
        for attempt in range(1, attempts + 1):
            try:
                self._fulfil(order_id, checkout, event_id)
                self.db.commit()
            except ClaimLostError:
                self.db.rollback()
                logger.info(f"Order {order_id} was finalised by a concurrent delivery")
                return WebhookResult(Outcome.DUPLICATE, order_id)
            except InsufficientStockError as e:
                self.db.rollback()
                logger.warning(
                    f"Order {order_id} failed: {e}",
                    extra={'extra_fields': {'product_id': e.product_id, 'source': e.source}}
                )
                if self.mark_failed(order_id, str(e), event_id, stage="stock",
                                    product_id=e.product_id, source=e.source):
                    self._compensate(order_id, payment_reference, intent, checkout, str(e))
                return WebhookResult(Outcome.FAILED, order_id)
            except Exception as e:
                self.db.rollback()
                if is_transient(e) and attempt < attempts:
                    logger.warning(f"Transient error on attempt {attempt} for order {order_id}: {e}")
                    self.sleep(self.settings.TX_RETRY_BACKOFF_MS * attempt / 1000)
                    continue
                if is_transient(e):
                    # left in processing so a redelivery can finish the order
                    logger.error(f"Giving up on order {order_id} after {attempt} attempts: {e}")
                    write_audit(self.dispatcher.session_factory, order_id, AuditKind.TRANSIENT_FAILURE,
                                event_id=event_id, attempts=attempt, error=str(e))
                    return WebhookResult(Outcome.RETRY, order_id)
                logger.exception(f"Order {order_id} failed while committing")
                self.mark_failed(order_id, f"{type(e).__name__}: {e}", event_id, stage="transaction")
                return WebhookResult(Outcome.FAILED, order_id)
            else:
                break

        logger.info(
            f"Order {order_id} paid",
            extra={'extra_fields': {'payment_reference': payment_reference, 'total': str(checkout.total)}}
        )
        self.schedule(self.dispatcher.dispatch_invoice, order_id, event_id)
        self.schedule(self.dispatcher.notify_admin, order_id)
        return WebhookResult(Outcome.PROCESSED, order_id)

    def _fulfil(self, order_id: int, checkout: CheckoutPayload, event_id: Optional[str]) -> None:
        now = datetime.utcnow()
        flipped = self.db.execute(
            update(Order)
            .where(Order.id == order_id, Order.status == OrderStatus.PROCESSING.value)
            .values(status=OrderStatus.PAID.value, paid_at=now, webhook_event_id=event_id,
                    order_number=order_number_for(order_id, now), version=Order.version + 1)
            .execution_options(synchronize_session=False)
        )
        if flipped.rowcount != 1:
            raise ClaimLostError(f"order {order_id} is no longer processing")

        changes = [
            decrement_stock(self.db, item.product_id, item.source, item.quantity)
            for item in checkout.items
        ]

        shipping_address = checkout.shipping_address
        client = IdentityResolver(self.db).resolve(
            checkout.client,
            fallback_email=shipping_address.email if shipping_address else None,
            fallback_address=shipping_address,
        )

        order = self.db.get(Order, order_id, populate_existing=True)
        order.items = [
            OrderItem(position=position, product_id=item.product_id, source=item.source.value,
                      name=item.name, quantity=item.quantity, unit_price=item.unit_price,
                      line_total=item.line_total)
            for position, item in enumerate(checkout.items)
        ]
        order.subtotal = checkout.subtotal
        order.shipping = checkout.shipping
        order.total = checkout.total
        order.currency = checkout.currency
        order.shipping_address = shipping_address.model_dump(exclude_none=True) if shipping_address else None
        order.billing_address = (
            checkout.billing_address.model_dump(exclude_none=True) if checkout.billing_address else None
        )
        order.client_id = client.id if client is not None else None

        for change in changes:
            append_audit(self.db, order_id, AuditKind.STOCK_CHANGE, event_id=event_id, **change.as_dict())
        append_audit(self.db, order_id, AuditKind.PAID, event_id=event_id, total=checkout.total,
                     currency=checkout.currency, stock_changes=len(changes))
        self.db.flush()

    def _compensate(self, order_id: int, payment_reference: str, intent: dict,
                    checkout: CheckoutPayload, reason: str) -> None:
        if not self.settings.AUTO_REFUND_ON_STOCK_FAILURE:
            self.schedule(self.dispatcher.alert_admins, {
                "subject": f"Order {order_id} failed: out of stock, refund needed",
                "order_id": order_id,
                "payment_reference": payment_reference,
                "reason": reason,
            })
            return
        amount = intent.get("amount_received") or intent.get("amount") or to_minor_units(
            checkout.total, checkout.currency
        )
        email = None
        if checkout.client and checkout.client.email:
            email = checkout.client.email.strip()
        elif checkout.shipping_address and checkout.shipping_address.email:
            email = checkout.shipping_address.email
        self.schedule(self.compensator.refund, order_id, payment_reference, int(amount),
                      checkout.currency, email, reason)
