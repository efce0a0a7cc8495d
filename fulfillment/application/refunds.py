import html
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from fulfillment.application.audit import write_audit
from fulfillment.application.fulfillment import run_now
from fulfillment.application.schemas import RefundRequest
from fulfillment.core_settings import Settings
from fulfillment.domain.exceptions import (
    GatewayError,
    NotificationError,
    OrderNotFoundError,
    RefundConflictError,
)
from fulfillment.domain.models import (
    REFUNDABLE_STATUSES,
    AuditKind,
    Order,
    OrderStatus,
    RefundEntry,
)
from fulfillment.infrastructure.notifications import Mailer
from fulfillment.infrastructure.payment_gateway import PaymentGateway, to_minor_units
from shared.core import get_logger

logger = get_logger(__name__)

CENT = Decimal("0.01")


@dataclass
class RefundOutcome:
    entry: RefundEntry
    status: str
    refunded_total: Decimal
    refundable: Decimal
    replayed: bool


def refunded_so_far(order: Order) -> Decimal:
    """Sum of the refund ledger, or the legacy single-refund amount when the ledger is empty."""
    if order.refunds:
        return sum((entry.amount for entry in order.refunds), Decimal("0"))
    return Decimal(order.legacy_refund_amount or 0)


def refundable_balance(order: Order) -> Decimal:
    if order.status not in REFUNDABLE_STATUSES:
        return Decimal("0")
    return max(Decimal("0"), Decimal(order.total) - refunded_so_far(order))


class RefundService:
    def __init__(self, db: Session, gateway: PaymentGateway, mailer: Mailer, settings: Settings,
                 session_factory: sessionmaker, schedule: Callable = run_now):
        self.db = db
        self.gateway = gateway
        self.mailer = mailer
        self.settings = settings
        self.session_factory = session_factory
        self.schedule = schedule
        self.tolerance = Decimal(str(settings.REFUND_TOLERANCE))

    def refund(self, order_id: int, request: RefundRequest, header_key: Optional[str] = None) -> RefundOutcome:
        order = self._load(order_id)
        key = request.idempotency_key or header_key

        if key:
            existing = self._entry_for_key(order_id, key)
            if existing is not None:
                return self._replay(order, existing)

        amount = request.amount.quantize(CENT)
        refundable = refundable_balance(order)
        if amount > refundable + self.tolerance:
            raise RefundConflictError(
                f"Refund of {amount} exceeds the refundable balance of {refundable}", refundable
            )
        currency = (request.currency or order.currency).upper()
        if currency != order.currency.upper():
            raise RefundConflictError(f"Order is paid in {order.currency.upper()}, not {currency}", refundable)

        key = key or f"refund_{order_id}_{uuid.uuid4().hex}"
        entry, created = self._reserve(order, amount, currency, request.reason, key)
        if not created:
            # a concurrent request with the same key got there first
            return self._replay(self._load(order_id), entry)

        self._call_gateway(order, entry)
        order = self._load(order_id)
        self.schedule(self.notify_customer, order_id, entry.id)

        so_far = refunded_so_far(order)
        return RefundOutcome(
            entry=entry,
            status=order.status,
            refunded_total=so_far,
            refundable=refundable_balance(order),
            replayed=False,
        )

    def _load(self, order_id: int) -> Order:
        self.db.expire_all()
        order = self.db.get(Order, order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    def _entry_for_key(self, order_id: int, key: str) -> Optional[RefundEntry]:
        return self.db.scalars(
            select(RefundEntry).where(RefundEntry.order_id == order_id, RefundEntry.idempotency_key == key)
        ).first()

    def _replay(self, order: Order, entry: RefundEntry) -> RefundOutcome:
        logger.info(
            f"Replaying refund {entry.id} for key {entry.idempotency_key}",
            extra={'extra_fields': {'order_id': order.id}}
        )
        return RefundOutcome(
            entry=entry,
            status=order.status,
            refunded_total=refunded_so_far(order),
            refundable=refundable_balance(order),
            replayed=True,
        )

    def _reserve(self, order: Order, amount: Decimal, currency: str, reason: Optional[str],
                 key: str) -> tuple[RefundEntry, bool]:
        """Record the entry and the new order totals in one transaction before money moves."""
        new_total = refunded_so_far(order) + amount
        if new_total >= Decimal(order.total) - self.tolerance:
            status = OrderStatus.REFUNDED.value
        else:
            status = OrderStatus.PARTIALLY_REFUNDED.value

        # compare-and-swap on the version read above
        result = self.db.execute(
            update(Order)
            .where(Order.id == order.id, Order.version == order.version)
            .values(refunded_total=new_total, status=status, version=Order.version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.rollback()
            existing = self._entry_for_key(order.id, key)
            if existing is not None:
                return existing, False
            raise RefundConflictError(
                "Order changed while the refund was being recorded, please retry",
                refundable_balance(self._load(order.id)),
            )

        if not order.refunds and order.legacy_refund_amount:
            # carry the pre-ledger refund into the ledger so the sum stays complete
            self.db.add(RefundEntry(
                order_id=order.id,
                amount=Decimal(order.legacy_refund_amount),
                currency=currency,
                reason="refund recorded before the ledger",
                idempotency_key=f"legacy_{order.id}",
                gateway_succeeded=True,
                refund_id=f"legacy_{order.id}",
            ))
        entry = RefundEntry(order_id=order.id, amount=amount, currency=currency, reason=reason,
                            idempotency_key=key)
        self.db.add(entry)
        try:
            self.db.flush()
        except IntegrityError:
            self.db.rollback()
            existing = self._entry_for_key(order.id, key)
            if existing is None:
                raise
            return existing, False
        self.db.commit()
        logger.info(
            f"Refund of {amount} {currency} reserved on order {order.id}",
            extra={'extra_fields': {'refund_entry_id': entry.id, 'status': status}}
        )
        return entry, True

    def _call_gateway(self, order: Order, entry: RefundEntry) -> None:
        try:
            result = self.gateway.create_refund(
                order.payment_reference,
                to_minor_units(entry.amount, entry.currency),
                {"orderId": order.id, "reason": entry.reason or ""},
                entry.idempotency_key,
            )
        except GatewayError as e:
            logger.error(
                f"Gateway refund failed for order {order.id}, recorded for manual follow-up: {e}",
                extra={'extra_fields': {'refund_entry_id': entry.id}}
            )
            entry.gateway_succeeded = False
            entry.refund_id = f"manual_{entry.id}"
            entry.gateway_error = str(e)
        else:
            entry.gateway_succeeded = True
            entry.refund_id = result.id
            entry.provider_refund_id = result.id
            entry.gateway_response = {"id": result.id, "status": result.status}
        self.db.add(entry)
        self.db.commit()

    def notify_customer(self, order_id: int, entry_id: int) -> None:
        """Best effort; the outcome lands in the audit ledger."""
        with self.session_factory() as db:
            order = db.get(Order, order_id)
            entry = db.get(RefundEntry, entry_id)
            if order is None or entry is None:
                return
            recipient = order.client.email if order.client and order.client.email else None
            if not recipient and order.shipping_address:
                recipient = order.shipping_address.get("email")
            subject = f"Your refund for order {order.order_number or order.id}"
            body = (
                f"<p>We have refunded {entry.amount:.2f} {entry.currency} to your original payment "
                f"method for order {html.escape(order.order_number or str(order.id))}.</p>"
                + (f"<p>Reason: {html.escape(entry.reason)}</p>" if entry.reason else "")
                + "<p>Refunds usually reach your account within 5 to 10 working days.</p>"
            )

        if not recipient:
            write_audit(self.session_factory, order_id, AuditKind.REFUND_NOTIFICATION_FAILED,
                        refund_entry_id=entry_id, error="no recipient email")
            return
        try:
            self.mailer.send(recipient, subject, body)
        except NotificationError as e:
            logger.warning(f"Refund email for order {order_id} failed: {e}")
            write_audit(self.session_factory, order_id, AuditKind.REFUND_NOTIFICATION_FAILED,
                        refund_entry_id=entry_id, error=str(e))
            return
        write_audit(self.session_factory, order_id, AuditKind.REFUND_NOTIFICATION_SENT,
                    refund_entry_id=entry_id, recipient=recipient)
