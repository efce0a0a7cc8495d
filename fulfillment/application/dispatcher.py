"""Invoice generation, delivery and admin notification for paid orders.

Runs after the payment transaction has committed, usually as a background
task. Each outcome is written on its own; nothing here touches the
order's payment status.
"""

import html
from datetime import datetime
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from fulfillment.application.audit import append_audit, write_audit
from fulfillment.application.schemas import (
    Address,
    InvoiceLine,
    InvoiceRecipient,
    InvoiceSnapshot,
)
from fulfillment.domain.exceptions import NotificationError
from fulfillment.domain.models import AuditKind, Invoice, Order
from fulfillment.infrastructure.invoice_renderer import InvoiceRenderer
from fulfillment.infrastructure.notifications import AdminAlerts, Attachment, Mailer
from shared.core import get_logger

logger = get_logger(__name__)


def invoice_number_for(order: Order) -> str:
    year = (order.paid_at or order.created_at or datetime.utcnow()).year
    return f"INV-{year}-{order.id:06d}"


def _recipient(order: Order, shipping_address: Optional[Address]) -> Optional[InvoiceRecipient]:
    """The linked client, with the shipping address filling any gaps."""
    known = order.client
    shipping = shipping_address or Address()
    shipping_name = " ".join(part for part in (shipping.first_name, shipping.last_name) if part)
    recipient = InvoiceRecipient(
        name=(known.name if known else None) or shipping_name or None,
        email=(known.email if known else None) or shipping.email,
        phone=(known.phone if known else None) or shipping.phone,
    )
    if not (recipient.name or recipient.email or recipient.phone):
        return None
    return recipient


def build_snapshot(order: Order, event_id: Optional[str] = None) -> InvoiceSnapshot:
    shipping_address = Address.model_validate(order.shipping_address) if order.shipping_address else None
    billing_address = Address.model_validate(order.billing_address) if order.billing_address else None
    if billing_address is not None and billing_address.same_as_shipping:
        billing_address = None
    client = _recipient(order, shipping_address)
    recipient = client.email if client else None
    return InvoiceSnapshot(
        invoice_number=invoice_number_for(order),
        order_number=order.order_number or str(order.id),
        payment_reference=order.payment_reference,
        event_id=event_id or order.webhook_event_id,
        items=[
            InvoiceLine(product_id=item.product_id, name=item.name, quantity=item.quantity,
                        unit_price=item.unit_price, line_total=item.line_total)
            for item in order.items
        ],
        subtotal=order.subtotal,
        shipping=order.shipping,
        total=order.total,
        currency=order.currency,
        client=client,
        shipping_address=shipping_address,
        billing_address=billing_address,
        recipient_email=recipient,
        paid_at=order.paid_at,
    )


def invoice_email_html(snapshot: InvoiceSnapshot) -> str:
    name = snapshot.client.name if snapshot.client and snapshot.client.name else "there"
    rows = "".join(
        f"<tr><td>{html.escape(line.name)}</td><td>{line.quantity}</td>"
        f"<td>{line.line_total:.2f}</td></tr>"
        for line in snapshot.items
    )
    return (
        f"<p>Hi {html.escape(name)},</p>"
        f"<p>Thank you for your order {html.escape(snapshot.order_number)}. "
        f"Your invoice {html.escape(snapshot.invoice_number)} is attached.</p>"
        f"<table>{rows}</table>"
        f"<p>Total paid: {snapshot.total:.2f} {snapshot.currency.upper()}</p>"
    )


class InvoiceDispatcher:
    def __init__(self, session_factory: sessionmaker, mailer: Mailer, alerts: AdminAlerts,
                 renderer: InvoiceRenderer):
        self.session_factory = session_factory
        self.mailer = mailer
        self.alerts = alerts
        self.renderer = renderer

    def dispatch_invoice(self, order_id: int, event_id: Optional[str] = None) -> None:
        saved = self.save_invoice(order_id, event_id)
        if saved is None:
            return
        invoice_id, snapshot = saved
        self.deliver(order_id, invoice_id, snapshot)

    def save_invoice(self, order_id: int, event_id: Optional[str] = None) -> Optional[tuple[int, InvoiceSnapshot]]:
        """Persist the invoice snapshot once per order; an existing invoice counts as done."""
        with self.session_factory() as db:
            order = db.get(Order, order_id)
            if order is None or order.paid_at is None:
                logger.warning(f"Order {order_id} is not paid, no invoice created")
                return None

            snapshot = build_snapshot(order, event_id)
            data = snapshot.model_dump(mode="json")
            invoice = Invoice(
                order_id=order.id,
                invoice_number=snapshot.invoice_number,
                order_number=snapshot.order_number,
                payment_reference=snapshot.payment_reference,
                webhook_event_id=snapshot.event_id,
                items=data["items"],
                subtotal=snapshot.subtotal,
                shipping=snapshot.shipping,
                total=snapshot.total,
                currency=snapshot.currency,
                client=data["client"],
                shipping_address=data["shipping_address"],
                billing_address=data["billing_address"],
                recipient_email=snapshot.recipient_email,
                paid_at=snapshot.paid_at,
            )
            db.add(invoice)
            try:
                db.flush()
            except IntegrityError:
                db.rollback()
                logger.info(f"Invoice for order {order_id} already exists")
                return None
            append_audit(db, order_id, AuditKind.INVOICE_SAVED,
                         invoice_id=invoice.id, invoice_number=invoice.invoice_number, event_id=snapshot.event_id)
            db.commit()
            logger.info(
                f"Invoice {invoice.invoice_number} saved",
                extra={'extra_fields': {'order_id': order_id, 'invoice_id': invoice.id}}
            )
            return invoice.id, snapshot

    def deliver(self, order_id: int, invoice_id: int, snapshot: InvoiceSnapshot) -> bool:
        try:
            if not snapshot.recipient_email:
                raise NotificationError("no recipient email")
            document = self.renderer.render(snapshot)
            self._store_document(invoice_id, document)
            self.mailer.send(
                snapshot.recipient_email,
                f"Your invoice {snapshot.invoice_number}",
                invoice_email_html(snapshot),
                Attachment(f"{snapshot.invoice_number}.pdf", document),
            )
        except Exception as e:
            logger.error(
                f"Invoice {snapshot.invoice_number} not delivered: {e}",
                exc_info=not isinstance(e, NotificationError),
                extra={'extra_fields': {'order_id': order_id, 'invoice_id': invoice_id}}
            )
            self._record_send(order_id, invoice_id, error=str(e))
            self.alert_admins({
                "subject": f"Invoice {snapshot.invoice_number} could not be sent",
                "order_id": order_id,
                "order_number": snapshot.order_number,
                "recipient": snapshot.recipient_email or "-",
                "error": str(e),
            })
            return False

        self._record_send(order_id, invoice_id, error=None)
        return True

    def notify_admin(self, order_id: int) -> None:
        with self.session_factory() as db:
            order = db.get(Order, order_id)
            if order is None:
                return
            summary = {
                "subject": f"New order {order.order_number or order.id}",
                "order_id": order.id,
                "order_number": order.order_number,
                "payment_reference": order.payment_reference,
                "total": f"{order.total:.2f} {order.currency.upper()}",
                "items": sum(item.quantity for item in order.items),
                "customer": order.client.email if order.client else "-",
            }

        if not self.alert_admins(summary):
            return
        write_audit(self.session_factory, order_id, AuditKind.ADMIN_NOTIFIED)
        self._update_invoice(order_id, admin_notified=True, admin_notified_at=datetime.utcnow(),
                             admin_notification_error=None)

    def alert_admins(self, summary: dict) -> bool:
        """Best effort; returns whether an alert went out."""
        order_id = summary.get("order_id")
        try:
            delivered = self.alerts.notify(summary)
        except NotificationError as e:
            logger.error(f"Admin alert failed: {e}", extra={'extra_fields': {'order_id': order_id}})
            if order_id is not None:
                write_audit(self.session_factory, order_id, AuditKind.ADMIN_NOTIFICATION_FAILED,
                            subject=summary.get("subject"), error=str(e))
                self._update_invoice(order_id, admin_notification_error=str(e))
            return False
        return delivered

    def _store_document(self, invoice_id: int, document: bytes) -> None:
        with self.session_factory() as db:
            db.execute(update(Invoice).where(Invoice.id == invoice_id).values(document=document))
            db.commit()

    def _record_send(self, order_id: int, invoice_id: int, error: Optional[str]) -> None:
        values = {"sent": error is None, "send_error": error}
        if error is None:
            values["sent_at"] = datetime.utcnow()
        try:
            with self.session_factory() as db:
                db.execute(update(Invoice).where(Invoice.id == invoice_id).values(**values))
                db.commit()
        except SQLAlchemyError:
            logger.exception(f"Could not record send state of invoice {invoice_id}")
        if error is None:
            write_audit(self.session_factory, order_id, AuditKind.INVOICE_SENT, invoice_id=invoice_id)
        else:
            write_audit(self.session_factory, order_id, AuditKind.INVOICE_SEND_FAILED,
                        invoice_id=invoice_id, error=error)

    def _update_invoice(self, order_id: int, **values) -> None:
        try:
            with self.session_factory() as db:
                db.execute(update(Invoice).where(Invoice.order_id == order_id).values(**values))
                db.commit()
        except SQLAlchemyError:
            logger.exception(f"Could not update invoice of order {order_id}")
