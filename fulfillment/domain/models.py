from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

MONEY = Numeric(12, 2)


class Base(DeclarativeBase):
    pass


class OrderStatus(str, Enum):
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"
    SHIPPED = "shipped"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"
    CANCELLED = "cancelled"


REFUNDABLE_STATUSES = {
    OrderStatus.PAID.value,
    OrderStatus.SHIPPED.value,
    OrderStatus.PARTIALLY_REFUNDED.value,
    OrderStatus.REFUNDED.value,
}


class CatalogSource(str, Enum):
    VARIANT = "variant"
    COFFEE = "coffee"
    EQUIPMENT = "equipment"


class AuditKind(str, Enum):
    CLAIMED = "claimed"
    STOCK_CHANGE = "stock_change"
    PAID = "paid"
    FAILURE = "failure"
    TRANSIENT_FAILURE = "transient_failure"
    STOCK_REFUND = "stock_refund"
    GATEWAY_EVENT = "gateway_event"
    INVOICE_SAVED = "invoice_saved"
    INVOICE_SENT = "invoice_sent"
    INVOICE_SEND_FAILED = "invoice_send_failed"
    ADMIN_NOTIFIED = "admin_notified"
    ADMIN_NOTIFICATION_FAILED = "admin_notification_failed"
    REFUND_NOTIFICATION_SENT = "refund_notification_sent"
    REFUND_NOTIFICATION_FAILED = "refund_notification_failed"
    CLAIM_EXPIRED = "claim_expired"


class Client(Base):
    __tablename__ = "clients"
    __table_args__ = (
        # NULLs stay out of the unique indexes so identity-less keys never collide
        Index("uq_clients_email", "email", unique=True,
              postgresql_where=text("email IS NOT NULL"), sqlite_where=text("email IS NOT NULL")),
        Index("uq_clients_phone", "phone", unique=True,
              postgresql_where=text("phone IS NOT NULL"), sqlite_where=text("phone IS NOT NULL")),
    )
    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    address: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    meta: Mapped[dict] = mapped_column("metadata", JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    orders: Mapped[list["Order"]] = relationship("Order", back_populates="client", passive_deletes=True)


class Order(Base):
    __tablename__ = "orders"
    id: Mapped[int] = mapped_column(primary_key=True)
    payment_reference: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    order_number: Mapped[Optional[str]] = mapped_column(String(50), unique=True, nullable=True)
    status: Mapped[str] = mapped_column(String(30), index=True, default=OrderStatus.PROCESSING.value)
    subtotal: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"))
    shipping: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"))
    total: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"))
    refunded_total: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"))
    # Single-refund amount written by older releases, read only when the ledger is empty
    legacy_refund_amount: Mapped[Optional[Decimal]] = mapped_column(MONEY, nullable=True)
    currency: Mapped[str] = mapped_column(String(3), default="gbp")
    shipping_address: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    billing_address: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    client_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("clients.id", ondelete="SET NULL"), nullable=True, index=True
    )
    webhook_event_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    version: Mapped[int] = mapped_column(Integer, default=1)

    client: Mapped[Optional[Client]] = relationship("Client", back_populates="orders")
    items: Mapped[list["OrderItem"]] = relationship(
        "OrderItem", back_populates="order", cascade="all, delete-orphan", order_by="OrderItem.position"
    )
    audit_entries: Mapped[list["OrderAuditEntry"]] = relationship(
        "OrderAuditEntry", back_populates="order", order_by="OrderAuditEntry.id"
    )
    refunds: Mapped[list["RefundEntry"]] = relationship(
        "RefundEntry", back_populates="order", order_by="RefundEntry.id"
    )
    invoice: Mapped[Optional["Invoice"]] = relationship("Invoice", back_populates="order", uselist=False)


class OrderItem(Base):
    __tablename__ = "order_items"
    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id"), index=True)
    position: Mapped[int] = mapped_column(Integer, default=0)
    product_id: Mapped[str] = mapped_column(String(120))
    source: Mapped[str] = mapped_column(String(20))
    name: Mapped[str] = mapped_column(String(255))
    quantity: Mapped[int]
    unit_price: Mapped[Decimal] = mapped_column(MONEY)
    line_total: Mapped[Decimal] = mapped_column(MONEY)
    order: Mapped[Order] = relationship("Order", back_populates="items")


class OrderAuditEntry(Base):
    """Append-only ledger of what happened to an order and why."""
    __tablename__ = "order_audit_entries"
    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id"), index=True)
    kind: Mapped[str] = mapped_column(String(50), index=True)
    data: Mapped[dict] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    order: Mapped[Order] = relationship("Order", back_populates="audit_entries")


class RefundEntry(Base):
    __tablename__ = "refund_entries"
    __table_args__ = (
        UniqueConstraint("order_id", "idempotency_key", name="uq_refund_entries_order_key"),
    )
    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id"), index=True)
    refund_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    amount: Mapped[Decimal] = mapped_column(MONEY)
    currency: Mapped[str] = mapped_column(String(3))
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    idempotency_key: Mapped[str] = mapped_column(String(255))
    # None while the gateway call is in flight
    gateway_succeeded: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    provider_refund_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    gateway_response: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    gateway_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    refunded_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    order: Mapped[Order] = relationship("Order", back_populates="refunds")


class Coffee(Base):
    """Simple product; ``total_stock`` rolls up the stock of its variants."""
    __tablename__ = "coffees"
    __table_args__ = (
        CheckConstraint("stock >= 0", name="ck_coffees_stock_non_negative"),
        CheckConstraint("total_stock >= 0", name="ck_coffees_total_stock_non_negative"),
    )
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255))
    slug: Mapped[Optional[str]] = mapped_column(String(120), unique=True, nullable=True)
    stock: Mapped[int] = mapped_column(Integer, default=0)
    total_stock: Mapped[int] = mapped_column(Integer, default=0)
    variants: Mapped[list["CoffeeVariant"]] = relationship("CoffeeVariant", back_populates="coffee")


class CoffeeVariant(Base):
    __tablename__ = "coffee_variants"
    __table_args__ = (CheckConstraint("stock >= 0", name="ck_coffee_variants_stock_non_negative"),)
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    coffee_id: Mapped[Optional[str]] = mapped_column(ForeignKey("coffees.id"), nullable=True, index=True)
    sku: Mapped[str] = mapped_column(String(64), unique=True)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    stock: Mapped[int] = mapped_column(Integer, default=0)
    coffee: Mapped[Optional[Coffee]] = relationship("Coffee", back_populates="variants")


class Equipment(Base):
    __tablename__ = "equipment"
    __table_args__ = (CheckConstraint("total_stock >= 0", name="ck_equipment_stock_non_negative"),)
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    slug: Mapped[str] = mapped_column(String(120), unique=True, index=True)
    name: Mapped[str] = mapped_column(String(255))
    total_stock: Mapped[int] = mapped_column(Integer, default=0)


class Invoice(Base):
    """Snapshot of an order at payment time plus its delivery state."""
    __tablename__ = "invoices"
    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id"), unique=True)
    invoice_number: Mapped[str] = mapped_column(String(50), unique=True)
    order_number: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    payment_reference: Mapped[str] = mapped_column(String(255))
    webhook_event_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    items: Mapped[list] = mapped_column(JSON, default=list)
    subtotal: Mapped[Decimal] = mapped_column(MONEY)
    shipping: Mapped[Decimal] = mapped_column(MONEY)
    total: Mapped[Decimal] = mapped_column(MONEY)
    currency: Mapped[str] = mapped_column(String(3))
    client: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    shipping_address: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    billing_address: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    recipient_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    document: Mapped[Optional[bytes]] = mapped_column(LargeBinary, nullable=True)
    sent: Mapped[bool] = mapped_column(Boolean, default=False)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    send_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    admin_notified: Mapped[bool] = mapped_column(Boolean, default=False)
    admin_notified_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    admin_notification_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    order: Mapped[Order] = relationship("Order", back_populates="invoice")
