from pydantic import AliasChoices, BaseModel, Field, ValidationError, field_validator
from datetime import datetime
from decimal import Decimal
from typing import Optional

from fulfillment.domain.models import CatalogSource


class Address(BaseModel):
    first_name: Optional[str] = Field(None, validation_alias=AliasChoices("first_name", "firstName", "firstname"))
    last_name: Optional[str] = Field(None, validation_alias=AliasChoices("last_name", "lastName", "lastname"))
    unit: Optional[str] = Field(None, validation_alias=AliasChoices("unit", "flat", "apartment"))
    line1: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("line1", "address", "address1", "street", "street1", "street_address"),
    )
    line2: Optional[str] = Field(None, validation_alias=AliasChoices("line2", "address2"))
    city: Optional[str] = None
    county: Optional[str] = None
    postcode: Optional[str] = Field(
        None, validation_alias=AliasChoices("postcode", "postalCode", "postal_code", "zip")
    )
    country: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    same_as_shipping: Optional[bool] = Field(
        None, validation_alias=AliasChoices("same_as_shipping", "sameAsShipping")
    )

    class Config:
        coerce_numbers_to_str = True
        str_strip_whitespace = True


class ClientSignals(BaseModel):
    name: Optional[str] = None
    first_name: Optional[str] = Field(None, validation_alias=AliasChoices("first_name", "firstName", "firstname"))
    last_name: Optional[str] = Field(None, validation_alias=AliasChoices("last_name", "lastName", "lastname"))
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[Address] = None

    class Config:
        coerce_numbers_to_str = True
        str_strip_whitespace = True

    @field_validator("address", mode="wrap")
    @classmethod
    def drop_unusable_address(cls, value, handler):
        # only the address is dropped, the rest of the client block is kept
        try:
            return handler(value)
        except ValidationError:
            return None

    @property
    def display_name(self) -> Optional[str]:
        if self.name:
            return self.name
        joined = " ".join(part for part in (self.first_name, self.last_name) if part)
        return joined or None


class LineItem(BaseModel):
    product_id: str = Field(validation_alias=AliasChoices("id", "_id", "productId", "product_id"), min_length=1)
    name: str = Field(min_length=1)
    quantity: int = Field(validation_alias=AliasChoices("qty", "quantity"), gt=0)
    unit_price: Decimal = Field(validation_alias=AliasChoices("unitPrice", "unit_price"), ge=0)
    line_total: Decimal = Field(validation_alias=AliasChoices("totalPrice", "total_price", "lineTotal"), ge=0)
    source: CatalogSource = CatalogSource.VARIANT

    class Config:
        coerce_numbers_to_str = True
        str_strip_whitespace = True


class CheckoutPayload(BaseModel):
    """Cart, totals and addresses carried by a payment, already validated."""
    items: list[LineItem]
    subtotal: Decimal
    shipping: Decimal
    total: Decimal
    currency: str
    shipping_address: Optional[Address] = None
    billing_address: Optional[Address] = None
    client: Optional[ClientSignals] = None


class InvoiceLine(BaseModel):
    product_id: str
    name: str
    quantity: int
    unit_price: Decimal
    line_total: Decimal


class InvoiceRecipient(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class InvoiceSnapshot(BaseModel):
    invoice_number: str
    order_number: str
    payment_reference: str
    event_id: Optional[str] = None
    items: list[InvoiceLine]
    subtotal: Decimal
    shipping: Decimal
    total: Decimal
    currency: str
    client: Optional[InvoiceRecipient] = None
    shipping_address: Optional[Address] = None
    billing_address: Optional[Address] = None
    recipient_email: Optional[str] = None
    paid_at: Optional[datetime] = None


class RefundRequest(BaseModel):
    amount: Decimal = Field(gt=0, max_digits=14, decimal_places=2)
    reason: Optional[str] = Field(None, max_length=500)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    idempotency_key: Optional[str] = Field(
        None, validation_alias=AliasChoices("idempotencyKey", "idempotency_key"), max_length=255
    )


class RefundEntryRead(BaseModel):
    id: int
    refund_id: Optional[str]
    amount: float
    currency: str
    reason: Optional[str]
    idempotency_key: str
    gateway_succeeded: Optional[bool]
    provider_refund_id: Optional[str]
    gateway_response: Optional[dict]
    gateway_error: Optional[str]
    refunded_at: datetime

    class Config:
        from_attributes = True


class RefundResponse(BaseModel):
    refund: RefundEntryRead
    status: str
    refunded_total: float = Field(alias="refundedTotal")
    refundable: float
    replayed: bool

    class Config:
        populate_by_name = True


class OrderItemRead(BaseModel):
    product_id: str
    source: str
    name: str
    quantity: int
    unit_price: float
    line_total: float

    class Config:
        from_attributes = True


class AuditEntryRead(BaseModel):
    kind: str
    data: dict
    created_at: datetime

    class Config:
        from_attributes = True


class OrderRead(BaseModel):
    id: int
    payment_reference: str
    order_number: Optional[str]
    status: str
    subtotal: float
    shipping: float
    total: float
    refunded_total: float
    currency: str
    shipping_address: Optional[dict]
    billing_address: Optional[dict]
    client_id: Optional[int]
    failure_reason: Optional[str]
    paid_at: Optional[datetime]
    created_at: datetime
    items: list[OrderItemRead] = []
    refunds: list[RefundEntryRead] = []
    audit_entries: list[AuditEntryRead] = []

    class Config:
        from_attributes = True
