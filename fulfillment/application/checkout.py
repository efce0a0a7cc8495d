"""Turns the metadata of a payment intent into a validated ``CheckoutPayload``."""

import json
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from pydantic import ValidationError

from fulfillment.application.schemas import Address, CheckoutPayload, ClientSignals, LineItem
from fulfillment.core_settings import Settings
from fulfillment.domain.exceptions import PayloadValidationError
from shared.core import get_logger

logger = get_logger(__name__)


def _load_json(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


def _describe(error: ValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first["loc"])
    return f"{location}: {first['msg']}" if location else first["msg"]


def parse_address(raw: Any, label: str) -> Optional[Address]:
    """Addresses are best effort: anything unusable is dropped with a warning."""
    if raw in (None, ""):
        return None
    try:
        data = _load_json(raw)
        if not isinstance(data, dict):
            raise ValueError(f"expected an object, got {type(data).__name__}")
        return Address.model_validate(data)
    except (ValueError, ValidationError) as e:
        logger.warning(f"Ignoring unparseable {label}: {e}")
        return None


def parse_client(raw: Any) -> Optional[ClientSignals]:
    if raw in (None, ""):
        return None
    try:
        data = _load_json(raw)
        if not isinstance(data, dict):
            raise ValueError(f"expected an object, got {type(data).__name__}")
        return ClientSignals.model_validate(data)
    except (ValueError, ValidationError) as e:
        logger.warning(f"Ignoring unparseable client block: {e}")
        return None


def parse_items(raw: Any) -> list[LineItem]:
    try:
        data = _load_json(raw)
    except ValueError as e:
        raise PayloadValidationError(f"items is not valid JSON: {e}") from e
    if not isinstance(data, list) or not data:
        raise PayloadValidationError("items must be a non-empty list")

    items = []
    for index, entry in enumerate(data):
        if not isinstance(entry, dict):
            raise PayloadValidationError(f"item {index}: expected an object")
        try:
            items.append(LineItem.model_validate(entry))
        except ValidationError as e:
            raise PayloadValidationError(f"item {index}: {_describe(e)}") from e
    return items


def _amount(metadata: dict, key: str) -> Decimal:
    value = metadata.get(key)
    if value in (None, ""):
        raise PayloadValidationError(f"{key} is missing")
    try:
        amount = Decimal(str(value))
    except InvalidOperation as e:
        raise PayloadValidationError(f"{key} is not a number: {value!r}") from e
    if not amount.is_finite():
        raise PayloadValidationError(f"{key} is not a finite number")
    return amount


def validate_totals(subtotal: Decimal, shipping: Decimal, total: Decimal, settings: Settings) -> None:
    if subtotal < 0 or shipping < 0 or total < 0:
        raise PayloadValidationError("amounts cannot be negative")
    if abs(subtotal + shipping - total) > Decimal(str(settings.TOTALS_TOLERANCE)):
        raise PayloadValidationError(
            f"subtotal {subtotal} + shipping {shipping} does not match total {total}"
        )
    if total > Decimal(str(settings.MAX_ORDER_TOTAL)):
        raise PayloadValidationError(f"total {total} exceeds the maximum order total")


def parse_checkout(payment_intent: dict, settings: Settings) -> CheckoutPayload:
    metadata = payment_intent.get("metadata") or {}
    items = parse_items(metadata.get("items"))

    subtotal = _amount(metadata, "subtotal")
    shipping = _amount(metadata, "shipping") if metadata.get("shipping") not in (None, "") else Decimal("0")
    total = _amount(metadata, "total")
    validate_totals(subtotal, shipping, total, settings)

    currency = str(metadata.get("currency") or payment_intent.get("currency") or settings.DEFAULT_CURRENCY).lower()
    if len(currency) != 3 or not currency.isalpha():
        raise PayloadValidationError(f"currency {currency!r} is not an ISO code")

    return CheckoutPayload(
        items=items,
        subtotal=subtotal,
        shipping=shipping,
        total=total,
        currency=currency,
        shipping_address=parse_address(metadata.get("shippingAddress"), "shipping address"),
        billing_address=parse_address(metadata.get("billingAddress"), "billing address"),
        client=parse_client(metadata.get("client")),
    )
