"""Payment gateway client.

``PaymentGateway`` is the contract the pipeline depends on; ``StripeGateway``
implements it on top of the Stripe SDK.
"""

import json
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Optional, Protocol

import stripe

from fulfillment.core_settings import Settings
from fulfillment.domain.exceptions import EventVerificationError, GatewayError
from shared.core import get_logger

logger = get_logger(__name__)

ZERO_DECIMAL_CURRENCIES = {
    "BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA",
    "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
}


def to_minor_units(amount: Decimal, currency: str) -> int:
    """Convert a major-unit amount to the smallest unit the gateway expects."""
    amount = Decimal(str(amount))
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass
class RefundResult:
    id: str
    status: str
    raw: dict = field(default_factory=dict)


class PaymentGateway(Protocol):
    def verify_signature(self, payload: bytes, signature_header: Optional[str]) -> dict:
        ...

    def retrieve_event(self, event_id: str) -> dict:
        ...

    def create_refund(
        self,
        payment_reference: str,
        amount_minor_units: int,
        metadata: dict,
        idempotency_key: str,
    ) -> RefundResult:
        ...


def _plain(obj: Any) -> dict:
    # StripeObject renders itself as JSON
    return json.loads(str(obj))


class StripeGateway:
    def __init__(self, settings: Settings):
        self.api_key = settings.STRIPE_SECRET_KEY
        self.webhook_secret = settings.STRIPE_WEBHOOK_SECRET
        self.tolerance = settings.STRIPE_WEBHOOK_TOLERANCE
        stripe.api_key = self.api_key

    def verify_signature(self, payload: bytes, signature_header: Optional[str]) -> dict:
        if not signature_header:
            raise EventVerificationError("Missing Stripe-Signature header")
        if not self.webhook_secret:
            raise EventVerificationError("Webhook secret is not configured")
        try:
            stripe.Webhook.construct_event(
                payload, signature_header, self.webhook_secret, tolerance=self.tolerance
            )
        except stripe.SignatureVerificationError as e:
            raise EventVerificationError(f"Invalid signature: {e}") from e
        except ValueError as e:
            raise EventVerificationError(f"Invalid payload: {e}") from e
        return json.loads(payload)

    def retrieve_event(self, event_id: str) -> dict:
        """Fetch the event from Stripe with the latest state of its payment intent."""
        try:
            event = _plain(stripe.Event.retrieve(event_id))
            obj = event.get("data", {}).get("object", {})
            if obj.get("object") == "payment_intent" and obj.get("id"):
                event["data"]["object"] = _plain(stripe.PaymentIntent.retrieve(obj["id"]))
        except stripe.StripeError as e:
            raise GatewayError(f"Could not retrieve event {event_id}: {e}", code=e.code) from e
        return event

    def create_refund(
        self,
        payment_reference: str,
        amount_minor_units: int,
        metadata: dict,
        idempotency_key: str,
    ) -> RefundResult:
        try:
            refund = stripe.Refund.create(
                payment_intent=payment_reference,
                amount=amount_minor_units,
                reason="requested_by_customer",
                metadata={key: str(value) for key, value in metadata.items()},
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as e:
            logger.warning(
                f"Stripe refund failed for {payment_reference}",
                extra={'extra_fields': {'payment_reference': payment_reference, 'code': e.code}}
            )
            raise GatewayError(str(e.user_message or e), code=e.code) from e
        return RefundResult(id=refund.id, status=refund.status, raw={"id": refund.id, "status": refund.status})
