"""Tests for turning payment metadata into a checkout payload."""

import json
from decimal import Decimal

import pytest

from fulfillment.application.checkout import parse_address, parse_checkout, parse_items
from fulfillment.domain.exceptions import PayloadValidationError
from fulfillment.domain.models import CatalogSource


def intent(metadata, currency="gbp"):
    return {"id": "pi_checkout", "currency": currency, "metadata": metadata}


def cart(*items, subtotal="25.00", shipping="4.50", total="29.50", **extra):
    metadata = {"items": json.dumps(list(items)), "subtotal": subtotal, "shipping": shipping, "total": total}
    metadata.update(extra)
    return metadata


ITEM = {"id": "var-a", "name": "House Blend 250g", "qty": 2, "unitPrice": 12.5, "totalPrice": 25}


class TestItems:
    def test_item_aliases(self):
        items = parse_items(json.dumps([
            {"_id": "eq-v60", "name": "Dripper", "quantity": 1, "unitPrice": "20", "totalPrice": "20",
             "source": "equipment"},
            {"productId": 42, "name": "Espresso", "qty": 3, "unitPrice": 5, "totalPrice": 15, "source": "coffee"},
        ]))

        assert items[0].product_id == "eq-v60"
        assert items[0].source == CatalogSource.EQUIPMENT
        assert items[1].product_id == "42"
        assert items[1].quantity == 3
        assert items[1].line_total == Decimal("15")

    def test_source_defaults_to_variant(self):
        assert parse_items([ITEM])[0].source == CatalogSource.VARIANT

    @pytest.mark.parametrize("raw, message", [
        ("not json", "not valid JSON"),
        ("[]", "non-empty list"),
        ('{"id": "x"}', "non-empty list"),
        ('["x"]', "item 0: expected an object"),
    ])
    def test_malformed_lists(self, raw, message):
        with pytest.raises(PayloadValidationError) as excinfo:
            parse_items(raw)
        assert message in str(excinfo.value)

    @pytest.mark.parametrize("change", [
        {"qty": 0},
        {"qty": -1},
        {"unitPrice": -2},
        {"name": ""},
        {"source": "merch"},
    ])
    def test_invalid_item_fields(self, change):
        with pytest.raises(PayloadValidationError) as excinfo:
            parse_items([dict(ITEM, **change)])
        assert str(excinfo.value).startswith("item 0:")

    def test_missing_product_id(self):
        item = {key: value for key, value in ITEM.items() if key != "id"}
        with pytest.raises(PayloadValidationError):
            parse_items([item])


class TestTotals:
    def test_valid_cart(self, settings):
        checkout = parse_checkout(intent(cart(ITEM)), settings)

        assert checkout.subtotal == Decimal("25.00")
        assert checkout.shipping == Decimal("4.50")
        assert checkout.total == Decimal("29.50")
        assert checkout.currency == "gbp"

    def test_rounding_within_tolerance(self, settings):
        checkout = parse_checkout(intent(cart(ITEM, total="29.505")), settings)
        assert checkout.total == Decimal("29.505")

    def test_mismatched_total(self, settings):
        with pytest.raises(PayloadValidationError) as excinfo:
            parse_checkout(intent(cart(ITEM, total="31.00")), settings)
        assert "does not match" in str(excinfo.value)

    def test_negative_amounts(self, settings):
        with pytest.raises(PayloadValidationError):
            parse_checkout(intent(cart(ITEM, subtotal="-1", shipping="0", total="-1")), settings)

    def test_total_above_maximum(self, settings):
        settings.MAX_ORDER_TOTAL = 100
        with pytest.raises(PayloadValidationError) as excinfo:
            parse_checkout(intent(cart(ITEM, subtotal="150", shipping="0", total="150")), settings)
        assert "maximum" in str(excinfo.value)

    @pytest.mark.parametrize("value", ["abc", "NaN", ""])
    def test_unusable_total(self, settings, value):
        with pytest.raises(PayloadValidationError):
            parse_checkout(intent(cart(ITEM, total=value)), settings)

    def test_shipping_is_optional(self, settings):
        metadata = cart(ITEM, total="25.00")
        del metadata["shipping"]
        assert parse_checkout(intent(metadata), settings).shipping == Decimal("0")


class TestCurrencyAndAddresses:
    def test_metadata_currency_wins_and_is_lowercased(self, settings):
        checkout = parse_checkout(intent(cart(ITEM, currency="EUR"), currency="gbp"), settings)
        assert checkout.currency == "eur"

    def test_bad_currency(self, settings):
        with pytest.raises(PayloadValidationError):
            parse_checkout(intent(cart(ITEM, currency="pounds")), settings)

    def test_address_aliases(self):
        address = parse_address(json.dumps({
            "firstName": "Jane", "lastName": "Doe", "address": "1 High St", "postalCode": "LS1 1AA",
            "city": "Leeds", "email": "jane@example.com",
        }), "shipping address")

        assert address.first_name == "Jane"
        assert address.line1 == "1 High St"
        assert address.postcode == "LS1 1AA"

    def test_unparseable_address_is_dropped(self, settings):
        checkout = parse_checkout(intent(cart(ITEM, shippingAddress="{broken", client="[1, 2]")), settings)

        assert checkout.shipping_address is None
        assert checkout.client is None

    def test_client_keeps_contact_details_when_its_address_is_unusable(self, settings):
        client = {"name": "Jane", "email": "jane@example.com", "phone": "0770", "address": "1 High St"}
        checkout = parse_checkout(intent(cart(ITEM, client=json.dumps(client))), settings)

        assert checkout.client is not None
        assert checkout.client.name == "Jane"
        assert checkout.client.email == "jane@example.com"
        assert checkout.client.phone == "0770"
        assert checkout.client.address is None
