"""Tests for client identity resolution and merge-on-write."""

from sqlalchemy import func, select

from fulfillment.application.identity import IdentityResolver, normalize_email, normalize_phone
from fulfillment.application.schemas import Address, ClientSignals
from fulfillment.domain.models import Client


def count_clients(db):
    return db.scalar(select(func.count()).select_from(Client))


class TestNormalisation:
    def test_email_is_trimmed_and_lowercased(self):
        assert normalize_email("  Jane.Doe@Example.COM ") == "jane.doe@example.com"

    def test_blank_email_is_none(self):
        assert normalize_email("   ") is None
        assert normalize_email(None) is None

    def test_phone_is_only_trimmed(self):
        assert normalize_phone("  +44 7700 900123 ") == "+44 7700 900123"
        assert normalize_phone("07700 900123") == "07700 900123"

    def test_blank_phone_is_none(self):
        assert normalize_phone("   ") is None
        assert normalize_phone(None) is None


class TestResolve:
    def test_no_signals_means_no_client(self, db):
        assert IdentityResolver(db).resolve(None) is None
        assert count_clients(db) == 0

    def test_creates_client_with_normalised_keys(self, db):
        signals = ClientSignals(firstName="Jane", lastName="Doe", email="Jane@Example.com", phone="+44 7700 900123")
        client = IdentityResolver(db).resolve(signals)
        db.commit()

        assert client.id is not None
        assert client.name == "Jane Doe"
        assert client.email == "jane@example.com"
        assert client.phone == "+44 7700 900123"
        assert client.meta["createdBy"] == "stripe-webhook"
        assert "lastSeenAt" in client.meta

    def test_email_casing_resolves_to_same_client(self, db):
        resolver = IdentityResolver(db)
        first = resolver.resolve(ClientSignals(email="jane@example.com", name="Jane"))
        db.commit()
        second = resolver.resolve(ClientSignals(email="JANE@EXAMPLE.COM"))
        db.commit()

        assert second.id == first.id
        assert second.name == "Jane"
        assert count_clients(db) == 1

    def test_phone_match_fills_in_missing_email(self, db):
        resolver = IdentityResolver(db)
        first = resolver.resolve(ClientSignals(phone="07700 900123", name="Sam"))
        db.commit()
        merged = resolver.resolve(ClientSignals(phone=" 07700 900123 ", email="sam@example.com"))
        db.commit()

        assert merged.id == first.id
        assert merged.email == "sam@example.com"
        assert count_clients(db) == 1

    def test_merge_never_overwrites_with_empty_values(self, db):
        resolver = IdentityResolver(db)
        resolver.resolve(ClientSignals(email="kim@example.com", name="Kim Lee", phone="0123"))
        db.commit()
        merged = resolver.resolve(ClientSignals(email="kim@example.com", name="", phone=None))
        db.commit()

        assert merged.name == "Kim Lee"
        assert merged.phone == "0123"

    def test_email_match_wins_and_foreign_phone_is_not_moved(self, db):
        resolver = IdentityResolver(db)
        by_email = resolver.resolve(ClientSignals(email="ann@example.com"))
        by_phone = resolver.resolve(ClientSignals(phone="0999", email="bob@example.com"))
        db.commit()

        merged = resolver.resolve(ClientSignals(email="ann@example.com", phone="0999"))
        db.commit()

        assert merged.id == by_email.id
        assert merged.phone is None
        assert db.get(Client, by_phone.id).phone == "0999"

    def test_fallback_email_and_address_are_used(self, db):
        address = Address(firstName="Lee", line1="1 High St", city="Leeds", postcode="LS1 1AA")
        client = IdentityResolver(db).resolve(None, fallback_email="Lee@Example.com", fallback_address=address)
        db.commit()

        assert client.email == "lee@example.com"
        assert client.address["city"] == "Leeds"

    def test_concurrent_creation_merges_into_winner(self, db, session_factory, monkeypatch):
        """A unique-index conflict on create falls back to finding and merging."""
        with session_factory() as other:
            other.add(Client(email="race@example.com", name="Original", meta={}))
            other.commit()

        resolver = IdentityResolver(db)
        original_find = resolver._find
        calls = []

        def stale_find(email, phone):
            calls.append(email)
            if len(calls) == 1:
                return None
            return original_find(email, phone)

        monkeypatch.setattr(resolver, "_find", stale_find)
        client = resolver.resolve(ClientSignals(email="race@example.com", phone="0111"))
        db.commit()

        assert len(calls) == 2
        assert client.name == "Original"
        assert client.phone == "0111"
        assert count_clients(db) == 1


def test_differently_spaced_phones_stay_separate_clients(db):
    resolver = IdentityResolver(db)
    first = resolver.resolve(ClientSignals(phone="07700 900123"))
    db.commit()
    second = resolver.resolve(ClientSignals(phone="07700900123"))
    db.commit()

    assert first.id != second.id
    assert count_clients(db) == 2
