from datetime import datetime
from typing import Optional

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from fulfillment.application.schemas import Address, ClientSignals
from fulfillment.domain.models import Client
from shared.core import get_logger

logger = get_logger(__name__)

SEEN_FROM = "stripe-webhook"


def normalize_email(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    return value.strip().lower() or None


def normalize_phone(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    return value.strip() or None


class IdentityResolver:
    """Finds or creates the client behind a purchase, merging on write."""

    def __init__(self, db: Session):
        self.db = db

    def resolve(self, signals: Optional[ClientSignals], fallback_email: Optional[str] = None,
                fallback_address: Optional[Address] = None) -> Optional[Client]:
        email = normalize_email(signals.email if signals else None) or normalize_email(fallback_email)
        phone = normalize_phone(signals.phone if signals else None)
        if signals is None and not email and not phone:
            return None

        incoming = {
            "name": signals.display_name if signals else None,
            "email": email,
            "phone": phone,
            "address": self._address(signals.address if signals and signals.address else fallback_address),
        }

        existing = self._find(email, phone)
        if existing is not None:
            return self._merge(existing, incoming)

        client = Client(**incoming, meta=self._stamp({"createdBy": SEEN_FROM}))
        try:
            with self.db.begin_nested():
                self.db.add(client)
                self.db.flush()
        except IntegrityError:
            # a concurrent purchase created the same identity first
            logger.info("Client creation raced, merging into the existing record")
            existing = self._find(email, phone)
            if existing is None:
                raise
            return self._merge(existing, incoming)

        logger.info(f"Created client {client.id}", extra={'extra_fields': {'client_id': client.id}})
        return client

    def _find(self, email: Optional[str], phone: Optional[str]) -> Optional[Client]:
        conditions = []
        if email:
            conditions.append(Client.email == email)
        if phone:
            conditions.append(Client.phone == phone)
        if not conditions:
            return None
        # email match wins when email and phone point at different records
        matches = self.db.scalars(select(Client).where(or_(*conditions)).order_by(Client.id)).all()
        for client in matches:
            if email and client.email == email:
                return client
        return matches[0] if matches else None

    def _merge(self, client: Client, incoming: dict) -> Client:
        for field, value in incoming.items():
            if not value:
                continue
            if field in ("email", "phone") and getattr(client, field) != value:
                # never move a key that already identifies another record
                if self._taken_by_other(field, value, client.id):
                    continue
            setattr(client, field, value)
        client.meta = self._stamp(dict(client.meta or {}))
        self.db.flush()
        logger.info(f"Merged client {client.id}", extra={'extra_fields': {'client_id': client.id}})
        return client

    def _taken_by_other(self, field: str, value: str, client_id: int) -> bool:
        column = getattr(Client, field)
        return self.db.scalar(select(Client.id).where(column == value, Client.id != client_id)) is not None

    @staticmethod
    def _address(address: Optional[Address]) -> Optional[dict]:
        if address is None:
            return None
        data = address.model_dump(exclude_none=True)
        return data or None

    @staticmethod
    def _stamp(meta: dict) -> dict:
        meta["lastSeenFrom"] = SEEN_FROM
        meta["lastSeenAt"] = datetime.utcnow().isoformat()
        return meta
