import json

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from fulfillment.domain.models import AuditKind, OrderAuditEntry
from shared.core import get_logger

logger = get_logger(__name__)


def append_audit(db: Session, order_id: int, kind: AuditKind, **data) -> OrderAuditEntry:
    """Stage an audit entry in the caller's transaction."""
    entry = OrderAuditEntry(
        order_id=order_id,
        kind=AuditKind(kind).value,
        data=json.loads(json.dumps(data, default=str)),
    )
    db.add(entry)
    return entry


def write_audit(session_factory: sessionmaker, order_id: int, kind: AuditKind, **data) -> bool:
    """Append an audit entry in its own transaction; failures are logged, not raised."""
    try:
        with session_factory() as db:
            append_audit(db, order_id, kind, **data)
            db.commit()
    except SQLAlchemyError:
        logger.exception(f"Could not record {AuditKind(kind).value} for order {order_id}")
        return False
    return True
