from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from fulfillment.application.audit import append_audit
from fulfillment.domain.models import AuditKind, Order, OrderStatus
from fulfillment.infrastructure.notifications import AdminAlerts
from fulfillment.domain.exceptions import NotificationError
from shared.core import get_logger

logger = get_logger(__name__)

EXPIRED_REASON = "claim expired"


def sweep_stale_claims(db: Session, older_than: timedelta, alerts: Optional[AdminAlerts] = None,
                       now: Optional[datetime] = None) -> list[int]:
    """Fail orders that were claimed but never finished processing.

    Each order is expired with its own conditional write, so an order that a
    late redelivery completes in the meantime is left alone.
    """
    cutoff = (now or datetime.utcnow()) - older_than
    candidates = db.scalars(
        select(Order.id)
        .where(Order.status == OrderStatus.PROCESSING.value, Order.created_at < cutoff)
        .order_by(Order.id)
    ).all()

    expired = []
    for order_id in candidates:
        result = db.execute(
            update(Order)
            .where(Order.id == order_id, Order.status == OrderStatus.PROCESSING.value)
            .values(status=OrderStatus.FAILED.value, failure_reason=EXPIRED_REASON,
                    failed_at=datetime.utcnow(), version=Order.version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.rollback()
            continue
        append_audit(db, order_id, AuditKind.CLAIM_EXPIRED, cutoff=cutoff)
        db.commit()
        expired.append(order_id)

    logger.info(f"Expired {len(expired)} stale claims", extra={'extra_fields': {'order_ids': expired}})
    if expired and alerts is not None:
        try:
            alerts.notify({
                "subject": f"{len(expired)} orders expired while processing",
                "order_ids": ", ".join(str(order_id) for order_id in expired),
                "cutoff": cutoff.isoformat(),
            })
        except NotificationError as e:
            logger.error(f"Could not alert admins about expired claims: {e}")
    return expired
