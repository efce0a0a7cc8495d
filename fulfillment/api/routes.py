from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session, sessionmaker
from starlette.concurrency import run_in_threadpool

from fulfillment.api.dependencies import (
    get_app_settings,
    get_compensator,
    get_dispatcher,
    get_gateway,
    get_mailer,
)
from fulfillment.application.dispatcher import InvoiceDispatcher
from fulfillment.application.fulfillment import FulfillmentService, StockFailureCompensator
from fulfillment.application.refunds import RefundService
from fulfillment.application.schemas import OrderRead, RefundEntryRead, RefundRequest, RefundResponse
from fulfillment.core_settings import Settings
from fulfillment.domain.exceptions import EventVerificationError, OrderNotFoundError, RefundConflictError
from fulfillment.domain.models import Order
from fulfillment.infrastructure.db import get_db, get_session_factory
from fulfillment.infrastructure.notifications import Mailer
from fulfillment.infrastructure.payment_gateway import PaymentGateway
from shared.core import get_logger

logger = get_logger(__name__)

webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
router = APIRouter(prefix="/orders", tags=["orders"])


@webhook_router.get("/stripe")
def webhook_status(settings: Settings = Depends(get_app_settings)):
    """Configuration check for the webhook endpoint; never exposes the secrets."""
    return {
        "ok": True,
        "webhookSecretConfigured": bool(settings.STRIPE_WEBHOOK_SECRET),
        "secretKeyConfigured": bool(settings.STRIPE_SECRET_KEY),
    }


@webhook_router.post("/stripe")
async def stripe_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    dispatcher: InvoiceDispatcher = Depends(get_dispatcher),
    compensator: StockFailureCompensator = Depends(get_compensator),
    settings: Settings = Depends(get_app_settings),
):
    payload = await request.body()
    try:
        event = gateway.verify_signature(payload, request.headers.get("stripe-signature"))
    except EventVerificationError as e:
        logger.warning(f"Rejected webhook: {e}")
        raise HTTPException(status_code=400, detail="Invalid signature")

    service = FulfillmentService(db, gateway, dispatcher, compensator, settings,
                                 schedule=background_tasks.add_task)
    result = await run_in_threadpool(service.handle_event, event)
    logger.info(
        f"Webhook {event.get('type')} handled: {result.outcome.value}",
        extra={'extra_fields': {'order_id': result.order_id}}
    )
    if not result.acknowledged:
        return JSONResponse(status_code=500, content={"received": False})
    return {"received": True}


@router.get("/{order_id}", response_model=OrderRead)
def get_order(order_id: int, db: Session = Depends(get_db)):
    """Order with its items, refund ledger and audit ledger."""
    order = db.get(Order, order_id)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return OrderRead.model_validate(order)


@router.post("/{order_id}/refunds", response_model=RefundResponse)
def create_refund(
    order_id: int,
    payload: RefundRequest,
    background_tasks: BackgroundTasks,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    mailer: Mailer = Depends(get_mailer),
    session_factory: sessionmaker = Depends(get_session_factory),
    settings: Settings = Depends(get_app_settings),
):
    service = RefundService(db, gateway, mailer, settings, session_factory,
                            schedule=background_tasks.add_task)
    try:
        outcome = service.refund(order_id, payload, idempotency_key)
    except OrderNotFoundError:
        raise HTTPException(status_code=404, detail="Order not found")
    except RefundConflictError as e:
        return JSONResponse(status_code=409, content={"detail": str(e), "refundable": float(e.refundable)})

    return RefundResponse(
        refund=RefundEntryRead.model_validate(outcome.entry),
        status=outcome.status,
        refunded_total=float(outcome.refunded_total),
        refundable=float(outcome.refundable),
        replayed=outcome.replayed,
    )
