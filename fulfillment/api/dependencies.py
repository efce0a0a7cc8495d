"""Collaborators handed to the routes; tests swap them through ``app.dependency_overrides``."""

from fastapi import Depends
from sqlalchemy.orm import sessionmaker

from fulfillment.application.dispatcher import InvoiceDispatcher
from fulfillment.application.fulfillment import StockFailureCompensator
from fulfillment.core_settings import Settings, get_settings
from fulfillment.infrastructure.db import get_session_factory
from fulfillment.infrastructure.invoice_renderer import InvoiceRenderer
from fulfillment.infrastructure.notifications import AdminAlerts, BrevoMailer, EmailAdminAlerts, Mailer
from fulfillment.infrastructure.payment_gateway import PaymentGateway, StripeGateway


def get_app_settings() -> Settings:
    return get_settings()


def get_gateway(settings: Settings = Depends(get_app_settings)) -> PaymentGateway:
    return StripeGateway(settings)


def get_mailer(settings: Settings = Depends(get_app_settings)) -> Mailer:
    return BrevoMailer(settings)


def get_admin_alerts(mailer: Mailer = Depends(get_mailer),
                     settings: Settings = Depends(get_app_settings)) -> AdminAlerts:
    return EmailAdminAlerts(mailer, settings.admin_recipients)


def get_dispatcher(
    session_factory: sessionmaker = Depends(get_session_factory),
    mailer: Mailer = Depends(get_mailer),
    alerts: AdminAlerts = Depends(get_admin_alerts),
    settings: Settings = Depends(get_app_settings),
) -> InvoiceDispatcher:
    return InvoiceDispatcher(session_factory, mailer, alerts, InvoiceRenderer(settings))


def get_compensator(
    session_factory: sessionmaker = Depends(get_session_factory),
    gateway: PaymentGateway = Depends(get_gateway),
    mailer: Mailer = Depends(get_mailer),
    dispatcher: InvoiceDispatcher = Depends(get_dispatcher),
) -> StockFailureCompensator:
    return StockFailureCompensator(session_factory, gateway, mailer, dispatcher)
