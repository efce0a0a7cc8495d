"""Expire orders stuck in ``processing``; meant to run from cron."""
import argparse
from datetime import timedelta

from fulfillment.application.sweeper import sweep_stale_claims
from fulfillment.core_settings import get_settings
from fulfillment.infrastructure.db import SessionLocal
from fulfillment.infrastructure.notifications import BrevoMailer, EmailAdminAlerts
from shared.core import setup_logging


def main(argv=None) -> int:
    settings = get_settings()
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--hours", type=int, default=settings.STALE_CLAIM_HOURS,
                        help="age of a claim before it is expired (default: %(default)s)")
    parser.add_argument("--no-alert", action="store_true", help="do not e-mail the admins")
    args = parser.parse_args(argv)

    setup_logging("fulfillment-sweeper", settings.LOG_LEVEL, version=settings.SERVICE_VERSION,
                  environment=settings.ENVIRONMENT)
    alerts = None if args.no_alert else EmailAdminAlerts(BrevoMailer(settings), settings.admin_recipients)
    with SessionLocal() as db:
        expired = sweep_stale_claims(db, timedelta(hours=args.hours), alerts)
    print(f"Expired {len(expired)} stale claim(s).")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
