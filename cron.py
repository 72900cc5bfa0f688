"""
cron.py
Clock tick entry point: billing run and reminder sweep per organization.
Run: python cron.py daily [--organization ID] [--date YYYY-MM-DD] [--dry-run]
"""

from __future__ import annotations

import argparse
import logging
import sys
from datetime import datetime, time, timezone

import billing_run
import db
import reminders
import store
import utils
from errors import DuesError
from logging_config import configure_logging

logger = logging.getLogger("dues.cron")

JOBS = ("reminders", "billing", "daily")


def _sweep_instant(org_timezone: str, day) -> datetime:
    # midday local time on `day`, so the org-local date is `day` whatever the zone
    local = datetime.combine(day, time(12, 0), tzinfo=utils.get_zone(org_timezone))
    return local.astimezone(timezone.utc)


def run_for_organization(job: str, organization_id: int, day=None, dry_run: bool = False) -> None:
    if job in ("billing", "daily"):
        billing_run.run_billing(organization_id, billing_date=day, dry_run=dry_run)
    if job in ("reminders", "daily"):
        if dry_run:
            logger.info("reminders_skipped_dry_run", extra={"organization_id": organization_id})
            return
        now = None
        if day is not None:
            now = _sweep_instant(store.get_organization(organization_id).timezone, day)
        reminders.process_organization_reminders(organization_id, now=now)


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Dues billing clock tick")
    p.add_argument("job", choices=JOBS)
    p.add_argument("--organization", type=int, default=None, help="only this organization id")
    p.add_argument("--date", type=utils.parse_iso, default=None, help="run as of YYYY-MM-DD (org local)")
    p.add_argument("--dry-run", action="store_true", help="report what the billing run would do")
    args = p.parse_args(argv)

    configure_logging()
    db.init_db()

    if args.organization is not None:
        organization_ids = [args.organization]
    else:
        organization_ids = [o.id for o in store.list_organizations()]

    failed = []
    for organization_id in organization_ids:
        try:
            run_for_organization(args.job, organization_id, args.date, args.dry_run)
        except DuesError:
            logger.exception("organization_run_failed", extra={"organization_id": organization_id, "job": args.job})
            failed.append(organization_id)

    logger.info(
        "cron_finished",
        extra={"job": args.job, "organizations": len(organization_ids), "failed": failed},
    )
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
