"""``flask billing ...`` commands for the scheduled billing jobs.

Usage:
    flask --app app billing run-daily
    flask --app app billing renew --date 2025-02-01
    flask --app app billing commissions --since 2025-01-01
    flask --app app billing usage-invoices --month 2025-01
"""

from __future__ import annotations

import datetime
import sys
from typing import Optional

import click
from flask.cli import AppGroup

from serializers import jsonable
from utils import utc_today

billing_cli = AppGroup("billing", help="Scheduled billing jobs.")


def _parse_day(value: Optional[str]) -> Optional[datetime.date]:
    if not value:
        return None
    try:
        return datetime.datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        click.echo(f"Error: invalid date {value!r}, expected YYYY-MM-DD", err=True)
        sys.exit(2)


date_option = click.option("--date", "day", help="Run as of this date (YYYY-MM-DD); defaults to today.")


@billing_cli.command("renew")
@date_option
def renew(day: Optional[str]):
    """Invoice subscriptions that reached their billing date."""
    from services.billing_jobs import process_renewals

    created = process_renewals(_parse_day(day))
    click.echo(f"Created {len(created)} renewal invoice(s).")


@billing_cli.command("mark-overdue")
@date_option
def mark_overdue(day: Optional[str]):
    """Flag open invoices past their due date."""
    from services.billing_jobs import mark_overdue_invoices

    ids = mark_overdue_invoices(_parse_day(day))
    click.echo(f"Marked {len(ids)} invoice(s) overdue.")


@billing_cli.command("expire-trials")
@date_option
def trials(day: Optional[str]):
    """Activate or expire trials that have ended."""
    from services.billing_jobs import expire_trials

    result = expire_trials(_parse_day(day))
    click.echo(
        f"Trials: {len(result['activated'])} activated, {len(result['expired'])} expired."
    )


@billing_cli.command("cancel-lapsed")
@date_option
def cancel_lapsed(day: Optional[str]):
    """Cancel past-due subscriptions whose grace period ran out."""
    from services.billing_jobs import cancel_lapsed_subscriptions

    ids = cancel_lapsed_subscriptions(_parse_day(day))
    click.echo(f"Cancelled {len(ids)} lapsed subscription(s).")


@billing_cli.command("usage-invoices")
@click.option("--month", help="Calendar month to bill (YYYY-MM); defaults to last month.")
@date_option
def usage_invoices(month: Optional[str], day: Optional[str]):
    """Invoice unbilled usage of one calendar month."""
    from services.billing_jobs import generate_usage_invoices, month_period

    today = _parse_day(day)
    if month:
        try:
            first = datetime.datetime.strptime(month, "%Y-%m").date()
        except ValueError:
            click.echo(f"Error: invalid month {month!r}, expected YYYY-MM", err=True)
            sys.exit(2)
    else:
        first = ((today or utc_today()).replace(day=1) - datetime.timedelta(days=1)).replace(day=1)
    period_start, period_end = month_period(first.year, first.month)
    result = generate_usage_invoices(period_start, period_end, today=today)
    click.echo(
        f"Usage invoices for {period_start:%Y-%m}: "
        f"{len(result['generated'])} generated, {len(result['failed'])} failed."
    )


@billing_cli.command("commissions")
@click.option("--since", help="Only payments on or after this date (YYYY-MM-DD).")
def commissions(since: Optional[str]):
    """Compute commissions for payments that have none yet."""
    from services.commission import calculate_pending_commissions

    day = _parse_day(since)
    cutoff = (
        datetime.datetime.combine(day, datetime.time.min, tzinfo=datetime.timezone.utc)
        if day else None
    )
    created = calculate_pending_commissions(cutoff)
    click.echo(f"Created {len(created)} commission(s).")


@billing_cli.command("run-daily")
@date_option
def run_daily(day: Optional[str]):
    """Run every billing job in order."""
    from services.billing_jobs import run_daily as run_all

    result = run_all(_parse_day(day))
    click.echo(jsonable(result))
