"""Scheduled billing jobs (run from ``flask billing ...`` or cron).

Each job selects candidate ids first, then processes every item in its own
transaction, so one failing subscription does not block the rest.
"""

from __future__ import annotations

import datetime
import logging
from typing import Optional

from dateutil.relativedelta import relativedelta

from errors import BillingError
from models import Invoice, Subscription, UsageRecord
from services.invoice import generate_subscription_invoice, generate_usage_invoice, mark_invoice_overdue
from services.subscription import end_trial, lapse_subscription
from services.tenant import billing_context_for
from utils import utc_today

logger = logging.getLogger(__name__)


def process_renewals(today: Optional[datetime.date] = None) -> list[int]:
    """Invoice every auto-renewing active subscription that has reached its billing date.

    Returns the ids of newly created invoices; periods that were already
    invoiced are skipped.
    """
    today = today or utc_today()
    due = (
        Subscription.query.filter(
            Subscription.status == "active",
            Subscription.auto_renew.is_(True),
            Subscription.next_billing_date.isnot(None),
            Subscription.next_billing_date <= today,
        )
        .order_by(Subscription.id)
        .with_entities(Subscription.id, Subscription.tenant_id)
        .all()
    )
    created = []
    for sub_id, tenant_id in due:
        try:
            invoice, was_created = generate_subscription_invoice(
                sub_id, billing_context_for(tenant_id), today=today
            )
        except BillingError:
            logger.exception("Renewal failed for subscription %s", sub_id)
            continue
        if was_created:
            created.append(invoice.id)
    logger.info("Renewals: %s due, %s invoice(s) created", len(due), len(created))
    return created


def mark_overdue_invoices(today: Optional[datetime.date] = None) -> list[int]:
    today = today or utc_today()
    ids = [
        row.id
        for row in Invoice.query.filter(
            Invoice.status.in_(("pending", "partially_paid")),
            Invoice.due_date < today,
        ).with_entities(Invoice.id)
    ]
    for invoice_id in ids:
        try:
            mark_invoice_overdue(invoice_id, today=today)
        except BillingError:
            logger.exception("Could not mark invoice %s overdue", invoice_id)
    logger.info("Marked %s invoice(s) overdue", len(ids))
    return ids


def expire_trials(today: Optional[datetime.date] = None) -> dict[str, list[int]]:
    """Close trials that have ended: auto-renewing ones activate, the rest expire."""
    today = today or utc_today()
    ids = [
        row.id
        for row in Subscription.query.filter(
            Subscription.status == "trial",
            Subscription.trial_end_date <= today,
        ).with_entities(Subscription.id)
    ]
    result: dict[str, list[int]] = {"activated": [], "expired": []}
    for sub_id in ids:
        try:
            sub = end_trial(sub_id, today=today)
        except BillingError:
            logger.exception("Could not end trial of subscription %s", sub_id)
            continue
        if sub.status == "active":
            result["activated"].append(sub_id)
        elif sub.status == "expired":
            result["expired"].append(sub_id)
    logger.info(
        "Trials ended: %s activated, %s expired", len(result["activated"]), len(result["expired"])
    )
    return result


def cancel_lapsed_subscriptions(today: Optional[datetime.date] = None) -> list[int]:
    """Cancel past-due subscriptions whose tenant grace period has run out."""
    today = today or utc_today()
    candidates = (
        Subscription.query.filter(Subscription.status == "past_due")
        .with_entities(Subscription.id, Subscription.tenant_id)
        .all()
    )
    cancelled = []
    for sub_id, tenant_id in candidates:
        try:
            grace = billing_context_for(tenant_id).grace_period_days
            sub = lapse_subscription(sub_id, grace, today=today)
        except BillingError:
            logger.exception("Could not lapse subscription %s", sub_id)
            continue
        if sub.status == "cancelled":
            cancelled.append(sub_id)
    logger.info("Cancelled %s lapsed subscription(s)", len(cancelled))
    return cancelled


def month_period(year: int, month: int) -> tuple[datetime.date, datetime.date]:
    """First and last day of a calendar month."""
    start = datetime.date(year, month, 1)
    return start, start + relativedelta(months=1) - datetime.timedelta(days=1)


def generate_usage_invoices(
    period_start: datetime.date,
    period_end: datetime.date,
    today: Optional[datetime.date] = None,
) -> dict[str, list[int]]:
    """Bill unbilled usage in the period for every subscription that has some.

    Returns ``{"generated": [invoice ids], "failed": [subscription ids]}``.
    A period that was already invoiced is not counted as generated.
    """
    today = today or utc_today()
    pending = (
        UsageRecord.query.filter(
            UsageRecord.is_billed.is_(False),
            UsageRecord.period_start >= period_start,
            UsageRecord.period_end <= period_end,
        )
        .with_entities(UsageRecord.tenant_id, UsageRecord.subscription_id)
        .distinct()
        .order_by(UsageRecord.subscription_id)
        .all()
    )
    result: dict[str, list[int]] = {"generated": [], "failed": []}
    for tenant_id, sub_id in pending:
        try:
            invoice, was_created = generate_usage_invoice(
                billing_context_for(tenant_id), sub_id, period_start, period_end, today=today
            )
        except BillingError:
            logger.exception("Usage invoice failed for subscription %s", sub_id)
            result["failed"].append(sub_id)
            continue
        if was_created:
            result["generated"].append(invoice.id)
    logger.info(
        "Usage invoices for %s to %s: %s generated, %s failed",
        period_start, period_end, len(result["generated"]), len(result["failed"]),
    )
    return result


def run_daily(today: Optional[datetime.date] = None) -> dict:
    """Run every job in dependency order."""
    today = today or utc_today()
    trials = expire_trials(today)
    return {
        "trials": trials,
        "renewals": process_renewals(today),
        "overdue": mark_overdue_invoices(today),
        "lapsed": cancel_lapsed_subscriptions(today),
    }
