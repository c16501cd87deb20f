"""Subscription state machine and lifecycle operations.

Status flow::

    pending -> trial -> active -> {past_due, suspended, cancelled, expired}
    past_due -> active (payment) | cancelled (grace period over)
    suspended -> active (reactivate)

``cancelled`` and ``expired`` are terminal.  All status changes go through
:func:`transition`; nothing else assigns ``Subscription.status``.
"""

from __future__ import annotations

import datetime
import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from config_models import TenantBillingContext
from errors import IllegalTransitionError, NotFoundError, StateConflictError, ValidationError
from extensions import db
from models import TERMINAL_SUBSCRIPTION_STATUSES, Invoice, Subscription
from services.audit import log_action
from services.coupon import (
    apply_coupon,
    get_coupon_by_code,
    redeem_coupon,
    tenant_redemption_count,
    validate_coupon,
)
from services.plan_catalog import get_purchasable_plan
from services.tax import tax_for_context
from services.transaction import queue_event, restart_transaction, transactional
from utils import add_billing_cycle, money, utc_now, utc_today

logger = logging.getLogger(__name__)

# (current status) -> {event: new status}
TRANSITIONS: dict[str, dict[str, str]] = {
    "pending": {
        "start_trial": "trial",
        "activate": "active",
        "payment_succeeded": "active",
        "cancel": "cancelled",
        "expire": "expired",
    },
    "trial": {
        "activate": "active",
        "payment_succeeded": "active",
        "trial_ended": "expired",
        "cancel": "cancelled",
    },
    "active": {
        "payment_succeeded": "active",
        "payment_failed": "past_due",
        "suspend": "suspended",
        "cancel": "cancelled",
        "expire": "expired",
    },
    "past_due": {
        "payment_succeeded": "active",
        "grace_expired": "cancelled",
        "suspend": "suspended",
        "cancel": "cancelled",
    },
    "suspended": {
        "reactivate": "active",
        "cancel": "cancelled",
    },
    "cancelled": {},
    "expired": {},
}

SUBSCRIPTION_EVENTS = {event for events in TRANSITIONS.values() for event in events}

# Events an operator may trigger directly; the rest are driven by payments and jobs.
MANUAL_EVENTS = {"suspend", "reactivate", "activate", "expire"}

_MONTHS_PER_CYCLE = {"monthly": 1, "quarterly": 3, "yearly": 12}


def transition(current_status: str, event: str) -> str:
    """Return the status reached from *current_status* on *event*.

    Pure: raises ``IllegalTransitionError`` and never touches the database.
    """
    if current_status not in TRANSITIONS:
        raise IllegalTransitionError(f"Unknown subscription status '{current_status}'.")
    if event not in SUBSCRIPTION_EVENTS:
        raise IllegalTransitionError(f"Unknown subscription event '{event}'.")
    try:
        return TRANSITIONS[current_status][event]
    except KeyError:
        raise IllegalTransitionError(
            f"Cannot apply '{event}' to a {current_status} subscription."
        ) from None


def apply_transition(sub: Subscription, event: str) -> str:
    """Move *sub* along the state machine inside the caller's transaction."""
    old_status = sub.status
    new_status = transition(old_status, event)
    sub.status = new_status
    if new_status != old_status:
        log_action(
            f"subscription_{event}", "subscription", sub.id,
            before={"status": old_status}, after={"status": new_status},
            tenant_id=sub.tenant_id,
        )
        queue_event(
            "subscription.status_changed",
            {
                "subscription_id": sub.id,
                "tenant_id": sub.tenant_id,
                "event": event,
                "from": old_status,
                "to": new_status,
            },
        )
        logger.info("Subscription %s: %s -> %s (%s)", sub.id, old_status, new_status, event)
    return new_status


def advance_billing_date(sub: Subscription) -> Optional[datetime.date]:
    """Move ``next_billing_date`` one cycle forward (one-time plans stay None)."""
    if sub.next_billing_date is None:
        return None
    sub.next_billing_date = add_billing_cycle(sub.next_billing_date, sub.billing_cycle)
    return sub.next_billing_date


def subscription_snapshot(sub: Subscription) -> dict:
    return {
        "status": sub.status,
        "plan_id": sub.plan_id,
        "next_billing_date": sub.next_billing_date,
        "total_amount": sub.total_amount,
        "auto_renew": sub.auto_renew,
    }


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

def get_subscription(subscription_id: int, tenant_id: Optional[int] = None) -> Subscription:
    sub = db.session.get(Subscription, subscription_id)
    if sub is None or (tenant_id is not None and sub.tenant_id != tenant_id):
        raise NotFoundError(f"Subscription {subscription_id} not found.")
    return sub


def get_live_subscription(tenant_id: int) -> Optional[Subscription]:
    """Return the tenant's single non-terminal subscription, if any."""
    return Subscription.query.filter(
        Subscription.tenant_id == tenant_id,
        Subscription.status.notin_(TERMINAL_SUBSCRIPTION_STATUSES),
    ).first()


# ---------------------------------------------------------------------------
# Creation & cancellation
# ---------------------------------------------------------------------------

@transactional
def create_subscription(
    ctx: TenantBillingContext,
    plan_id: int,
    coupon_code: Optional[str] = None,
    *,
    start_date: Optional[datetime.date] = None,
    auto_renew: bool = True,
    await_payment: bool = False,
) -> Subscription:
    """Subscribe the context's tenant to *plan_id*.

    Pricing: ``total = base_price - discount + tax`` where tax is computed
    on the discounted amount.  Coupon redemption happens in this same
    transaction, so a failed insert never consumes a coupon use.

    With *await_payment* the subscription starts ``pending`` and becomes
    active once its first payment is recorded.
    """
    tenant_id = ctx.tenant_id
    plan = get_purchasable_plan(plan_id)

    existing = get_live_subscription(tenant_id)
    if existing is not None:
        raise StateConflictError(
            f"Tenant already has a {existing.status} subscription ({existing.id}); "
            "cancel it before subscribing again."
        )

    base_price = money(plan.price)
    discount = Decimal("0.00")
    coupon = None
    if coupon_code:
        coupon = get_coupon_by_code(coupon_code)
        validate_coupon(
            coupon, plan.id, base_price, tenant_id,
            tenant_redemption_count(coupon.id, tenant_id),
        )
        discount = apply_coupon(coupon, base_price)

    tax = tax_for_context(base_price - discount, ctx)

    start = start_date or utc_today()
    trial_end = None
    if await_payment:
        status = "pending"
        next_billing = start if plan.billing_cycle != "one_time" else None
    elif plan.trial_days > 0:
        status = "trial"
        trial_end = start + datetime.timedelta(days=plan.trial_days)
        next_billing = trial_end if plan.billing_cycle != "one_time" else None
    else:
        status = "active"
        next_billing = add_billing_cycle(start, plan.billing_cycle)

    sub = Subscription(
        tenant_id=tenant_id,
        plan_id=plan.id,
        coupon_id=coupon.id if coupon else None,
        status=status,
        billing_cycle=plan.billing_cycle,
        currency=plan.currency,
        start_date=start,
        trial_end_date=trial_end,
        next_billing_date=next_billing,
        base_price=base_price,
        discount_amount=discount,
        tax_rate=tax.rate,
        cgst_amount=tax.cgst,
        sgst_amount=tax.sgst,
        igst_amount=tax.igst,
        tax_amount=tax.total_tax,
        total_amount=base_price - discount + tax.total_tax,
        auto_renew=auto_renew,
    )
    db.session.add(sub)
    try:
        db.session.flush()
    except IntegrityError:
        # Lost the race against a concurrent subscribe for the same tenant
        restart_transaction()
        raise StateConflictError("Tenant already has a live subscription.") from None

    if coupon is not None:
        redeem_coupon(coupon, tenant_id, sub.id, discount)

    log_action("create", "subscription", sub.id, after=subscription_snapshot(sub), tenant_id=tenant_id)
    queue_event(
        "subscription.created",
        {
            "subscription_id": sub.id,
            "tenant_id": tenant_id,
            "plan_id": plan.id,
            "status": status,
            "total_amount": str(sub.total_amount),
        },
    )
    logger.info(
        "Tenant %s subscribed to plan %s (subscription %s, %s, total %s %s)",
        tenant_id, plan.code, sub.id, status, sub.total_amount, sub.currency,
    )
    return sub


@transactional
def cancel_subscription(
    subscription_id: int, reason: Optional[str] = None, tenant_id: Optional[int] = None
) -> Subscription:
    """Cancel from any non-terminal state; terminal subscriptions are rejected."""
    sub = get_subscription(subscription_id, tenant_id)
    before = subscription_snapshot(sub)
    apply_transition(sub, "cancel")
    sub.cancellation_reason = (reason or "").strip() or None
    sub.cancelled_at = utc_now()
    sub.end_date = utc_today()
    sub.auto_renew = False
    db.session.flush()

    log_action("cancel", "subscription", sub.id, before=before, after=subscription_snapshot(sub),
               tenant_id=sub.tenant_id)
    queue_event(
        "subscription.cancelled",
        {"subscription_id": sub.id, "tenant_id": sub.tenant_id, "reason": sub.cancellation_reason},
    )
    return sub


@transactional
def change_subscription_status(
    subscription_id: int, event: str, tenant_id: Optional[int] = None
) -> Subscription:
    """Apply an operator event (suspend, reactivate, activate, expire)."""
    if event not in MANUAL_EVENTS:
        raise ValidationError(
            f"event must be one of {', '.join(sorted(MANUAL_EVENTS))}."
        )
    sub = get_subscription(subscription_id, tenant_id)
    apply_transition(sub, event)
    if sub.status in TERMINAL_SUBSCRIPTION_STATUSES:
        sub.end_date = utc_today()
    db.session.flush()
    return sub


# ---------------------------------------------------------------------------
# Scheduled lifecycle steps (one subscription per call)
# ---------------------------------------------------------------------------

@transactional
def end_trial(subscription_id: int, today: Optional[datetime.date] = None) -> Subscription:
    """Close a finished trial: auto-renewing trials convert, others expire."""
    today = today or utc_today()
    sub = get_subscription(subscription_id)
    if sub.status != "trial":
        return sub
    if sub.trial_end_date and sub.trial_end_date > today:
        return sub
    if sub.auto_renew:
        apply_transition(sub, "activate")
    else:
        apply_transition(sub, "trial_ended")
        sub.end_date = today
    db.session.flush()
    return sub


def lapse_date(sub: Subscription, grace_period_days: int) -> Optional[datetime.date]:
    """Last day a past-due subscription survives before cancellation."""
    oldest_due = db.session.query(func.min(Invoice.due_date)).filter(
        Invoice.subscription_id == sub.id,
        Invoice.status == "overdue",
    ).scalar()
    anchor = oldest_due or sub.next_billing_date
    if anchor is None:
        return None
    return anchor + datetime.timedelta(days=grace_period_days)


@transactional
def lapse_subscription(
    subscription_id: int, grace_period_days: int, today: Optional[datetime.date] = None
) -> Subscription:
    """Cancel a past-due subscription whose grace period has run out."""
    today = today or utc_today()
    sub = get_subscription(subscription_id)
    if sub.status != "past_due":
        return sub
    last_day = lapse_date(sub, grace_period_days)
    if last_day is None or today <= last_day:
        return sub
    apply_transition(sub, "grace_expired")
    sub.cancellation_reason = "Payment not received within the grace period."
    sub.cancelled_at = utc_now()
    sub.end_date = today
    sub.auto_renew = False
    db.session.flush()
    queue_event(
        "subscription.cancelled",
        {"subscription_id": sub.id, "tenant_id": sub.tenant_id, "reason": sub.cancellation_reason},
    )
    return sub


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------

def get_billing_metrics(tenant_id: Optional[int] = None) -> dict:
    """Subscription counts per status plus monthly recurring revenue.

    Recurring revenue normalizes quarterly and yearly totals to one month;
    one-time plans do not recur and are excluded.
    """
    query = Subscription.query
    if tenant_id is not None:
        query = query.filter_by(tenant_id=tenant_id)
    subscriptions = query.all()

    by_status = {status: 0 for status in TRANSITIONS}
    mrr = Decimal("0")
    total_value = Decimal("0")
    for sub in subscriptions:
        by_status[sub.status] = by_status.get(sub.status, 0) + 1
        total_value += sub.total_amount
        months = _MONTHS_PER_CYCLE.get(sub.billing_cycle)
        if sub.status == "active" and months:
            mrr += Decimal(sub.total_amount) / months

    count = len(subscriptions)
    return {
        "total_subscriptions": count,
        "by_status": by_status,
        "monthly_recurring_revenue": money(mrr),
        "average_subscription_value": money(total_value / count) if count else Decimal("0.00"),
    }
