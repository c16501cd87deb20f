"""Plan catalog: purchasable tiers, deactivated rather than deleted."""

from __future__ import annotations

import logging
from typing import Optional

from errors import InvalidPlanError, NotFoundError, StateConflictError, ValidationError
from extensions import db
from models import TERMINAL_SUBSCRIPTION_STATUSES, VALID_BILLING_CYCLES, Plan, Subscription
from services.audit import log_action
from services.transaction import transactional
from utils import money, parse_decimal

logger = logging.getLogger(__name__)

_EDITABLE_FIELDS = {
    "name", "description", "billing_cycle", "price", "currency",
    "limits", "trial_days", "sort_order",
}


def _plan_snapshot(plan: Plan) -> dict:
    return {
        "code": plan.code,
        "name": plan.name,
        "billing_cycle": plan.billing_cycle,
        "price": plan.price,
        "currency": plan.currency,
        "trial_days": plan.trial_days,
        "is_active": plan.is_active,
    }


def _clean_plan_fields(data: dict) -> dict:
    """Validate the subset of plan fields present in *data*."""
    cleaned: dict = {}
    if "name" in data:
        name = (data.get("name") or "").strip()
        if not name:
            raise ValidationError("Plan name is required.")
        cleaned["name"] = name
    if "description" in data:
        cleaned["description"] = data.get("description") or None
    if "billing_cycle" in data:
        cycle = data.get("billing_cycle")
        if cycle not in VALID_BILLING_CYCLES:
            raise ValidationError(
                f"billing_cycle must be one of {', '.join(sorted(VALID_BILLING_CYCLES))}."
            )
        cleaned["billing_cycle"] = cycle
    if "price" in data:
        price = parse_decimal(data.get("price"))
        if price is None or price < 0:
            raise ValidationError("Plan price must be a non-negative number.")
        cleaned["price"] = money(price)
    if "currency" in data:
        currency = (data.get("currency") or "").strip().upper()
        if len(currency) != 3:
            raise ValidationError("currency must be a 3-letter code.")
        cleaned["currency"] = currency
    if "limits" in data:
        limits = data.get("limits") or {}
        if not isinstance(limits, dict):
            raise ValidationError("limits must be an object.")
        cleaned["limits"] = limits
    if "trial_days" in data:
        trial_days = data.get("trial_days")
        if isinstance(trial_days, bool) or not isinstance(trial_days, int) or trial_days < 0:
            raise ValidationError("trial_days must be a non-negative integer.")
        cleaned["trial_days"] = trial_days
    if "sort_order" in data:
        sort_order = data.get("sort_order")
        if isinstance(sort_order, bool) or not isinstance(sort_order, int):
            raise ValidationError("sort_order must be an integer.")
        cleaned["sort_order"] = sort_order
    return cleaned


def _has_live_subscription(plan_id: int) -> bool:
    return db.session.query(
        Subscription.query.filter(
            Subscription.plan_id == plan_id,
            Subscription.status.notin_(TERMINAL_SUBSCRIPTION_STATUSES),
        ).exists()
    ).scalar()


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

def get_plan(plan_id: int) -> Plan:
    plan = db.session.get(Plan, plan_id)
    if plan is None:
        raise NotFoundError(f"Plan {plan_id} not found.")
    return plan


def get_purchasable_plan(plan_id: int) -> Plan:
    """Return *plan_id* if it can be subscribed to, else raise InvalidPlanError."""
    plan = get_plan(plan_id)
    if not plan.is_active:
        raise InvalidPlanError(f"Plan '{plan.code}' is not available.")
    return plan


def list_plans(active_only: bool = True) -> list[Plan]:
    query = Plan.query
    if active_only:
        query = query.filter_by(is_active=True)
    return query.order_by(Plan.sort_order, Plan.price, Plan.id).all()


# ---------------------------------------------------------------------------
# Administration
# ---------------------------------------------------------------------------

@transactional
def create_plan(data: dict) -> Plan:
    code = (data.get("code") or "").strip()
    if not code:
        raise ValidationError("Plan code is required.")
    for required in ("name", "price"):
        if required not in data:
            raise ValidationError(f"Plan {required} is required.")
    if Plan.query.filter_by(code=code).first():
        raise StateConflictError(f"Plan code '{code}' already exists.")

    fields = _clean_plan_fields(data)
    fields.setdefault("billing_cycle", "monthly")
    plan = Plan(code=code, is_active=True, **fields)
    db.session.add(plan)
    db.session.flush()

    log_action("create", "plan", plan.id, after=_plan_snapshot(plan))
    logger.info("Created plan %s (%s %s %s)", plan.code, plan.price, plan.currency, plan.billing_cycle)
    return plan


@transactional
def update_plan(plan_id: int, data: dict) -> Plan:
    """Update catalog fields.

    The billing cycle is frozen while a live subscription references the
    plan; price changes only affect subscriptions created afterwards.
    """
    plan = get_plan(plan_id)
    unknown = sorted(set(data) - _EDITABLE_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown plan field(s): {', '.join(unknown)}")

    fields = _clean_plan_fields(data)
    before = _plan_snapshot(plan)
    if (
        "billing_cycle" in fields
        and fields["billing_cycle"] != plan.billing_cycle
        and _has_live_subscription(plan.id)
    ):
        raise StateConflictError(
            "billing_cycle cannot change while a live subscription uses this plan."
        )
    for key, value in fields.items():
        setattr(plan, key, value)
    db.session.flush()

    log_action("update", "plan", plan.id, before=before, after=_plan_snapshot(plan))
    logger.info("Updated plan %s", plan.code)
    return plan


@transactional
def deactivate_plan(plan_id: int, reason: Optional[str] = None) -> Plan:
    plan = get_plan(plan_id)
    before = _plan_snapshot(plan)
    plan.is_active = False
    db.session.flush()
    log_action("deactivate", "plan", plan.id, before=before, after=_plan_snapshot(plan))
    logger.info("Deactivated plan %s%s", plan.code, f" ({reason})" if reason else "")
    return plan
