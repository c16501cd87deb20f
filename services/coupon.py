"""Coupon validation, pricing and redemption."""

from __future__ import annotations

import datetime
import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy import or_, update

from errors import (
    CouponExhaustedError,
    CouponInvalidError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from extensions import db
from models import VALID_DISCOUNT_TYPES, Coupon, CouponRedemption
from services.audit import log_action
from services.plan_catalog import get_plan
from services.transaction import transactional
from utils import as_utc, money, parse_decimal, utc_now

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")


def normalize_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


def get_coupon_by_code(code: str) -> Coupon:
    coupon = Coupon.query.filter_by(code=normalize_code(code)).first()
    if coupon is None:
        raise NotFoundError(f"Coupon '{normalize_code(code)}' not found.")
    return coupon


def tenant_redemption_count(coupon_id: int, tenant_id: int) -> int:
    return CouponRedemption.query.filter_by(coupon_id=coupon_id, tenant_id=tenant_id).count()


# ---------------------------------------------------------------------------
# Pure checks
# ---------------------------------------------------------------------------

def validate_coupon(
    coupon: Coupon,
    plan_id: Optional[int],
    subscription_value,
    tenant_id: Optional[int],
    tenant_redemptions: int,
    now: Optional[datetime.datetime] = None,
) -> None:
    """Raise ``CouponInvalidError`` (or ``CouponExhaustedError``) if *coupon* cannot be used.

    Side-effect free: nothing is incremented here.
    """
    now = as_utc(now) or utc_now()
    value = parse_decimal(subscription_value)
    if value is None or value < 0:
        raise ValidationError("Subscription value must be a non-negative number.")

    if not coupon.is_active:
        raise CouponInvalidError(f"Coupon '{coupon.code}' is inactive.", reason="inactive")
    valid_from = as_utc(coupon.valid_from)
    if valid_from is not None and now < valid_from:
        raise CouponInvalidError(f"Coupon '{coupon.code}' is not valid yet.", reason="not_yet_valid")
    valid_until = as_utc(coupon.valid_until)
    if valid_until is not None and now > valid_until:
        raise CouponInvalidError(f"Coupon '{coupon.code}' has expired.", reason="expired")
    if coupon.max_uses is not None and (coupon.times_used or 0) >= coupon.max_uses:
        raise CouponExhaustedError(f"Coupon '{coupon.code}' has no remaining uses.")
    if (
        tenant_id is not None
        and coupon.max_uses_per_tenant is not None
        and tenant_redemptions >= coupon.max_uses_per_tenant
    ):
        raise CouponInvalidError(
            f"Coupon '{coupon.code}' was already used the maximum number of times.",
            reason="tenant_limit_reached",
        )
    applicable = [int(pid) for pid in (coupon.applicable_plan_ids or [])]
    if applicable and (plan_id is None or int(plan_id) not in applicable):
        raise CouponInvalidError(
            f"Coupon '{coupon.code}' does not apply to this plan.", reason="plan_not_applicable"
        )
    minimum = coupon.min_subscription_value or ZERO
    if value < minimum:
        raise CouponInvalidError(
            f"Coupon '{coupon.code}' requires a subscription value of at least {money(minimum)}.",
            reason="below_minimum_value",
        )


def apply_coupon(coupon: Coupon, subscription_value) -> Decimal:
    """Return the discount *coupon* grants on *subscription_value*.

    Always within ``[0, subscription_value]``.
    """
    value = money(subscription_value)
    if value <= 0:
        return ZERO
    discount_value = Decimal(coupon.discount_value or 0)
    if coupon.discount_type == "percentage":
        discount = money(value * discount_value / Decimal("100"))
        if coupon.max_discount_amount is not None:
            discount = min(discount, money(coupon.max_discount_amount))
    elif coupon.discount_type == "fixed":
        discount = money(discount_value)
    else:
        raise CouponInvalidError(
            f"Coupon '{coupon.code}' has unknown discount type.", reason="invalid"
        )
    return max(ZERO, min(discount, value))


# ---------------------------------------------------------------------------
# Redemption (inside the caller's transaction)
# ---------------------------------------------------------------------------

def redeem_coupon(
    coupon: Coupon, tenant_id: int, subscription_id: int, discount_amount: Decimal
) -> CouponRedemption:
    """Consume one use of *coupon* and record the redemption.

    The increment is a conditional UPDATE, so concurrent redemptions of the
    last remaining use cannot both succeed.
    """
    result = db.session.execute(
        update(Coupon)
        .where(
            Coupon.id == coupon.id,
            or_(Coupon.max_uses.is_(None), Coupon.times_used < Coupon.max_uses),
        )
        .values(times_used=Coupon.times_used + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        logger.warning("Coupon %s exhausted during redemption", coupon.code)
        raise CouponExhaustedError(f"Coupon '{coupon.code}' has no remaining uses.")
    db.session.expire(coupon, ["times_used"])

    redemption = CouponRedemption(
        coupon_id=coupon.id,
        tenant_id=tenant_id,
        subscription_id=subscription_id,
        discount_amount=money(discount_amount),
    )
    db.session.add(redemption)
    db.session.flush()
    return redemption


def preview_coupon(
    code: str,
    plan_id: Optional[int],
    tenant_id: Optional[int],
    subscription_value=None,
) -> dict:
    """Check a coupon without redeeming it.

    When *subscription_value* is omitted the plan price is used.
    """
    try:
        coupon = get_coupon_by_code(code)
        value = subscription_value
        if value is None:
            if plan_id is None:
                raise ValidationError("plan_id or amount is required.")
            value = get_plan(plan_id).price
        redemptions = tenant_redemption_count(coupon.id, tenant_id) if tenant_id else 0
        validate_coupon(coupon, plan_id, value, tenant_id, redemptions)
    except (CouponInvalidError, NotFoundError, ValidationError) as exc:
        return {"valid": False, "error": exc.message, "kind": exc.kind}

    discount = apply_coupon(coupon, value)
    return {
        "valid": True,
        "code": coupon.code,
        "discount_type": coupon.discount_type,
        "discount_value": coupon.discount_value,
        "discount_amount": discount,
        "final_amount": money(value) - discount,
    }


# ---------------------------------------------------------------------------
# Administration
# ---------------------------------------------------------------------------

def _optional_positive_int(data: dict, key: str) -> Optional[int]:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValidationError(f"{key} must be a positive integer.")
    return value


def _optional_datetime(data: dict, key: str) -> Optional[datetime.datetime]:
    raw = data.get(key)
    if not raw:
        return None
    try:
        parsed = datetime.datetime.fromisoformat(str(raw))
    except ValueError:
        raise ValidationError(f"{key} must be an ISO-8601 date or datetime.")
    return as_utc(parsed)


def list_coupons(active_only: bool = False) -> list[Coupon]:
    query = Coupon.query
    if active_only:
        query = query.filter_by(is_active=True)
    return query.order_by(Coupon.code).all()


@transactional
def create_coupon(data: dict) -> Coupon:
    code = normalize_code(data.get("code"))
    if not code:
        raise ValidationError("Coupon code is required.")
    if Coupon.query.filter_by(code=code).first():
        raise StateConflictError(f"Coupon code '{code}' already exists.")

    discount_type = data.get("discount_type")
    if discount_type not in VALID_DISCOUNT_TYPES:
        raise ValidationError("discount_type must be 'percentage' or 'fixed'.")
    discount_value = parse_decimal(data.get("discount_value"))
    if discount_value is None or discount_value <= 0:
        raise ValidationError("discount_value must be a positive number.")
    if discount_type == "percentage" and discount_value > 100:
        raise ValidationError("A percentage discount cannot exceed 100.")

    max_discount = None
    if data.get("max_discount_amount") is not None:
        max_discount = parse_decimal(data.get("max_discount_amount"))
        if max_discount is None or max_discount <= 0:
            raise ValidationError("max_discount_amount must be a positive number.")
    min_value = parse_decimal(data.get("min_subscription_value", 0))
    if min_value is None or min_value < 0:
        raise ValidationError("min_subscription_value must be a non-negative number.")

    valid_from = _optional_datetime(data, "valid_from")
    valid_until = _optional_datetime(data, "valid_until")
    if valid_from and valid_until and valid_until < valid_from:
        raise ValidationError("valid_until must not be before valid_from.")

    plan_ids = data.get("applicable_plan_ids") or []
    if not isinstance(plan_ids, list) or not all(
        isinstance(pid, int) and not isinstance(pid, bool) for pid in plan_ids
    ):
        raise ValidationError("applicable_plan_ids must be a list of plan ids.")

    coupon = Coupon(
        code=code,
        description=data.get("description"),
        discount_type=discount_type,
        discount_value=money(discount_value),
        max_discount_amount=money(max_discount) if max_discount is not None else None,
        valid_from=valid_from,
        valid_until=valid_until,
        max_uses=_optional_positive_int(data, "max_uses"),
        max_uses_per_tenant=_optional_positive_int(data, "max_uses_per_tenant"),
        times_used=0,
        applicable_plan_ids=plan_ids,
        min_subscription_value=money(min_value),
        is_active=bool(data.get("is_active", True)),
    )
    db.session.add(coupon)
    db.session.flush()
    log_action(
        "create", "coupon", coupon.id,
        after={"code": coupon.code, "discount_type": discount_type, "discount_value": coupon.discount_value},
    )
    logger.info("Created coupon %s", coupon.code)
    return coupon
