"""Partner commissions on completed tenant payments.

Exactly one commission exists per payment (unique ``payment_id``).  Status
flow: ``pending -> approved -> paid`` or ``pending -> cancelled``.
"""

from __future__ import annotations

import datetime
import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from sqlalchemy.exc import IntegrityError

from errors import IllegalTransitionError, NotFoundError, StateConflictError, ValidationError
from extensions import db
from models import (
    VALID_DISCOUNT_TYPES,
    Commission,
    Partner,
    PartnerTenant,
    Payment,
    Tenant,
)
from services.audit import log_action
from services.transaction import queue_event, restart_transaction, transactional
from utils import money, parse_decimal, utc_now

logger = logging.getLogger(__name__)

_RATE_Q = Decimal("0.0001")

# action -> (allowed from, resulting status, timestamp field)
COMMISSION_ACTIONS = {
    "approve": ("pending", "approved", "approved_at"),
    "pay": ("approved", "paid", "paid_at"),
    "cancel": ("pending", "cancelled", "cancelled_at"),
}


def calculate_commission_amount(base_amount, commission_type: str, rate) -> Decimal:
    """Percentage: ``base * rate / 100``; fixed: ``rate``.  Round half up to cents."""
    rate = Decimal(str(rate))
    if rate < 0:
        raise ValidationError("Commission rate must not be negative.")
    if commission_type == "percentage":
        return money(Decimal(str(base_amount)) * rate / Decimal("100"))
    if commission_type == "fixed":
        return money(rate)
    raise ValidationError(f"Unknown commission type '{commission_type}'.")


def commission_rate(value) -> Decimal:
    """Rates keep four decimals (``7.125`` percent stays ``7.1250``)."""
    return Decimal(str(value)).quantize(_RATE_Q, rounding=ROUND_HALF_UP)


def get_partner_link(tenant_id: int) -> Optional[PartnerTenant]:
    """The active partner link of *tenant_id*, if any."""
    return (
        PartnerTenant.query.join(Partner, PartnerTenant.partner_id == Partner.id)
        .filter(PartnerTenant.tenant_id == tenant_id, Partner.is_active.is_(True))
        .first()
    )


def compute_commission(
    payment: Payment, partner: Partner, tenant_override_rate=None
) -> Commission:
    """Create the commission for *payment* inside the caller's transaction.

    Returns the existing row when one was already computed.
    """
    existing = Commission.query.filter_by(payment_id=payment.id).first()
    if existing is not None:
        return existing

    rate = commission_rate(
        tenant_override_rate if tenant_override_rate is not None else partner.commission_value
    )
    commission = Commission(
        partner_id=partner.id,
        tenant_id=payment.tenant_id,
        payment_id=payment.id,
        subscription_id=payment.subscription_id,
        base_amount=money(payment.amount),
        commission_type=partner.commission_type,
        commission_rate=rate,
        commission_amount=calculate_commission_amount(payment.amount, partner.commission_type, rate),
        status="pending",
    )
    db.session.add(commission)
    db.session.flush()

    queue_event(
        "commission.created",
        {
            "commission_id": commission.id,
            "partner_id": partner.id,
            "payment_id": payment.id,
            "commission_amount": str(commission.commission_amount),
        },
    )
    logger.info(
        "Commission %s for partner %s on payment %s: %s",
        commission.id, partner.id, payment.id, commission.commission_amount,
    )
    return commission


def commission_for_payment(payment: Payment) -> Optional[Commission]:
    """Compute the commission when the payment's tenant was referred by a partner."""
    if payment.unmatched or payment.tenant_id is None:
        return None
    link = get_partner_link(payment.tenant_id)
    if link is None:
        return None
    return compute_commission(payment, link.partner, link.custom_commission_value)


@transactional
def calculate_commission_for_payment(payment_id: int) -> Optional[Commission]:
    payment = db.session.get(Payment, payment_id)
    if payment is None:
        raise NotFoundError(f"Payment {payment_id} not found.")
    try:
        return commission_for_payment(payment)
    except IntegrityError:
        restart_transaction()
        return Commission.query.filter_by(payment_id=payment_id).first()


def calculate_pending_commissions(since: Optional[datetime.datetime] = None) -> list[Commission]:
    """Backfill commissions for matched payments that have none yet."""
    query = (
        Payment.query.join(PartnerTenant, PartnerTenant.tenant_id == Payment.tenant_id)
        .outerjoin(Commission, Commission.payment_id == Payment.id)
        .filter(
            Payment.unmatched.is_(False),
            Payment.status == "completed",
            Commission.id.is_(None),
        )
    )
    if since is not None:
        query = query.filter(Payment.payment_date >= since)
    payment_ids = [payment.id for payment in query.order_by(Payment.id).all()]

    created = []
    for payment_id in payment_ids:
        commission = calculate_commission_for_payment(payment_id)
        if commission is not None:
            created.append(commission)
    logger.info("Calculated %s pending commission(s)", len(created))
    return created


# ---------------------------------------------------------------------------
# Commission lifecycle
# ---------------------------------------------------------------------------

def get_commission(commission_id: int) -> Commission:
    commission = db.session.get(Commission, commission_id)
    if commission is None:
        raise NotFoundError(f"Commission {commission_id} not found.")
    return commission


@transactional
def transition_commission(commission_id: int, action: str) -> Commission:
    if action not in COMMISSION_ACTIONS:
        raise ValidationError(f"action must be one of {', '.join(sorted(COMMISSION_ACTIONS))}.")
    commission = get_commission(commission_id)
    allowed_from, new_status, stamp = COMMISSION_ACTIONS[action]
    if commission.status != allowed_from:
        raise IllegalTransitionError(
            f"Cannot {action} a {commission.status} commission."
        )
    old_status = commission.status
    commission.status = new_status
    setattr(commission, stamp, utc_now())
    db.session.flush()
    log_action(
        f"commission_{action}", "commission", commission.id,
        before={"status": old_status}, after={"status": new_status},
        tenant_id=commission.tenant_id,
    )
    logger.info("Commission %s: %s -> %s", commission.id, old_status, new_status)
    return commission


def list_commissions(partner_id: int, status: Optional[str] = None) -> list[Commission]:
    query = Commission.query.filter_by(partner_id=partner_id)
    if status:
        query = query.filter_by(status=status)
    return query.order_by(Commission.created_at.desc(), Commission.id.desc()).all()


def partner_commission_summary(partner_id: int) -> dict:
    """Count and amount per status, plus the amount still owed."""
    get_partner(partner_id)
    summary = {
        status: {"count": 0, "total_amount": Decimal("0.00")}
        for status in ("pending", "approved", "paid", "cancelled")
    }
    for commission in Commission.query.filter_by(partner_id=partner_id):
        entry = summary[commission.status]
        entry["count"] += 1
        entry["total_amount"] += commission.commission_amount
    summary["outstanding_amount"] = (
        summary["pending"]["total_amount"] + summary["approved"]["total_amount"]
    )
    return summary


# ---------------------------------------------------------------------------
# Partners
# ---------------------------------------------------------------------------

def get_partner(partner_id: int) -> Partner:
    partner = db.session.get(Partner, partner_id)
    if partner is None:
        raise NotFoundError(f"Partner {partner_id} not found.")
    return partner


def _clean_rate(commission_type: str, value, field: str) -> Decimal:
    rate = parse_decimal(value)
    if rate is None or rate < 0:
        raise ValidationError(f"{field} must be a non-negative number.")
    if commission_type == "percentage" and rate > 100:
        raise ValidationError(f"{field} cannot exceed 100 percent.")
    return commission_rate(rate)


@transactional
def create_partner(data: dict) -> Partner:
    name = (data.get("name") or "").strip()
    email = (data.get("email") or "").strip().lower()
    if not name or not email:
        raise ValidationError("Partner name and email are required.")
    if Partner.query.filter_by(email=email).first():
        raise StateConflictError(f"A partner with email {email} already exists.")
    commission_type = data.get("commission_type", "percentage")
    if commission_type not in VALID_DISCOUNT_TYPES:
        raise ValidationError("commission_type must be 'percentage' or 'fixed'.")

    partner = Partner(
        name=name,
        email=email,
        commission_type=commission_type,
        commission_value=_clean_rate(commission_type, data.get("commission_value"), "commission_value"),
        is_active=bool(data.get("is_active", True)),
    )
    db.session.add(partner)
    db.session.flush()
    log_action("create", "partner", partner.id, after={"name": name, "commission_value": partner.commission_value})
    logger.info("Created partner %s (%s)", partner.id, email)
    return partner


@transactional
def link_partner_tenant(
    partner_id: int, tenant_id: int, custom_commission_value=None
) -> PartnerTenant:
    """Attach *tenant_id* to a partner; a tenant has at most one partner."""
    partner = get_partner(partner_id)
    if db.session.get(Tenant, tenant_id) is None:
        raise NotFoundError(f"Tenant {tenant_id} not found.")
    if PartnerTenant.query.filter_by(tenant_id=tenant_id).first():
        raise StateConflictError(f"Tenant {tenant_id} is already linked to a partner.")

    link = PartnerTenant(
        partner_id=partner.id,
        tenant_id=tenant_id,
        custom_commission_value=(
            _clean_rate(partner.commission_type, custom_commission_value, "custom_commission_value")
            if custom_commission_value is not None else None
        ),
    )
    db.session.add(link)
    try:
        db.session.flush()
    except IntegrityError:
        restart_transaction()
        raise StateConflictError(f"Tenant {tenant_id} is already linked to a partner.") from None
    log_action("link_tenant", "partner", partner.id, after={"tenant_id": tenant_id}, tenant_id=tenant_id)
    return link
