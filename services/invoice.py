"""Invoice generation and settlement.

Invoices are append-only after creation apart from the payment fields
(``paid_amount``, ``balance_due``, ``status``, ``paid_at``).  At most one
invoice exists per ``(subscription_id, period_key)``; generating twice for
the same period returns the first invoice.
"""

from __future__ import annotations

import datetime
import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from sqlalchemy.exc import IntegrityError

from config_models import TenantBillingContext
from errors import (
    IllegalTransitionError,
    InvariantViolationError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from extensions import db
from models import TERMINAL_SUBSCRIPTION_STATUSES, Invoice, InvoiceLineItem, Subscription, UsageRecord
from services.audit import log_action
from services.numbering import generate_number
from services.subscription import advance_billing_date, apply_transition, get_subscription
from services.tax import TaxBreakdown, split_tax, tax_for_context
from services.transaction import queue_event, restart_transaction, transactional
from services.usage import mark_billed, unbilled_records
from utils import add_billing_cycle, money, parse_decimal, utc_now, utc_today

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")
_Q4 = Decimal("0.0001")

INVOICE_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"partially_paid", "paid", "overdue", "cancelled"},
    "partially_paid": {"partially_paid", "paid", "overdue", "cancelled"},
    "overdue": {"partially_paid", "paid", "cancelled"},
    "paid": set(),
    "cancelled": set(),
}
OPEN_INVOICE_STATUSES = {"pending", "partially_paid", "overdue"}

ONE_TIME_PERIOD_KEY = "one_time"


def subscription_period_key(sub: Subscription) -> str:
    if sub.next_billing_date is None:
        return ONE_TIME_PERIOD_KEY
    return sub.next_billing_date.isoformat()


def usage_period_key(period_start: datetime.date, period_end: datetime.date) -> str:
    return f"usage:{period_start.isoformat()}:{period_end.isoformat()}"


def _set_status(invoice: Invoice, new_status: str) -> None:
    if new_status not in INVOICE_TRANSITIONS.get(invoice.status, set()):
        raise IllegalTransitionError(
            f"Invoice {invoice.invoice_number} cannot go from {invoice.status} to {new_status}."
        )
    invoice.status = new_status


def _invoice_snapshot(invoice: Invoice) -> dict:
    return {
        "status": invoice.status,
        "total_amount": invoice.total_amount,
        "paid_amount": invoice.paid_amount,
        "balance_due": invoice.balance_due,
    }


def _invoice_event_payload(invoice: Invoice) -> dict:
    return {
        "invoice_id": invoice.id,
        "invoice_number": invoice.invoice_number,
        "tenant_id": invoice.tenant_id,
        "subscription_id": invoice.subscription_id,
        "total_amount": str(invoice.total_amount),
        "balance_due": str(invoice.balance_due),
        "status": invoice.status,
    }


def _find_period_invoice(subscription_id: int, period_key: str) -> Optional[Invoice]:
    return Invoice.query.filter_by(subscription_id=subscription_id, period_key=period_key).first()


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

def get_invoice(invoice_id: int, tenant_id: Optional[int] = None) -> Invoice:
    invoice = db.session.get(Invoice, invoice_id)
    if invoice is None or (tenant_id is not None and invoice.tenant_id != tenant_id):
        raise NotFoundError(f"Invoice {invoice_id} not found.")
    return invoice


def list_invoices(
    tenant_id: int,
    status: Optional[str] = None,
    subscription_id: Optional[int] = None,
) -> list[Invoice]:
    query = Invoice.query.filter_by(tenant_id=tenant_id)
    if status:
        query = query.filter_by(status=status)
    if subscription_id:
        query = query.filter_by(subscription_id=subscription_id)
    return query.order_by(Invoice.invoice_date.desc(), Invoice.id.desc()).all()


# ---------------------------------------------------------------------------
# Line-level tax attribution
# ---------------------------------------------------------------------------

def _allocate_line_taxes(lines: list[InvoiceLineItem], tax: TaxBreakdown) -> None:
    """Distribute the invoice tax over its lines.

    Each line gets ``amount * rate / 100``; the largest line absorbs the
    rounding remainder so the line taxes add up to the invoice tax.
    """
    if not lines:
        return
    intra_state = tax.igst == ZERO and tax.total_tax != ZERO
    anchor = max(lines, key=lambda line: line.amount)
    allocated = ZERO
    for line in lines:
        if line is anchor:
            continue
        line_tax = money(Decimal(line.amount) * tax.rate / Decimal("100"))
        _set_line_tax(line, tax.rate, line_tax, intra_state)
        allocated += line_tax
    _set_line_tax(anchor, tax.rate, tax.total_tax - allocated, intra_state)


def _set_line_tax(line: InvoiceLineItem, rate: Decimal, line_tax: Decimal, intra_state: bool) -> None:
    cgst, sgst, igst = split_tax(line_tax, intra_state)
    line.tax_rate = rate
    line.tax_amount = line_tax
    line.cgst_amount = cgst
    line.sgst_amount = sgst
    line.igst_amount = igst


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------

def _insert_invoice(invoice: Invoice, ctx: TenantBillingContext, today: datetime.date) -> None:
    invoice.invoice_number = generate_number(
        "invoice", ctx.invoice_number_pattern, ctx.tenant_id, on_date=today
    )
    db.session.add(invoice)
    db.session.flush()


@transactional
def generate_subscription_invoice(
    subscription_id: int,
    ctx: TenantBillingContext,
    today: Optional[datetime.date] = None,
) -> tuple[Invoice, bool]:
    """Invoice the subscription's current period (its ``next_billing_date``).

    Returns ``(invoice, created)``.  Amounts are the ones priced on the
    subscription at creation time, so every renewal invoice carries the same
    discount and tax split.
    """
    today = today or utc_today()
    sub = get_subscription(subscription_id, ctx.tenant_id)
    if sub.status in TERMINAL_SUBSCRIPTION_STATUSES:
        raise StateConflictError(f"Subscription {sub.id} is {sub.status}; nothing to invoice.")

    period_key = subscription_period_key(sub)
    existing = _find_period_invoice(sub.id, period_key)
    if existing is not None:
        return existing, False

    period_start = sub.next_billing_date or sub.start_date
    period_end = None
    if sub.next_billing_date is not None:
        period_end = add_billing_cycle(period_start, sub.billing_cycle) - datetime.timedelta(days=1)

    invoice = Invoice(
        tenant_id=sub.tenant_id,
        subscription_id=sub.id,
        invoice_type="subscription",
        period_key=period_key,
        period_start=period_start,
        period_end=period_end,
        invoice_date=today,
        due_date=today + datetime.timedelta(days=ctx.invoice_due_days),
        currency=sub.currency,
        subtotal=sub.base_price,
        discount_amount=sub.discount_amount,
        tax_rate=sub.tax_rate,
        cgst_amount=sub.cgst_amount,
        sgst_amount=sub.sgst_amount,
        igst_amount=sub.igst_amount,
        tax_amount=sub.tax_amount,
        total_amount=sub.total_amount,
        paid_amount=ZERO,
        balance_due=sub.total_amount,
        status="pending",
    )
    description = f"{sub.plan.name} subscription ({sub.billing_cycle})"
    if period_end is not None:
        description += f", {period_start.isoformat()} to {period_end.isoformat()}"
    invoice.items.append(
        InvoiceLineItem(
            tenant_id=sub.tenant_id,
            description=description,
            quantity=Decimal("1"),
            unit_price=sub.base_price,
            amount=sub.base_price,
            tax_rate=sub.tax_rate,
            cgst_amount=sub.cgst_amount,
            sgst_amount=sub.sgst_amount,
            igst_amount=sub.igst_amount,
            tax_amount=sub.tax_amount,
        )
    )

    try:
        _insert_invoice(invoice, ctx, today)
    except IntegrityError:
        # A concurrent caller generated this period first; return its invoice.
        restart_transaction()
        winner = _find_period_invoice(subscription_id, period_key)
        if winner is None:
            raise StateConflictError("Invoice generation conflicted; retry.") from None
        return winner, False

    if invoice.total_amount == ZERO:
        # Nothing to collect (e.g. a 100% coupon); the period is settled now.
        _set_status(invoice, "paid")
        invoice.paid_at = utc_now()
        _settle_subscription(invoice)

    log_action("generate", "invoice", invoice.id, after=_invoice_snapshot(invoice), tenant_id=invoice.tenant_id)
    queue_event("invoice.generated", _invoice_event_payload(invoice))
    logger.info(
        "Generated invoice %s for subscription %s period %s (total %s)",
        invoice.invoice_number, sub.id, period_key, invoice.total_amount,
    )
    return invoice, True


def _usage_lines(tenant_id: int, records: list[UsageRecord]) -> list[InvoiceLineItem]:
    """One line per ``(metric, unit price)``; reversals count negatively.

    Each line keeps the recorded unit price and its amount is
    ``quantity * unit_price`` rounded to cents.  Groups that net to zero
    are left off the invoice.
    """
    groups: dict[tuple[str, Decimal], dict] = {}
    for record in records:
        unit_price = Decimal(record.unit_price).quantize(_Q4, rounding=ROUND_HALF_UP)
        entry = groups.setdefault(
            (record.metric_name, unit_price), {"quantity": Decimal("0"), "unit": record.unit}
        )
        sign = -1 if record.is_reversal else 1
        entry["quantity"] += sign * Decimal(record.quantity)

    lines = []
    for (metric_name, unit_price), entry in sorted(groups.items()):
        quantity = entry["quantity"]
        if quantity == 0:
            continue
        lines.append(
            InvoiceLineItem(
                tenant_id=tenant_id,
                description=f"{metric_name} usage ({entry['unit']})",
                metric_name=metric_name,
                quantity=quantity,
                unit_price=unit_price,
                amount=money(quantity * unit_price),
            )
        )
    return lines


@transactional
def generate_usage_invoice(
    ctx: TenantBillingContext,
    subscription_id: int,
    period_start: datetime.date,
    period_end: datetime.date,
    today: Optional[datetime.date] = None,
) -> tuple[Invoice, bool]:
    """Bill unbilled usage in ``[period_start, period_end]``.

    One line per metric and unit price.  The invoice, its lines and the
    billed flags on the usage records are written in this one transaction.
    """
    if period_end < period_start:
        raise ValidationError("period_end must not be before period_start.")
    today = today or utc_today()
    sub = get_subscription(subscription_id, ctx.tenant_id)
    period_key = usage_period_key(period_start, period_end)

    existing = _find_period_invoice(sub.id, period_key)
    if existing is not None:
        return existing, False

    records = unbilled_records(ctx.tenant_id, sub.id, period_start, period_end)
    if not records:
        raise ValidationError("No unbilled usage in this period.")

    lines = _usage_lines(ctx.tenant_id, records)
    subtotal = sum((line.amount for line in lines), ZERO)
    if subtotal < 0:
        raise ValidationError("Usage credits exceed charges for this period.")

    tax = tax_for_context(subtotal, ctx)
    _allocate_line_taxes(lines, tax)

    invoice = Invoice(
        tenant_id=ctx.tenant_id,
        subscription_id=sub.id,
        invoice_type="usage",
        period_key=period_key,
        period_start=period_start,
        period_end=period_end,
        invoice_date=today,
        due_date=today + datetime.timedelta(days=ctx.invoice_due_days),
        currency=sub.currency,
        subtotal=subtotal,
        discount_amount=ZERO,
        tax_rate=tax.rate,
        cgst_amount=tax.cgst,
        sgst_amount=tax.sgst,
        igst_amount=tax.igst,
        tax_amount=tax.total_tax,
        total_amount=subtotal + tax.total_tax,
        paid_amount=ZERO,
        balance_due=subtotal + tax.total_tax,
        status="pending",
        items=lines,
    )

    try:
        _insert_invoice(invoice, ctx, today)
    except IntegrityError:
        restart_transaction()
        winner = _find_period_invoice(subscription_id, period_key)
        if winner is None:
            raise StateConflictError("Invoice generation conflicted; retry.") from None
        return winner, False

    mark_billed([record.id for record in records], invoice.id)
    if invoice.total_amount == ZERO:
        # Charges and credits cancelled out; nothing to collect.
        _set_status(invoice, "paid")
        invoice.paid_at = utc_now()

    log_action("generate", "invoice", invoice.id, after=_invoice_snapshot(invoice), tenant_id=invoice.tenant_id)
    queue_event("invoice.generated", _invoice_event_payload(invoice))
    logger.info(
        "Generated usage invoice %s for subscription %s (%s records, subtotal %s)",
        invoice.invoice_number, sub.id, len(records), subtotal,
    )
    return invoice, True


# ---------------------------------------------------------------------------
# Settlement
# ---------------------------------------------------------------------------

def _settle_subscription(invoice: Invoice) -> None:
    """Renew the owning subscription once its current-period invoice is paid."""
    if invoice.invoice_type != "subscription" or invoice.subscription_id is None:
        return
    sub = invoice.subscription
    if sub is None or sub.status in TERMINAL_SUBSCRIPTION_STATUSES:
        return
    if sub.status in ("past_due", "pending"):
        apply_transition(sub, "payment_succeeded")
    if invoice.period_key == subscription_period_key(sub) and sub.next_billing_date is not None:
        advance_billing_date(sub)
        logger.info("Subscription %s renewed until %s", sub.id, sub.next_billing_date)


def apply_payment(
    invoice: Invoice, amount, payment_date: Optional[datetime.datetime] = None
) -> Invoice:
    """Add *amount* to the invoice's paid total inside the caller's transaction.

    Overpayment is rejected, never clamped.
    """
    parsed = parse_decimal(amount)
    if parsed is None:
        raise ValidationError("paid_amount must be a number.")
    amount = money(parsed)
    if amount <= 0:
        raise ValidationError("Payment amount must be positive.")
    if invoice.status not in OPEN_INVOICE_STATUSES:
        raise StateConflictError(f"Invoice {invoice.invoice_number} is {invoice.status}.")
    if amount > invoice.balance_due:
        logger.error(
            "Rejected payment of %s on invoice %s: balance due is %s",
            amount, invoice.invoice_number, invoice.balance_due,
        )
        raise InvariantViolationError(
            f"Payment of {amount} exceeds the balance due of {invoice.balance_due}."
        )

    before = _invoice_snapshot(invoice)
    invoice.paid_amount = invoice.paid_amount + amount
    invoice.balance_due = invoice.total_amount - invoice.paid_amount
    if invoice.balance_due == ZERO:
        _set_status(invoice, "paid")
        invoice.paid_at = payment_date or utc_now()
        _settle_subscription(invoice)
        queue_event("invoice.paid", _invoice_event_payload(invoice))
    else:
        _set_status(invoice, "partially_paid")
    db.session.flush()

    log_action("payment", "invoice", invoice.id, before=before, after=_invoice_snapshot(invoice),
               tenant_id=invoice.tenant_id)
    logger.info(
        "Invoice %s received %s, balance due %s (%s)",
        invoice.invoice_number, amount, invoice.balance_due, invoice.status,
    )
    return invoice


@transactional
def mark_paid(
    invoice_id: int,
    paid_amount,
    payment_date: Optional[datetime.datetime] = None,
    tenant_id: Optional[int] = None,
) -> Invoice:
    """Record a manual payment against an invoice (see :func:`apply_payment`)."""
    return apply_payment(get_invoice(invoice_id, tenant_id), paid_amount, payment_date)


@transactional
def mark_invoice_overdue(invoice_id: int, today: Optional[datetime.date] = None) -> Invoice:
    """Flag an open invoice past its due date; an active owner goes past_due."""
    today = today or utc_today()
    invoice = get_invoice(invoice_id)
    if invoice.status not in ("pending", "partially_paid") or invoice.due_date >= today:
        return invoice
    _set_status(invoice, "overdue")
    sub = invoice.subscription
    if sub is not None and sub.status == "active":
        apply_transition(sub, "payment_failed")
    db.session.flush()
    log_action("overdue", "invoice", invoice.id, after=_invoice_snapshot(invoice), tenant_id=invoice.tenant_id)
    logger.info("Invoice %s is overdue (due %s)", invoice.invoice_number, invoice.due_date)
    return invoice


@transactional
def cancel_invoice(invoice_id: int, reason: Optional[str] = None, tenant_id: Optional[int] = None) -> Invoice:
    """Cancel an invoice on which nothing has been paid yet."""
    invoice = get_invoice(invoice_id, tenant_id)
    if invoice.paid_amount > ZERO:
        raise StateConflictError(
            f"Invoice {invoice.invoice_number} has payments and cannot be cancelled."
        )
    before = _invoice_snapshot(invoice)
    _set_status(invoice, "cancelled")
    invoice.cancelled_at = utc_now()
    db.session.flush()
    log_action(
        "cancel", "invoice", invoice.id, before=before,
        after={**_invoice_snapshot(invoice), "reason": reason}, tenant_id=invoice.tenant_id,
    )
    queue_event("invoice.cancelled", _invoice_event_payload(invoice))
    logger.info("Cancelled invoice %s", invoice.invoice_number)
    return invoice
