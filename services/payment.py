"""Payment recording, reconciliation and refund requests.

Gateway confirmations arrive at least once, so recording is keyed on the
unique ``gateway_transaction_id``: a re-delivery returns the original
payment and changes nothing.  A confirmation that cannot be matched to an
invoice or subscription is still stored (``unmatched=True``) for an operator
to reconcile; it is never rejected.  Money going back to the payer is
requested with :func:`request_refund`.
"""

from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from errors import InvariantViolationError, NotFoundError, StateConflictError, ValidationError
from extensions import db
from models import TERMINAL_SUBSCRIPTION_STATUSES, Invoice, Payment, RefundRequest, Subscription
from services.audit import log_action
from services.auth import get_current_actor
from services.commission import commission_for_payment
from services.invoice import OPEN_INVOICE_STATUSES, apply_payment, subscription_period_key
from services.subscription import advance_billing_date, apply_transition
from services.transaction import queue_event, restart_transaction, transactional
from utils import money, parse_decimal, utc_now

logger = logging.getLogger(__name__)


@dataclass
class PaymentMatch:
    invoice: Optional[Invoice] = None
    subscription: Optional[Subscription] = None
    tenant_id: Optional[int] = None
    note: Optional[str] = None

    @property
    def matched(self) -> bool:
        return self.note is None


def _current_period_invoice(sub: Subscription) -> Optional[Invoice]:
    return Invoice.query.filter_by(
        subscription_id=sub.id, period_key=subscription_period_key(sub)
    ).first()


def _match_payment(
    amount: Decimal,
    currency: Optional[str],
    invoice_id: Optional[int],
    subscription_id: Optional[int],
    tenant_id: Optional[int],
) -> PaymentMatch:
    """Work out what a payment pays for; ``note`` explains a failed match."""
    if invoice_id:
        invoice = db.session.get(Invoice, invoice_id)
        if invoice is None or (tenant_id is not None and invoice.tenant_id != tenant_id):
            return PaymentMatch(tenant_id=tenant_id, note=f"Invoice {invoice_id} not found.")
        match = PaymentMatch(invoice=invoice, subscription=invoice.subscription, tenant_id=invoice.tenant_id)
        if subscription_id and invoice.subscription_id != subscription_id:
            match.note = f"Invoice {invoice_id} does not belong to subscription {subscription_id}."
        elif currency and currency != invoice.currency:
            match.note = f"Currency {currency} does not match invoice currency {invoice.currency}."
        elif invoice.status not in OPEN_INVOICE_STATUSES:
            match.note = f"Invoice {invoice.invoice_number} is already {invoice.status}."
        elif amount > invoice.balance_due:
            match.note = (
                f"Amount {amount} exceeds the balance due of {invoice.balance_due} "
                f"on invoice {invoice.invoice_number}."
            )
        return match

    if subscription_id:
        sub = db.session.get(Subscription, subscription_id)
        if sub is None or (tenant_id is not None and sub.tenant_id != tenant_id):
            return PaymentMatch(tenant_id=tenant_id, note=f"Subscription {subscription_id} not found.")
        match = PaymentMatch(subscription=sub, tenant_id=sub.tenant_id)
        if sub.status in TERMINAL_SUBSCRIPTION_STATUSES:
            match.note = f"Subscription {subscription_id} is {sub.status}."
            return match
        invoice = _current_period_invoice(sub)
        if invoice is None or invoice.status not in OPEN_INVOICE_STATUSES:
            # No open bill: the payment itself settles the pending period.
            return match
        if currency and currency != invoice.currency:
            match.note = f"Currency {currency} does not match invoice currency {invoice.currency}."
        elif amount > invoice.balance_due:
            match.note = (
                f"Amount {amount} exceeds the balance due of {invoice.balance_due} "
                f"on invoice {invoice.invoice_number}."
            )
        else:
            match.invoice = invoice
        return match

    return PaymentMatch(tenant_id=tenant_id, note="Payment references no invoice or subscription.")


def _apply_match(payment: Payment, match: PaymentMatch) -> None:
    if match.invoice is not None:
        apply_payment(match.invoice, payment.amount, payment.payment_date)
        return
    sub = match.subscription
    if sub is not None and sub.status in ("past_due", "pending"):
        apply_transition(sub, "payment_succeeded")
        advance_billing_date(sub)


def _payment_event_payload(payment: Payment) -> dict:
    return {
        "payment_id": payment.id,
        "tenant_id": payment.tenant_id,
        "invoice_id": payment.invoice_id,
        "subscription_id": payment.subscription_id,
        "amount": str(payment.amount),
        "gateway_name": payment.gateway_name,
        "unmatched": payment.unmatched,
    }


def find_payment(gateway_transaction_id: str) -> Optional[Payment]:
    return Payment.query.filter_by(gateway_transaction_id=gateway_transaction_id).first()


def get_payment(payment_id: int) -> Payment:
    payment = db.session.get(Payment, payment_id)
    if payment is None:
        raise NotFoundError(f"Payment {payment_id} not found.")
    return payment


@transactional
def record_payment(
    gateway_name: str,
    gateway_transaction_id: str,
    amount,
    invoice_id: Optional[int] = None,
    subscription_id: Optional[int] = None,
    *,
    tenant_id: Optional[int] = None,
    currency: Optional[str] = None,
    payment_date: Optional[datetime.datetime] = None,
) -> tuple[Payment, bool]:
    """Record a gateway-confirmed payment.  Returns ``(payment, created)``."""
    gateway_name = (gateway_name or "").strip()
    gateway_transaction_id = (gateway_transaction_id or "").strip()
    if not gateway_name or not gateway_transaction_id:
        raise ValidationError("gateway_name and gateway_transaction_id are required.")
    parsed = parse_decimal(amount)
    if parsed is None or parsed <= 0:
        raise ValidationError("Payment amount must be a positive number.")
    amount = money(parsed)
    currency = (currency or "").strip().upper() or None

    existing = find_payment(gateway_transaction_id)
    if existing is not None:
        if existing.amount != amount:
            logger.error(
                "Replay of %s carries amount %s, original was %s; keeping the original",
                gateway_transaction_id, amount, existing.amount,
            )
        return existing, False

    match = _match_payment(amount, currency, invoice_id, subscription_id, tenant_id)
    if currency is None:
        if match.invoice is not None:
            currency = match.invoice.currency
        elif match.subscription is not None:
            currency = match.subscription.currency
        else:
            currency = current_app.config["BILLING_CONFIG"].currency
    payment = Payment(
        tenant_id=match.tenant_id,
        gateway_name=gateway_name,
        gateway_transaction_id=gateway_transaction_id,
        amount=amount,
        currency=currency,
        status="completed",
        unmatched=not match.matched,
        payment_date=payment_date or utc_now(),
    )
    if match.matched:
        payment.invoice_id = match.invoice.id if match.invoice is not None else None
        payment.subscription_id = match.subscription.id if match.subscription is not None else None
    else:
        # Keep the references the gateway sent so an operator can follow them.
        payment.reconciliation_note = (
            f"{match.note} (invoice_id={invoice_id}, subscription_id={subscription_id})"
        )
    db.session.add(payment)
    try:
        db.session.flush()
    except IntegrityError:
        # Concurrent delivery of the same confirmation won the insert.
        restart_transaction()
        winner = find_payment(gateway_transaction_id)
        if winner is None:
            raise
        return winner, False

    if match.matched:
        _apply_match(payment, match)
        commission_for_payment(payment)
        logger.info(
            "Recorded payment %s (%s %s via %s) for tenant %s",
            gateway_transaction_id, amount, payment.currency, gateway_name, payment.tenant_id,
        )
    else:
        logger.warning("Stored unmatched payment %s: %s", gateway_transaction_id, match.note)

    log_action(
        "record", "payment", payment.id,
        after={"amount": amount, "gateway_transaction_id": gateway_transaction_id, "unmatched": payment.unmatched},
        tenant_id=payment.tenant_id,
    )
    queue_event("payment.recorded", _payment_event_payload(payment))
    return payment, True


@transactional
def reconcile_payment(
    payment_id: int,
    invoice_id: Optional[int] = None,
    subscription_id: Optional[int] = None,
) -> Payment:
    """Apply a previously unmatched payment to the target an operator identified."""
    payment = get_payment(payment_id)
    if not payment.unmatched:
        raise StateConflictError(f"Payment {payment_id} is already matched.")
    if not invoice_id and not subscription_id:
        raise ValidationError("invoice_id or subscription_id is required.")

    match = _match_payment(payment.amount, payment.currency, invoice_id, subscription_id, None)
    if not match.matched:
        raise ValidationError(match.note)

    before = {"unmatched": True, "note": payment.reconciliation_note}
    payment.tenant_id = match.tenant_id
    payment.invoice_id = match.invoice.id if match.invoice is not None else None
    payment.subscription_id = match.subscription.id if match.subscription is not None else None
    payment.unmatched = False
    payment.reconciliation_note = f"{payment.reconciliation_note or ''} Reconciled.".strip()
    db.session.flush()

    _apply_match(payment, match)
    commission_for_payment(payment)

    log_action(
        "reconcile", "payment", payment.id, before=before,
        after={"invoice_id": payment.invoice_id, "subscription_id": payment.subscription_id},
        tenant_id=payment.tenant_id,
    )
    queue_event("payment.recorded", _payment_event_payload(payment))
    logger.info("Reconciled payment %s to invoice %s", payment.id, payment.invoice_id)
    return payment


# ---------------------------------------------------------------------------
# Refund requests
# ---------------------------------------------------------------------------

def refunded_total(payment: Payment) -> Decimal:
    """Amount already requested back on *payment*, failed requests excluded."""
    total = (
        db.session.query(func.coalesce(func.sum(RefundRequest.amount), 0))
        .filter(RefundRequest.payment_id == payment.id, RefundRequest.status != "failed")
        .scalar()
    )
    return money(total)


@transactional
def request_refund(
    payment_id: int,
    reason: str,
    amount=None,
    tenant_id: Optional[int] = None,
) -> RefundRequest:
    """Ask for all or part of a payment back.

    Without *amount* the whole refundable remainder is requested.  Requests
    on one payment never add up to more than the payment itself.
    """
    payment = Payment.query.filter_by(id=payment_id).with_for_update().first()
    if payment is None or (tenant_id is not None and payment.tenant_id != tenant_id):
        raise NotFoundError(f"Payment {payment_id} not found.")
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("A refund reason is required.")

    refundable = money(payment.amount) - refunded_total(payment)
    if amount is None:
        amount = refundable
    else:
        parsed = parse_decimal(amount)
        if parsed is None or parsed <= 0:
            raise ValidationError("Refund amount must be a positive number.")
        amount = money(parsed)
    if amount <= 0 or amount > refundable:
        logger.error(
            "Rejected refund of %s on payment %s: %s still refundable",
            amount, payment.gateway_transaction_id, refundable,
        )
        raise InvariantViolationError(
            f"Refund of {amount} exceeds the refundable {refundable} on payment {payment_id}."
        )

    refund = RefundRequest(
        tenant_id=payment.tenant_id,
        payment_id=payment.id,
        invoice_id=payment.invoice_id,
        amount=amount,
        currency=payment.currency,
        reason=reason,
        refund_type="full" if amount == money(payment.amount) else "partial",
        status="pending",
        requested_by=get_current_actor(),
    )
    db.session.add(refund)
    db.session.flush()

    log_action(
        "refund_requested", "refund", refund.id,
        after={"payment_id": payment.id, "amount": amount, "refund_type": refund.refund_type, "reason": reason},
        tenant_id=payment.tenant_id,
    )
    queue_event(
        "refund.requested",
        {
            "refund_id": refund.id,
            "payment_id": payment.id,
            "tenant_id": payment.tenant_id,
            "amount": str(amount),
            "refund_type": refund.refund_type,
        },
    )
    logger.info(
        "Refund %s requested on payment %s: %s %s (%s)",
        refund.id, payment.gateway_transaction_id, amount, payment.currency, refund.refund_type,
    )
    return refund
