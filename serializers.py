"""JSON representations of billing entities.

Money is rendered as a string (``"2359.06"``) so no float ever touches an
amount; dates use ISO-8601.
"""

from __future__ import annotations

import datetime
from decimal import Decimal


def _money(value):
    if value is None:
        return None
    return str(Decimal(value).quantize(Decimal("0.01")))


def _decimal(value):
    if value is None:
        return None
    return format(Decimal(value).normalize(), "f")


def _iso(value):
    if isinstance(value, (datetime.date, datetime.datetime)):
        return value.isoformat()
    return value


def jsonable(value):
    """Recursively convert Decimals and dates in plain containers."""
    if isinstance(value, dict):
        return {key: jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [jsonable(item) for item in value]
    if isinstance(value, Decimal):
        return str(value)
    return _iso(value)


def plan_to_dict(plan) -> dict:
    return {
        "id": plan.id,
        "code": plan.code,
        "name": plan.name,
        "description": plan.description,
        "billing_cycle": plan.billing_cycle,
        "price": _money(plan.price),
        "currency": plan.currency,
        "limits": plan.limits or {},
        "trial_days": plan.trial_days,
        "is_active": plan.is_active,
    }


def subscription_to_dict(sub) -> dict:
    return {
        "id": sub.id,
        "tenant_id": sub.tenant_id,
        "plan_id": sub.plan_id,
        "coupon_id": sub.coupon_id,
        "status": sub.status,
        "billing_cycle": sub.billing_cycle,
        "currency": sub.currency,
        "start_date": _iso(sub.start_date),
        "end_date": _iso(sub.end_date),
        "trial_end_date": _iso(sub.trial_end_date),
        "next_billing_date": _iso(sub.next_billing_date),
        "base_price": _money(sub.base_price),
        "discount_amount": _money(sub.discount_amount),
        "tax_rate": _money(sub.tax_rate),
        "cgst_amount": _money(sub.cgst_amount),
        "sgst_amount": _money(sub.sgst_amount),
        "igst_amount": _money(sub.igst_amount),
        "tax_amount": _money(sub.tax_amount),
        "total_amount": _money(sub.total_amount),
        "auto_renew": sub.auto_renew,
        "cancellation_reason": sub.cancellation_reason,
        "cancelled_at": _iso(sub.cancelled_at),
    }


def line_item_to_dict(item) -> dict:
    return {
        "id": item.id,
        "description": item.description,
        "metric_name": item.metric_name,
        "quantity": _decimal(item.quantity),
        "unit_price": _decimal(item.unit_price),
        "amount": _money(item.amount),
        "tax_rate": _money(item.tax_rate),
        "cgst_amount": _money(item.cgst_amount),
        "sgst_amount": _money(item.sgst_amount),
        "igst_amount": _money(item.igst_amount),
        "tax_amount": _money(item.tax_amount),
    }


def invoice_to_dict(invoice, with_items: bool = True) -> dict:
    data = {
        "id": invoice.id,
        "tenant_id": invoice.tenant_id,
        "subscription_id": invoice.subscription_id,
        "invoice_number": invoice.invoice_number,
        "invoice_type": invoice.invoice_type,
        "period_key": invoice.period_key,
        "period_start": _iso(invoice.period_start),
        "period_end": _iso(invoice.period_end),
        "invoice_date": _iso(invoice.invoice_date),
        "due_date": _iso(invoice.due_date),
        "currency": invoice.currency,
        "subtotal": _money(invoice.subtotal),
        "discount_amount": _money(invoice.discount_amount),
        "tax_rate": _money(invoice.tax_rate),
        "cgst_amount": _money(invoice.cgst_amount),
        "sgst_amount": _money(invoice.sgst_amount),
        "igst_amount": _money(invoice.igst_amount),
        "tax_amount": _money(invoice.tax_amount),
        "total_amount": _money(invoice.total_amount),
        "paid_amount": _money(invoice.paid_amount),
        "balance_due": _money(invoice.balance_due),
        "status": invoice.status,
        "paid_at": _iso(invoice.paid_at),
        "cancelled_at": _iso(invoice.cancelled_at),
    }
    if with_items:
        data["items"] = [line_item_to_dict(item) for item in invoice.items]
    return data


def payment_to_dict(payment) -> dict:
    return {
        "id": payment.id,
        "tenant_id": payment.tenant_id,
        "invoice_id": payment.invoice_id,
        "subscription_id": payment.subscription_id,
        "gateway_name": payment.gateway_name,
        "gateway_transaction_id": payment.gateway_transaction_id,
        "amount": _money(payment.amount),
        "currency": payment.currency,
        "status": payment.status,
        "unmatched": payment.unmatched,
        "reconciliation_note": payment.reconciliation_note,
        "payment_date": _iso(payment.payment_date),
    }


def refund_to_dict(refund) -> dict:
    return {
        "id": refund.id,
        "tenant_id": refund.tenant_id,
        "payment_id": refund.payment_id,
        "invoice_id": refund.invoice_id,
        "amount": _money(refund.amount),
        "currency": refund.currency,
        "reason": refund.reason,
        "refund_type": refund.refund_type,
        "status": refund.status,
        "requested_by": refund.requested_by,
        "created_at": _iso(refund.created_at),
    }


def coupon_to_dict(coupon) -> dict:
    return {
        "id": coupon.id,
        "code": coupon.code,
        "description": coupon.description,
        "discount_type": coupon.discount_type,
        "discount_value": _money(coupon.discount_value),
        "max_discount_amount": _money(coupon.max_discount_amount),
        "valid_from": _iso(coupon.valid_from),
        "valid_until": _iso(coupon.valid_until),
        "max_uses": coupon.max_uses,
        "max_uses_per_tenant": coupon.max_uses_per_tenant,
        "times_used": coupon.times_used,
        "applicable_plan_ids": coupon.applicable_plan_ids or [],
        "min_subscription_value": _money(coupon.min_subscription_value),
        "is_active": coupon.is_active,
    }


def usage_to_dict(record) -> dict:
    return {
        "id": record.id,
        "tenant_id": record.tenant_id,
        "subscription_id": record.subscription_id,
        "metric_name": record.metric_name,
        "unit": record.unit,
        "quantity": _decimal(record.quantity),
        "unit_price": _decimal(record.unit_price),
        "period_start": _iso(record.period_start),
        "period_end": _iso(record.period_end),
        "idempotency_key": record.idempotency_key,
        "is_billed": record.is_billed,
        "billed_in_invoice_id": record.billed_in_invoice_id,
        "reverses_usage_id": record.reverses_usage_id,
        "reversal_reason": record.reversal_reason,
    }


def partner_to_dict(partner) -> dict:
    return {
        "id": partner.id,
        "name": partner.name,
        "email": partner.email,
        "commission_type": partner.commission_type,
        "commission_value": _decimal(partner.commission_value),
        "is_active": partner.is_active,
    }


def partner_tenant_to_dict(link) -> dict:
    return {
        "id": link.id,
        "partner_id": link.partner_id,
        "tenant_id": link.tenant_id,
        "custom_commission_value": _decimal(link.custom_commission_value),
    }


def commission_to_dict(commission) -> dict:
    return {
        "id": commission.id,
        "partner_id": commission.partner_id,
        "tenant_id": commission.tenant_id,
        "payment_id": commission.payment_id,
        "subscription_id": commission.subscription_id,
        "base_amount": _money(commission.base_amount),
        "commission_type": commission.commission_type,
        "commission_rate": _decimal(commission.commission_rate),
        "commission_amount": _money(commission.commission_amount),
        "status": commission.status,
        "approved_at": _iso(commission.approved_at),
        "paid_at": _iso(commission.paid_at),
        "cancelled_at": _iso(commission.cancelled_at),
    }
