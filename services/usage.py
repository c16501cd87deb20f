"""Usage metering: idempotent recording and per-period aggregation."""

from __future__ import annotations

import datetime
import logging
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from errors import NotFoundError, StateConflictError, ValidationError
from extensions import db
from models import TERMINAL_SUBSCRIPTION_STATUSES, Subscription, UsageRecord
from services.audit import log_action
from services.transaction import restart_transaction, transactional
from utils import money, parse_date, parse_decimal, utc_today

logger = logging.getLogger(__name__)


def usage_idempotency_key(
    tenant_id: int,
    metric_name: str,
    period_start: datetime.date,
    period_end: datetime.date,
    external_event_id: str,
) -> str:
    return f"{tenant_id}:{metric_name}:{period_start.isoformat()}:{period_end.isoformat()}:{external_event_id}"


def _coerce_date(value, field: str) -> datetime.date:
    if isinstance(value, datetime.date):
        return value
    parsed = parse_date(value)
    if parsed is None:
        raise ValidationError(f"{field} must be a YYYY-MM-DD date.")
    return parsed


def _clean_item(tenant_id: int, item: dict) -> dict:
    metric_name = (item.get("metric_name") or "").strip()
    if not metric_name:
        raise ValidationError("metric_name is required.")
    quantity = parse_decimal(item.get("quantity"))
    if quantity is None or quantity < 0:
        raise ValidationError("quantity must be a non-negative number.")
    unit_price = parse_decimal(item.get("unit_price"))
    if unit_price is None or unit_price < 0:
        raise ValidationError("unit_price must be a non-negative number.")
    period_start = _coerce_date(item.get("period_start"), "period_start")
    period_end = _coerce_date(item.get("period_end"), "period_end")
    if period_end < period_start:
        raise ValidationError("period_end must not be before period_start.")
    subscription_id = item.get("subscription_id")
    if not subscription_id:
        raise ValidationError("subscription_id is required.")

    key = item.get("idempotency_key")
    if not key and item.get("external_event_id"):
        key = usage_idempotency_key(
            tenant_id, metric_name, period_start, period_end, str(item["external_event_id"])
        )
    return {
        "subscription_id": subscription_id,
        "metric_name": metric_name,
        "unit": item.get("unit") or "unit",
        "quantity": quantity,
        "unit_price": unit_price,
        "period_start": period_start,
        "period_end": period_end,
        "idempotency_key": key or None,
    }


def _check_subscription(tenant_id: int, subscription_id: int) -> Subscription:
    sub = db.session.get(Subscription, subscription_id)
    if sub is None or sub.tenant_id != tenant_id:
        raise NotFoundError(f"Subscription {subscription_id} not found.")
    if sub.status in TERMINAL_SUBSCRIPTION_STATUSES:
        raise StateConflictError(f"Subscription {subscription_id} is {sub.status}.")
    return sub


def find_usage_by_key(tenant_id: int, idempotency_key: str) -> Optional[UsageRecord]:
    return UsageRecord.query.filter_by(tenant_id=tenant_id, idempotency_key=idempotency_key).first()


def _insert_items(tenant_id: int, items: list[dict]) -> list[tuple[UsageRecord, bool]]:
    results: list[tuple[UsageRecord, bool]] = []
    for fields in items:
        if fields["idempotency_key"]:
            existing = find_usage_by_key(tenant_id, fields["idempotency_key"])
            if existing is not None:
                results.append((existing, False))
                continue
        record = UsageRecord(tenant_id=tenant_id, is_billed=False, **fields)
        db.session.add(record)
        db.session.flush()
        results.append((record, True))
    return results


@transactional
def record_usage_batch(tenant_id: int, items: Iterable[dict]) -> list[tuple[UsageRecord, bool]]:
    """Record several usage items in one transaction.

    Returns ``(record, created)`` pairs.  Items carrying an idempotency key
    (or an ``external_event_id`` from which one is derived) that was already
    recorded return the existing row instead of inserting a duplicate.
    """
    cleaned = [_clean_item(tenant_id, item) for item in items]
    if not cleaned:
        raise ValidationError("At least one usage record is required.")
    for sub_id in {fields["subscription_id"] for fields in cleaned}:
        _check_subscription(tenant_id, sub_id)

    try:
        results = _insert_items(tenant_id, cleaned)
    except IntegrityError:
        # A concurrent delivery inserted one of the keys first; the retry
        # finds it through the pre-check.
        restart_transaction()
        results = _insert_items(tenant_id, cleaned)

    created = sum(1 for _record, was_created in results if was_created)
    if created:
        logger.info("Recorded %s usage record(s) for tenant %s", created, tenant_id)
    if created < len(results):
        logger.info("Skipped %s duplicate usage record(s) for tenant %s", len(results) - created, tenant_id)
    return results


def record_usage(
    tenant_id: int,
    subscription_id: int,
    metric_name: str,
    quantity,
    unit_price,
    period_start,
    period_end,
    *,
    idempotency_key: Optional[str] = None,
    external_event_id: Optional[str] = None,
    unit: Optional[str] = None,
) -> tuple[UsageRecord, bool]:
    """Record one metered quantity; see :func:`record_usage_batch`."""
    return record_usage_batch(
        tenant_id,
        [{
            "subscription_id": subscription_id,
            "metric_name": metric_name,
            "quantity": quantity,
            "unit_price": unit_price,
            "period_start": period_start,
            "period_end": period_end,
            "idempotency_key": idempotency_key,
            "external_event_id": external_event_id,
            "unit": unit,
        }],
    )[0]


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------

def unbilled_records(
    tenant_id: int,
    subscription_id: int,
    period_start: datetime.date,
    period_end: datetime.date,
) -> list[UsageRecord]:
    """Unbilled records whose own period lies inside ``[period_start, period_end]``."""
    return (
        UsageRecord.query.filter(
            UsageRecord.tenant_id == tenant_id,
            UsageRecord.subscription_id == subscription_id,
            UsageRecord.is_billed.is_(False),
            UsageRecord.period_start >= period_start,
            UsageRecord.period_end <= period_end,
        )
        .order_by(UsageRecord.id)
        .all()
    )


def summarize(records: Iterable[UsageRecord]) -> dict[str, dict]:
    """Total quantity and amount per metric; reversal records count negatively."""
    totals: dict[str, dict] = {}
    for record in records:
        sign = -1 if record.is_reversal else 1
        entry = totals.setdefault(
            record.metric_name,
            {"total_quantity": Decimal("0"), "total_amount": Decimal("0"), "unit": record.unit},
        )
        entry["total_quantity"] += sign * Decimal(record.quantity)
        entry["total_amount"] += sign * Decimal(record.quantity) * Decimal(record.unit_price)
    for entry in totals.values():
        entry["total_amount"] = money(entry["total_amount"])
    return totals


def aggregate_usage(
    tenant_id: int,
    subscription_id: int,
    period_start: datetime.date,
    period_end: datetime.date,
) -> dict[str, dict]:
    """Return ``{metric_name: {total_quantity, total_amount, unit}}`` over unbilled usage."""
    if period_end < period_start:
        raise ValidationError("period_end must not be before period_start.")
    return summarize(unbilled_records(tenant_id, subscription_id, period_start, period_end))


@transactional
def mark_billed(usage_ids: Iterable[int], invoice_id: int) -> int:
    """Flag exactly *usage_ids* as billed on *invoice_id*.

    All-or-nothing: if any id is unknown or already billed nothing changes.
    """
    ids = sorted(set(usage_ids))
    if not ids:
        return 0
    result = db.session.execute(
        update(UsageRecord)
        .where(UsageRecord.id.in_(ids), UsageRecord.is_billed.is_(False))
        .values(is_billed=True, billed_in_invoice_id=invoice_id)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != len(ids):
        logger.warning(
            "Refusing to bill usage %s on invoice %s: %s of %s still unbilled",
            ids, invoice_id, result.rowcount, len(ids),
        )
        raise StateConflictError("Some usage records are already billed or do not exist.")
    for record in UsageRecord.query.filter(UsageRecord.id.in_(ids)):
        db.session.expire(record, ["is_billed", "billed_in_invoice_id"])
    return len(ids)


@transactional
def reverse_usage(usage_id: int, reason: str, tenant_id: Optional[int] = None) -> UsageRecord:
    """Offset a usage record with a reversal instead of editing it.

    A reversal of an already billed record is dated today so it lands in the
    next usage invoice as a credit; an unbilled record is netted out within
    its own period.
    """
    original = db.session.get(UsageRecord, usage_id)
    if original is None or (tenant_id is not None and original.tenant_id != tenant_id):
        raise NotFoundError(f"Usage record {usage_id} not found.")
    if original.is_reversal:
        raise ValidationError("A reversal record cannot itself be reversed.")
    if not (reason or "").strip():
        raise ValidationError("A reversal reason is required.")
    if UsageRecord.query.filter_by(reverses_usage_id=original.id).first():
        raise StateConflictError(f"Usage record {usage_id} is already reversed.")

    if original.is_billed:
        period_start = period_end = utc_today()
    else:
        period_start, period_end = original.period_start, original.period_end

    reversal = UsageRecord(
        tenant_id=original.tenant_id,
        subscription_id=original.subscription_id,
        metric_name=original.metric_name,
        unit=original.unit,
        quantity=original.quantity,
        unit_price=original.unit_price,
        period_start=period_start,
        period_end=period_end,
        is_billed=False,
        reverses_usage_id=original.id,
        reversal_reason=reason.strip(),
    )
    db.session.add(reversal)
    try:
        db.session.flush()
    except IntegrityError:
        restart_transaction()
        raise StateConflictError(f"Usage record {usage_id} is already reversed.") from None

    log_action(
        "reverse", "usage_record", original.id,
        after={"reversal_id": reversal.id, "reason": reversal.reversal_reason},
        tenant_id=original.tenant_id,
    )
    logger.info("Reversed usage record %s with %s", original.id, reversal.id)
    return reversal
