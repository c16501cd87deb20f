"""Tag-based document numbering, sequential per tenant.

Supported tags:
  [YYYY]    4-digit year
  [YY]      2-digit year
  [MM]      month (01-12)
  [DD]      day (01-31)
  [C+]      counter; number of C's = minimum digit width (resets per scope)

Everything outside brackets is literal text, as is any unknown tag.
Example: ``INV-[YYYY]-[CCCCC]`` -> ``INV-2026-00001``
"""

from __future__ import annotations

import datetime
import re
from typing import Optional

from extensions import db
from models import NumberSequence
from utils import utc_today

_TAG_RE = re.compile(r"\[([A-Z]+)\]")

_DATE_TAGS = {
    "YYYY": lambda day: f"{day.year:04d}",
    "YY": lambda day: f"{day.year % 100:02d}",
    "MM": lambda day: f"{day.month:02d}",
    "DD": lambda day: f"{day.day:02d}",
}


def _is_counter(tag: str) -> bool:
    return set(tag) == {"C"}


def _next_sequence(tenant_id: int, entity_type: str, scope_key: str) -> int:
    """Atomically increment and return the next sequence value."""
    seq = NumberSequence.query.filter_by(
        tenant_id=tenant_id, entity_type=entity_type, scope_key=scope_key
    ).with_for_update().first()
    if not seq:
        seq = NumberSequence(
            tenant_id=tenant_id, entity_type=entity_type, scope_key=scope_key, last_value=1
        )
        db.session.add(seq)
        db.session.flush()
        return 1
    # SQL-side increment so concurrent writers serialize on the row
    seq.last_value = NumberSequence.last_value + 1
    db.session.flush()
    db.session.refresh(seq)
    return seq.last_value


def _counter_width(pattern: str) -> int:
    for tag in _TAG_RE.findall(pattern):
        if _is_counter(tag):
            return len(tag)
    raise ValueError(f"Number pattern {pattern!r} has no counter tag")


def generate_number(
    entity_type: str,
    pattern: str,
    tenant_id: int,
    *,
    on_date: Optional[datetime.date] = None,
) -> str:
    """Generate the next formatted number for *entity_type* in *tenant_id*.

    Date tags form the counter scope, so ``[YYYY]`` restarts numbering
    every year.  Only the first counter tag is filled.
    """
    width = _counter_width(pattern or "")
    day = on_date or utc_today()

    scope_key = "-".join(
        _DATE_TAGS[tag](day) for tag in _TAG_RE.findall(pattern) if tag in _DATE_TAGS
    )
    counter = str(_next_sequence(tenant_id, entity_type, scope_key)).zfill(width)
    counter_used = False

    def render(match: re.Match) -> str:
        nonlocal counter_used
        tag = match.group(1)
        if tag in _DATE_TAGS:
            return _DATE_TAGS[tag](day)
        if _is_counter(tag) and not counter_used:
            counter_used = True
            return counter
        return match.group(0)

    return _TAG_RE.sub(render, pattern)
