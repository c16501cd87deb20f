"""Audit logging service."""

from __future__ import annotations

from typing import Optional

from extensions import db
from models import AuditLog
from serializers import jsonable
from services.auth import get_current_actor
from services.tenant import get_current_tenant_id


def log_action(
    action: str,
    entity_type: str,
    entity_id: Optional[int],
    before: Optional[dict] = None,
    after: Optional[dict] = None,
    tenant_id: Optional[int] = None,
) -> None:
    """Record an audit log entry.

    NOTE: This does NOT commit; the entry belongs to the caller's transaction.
    """
    db.session.add(
        AuditLog(
            tenant_id=tenant_id if tenant_id is not None else get_current_tenant_id(),
            actor=get_current_actor(),
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            before=jsonable(before) if before is not None else None,
            after=jsonable(after) if after is not None else None,
        )
    )
