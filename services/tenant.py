"""Tenant context and data isolation services."""

from __future__ import annotations

from typing import Optional

from flask import abort, current_app, g
from sqlalchemy import event

from config_models import BillingConfig, TenantBillingContext
from errors import NotFoundError
from extensions import db
from models import Tenant


def get_current_tenant():
    """Return the active Tenant object from ``g``, or None."""
    return getattr(g, "current_tenant", None)


def get_current_tenant_id() -> Optional[int]:
    """Return the active tenant_id from ``g``, or None."""
    tenant = get_current_tenant()
    return tenant.id if tenant else None


def require_tenant() -> int:
    """Return the current tenant_id or abort with 403."""
    tid = get_current_tenant_id()
    if tid is None:
        abort(403, description="No tenant selected.")
    return tid


def tenant_query(model):
    """Return a query on *model* filtered to the current tenant.

    Usage::

        invoices = tenant_query(Invoice).filter_by(status="pending").all()
    """
    tid = require_tenant()
    return model.query.filter_by(tenant_id=tid)


def tenant_get_or_404(model, obj_id):
    """Fetch a single object by PK, verifying it belongs to the current tenant."""
    tid = require_tenant()
    obj = db.session.get(model, obj_id)
    if obj is None or (hasattr(obj, "tenant_id") and obj.tenant_id != tid):
        raise NotFoundError(f"{model.__name__} {obj_id} not found.")
    return obj


# ---------------------------------------------------------------------------
# Billing context
# ---------------------------------------------------------------------------

def build_billing_context(tenant: Tenant, billing: BillingConfig) -> TenantBillingContext:
    """Resolve platform defaults plus the tenant's override block."""
    overrides = billing.tenants.get(tenant.slug)

    def pick(name):
        value = getattr(overrides, name) if overrides else None
        return value if value is not None else getattr(billing, name)

    return TenantBillingContext(
        tenant_id=tenant.id,
        tenant_state_code=tenant.state_code,
        platform_state_code=billing.platform_state_code,
        tax_rate=pick("tax_rate"),
        currency=pick("currency"),
        invoice_number_pattern=pick("invoice_number_pattern"),
        invoice_due_days=pick("invoice_due_days"),
        grace_period_days=pick("grace_period_days"),
    )


def billing_context_for(tenant_id: int) -> TenantBillingContext:
    """Build a context outside a request (CLI jobs, payment webhooks)."""
    tenant = db.session.get(Tenant, tenant_id)
    if tenant is None:
        raise NotFoundError(f"Tenant {tenant_id} not found.")
    return build_billing_context(tenant, current_app.config["BILLING_CONFIG"])


def get_billing_context() -> TenantBillingContext:
    """Return the request's context, building it on first use."""
    ctx = getattr(g, "billing_context", None)
    if ctx is None:
        tid = require_tenant()
        ctx = billing_context_for(tid)
        g.billing_context = ctx
    return ctx


# ---------------------------------------------------------------------------
# Cross-tenant write guard
# ---------------------------------------------------------------------------

class TenantSecurityError(Exception):
    """Raised when a cross-tenant write is attempted."""


def _enforce_tenant_on_flush(session, flush_context):
    """Verify that all new/dirty tenant-scoped objects match the current tenant.

    This is a safety net; the primary isolation is ``tenant_query()`` and
    the services taking an explicit ``tenant_id``.
    """
    try:
        tid = getattr(g, "_tenant_id", None)
    except RuntimeError:
        # Outside app context
        return

    if tid is None:
        return

    for obj in list(session.new) + list(session.dirty):
        obj_tid = getattr(obj, "tenant_id", None)
        if obj_tid is not None and obj_tid != tid:
            raise TenantSecurityError(
                f"Cross-tenant write blocked: {type(obj).__name__} "
                f"has tenant_id={obj_tid}, active tenant is {tid}"
            )


def register_tenant_guards(app):
    """Register the after_flush event listener.  Call once during app init."""
    if not event.contains(db.session, "after_flush", _enforce_tenant_on_flush):
        event.listen(db.session, "after_flush", _enforce_tenant_on_flush)
