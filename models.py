"""SQLAlchemy models for the subscription & billing ledger."""

from __future__ import annotations

from decimal import Decimal

from sqlalchemy import text

from extensions import db
from utils import utc_now

# ---------------------------------------------------------------------------
# Status vocabularies
# ---------------------------------------------------------------------------

VALID_BILLING_CYCLES = {"monthly", "quarterly", "yearly", "one_time"}
VALID_DISCOUNT_TYPES = {"percentage", "fixed"}
VALID_SUBSCRIPTION_STATUSES = {
    "pending", "trial", "active", "past_due", "suspended", "cancelled", "expired",
}
TERMINAL_SUBSCRIPTION_STATUSES = {"cancelled", "expired"}
VALID_INVOICE_STATUSES = {"pending", "partially_paid", "paid", "overdue", "cancelled"}
VALID_INVOICE_TYPES = {"subscription", "usage"}
VALID_PAYMENT_STATUSES = {"completed"}
VALID_REFUND_TYPES = {"full", "partial"}
VALID_REFUND_STATUSES = {"pending", "processing", "succeeded", "failed"}
VALID_COMMISSION_STATUSES = {"pending", "approved", "paid", "cancelled"}

_LIVE_SUBSCRIPTION_CLAUSE = "status NOT IN ('cancelled', 'expired')"


# ---------------------------------------------------------------------------
# Tenant
# ---------------------------------------------------------------------------

class Tenant(db.Model):
    """An isolated business owning its own subscriptions, invoices and usage.

    Tenant management lives outside the billing core; only the fields the
    ledger reads are mapped here.
    """
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    slug = db.Column(db.String(60), unique=True, nullable=False)
    state_code = db.Column(db.String(10), nullable=False)
    billing_email = db.Column(db.String(120))
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)


# ---------------------------------------------------------------------------
# Plan catalog
# ---------------------------------------------------------------------------

class Plan(db.Model):
    """A purchasable tier.  Deactivated rather than deleted once referenced."""
    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(60), unique=True, nullable=False)
    name = db.Column(db.String(120), nullable=False)
    description = db.Column(db.Text)
    billing_cycle = db.Column(db.String(20), nullable=False, default="monthly")
    price = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="INR")
    limits = db.Column(db.JSON, default=dict)
    trial_days = db.Column(db.Integer, nullable=False, default=0)
    is_active = db.Column(db.Boolean, default=True)
    sort_order = db.Column(db.Integer, default=0)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        db.CheckConstraint("price >= 0", name="ck_plan_price_non_negative"),
        db.CheckConstraint("trial_days >= 0", name="ck_plan_trial_days_non_negative"),
    )


# ---------------------------------------------------------------------------
# Coupons
# ---------------------------------------------------------------------------

class Coupon(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(60), unique=True, nullable=False)
    description = db.Column(db.String(255))
    discount_type = db.Column(db.String(20), nullable=False)
    discount_value = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False)
    max_discount_amount = db.Column(db.Numeric(12, 2, asdecimal=True))
    valid_from = db.Column(db.DateTime)
    valid_until = db.Column(db.DateTime)
    max_uses = db.Column(db.Integer)  # NULL = unlimited
    max_uses_per_tenant = db.Column(db.Integer)  # NULL = unlimited
    times_used = db.Column(db.Integer, nullable=False, default=0)
    applicable_plan_ids = db.Column(db.JSON, default=list)  # empty = all plans
    min_subscription_value = db.Column(db.Numeric(12, 2, asdecimal=True), default=Decimal("0"))
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    redemptions = db.relationship("CouponRedemption", backref="coupon")

    __table_args__ = (
        db.CheckConstraint(
            "max_uses IS NULL OR times_used <= max_uses",
            name="ck_coupon_times_used_within_max",
        ),
        db.CheckConstraint("discount_value >= 0", name="ck_coupon_discount_non_negative"),
    )


class CouponRedemption(db.Model):
    """One successful application of a coupon to a subscription."""
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenant.id"), nullable=False, index=True)
    coupon_id = db.Column(db.Integer, db.ForeignKey("coupon.id"), nullable=False)
    subscription_id = db.Column(db.Integer, db.ForeignKey("subscription.id"), nullable=False)
    discount_amount = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False)
    used_at = db.Column(db.DateTime, default=utc_now)

    __table_args__ = (
        db.UniqueConstraint("coupon_id", "subscription_id", name="uq_coupon_redemption_subscription"),
        db.Index("ix_coupon_redemption_coupon_tenant", "coupon_id", "tenant_id"),
    )


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------

class Subscription(db.Model):
    """A tenant's contract for a plan.

    Mutated only through the subscription state machine; terminal rows are
    kept for history.  The partial unique index allows at most one live
    (non-terminal) subscription per tenant.
    """
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenant.id"), nullable=False, index=True)
    plan_id = db.Column(db.Integer, db.ForeignKey("plan.id"), nullable=False)
    coupon_id = db.Column(db.Integer, db.ForeignKey("coupon.id"))
    status = db.Column(db.String(20), nullable=False, default="pending")
    billing_cycle = db.Column(db.String(20), nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="INR")
    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date)
    trial_end_date = db.Column(db.Date)
    next_billing_date = db.Column(db.Date)
    base_price = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False)
    discount_amount = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False, default=Decimal("0"))
    tax_rate = db.Column(db.Numeric(5, 2, asdecimal=True), nullable=False, default=Decimal("0"))
    cgst_amount = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False, default=Decimal("0"))
    sgst_amount = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False, default=Decimal("0"))
    igst_amount = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False, default=Decimal("0"))
    tax_amount = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False, default=Decimal("0"))
    total_amount = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False)
    auto_renew = db.Column(db.Boolean, default=True)
    cancellation_reason = db.Column(db.Text)
    cancelled_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    tenant = db.relationship("Tenant")
    plan = db.relationship("Plan")
    coupon = db.relationship("Coupon")

    __table_args__ = (
        db.Index(
            "uq_subscription_live_tenant",
            "tenant_id",
            unique=True,
            sqlite_where=text(_LIVE_SUBSCRIPTION_CLAUSE),
            postgresql_where=text(_LIVE_SUBSCRIPTION_CLAUSE),
        ),
        db.Index("ix_subscription_status", "status"),
        db.Index("ix_subscription_next_billing_date", "next_billing_date"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SUBSCRIPTION_STATUSES


# ---------------------------------------------------------------------------
# Usage metering
# ---------------------------------------------------------------------------

class UsageRecord(db.Model):
    """A metered quantity in a period.

    Rows with ``reverses_usage_id`` set are reversal records; they count
    negatively when aggregated.  Billed rows are never updated.
    """
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenant.id"), nullable=False, index=True)
    subscription_id = db.Column(db.Integer, db.ForeignKey("subscription.id"), nullable=False)
    metric_name = db.Column(db.String(80), nullable=False)
    unit = db.Column(db.String(30), default="unit")
    quantity = db.Column(db.Numeric(18, 4, asdecimal=True), nullable=False)
    unit_price = db.Column(db.Numeric(12, 4, asdecimal=True), nullable=False)
    period_start = db.Column(db.Date, nullable=False)
    period_end = db.Column(db.Date, nullable=False)
    idempotency_key = db.Column(db.String(255))
    is_billed = db.Column(db.Boolean, nullable=False, default=False)
    billed_in_invoice_id = db.Column(db.Integer, db.ForeignKey("invoice.id"))
    reverses_usage_id = db.Column(db.Integer, db.ForeignKey("usage_record.id"))
    reversal_reason = db.Column(db.String(255))
    recorded_at = db.Column(db.DateTime, default=utc_now)

    subscription = db.relationship("Subscription")

    __table_args__ = (
        db.CheckConstraint("quantity >= 0", name="ck_usage_quantity_non_negative"),
        db.CheckConstraint("unit_price >= 0", name="ck_usage_unit_price_non_negative"),
        db.UniqueConstraint("tenant_id", "idempotency_key", name="uq_usage_idempotency_key"),
        db.UniqueConstraint("reverses_usage_id", name="uq_usage_single_reversal"),
        db.Index(
            "ix_usage_unbilled_period",
            "tenant_id", "subscription_id", "is_billed", "period_start", "period_end",
        ),
    )

    @property
    def is_reversal(self) -> bool:
        return self.reverses_usage_id is not None


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------

class Invoice(db.Model):
    """A billable statement.  Append-only apart from payment/status fields."""
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenant.id"), nullable=False, index=True)
    subscription_id = db.Column(db.Integer, db.ForeignKey("subscription.id"))
    invoice_number = db.Column(db.String(40), nullable=False)
    invoice_type = db.Column(db.String(20), nullable=False, default="subscription")
    period_key = db.Column(db.String(60), nullable=False)
    period_start = db.Column(db.Date)
    period_end = db.Column(db.Date)
    invoice_date = db.Column(db.Date, nullable=False)
    due_date = db.Column(db.Date, nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="INR")
    subtotal = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False, default=Decimal("0"))
    discount_amount = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False, default=Decimal("0"))
    tax_rate = db.Column(db.Numeric(5, 2, asdecimal=True), nullable=False, default=Decimal("0"))
    cgst_amount = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False, default=Decimal("0"))
    sgst_amount = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False, default=Decimal("0"))
    igst_amount = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False, default=Decimal("0"))
    tax_amount = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False, default=Decimal("0"))
    total_amount = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False, default=Decimal("0"))
    paid_amount = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False, default=Decimal("0"))
    balance_due = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False, default=Decimal("0"))
    status = db.Column(db.String(20), nullable=False, default="pending")
    paid_at = db.Column(db.DateTime)
    cancelled_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    subscription = db.relationship("Subscription")
    items = db.relationship(
        "InvoiceLineItem",
        backref="invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceLineItem.id",
    )

    __table_args__ = (
        db.UniqueConstraint("tenant_id", "invoice_number", name="uq_invoice_number_tenant"),
        db.UniqueConstraint("subscription_id", "period_key", name="uq_invoice_subscription_period"),
        db.CheckConstraint("paid_amount <= total_amount", name="ck_invoice_not_overpaid"),
        db.Index("ix_invoice_status", "status"),
    )


class InvoiceLineItem(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenant.id"), index=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoice.id"), nullable=False)
    description = db.Column(db.String(255), nullable=False)
    metric_name = db.Column(db.String(80))
    quantity = db.Column(db.Numeric(18, 4, asdecimal=True), nullable=False, default=Decimal("1"))
    unit_price = db.Column(db.Numeric(12, 4, asdecimal=True), nullable=False)
    amount = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False)
    tax_rate = db.Column(db.Numeric(5, 2, asdecimal=True), default=Decimal("0"))
    cgst_amount = db.Column(db.Numeric(12, 2, asdecimal=True), default=Decimal("0"))
    sgst_amount = db.Column(db.Numeric(12, 2, asdecimal=True), default=Decimal("0"))
    igst_amount = db.Column(db.Numeric(12, 2, asdecimal=True), default=Decimal("0"))
    tax_amount = db.Column(db.Numeric(12, 2, asdecimal=True), default=Decimal("0"))


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------

class Payment(db.Model):
    """A gateway-confirmed transfer of funds.

    ``gateway_transaction_id`` is unique, which makes recording at-most-once.
    Payments that cannot be matched are still stored with ``unmatched=True``.
    """
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenant.id"), index=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoice.id"))
    subscription_id = db.Column(db.Integer, db.ForeignKey("subscription.id"))
    gateway_name = db.Column(db.String(40), nullable=False)
    gateway_transaction_id = db.Column(db.String(120), unique=True, nullable=False)
    amount = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="INR")
    status = db.Column(db.String(20), nullable=False, default="completed")
    unmatched = db.Column(db.Boolean, nullable=False, default=False)
    reconciliation_note = db.Column(db.Text)
    payment_date = db.Column(db.DateTime, default=utc_now)
    created_at = db.Column(db.DateTime, default=utc_now)

    invoice = db.relationship("Invoice")
    subscription = db.relationship("Subscription")

    __table_args__ = (
        db.CheckConstraint("amount > 0", name="ck_payment_amount_positive"),
        db.Index("ix_payment_unmatched", "unmatched"),
    )


class RefundRequest(db.Model):
    """A request to return all or part of a payment.

    Paying the refund out happens at the gateway; the ledger keeps the
    request and its status.
    """
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenant.id"), index=True)
    payment_id = db.Column(db.Integer, db.ForeignKey("payment.id"), nullable=False, index=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoice.id"))
    amount = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="INR")
    reason = db.Column(db.Text, nullable=False)
    refund_type = db.Column(db.String(20), nullable=False)
    status = db.Column(db.String(20), nullable=False, default="pending")
    requested_by = db.Column(db.String(120), nullable=False, default="system")
    created_at = db.Column(db.DateTime, default=utc_now)

    payment = db.relationship("Payment", backref="refund_requests")

    __table_args__ = (
        db.CheckConstraint("amount > 0", name="ck_refund_amount_positive"),
    )


# ---------------------------------------------------------------------------
# Partners & commissions
# ---------------------------------------------------------------------------

class Partner(db.Model):
    """A reseller or affiliate earning commission on tenant payments."""
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=False)
    commission_type = db.Column(db.String(20), nullable=False, default="percentage")
    commission_value = db.Column(db.Numeric(12, 4, asdecimal=True), nullable=False)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    tenant_links = db.relationship("PartnerTenant", backref="partner", cascade="all, delete-orphan")


class PartnerTenant(db.Model):
    """Links a tenant to the partner that referred it (one partner per tenant)."""
    id = db.Column(db.Integer, primary_key=True)
    partner_id = db.Column(db.Integer, db.ForeignKey("partner.id"), nullable=False)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenant.id"), nullable=False, unique=True)
    custom_commission_value = db.Column(db.Numeric(12, 4, asdecimal=True))
    created_at = db.Column(db.DateTime, default=utc_now)


class Commission(db.Model):
    """Earnings owed to a partner for exactly one payment."""
    id = db.Column(db.Integer, primary_key=True)
    partner_id = db.Column(db.Integer, db.ForeignKey("partner.id"), nullable=False, index=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenant.id"), index=True)
    payment_id = db.Column(db.Integer, db.ForeignKey("payment.id"), unique=True, nullable=False)
    subscription_id = db.Column(db.Integer, db.ForeignKey("subscription.id"))
    base_amount = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False)
    commission_type = db.Column(db.String(20), nullable=False)
    commission_rate = db.Column(db.Numeric(12, 4, asdecimal=True), nullable=False)
    commission_amount = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False)
    status = db.Column(db.String(20), nullable=False, default="pending")
    approved_at = db.Column(db.DateTime)
    paid_at = db.Column(db.DateTime)
    cancelled_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    partner = db.relationship("Partner")
    payment = db.relationship("Payment")

    __table_args__ = (
        db.Index("ix_commission_status", "status"),
    )


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------

class AuditLog(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenant.id"), index=True)
    actor = db.Column(db.String(120), nullable=False, default="system")
    action = db.Column(db.String(80), nullable=False)
    entity_type = db.Column(db.String(80), nullable=False)
    entity_id = db.Column(db.Integer)
    before = db.Column(db.JSON)
    after = db.Column(db.JSON)
    created_at = db.Column(db.DateTime, default=utc_now)

    __table_args__ = (
        db.Index("ix_audit_log_created_at", "created_at"),
        db.Index("ix_audit_log_entity", "entity_type", "entity_id"),
    )


# ---------------------------------------------------------------------------
# Numbering
# ---------------------------------------------------------------------------

class NumberSequence(db.Model):
    """Sequence counters per entity type, scope, and tenant."""
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenant.id"), index=True)
    entity_type = db.Column(db.String(40), nullable=False)
    scope_key = db.Column(db.String(120), default="")
    last_value = db.Column(db.Integer, default=0)

    __table_args__ = (
        db.UniqueConstraint("tenant_id", "entity_type", "scope_key", name="uq_number_sequence"),
    )
