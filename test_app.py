"""Test suite for the subscription & billing ledger.

Tests cover: configuration, tax, coupons, plan catalog, the subscription
state machine, usage metering, invoicing, payments, commissions, the
scheduled jobs, and the HTTP API with its error mapping.
"""

import datetime
import logging
import os
import threading
from decimal import Decimal

import pytest
import requests
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

os.environ["DATABASE_URI"] = "sqlite://"  # In-memory database for tests
os.environ["APP_SECRET_KEY"] = "test-secret-key"
os.environ["BILLING_PLATFORM_STATE_CODE"] = "29"
os.environ["RATELIMIT_ENABLED"] = "false"
os.environ["CONFIG_PATH"] = "does-not-exist.yaml"

from app import create_app
from config import ConfigError, parse_config
from config_models import BillingConfig, GatewayConfig, TenantBillingOverrides
from errors import (
    CouponExhaustedError,
    CouponInvalidError,
    ExternalDependencyError,
    IllegalTransitionError,
    InvalidPlanError,
    InvariantViolationError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from extensions import db
from models import (
    AuditLog,
    Commission,
    Coupon,
    CouponRedemption,
    Invoice,
    Partner,
    Payment,
    Plan,
    RefundRequest,
    Subscription,
    Tenant,
    UsageRecord,
)
from services import invoice as invoice_service
from services import payment as payment_service
from services import usage as usage_service
from services.billing_jobs import (
    cancel_lapsed_subscriptions,
    expire_trials,
    generate_usage_invoices,
    mark_overdue_invoices,
    month_period,
    process_renewals,
    run_daily,
)
from services.commission import (
    calculate_commission_amount,
    calculate_commission_for_payment,
    calculate_pending_commissions,
    create_partner,
    link_partner_tenant,
    partner_commission_summary,
    transition_commission,
)
from services.coupon import apply_coupon, preview_coupon, redeem_coupon, validate_coupon
from services.events import EVENT_SINK_KEY, EventSink
from services.gateway import GATEWAY_KEY, HttpPaymentGateway, PaymentGateway
from services.invoice import (
    cancel_invoice,
    generate_subscription_invoice,
    generate_usage_invoice,
    mark_invoice_overdue,
    mark_paid,
)
from services.numbering import generate_number
from services.payment import reconcile_payment, record_payment, request_refund
from services.plan_catalog import create_plan, deactivate_plan, get_purchasable_plan, update_plan
from services.subscription import (
    cancel_subscription,
    change_subscription_status,
    create_subscription,
    get_billing_metrics,
    transition,
)
from services.tax import compute_tax
from services.tenant import billing_context_for, build_billing_context
from services.usage import aggregate_usage, mark_billed, record_usage, reverse_usage
from utils import add_billing_cycle, money, parse_date, parse_decimal, safe_int, utc_today

JAN_15 = datetime.date(2025, 1, 15)
FEB_15 = datetime.date(2025, 2, 15)


class RecordingEventSink(EventSink):
    def __init__(self):
        self.events = []

    def emit(self, event_type, payload):
        self.events.append((event_type, payload))

    def types(self):
        return [event_type for event_type, _payload in self.events]


class FakeGateway(PaymentGateway):
    name = "fake"

    def __init__(self, verified=True):
        self.verified = verified
        self.calls = []

    def create_order(self, amount, currency):
        return "order_test"

    def verify_payment(self, order_ref, signature):
        self.calls.append((order_ref, signature))
        return self.verified


@pytest.fixture
def app():
    """Create application for testing."""
    application = create_app()
    application.config["TESTING"] = True
    application.config["RATELIMIT_ENABLED"] = False
    application.extensions[EVENT_SINK_KEY] = RecordingEventSink()
    application.extensions[GATEWAY_KEY] = FakeGateway()
    yield application


@pytest.fixture
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture
def events(app):
    return app.extensions[EVENT_SINK_KEY]


@pytest.fixture
def sample_data(app):
    """Create sample data for tests. Returns dict of IDs to avoid detached instance errors."""
    with app.app_context():
        home = Tenant(name="Home Tenant", slug="home", state_code="29", billing_email="billing@home.test")
        remote = Tenant(name="Remote Tenant", slug="remote", state_code="27")
        other = Tenant(name="Other Tenant", slug="other", state_code="29")
        pro = Plan(
            code="pro-monthly", name="Pro", billing_cycle="monthly",
            price=Decimal("2499.00"), currency="INR", trial_days=0,
        )
        starter = Plan(
            code="starter-trial", name="Starter", billing_cycle="monthly",
            price=Decimal("999.00"), currency="INR", trial_days=14,
        )
        yearly = Plan(
            code="pro-yearly", name="Pro Yearly", billing_cycle="yearly",
            price=Decimal("12000.00"), currency="INR", trial_days=0,
        )
        coupon = Coupon(
            code="WELCOME20", discount_type="percentage", discount_value=Decimal("20"),
            max_uses=100, times_used=0,
        )
        partner = Partner(
            name="Channel Partner", email="partner@example.com",
            commission_type="percentage", commission_value=Decimal("10"),
        )
        db.session.add_all([home, remote, other, pro, starter, yearly, coupon, partner])
        db.session.commit()
        return {
            "home_id": home.id,
            "remote_id": remote.id,
            "other_id": other.id,
            "plan_id": pro.id,
            "trial_plan_id": starter.id,
            "yearly_plan_id": yearly.id,
            "coupon_id": coupon.id,
            "partner_id": partner.id,
        }


def _subscribe(tenant_id, plan_id, coupon_code=None, **kwargs):
    kwargs.setdefault("start_date", JAN_15)
    return create_subscription(billing_context_for(tenant_id), plan_id, coupon_code, **kwargs)


def _headers(tenant_id=None, role=None, actor=None):
    headers = {}
    if tenant_id is not None:
        headers["X-Tenant-ID"] = str(tenant_id)
    if role:
        headers["X-Actor-Role"] = role
    if actor:
        headers["X-Actor"] = actor
    return headers


def _miss_first_lookup(monkeypatch, module, name):
    """Make the first pre-insert lookup miss, as when a concurrent writer
    commits the same row between our check and our insert."""
    real = getattr(module, name)
    calls = []

    def lookup(*args, **kwargs):
        calls.append(args)
        if len(calls) == 1:
            return None
        return real(*args, **kwargs)

    monkeypatch.setattr(module, name, lookup)
    return calls


# ---------------------------------------------------------------------------
# Utility functions
# ---------------------------------------------------------------------------


class TestUtilityFunctions:
    def test_money_rounds_half_up(self):
        assert money("0.005") == Decimal("0.01")
        assert money("179.925") == Decimal("179.93")
        assert money(10) == Decimal("10.00")

    def test_safe_int(self):
        assert safe_int("42") == 42
        assert safe_int(None) == 0
        assert safe_int("abc", 5) == 5

    def test_parse_decimal(self):
        assert parse_decimal("12.50") == Decimal("12.50")
        assert parse_decimal(0.1) == Decimal("0.1")
        assert parse_decimal("abc") is None
        assert parse_decimal(True) is None
        assert parse_decimal("NaN") is None

    def test_parse_date(self):
        assert parse_date("2025-01-15") == JAN_15
        assert parse_date("15.01.2025") is None
        assert parse_date(None) is None

    def test_add_billing_cycle(self):
        assert add_billing_cycle(datetime.date(2025, 1, 31), "monthly") == datetime.date(2025, 2, 28)
        assert add_billing_cycle(JAN_15, "quarterly") == datetime.date(2025, 4, 15)
        assert add_billing_cycle(datetime.date(2024, 2, 29), "yearly") == datetime.date(2025, 2, 28)
        assert add_billing_cycle(JAN_15, "one_time") is None
        with pytest.raises(ValueError):
            add_billing_cycle(JAN_15, "weekly")


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class TestConfig:
    def test_defaults(self):
        _app_cfg, billing, gateway, db_uri = parse_config({})
        assert billing.platform_state_code == "29"
        assert billing.tax_rate == Decimal("18")
        assert billing.invoice_number_pattern == "INV-[YYYY]-[CCCCC]"
        assert gateway.enabled is False
        assert db_uri == "sqlite://"

    def test_unknown_top_level_key_rejected(self):
        with pytest.raises(ConfigError):
            parse_config({"feature_toggles": {}})

    def test_unknown_billing_key_rejected(self):
        with pytest.raises(ConfigError):
            parse_config({"billing": {"tax_rte": 18}})

    def test_unknown_tenant_override_key_rejected(self):
        with pytest.raises(ConfigError):
            parse_config({"billing": {"tenants": {"home": {"discount": 5}}}})

    def test_pattern_without_counter_rejected(self):
        with pytest.raises(ConfigError):
            parse_config({"billing": {"invoice_number_pattern": "INV-[YYYY]"}})

    def test_tenant_overrides(self):
        _app_cfg, billing, _gateway, _uri = parse_config(
            {"billing": {"tenants": {"home": {"tax_rate": 12, "invoice_due_days": 30}}}}
        )
        overrides = billing.tenants["home"]
        assert overrides.tax_rate == Decimal("12")
        assert overrides.invoice_due_days == 30
        assert overrides.currency is None

    def test_billing_context_applies_overrides(self):
        billing = BillingConfig(
            platform_state_code="29",
            tenants={"home": TenantBillingOverrides(tax_rate=Decimal("12"))},
        )
        ctx = build_billing_context(Tenant(id=7, slug="home", state_code="29"), billing)
        assert ctx.tenant_id == 7
        assert ctx.tax_rate == Decimal("12")
        assert ctx.currency == "INR"
        assert ctx.grace_period_days == 7


# ---------------------------------------------------------------------------
# Tax
# ---------------------------------------------------------------------------


class TestTaxCalculator:
    def test_intra_state_split(self):
        tax = compute_tax(Decimal("1999.20"), "29", "29", Decimal("18"))
        assert tax.cgst == Decimal("179.93")
        assert tax.sgst == Decimal("179.93")
        assert tax.igst == Decimal("0.00")
        assert tax.total_tax == Decimal("359.86")
        assert tax.is_intra_state

    def test_inter_state_igst(self):
        tax = compute_tax(Decimal("1999.20"), "27", "29", Decimal("18"))
        assert tax.igst == Decimal("359.86")
        assert tax.cgst == tax.sgst == Decimal("0.00")

    def test_missing_state_code_is_inter_state(self):
        tax = compute_tax(Decimal("100"), None, "29", Decimal("18"))
        assert tax.igst == Decimal("18.00")

    def test_components_always_sum_to_total(self):
        tax = compute_tax(Decimal("100.05"), "29", "29", Decimal("18"))
        assert tax.total_tax == Decimal("18.01")
        assert tax.cgst + tax.sgst + tax.igst == tax.total_tax

    def test_negative_amount_rejected(self):
        with pytest.raises(ValidationError):
            compute_tax(Decimal("-1"), "29", "29", Decimal("18"))


# ---------------------------------------------------------------------------
# Coupons
# ---------------------------------------------------------------------------


def _coupon(**overrides):
    values = dict(
        code="TEST", discount_type="percentage", discount_value=Decimal("10"),
        max_discount_amount=None, valid_from=None, valid_until=None,
        max_uses=None, max_uses_per_tenant=None, times_used=0,
        applicable_plan_ids=[], min_subscription_value=Decimal("0"), is_active=True,
    )
    values.update(overrides)
    return Coupon(**values)


class TestCouponEngine:
    def _reason(self, coupon, plan_id=1, value="100", redemptions=0):
        with pytest.raises(CouponInvalidError) as excinfo:
            validate_coupon(coupon, plan_id, value, 1, redemptions)
        return excinfo.value.reason

    def test_valid_coupon_passes(self):
        validate_coupon(_coupon(), 1, "100", 1, 0)

    def test_rejection_reasons(self):
        now = datetime.datetime.now(datetime.timezone.utc)
        assert self._reason(_coupon(is_active=False)) == "inactive"
        assert self._reason(_coupon(valid_from=now + datetime.timedelta(days=1))) == "not_yet_valid"
        assert self._reason(_coupon(valid_until=now - datetime.timedelta(days=1))) == "expired"
        assert self._reason(_coupon(max_uses=5, times_used=5)) == "exhausted"
        assert self._reason(_coupon(max_uses_per_tenant=1), redemptions=1) == "tenant_limit_reached"
        assert self._reason(_coupon(applicable_plan_ids=[2]), plan_id=1) == "plan_not_applicable"
        assert self._reason(_coupon(min_subscription_value=Decimal("500"))) == "below_minimum_value"

    def test_exhausted_is_a_state_conflict(self):
        with pytest.raises(StateConflictError):
            validate_coupon(_coupon(max_uses=1, times_used=1), 1, "100", 1, 0)

    def test_apply_percentage_and_cap(self):
        assert apply_coupon(_coupon(discount_value=Decimal("20")), "2499.00") == Decimal("499.80")
        capped = _coupon(discount_value=Decimal("50"), max_discount_amount=Decimal("100"))
        assert apply_coupon(capped, "2499.00") == Decimal("100.00")

    def test_discount_never_exceeds_value(self):
        fixed = _coupon(discount_type="fixed", discount_value=Decimal("5000"))
        assert apply_coupon(fixed, "2499.00") == Decimal("2499.00")
        assert apply_coupon(fixed, "0") == Decimal("0.00")

    def test_redemptions_bounded_by_max_uses(self, app, sample_data):
        with app.app_context():
            db.session.add(Coupon(code="LIMITED", discount_type="fixed", discount_value=Decimal("100"),
                                  max_uses=2, times_used=0))
            db.session.commit()
            outcomes = []
            for tenant_id in (sample_data["home_id"], sample_data["remote_id"], sample_data["other_id"]):
                try:
                    _subscribe(tenant_id, sample_data["plan_id"], "LIMITED")
                    outcomes.append("ok")
                except CouponExhaustedError:
                    outcomes.append("exhausted")
            assert outcomes == ["ok", "ok", "exhausted"]
            assert Coupon.query.filter_by(code="LIMITED").one().times_used == 2
            assert CouponRedemption.query.count() == 2
            assert Subscription.query.filter_by(tenant_id=sample_data["other_id"]).count() == 0

    def test_concurrent_redemptions_bounded_by_max_uses(self, tmp_path, monkeypatch):
        # Threads need a shared on-disk database; in-memory SQLite is one connection.
        monkeypatch.setenv("DATABASE_URI", f"sqlite:///{tmp_path / 'redemptions.db'}")
        application = create_app()
        attempts, max_uses = 6, 2
        with application.app_context():
            tenants = [
                Tenant(name=f"Tenant {n}", slug=f"tenant-{n}", state_code="29") for n in range(attempts)
            ]
            plan = Plan(code="pro", name="Pro", billing_cycle="monthly", price=Decimal("2499.00"),
                        currency="INR", trial_days=0)
            coupon = Coupon(code="RUSH", discount_type="fixed", discount_value=Decimal("100"),
                            max_uses=max_uses, times_used=0)
            db.session.add_all(tenants + [plan, coupon])
            db.session.commit()
            tenant_ids = [tenant.id for tenant in tenants]
            plan_id = plan.id

        barrier = threading.Barrier(attempts, timeout=10)
        outcomes = []

        def attempt(tenant_id):
            with application.app_context():
                barrier.wait()
                try:
                    _subscribe(tenant_id, plan_id, "RUSH")
                    outcomes.append("ok")
                except CouponExhaustedError:
                    outcomes.append("exhausted")
                except Exception as exc:
                    outcomes.append(f"error: {exc!r}")

        threads = [threading.Thread(target=attempt, args=(tenant_id,)) for tenant_id in tenant_ids]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        assert sorted(outcomes) == ["exhausted"] * (attempts - max_uses) + ["ok"] * max_uses
        with application.app_context():
            assert Coupon.query.filter_by(code="RUSH").one().times_used == max_uses
            assert CouponRedemption.query.count() == max_uses
            assert Subscription.query.count() == max_uses
            db.engine.dispose()

    def test_redeem_uses_database_count_not_stale_object(self, app, sample_data):
        with app.app_context():
            coupon = Coupon(code="LASTONE", discount_type="fixed", discount_value=Decimal("10"),
                            max_uses=1, times_used=0)
            db.session.add(coupon)
            db.session.commit()
            assert coupon.times_used == 0
            # Another worker consumes the last use behind this session's back
            db.session.execute(
                update(Coupon).where(Coupon.id == coupon.id).values(times_used=1)
                .execution_options(synchronize_session=False)
            )
            with pytest.raises(CouponExhaustedError):
                redeem_coupon(coupon, sample_data["home_id"], 1, Decimal("10"))
            db.session.rollback()

    def test_preview(self, app, sample_data):
        with app.app_context():
            result = preview_coupon("welcome20", sample_data["plan_id"], sample_data["home_id"])
            assert result["valid"] is True
            assert result["discount_amount"] == Decimal("499.80")
            assert result["final_amount"] == Decimal("1999.20")
            missing = preview_coupon("NOPE", sample_data["plan_id"], None)
            assert missing == {"valid": False, "error": "Coupon 'NOPE' not found.", "kind": "not_found"}


# ---------------------------------------------------------------------------
# Plan catalog
# ---------------------------------------------------------------------------


class TestPlanCatalog:
    def test_create_plan(self, app):
        with app.app_context():
            plan = create_plan({"code": "team", "name": "Team", "price": "4999", "billing_cycle": "quarterly"})
            assert plan.price == Decimal("4999.00")
            assert plan.is_active
            assert AuditLog.query.filter_by(entity_type="plan", action="create").count() == 1

    def test_duplicate_code_rejected(self, app, sample_data):
        with app.app_context():
            with pytest.raises(StateConflictError):
                create_plan({"code": "pro-monthly", "name": "Again", "price": "1"})

    def test_invalid_fields_rejected(self, app):
        with app.app_context():
            with pytest.raises(ValidationError):
                create_plan({"code": "bad", "name": "Bad", "price": "-5"})
            with pytest.raises(ValidationError):
                create_plan({"code": "bad", "name": "Bad", "price": "5", "billing_cycle": "weekly"})

    def test_update_rejects_unknown_field(self, app, sample_data):
        with app.app_context():
            with pytest.raises(ValidationError):
                update_plan(sample_data["plan_id"], {"code": "renamed"})

    def test_billing_cycle_frozen_while_subscribed(self, app, sample_data):
        with app.app_context():
            _subscribe(sample_data["home_id"], sample_data["plan_id"])
            with pytest.raises(StateConflictError):
                update_plan(sample_data["plan_id"], {"billing_cycle": "yearly"})
            plan = update_plan(sample_data["plan_id"], {"price": "2999"})
            assert plan.price == Decimal("2999.00")
            # Existing subscriptions keep the price they were created with
            assert Subscription.query.one().base_price == Decimal("2499.00")

    def test_deactivated_plan_not_purchasable(self, app, sample_data):
        with app.app_context():
            deactivate_plan(sample_data["plan_id"], "retired")
            with pytest.raises(InvalidPlanError):
                get_purchasable_plan(sample_data["plan_id"])
            with pytest.raises(InvalidPlanError):
                _subscribe(sample_data["home_id"], sample_data["plan_id"])


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------


class TestSubscriptionManager:
    def test_create_with_coupon_scenario(self, app, sample_data, events):
        with app.app_context():
            sub = _subscribe(sample_data["home_id"], sample_data["plan_id"], "WELCOME20")
            assert sub.status == "active"
            assert sub.base_price == Decimal("2499.00")
            assert sub.discount_amount == Decimal("499.80")
            assert sub.cgst_amount == Decimal("179.93")
            assert sub.sgst_amount == Decimal("179.93")
            assert sub.igst_amount == Decimal("0.00")
            assert sub.tax_amount == Decimal("359.86")
            assert sub.total_amount == Decimal("2359.06")
            assert sub.next_billing_date == FEB_15
            assert db.session.get(Coupon, sample_data["coupon_id"]).times_used == 1
            assert CouponRedemption.query.filter_by(subscription_id=sub.id).count() == 1
        assert "subscription.created" in events.types()

    def test_pricing_invariant_inter_state(self, app, sample_data):
        with app.app_context():
            sub = _subscribe(sample_data["remote_id"], sample_data["plan_id"], "WELCOME20")
            assert sub.igst_amount == Decimal("359.86")
            assert sub.cgst_amount == Decimal("0.00")
            assert sub.total_amount == sub.base_price - sub.discount_amount + sub.tax_amount

    def test_one_live_subscription_per_tenant(self, app, sample_data):
        with app.app_context():
            first = _subscribe(sample_data["home_id"], sample_data["plan_id"])
            with pytest.raises(StateConflictError):
                _subscribe(sample_data["home_id"], sample_data["yearly_plan_id"])
            cancel_subscription(first.id, "switching")
            second = _subscribe(sample_data["home_id"], sample_data["yearly_plan_id"])
            assert second.status == "active"

    def test_live_subscription_unique_in_database(self, app, sample_data):
        with app.app_context():
            _subscribe(sample_data["home_id"], sample_data["plan_id"])
            db.session.add(Subscription(
                tenant_id=sample_data["home_id"], plan_id=sample_data["plan_id"], status="active",
                billing_cycle="monthly", start_date=JAN_15, base_price=Decimal("1"),
                total_amount=Decimal("1"),
            ))
            with pytest.raises(IntegrityError):
                db.session.commit()
            db.session.rollback()

    def test_failed_create_leaves_no_trace(self, app, sample_data, events):
        with app.app_context():
            db.session.add(Coupon(code="USED", discount_type="fixed", discount_value=Decimal("1"),
                                  max_uses=1, times_used=1))
            db.session.commit()
            with pytest.raises(CouponExhaustedError):
                _subscribe(sample_data["home_id"], sample_data["plan_id"], "USED")
            assert Subscription.query.count() == 0
        assert events.types() == []

    def test_unknown_coupon_is_not_found(self, app, sample_data):
        with app.app_context():
            with pytest.raises(NotFoundError):
                _subscribe(sample_data["home_id"], sample_data["plan_id"], "MISSING")

    def test_trial_plan(self, app, sample_data):
        with app.app_context():
            sub = _subscribe(sample_data["home_id"], sample_data["trial_plan_id"])
            assert sub.status == "trial"
            assert sub.trial_end_date == datetime.date(2025, 1, 29)
            assert sub.next_billing_date == datetime.date(2025, 1, 29)

    def test_await_payment_starts_pending(self, app, sample_data):
        with app.app_context():
            sub = _subscribe(sample_data["home_id"], sample_data["plan_id"], await_payment=True)
            assert sub.status == "pending"
            assert sub.next_billing_date == JAN_15

    def test_transition_table(self):
        assert transition("pending", "start_trial") == "trial"
        assert transition("active", "payment_failed") == "past_due"
        assert transition("past_due", "payment_succeeded") == "active"
        assert transition("past_due", "grace_expired") == "cancelled"
        assert transition("suspended", "reactivate") == "active"
        for status, event in [("cancelled", "reactivate"), ("expired", "activate"),
                              ("suspended", "payment_succeeded"), ("active", "start_trial")]:
            with pytest.raises(IllegalTransitionError):
                transition(status, event)
        with pytest.raises(IllegalTransitionError):
            transition("active", "teleport")

    def test_manual_status_changes(self, app, sample_data):
        with app.app_context():
            sub = _subscribe(sample_data["home_id"], sample_data["plan_id"])
            assert change_subscription_status(sub.id, "suspend").status == "suspended"
            assert change_subscription_status(sub.id, "reactivate").status == "active"
            with pytest.raises(ValidationError):
                change_subscription_status(sub.id, "payment_succeeded")

    def test_cancel(self, app, sample_data, events):
        with app.app_context():
            sub = _subscribe(sample_data["home_id"], sample_data["plan_id"])
            cancelled = cancel_subscription(sub.id, "too expensive")
            assert cancelled.status == "cancelled"
            assert cancelled.cancellation_reason == "too expensive"
            assert cancelled.auto_renew is False
            with pytest.raises(IllegalTransitionError):
                cancel_subscription(sub.id)
        assert "subscription.cancelled" in events.types()

    def test_cancel_checks_tenant(self, app, sample_data):
        with app.app_context():
            sub = _subscribe(sample_data["home_id"], sample_data["plan_id"])
            with pytest.raises(NotFoundError):
                cancel_subscription(sub.id, tenant_id=sample_data["other_id"])

    def test_billing_metrics(self, app, sample_data):
        with app.app_context():
            _subscribe(sample_data["home_id"], sample_data["plan_id"], "WELCOME20")
            _subscribe(sample_data["other_id"], sample_data["yearly_plan_id"])
            remote = _subscribe(sample_data["remote_id"], sample_data["plan_id"])
            cancel_subscription(remote.id)
            metrics = get_billing_metrics()
            assert metrics["total_subscriptions"] == 3
            assert metrics["by_status"]["active"] == 2
            assert metrics["by_status"]["cancelled"] == 1
            # 2359.06 monthly + 14160.00 yearly / 12
            assert metrics["monthly_recurring_revenue"] == Decimal("3539.06")
            assert get_billing_metrics(sample_data["home_id"])["total_subscriptions"] == 1


# ---------------------------------------------------------------------------
# Usage
# ---------------------------------------------------------------------------


def _record_scenario_usage(tenant_id, sub_id):
    period = (datetime.date(2025, 1, 1), datetime.date(2025, 1, 31))
    api, _ = record_usage(tenant_id, sub_id, "api_calls", 1000, "0.01", *period, external_event_id="evt-1")
    storage, _ = record_usage(tenant_id, sub_id, "storage_gb", 50, "10", *period, external_event_id="evt-2")
    return api.id, storage.id


class TestUsageAggregator:
    def test_aggregate_scenario(self, app, sample_data):
        with app.app_context():
            sub = _subscribe(sample_data["home_id"], sample_data["plan_id"])
            _record_scenario_usage(sample_data["home_id"], sub.id)
            totals = aggregate_usage(
                sample_data["home_id"], sub.id, datetime.date(2025, 1, 1), datetime.date(2025, 1, 31)
            )
            assert totals["api_calls"]["total_amount"] == Decimal("10.00")
            assert totals["storage_gb"]["total_amount"] == Decimal("500.00")
            assert totals["api_calls"]["total_quantity"] == Decimal("1000")

    def test_replayed_event_not_double_counted(self, app, sample_data):
        with app.app_context():
            sub = _subscribe(sample_data["home_id"], sample_data["plan_id"])
            first, created = record_usage(
                sample_data["home_id"], sub.id, "api_calls", 5, "1",
                "2025-01-01", "2025-01-31", idempotency_key="k-1",
            )
            again, created_again = record_usage(
                sample_data["home_id"], sub.id, "api_calls", 5, "1",
                "2025-01-01", "2025-01-31", idempotency_key="k-1",
            )
            assert created is True
            assert created_again is False
            assert again.id == first.id
            assert UsageRecord.query.count() == 1

    def test_invalid_usage_rejected(self, app, sample_data):
        with app.app_context():
            sub = _subscribe(sample_data["home_id"], sample_data["plan_id"])
            with pytest.raises(ValidationError):
                record_usage(sample_data["home_id"], sub.id, "api_calls", -1, "1", "2025-01-01", "2025-01-31")
            with pytest.raises(ValidationError):
                record_usage(sample_data["home_id"], sub.id, "api_calls", 1, "1", "2025-02-01", "2025-01-31")
            with pytest.raises(NotFoundError):
                record_usage(sample_data["other_id"], sub.id, "api_calls", 1, "1", "2025-01-01", "2025-01-31")

    def test_usage_rejected_for_cancelled_subscription(self, app, sample_data):
        with app.app_context():
            sub = _subscribe(sample_data["home_id"], sample_data["plan_id"])
            cancel_subscription(sub.id)
            with pytest.raises(StateConflictError):
                record_usage(sample_data["home_id"], sub.id, "api_calls", 1, "1", "2025-01-01", "2025-01-31")

    def test_mark_billed_is_all_or_nothing(self, app, sample_data):
        with app.app_context():
            sub = _subscribe(sample_data["home_id"], sample_data["plan_id"])
            api_id, storage_id = _record_scenario_usage(sample_data["home_id"], sub.id)
            invoice, _ = generate_usage_invoice(
                billing_context_for(sample_data["home_id"]), sub.id,
                datetime.date(2025, 1, 1), datetime.date(2025, 1, 31),
            )
            late, _ = record_usage(
                sample_data["home_id"], sub.id, "api_calls", 1, "1", "2025-01-01", "2025-01-31",
            )
            with pytest.raises(StateConflictError):
                mark_billed([api_id, late.id], invoice.id)
            assert db.session.get(UsageRecord, late.id).is_billed is False

    def test_reverse_billed_record(self, app, sample_data):
        with app.app_context():
            sub = _subscribe(sample_data["home_id"], sample_data["plan_id"])
            api_id, _storage_id = _record_scenario_usage(sample_data["home_id"], sub.id)
            generate_usage_invoice(
                billing_context_for(sample_data["home_id"]), sub.id,
                datetime.date(2025, 1, 1), datetime.date(2025, 1, 31),
            )
            reversal = reverse_usage(api_id, "duplicate import")
            assert reversal.reverses_usage_id == api_id
            assert reversal.is_billed is False
            assert db.session.get(UsageRecord, api_id).is_billed is True
            today = utc_today()
            credit = aggregate_usage(sample_data["home_id"], sub.id, today, today)
            assert credit["api_calls"]["total_amount"] == Decimal("-10.00")
            with pytest.raises(StateConflictError):
                reverse_usage(api_id, "again")
            with pytest.raises(ValidationError):
                reverse_usage(reversal.id, "reverse the reversal")

    def test_reverse_unbilled_record_nets_out(self, app, sample_data):
        with app.app_context():
            sub = _subscribe(sample_data["home_id"], sample_data["plan_id"])
            api_id, _storage_id = _record_scenario_usage(sample_data["home_id"], sub.id)
            reverse_usage(api_id, "test traffic")
            totals = aggregate_usage(
                sample_data["home_id"], sub.id, datetime.date(2025, 1, 1), datetime.date(2025, 1, 31)
            )
            assert totals["api_calls"]["total_amount"] == Decimal("0.00")
            assert totals["storage_gb"]["total_amount"] == Decimal("500.00")

    def test_concurrent_delivery_returns_existing_record(self, app, sample_data, monkeypatch):
        with app.app_context():
            sub = _subscribe(sample_data["home_id"], sample_data["plan_id"])
            args = (sample_data["home_id"], sub.id, "api_calls", 5, "1", "2025-01-01", "2025-01-31")
            first, _ = record_usage(*args, idempotency_key="k-race")
            calls = _miss_first_lookup(monkeypatch, usage_service, "find_usage_by_key")
            again, created = record_usage(*args, idempotency_key="k-race")
            assert created is False
            assert again.id == first.id
            assert len(calls) == 2
            assert UsageRecord.query.count() == 1


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------


class TestInvoiceGenerator:
    def test_subscription_invoice_is_idempotent(self, app, sample_data, events):
        with app.app_context():
            sub = _subscribe(sample_data["home_id"], sample_data["plan_id"], "WELCOME20")
            ctx = billing_context_for(sample_data["home_id"])
            invoice, created = generate_subscription_invoice(sub.id, ctx, today=FEB_15)
            again, created_again = generate_subscription_invoice(sub.id, ctx, today=FEB_15)
            assert created is True
            assert created_again is False
            assert again.id == invoice.id
            assert Invoice.query.count() == 1
            assert invoice.invoice_number == "INV-2025-00001"
            assert invoice.period_key == "2025-02-15"
            assert invoice.due_date == datetime.date(2025, 3, 2)
            assert invoice.total_amount == Decimal("2359.06")
            assert invoice.balance_due == Decimal("2359.06")
            assert len(invoice.items) == 1
            assert invoice.items[0].amount == Decimal("2499.00")
        assert events.types().count("invoice.generated") == 1

    def test_numbers_are_sequential_per_tenant(self, app, sample_data):
        with app.app_context():
            home = _subscribe(sample_data["home_id"], sample_data["plan_id"])
            remote = _subscribe(sample_data["remote_id"], sample_data["plan_id"])
            first, _ = generate_subscription_invoice(home.id, billing_context_for(sample_data["home_id"]), today=FEB_15)
            _record_scenario_usage(sample_data["home_id"], home.id)
            second, _ = generate_usage_invoice(
                billing_context_for(sample_data["home_id"]), home.id,
                datetime.date(2025, 1, 1), datetime.date(2025, 1, 31), today=FEB_15,
            )
            other, _ = generate_subscription_invoice(
                remote.id, billing_context_for(sample_data["remote_id"]), today=FEB_15
            )
            assert first.invoice_number == "INV-2025-00001"
            assert second.invoice_number == "INV-2025-00002"
            assert other.invoice_number == "INV-2025-00001"

    def test_usage_invoice_scenario(self, app, sample_data):
        with app.app_context():
            sub = _subscribe(sample_data["home_id"], sample_data["plan_id"])
            _record_scenario_usage(sample_data["home_id"], sub.id)
            invoice, created = generate_usage_invoice(
                billing_context_for(sample_data["home_id"]), sub.id,
                datetime.date(2025, 1, 1), datetime.date(2025, 1, 31),
            )
            assert created is True
            assert invoice.invoice_type == "usage"
            assert invoice.subtotal == Decimal("510.00")
            assert invoice.tax_amount == Decimal("91.80")
            assert invoice.total_amount == Decimal("601.80")
            assert sum(item.tax_amount for item in invoice.items) == invoice.tax_amount
            assert all(item.igst_amount == Decimal("0.00") for item in invoice.items)
            assert UsageRecord.query.filter_by(is_billed=True).count() == 2
            with pytest.raises(ValidationError):
                generate_usage_invoice(
                    billing_context_for(sample_data["home_id"]), sub.id,
                    datetime.date(2025, 2, 1), datetime.date(2025, 2, 28),
                )

    def test_usage_lines_keep_recorded_unit_price(self, app, sample_data):
        with app.app_context():
            tenant_id = sample_data["home_id"]
            sub = _subscribe(tenant_id, sample_data["plan_id"])
            period = ("2025-01-01", "2025-01-31")
            record_usage(tenant_id, sub.id, "sms", 3, "0.335", *period)
            record_usage(tenant_id, sub.id, "api_calls", 10, "0.50", *period)
            record_usage(tenant_id, sub.id, "api_calls", 5, "1.00", *period)
            invoice, _ = generate_usage_invoice(
                billing_context_for(tenant_id), sub.id, datetime.date(2025, 1, 1), datetime.date(2025, 1, 31),
            )
            lines = {(item.metric_name, item.unit_price): item for item in invoice.items}
            assert len(lines) == 3
            assert lines[("sms", Decimal("0.335"))].amount == Decimal("1.01")
            assert lines[("api_calls", Decimal("0.50"))].amount == Decimal("5.00")
            assert lines[("api_calls", Decimal("1.00"))].amount == Decimal("5.00")
            for item in invoice.items:
                assert item.amount == money(item.quantity * item.unit_price)
            assert invoice.subtotal == sum(item.amount for item in invoice.items) == Decimal("11.01")

    def test_concurrent_generation_returns_the_winner(self, app, sample_data, monkeypatch):
        with app.app_context():
            tenant_id = sample_data["home_id"]
            sub = _subscribe(tenant_id, sample_data["plan_id"])
            ctx = billing_context_for(tenant_id)
            winner, _ = generate_subscription_invoice(sub.id, ctx, today=FEB_15)
            calls = _miss_first_lookup(monkeypatch, invoice_service, "_find_period_invoice")
            invoice, created = generate_subscription_invoice(sub.id, ctx, today=FEB_15)
            assert created is False
            assert invoice.id == winner.id
            assert len(calls) == 2
            assert Invoice.query.count() == 1
            monkeypatch.undo()

            _record_scenario_usage(tenant_id, sub.id)
            # read before the winner commits, as a concurrent caller would have
            seen = UsageRecord.query.order_by(UsageRecord.id).all()
            usage_winner, _ = generate_usage_invoice(
                ctx, sub.id, datetime.date(2025, 1, 1), datetime.date(2025, 1, 31), today=FEB_15,
            )
            # the losing subscription insert gave its number back
            assert usage_winner.invoice_number == "INV-2025-00002"
            _miss_first_lookup(monkeypatch, invoice_service, "_find_period_invoice")
            monkeypatch.setattr(invoice_service, "unbilled_records", lambda *args: seen)
            again, created = generate_usage_invoice(
                ctx, sub.id, datetime.date(2025, 1, 1), datetime.date(2025, 1, 31), today=FEB_15,
            )
            assert created is False
            assert again.id == usage_winner.id
            assert Invoice.query.filter_by(invoice_type="usage").count() == 1
            assert UsageRecord.query.filter_by(billed_in_invoice_id=usage_winner.id).count() == 2

    def test_mark_paid_partial_then_full(self, app, sample_data, events):
        with app.app_context():
            sub = _subscribe(sample_data["home_id"], sample_data["plan_id"], "WELCOME20")
            invoice, _ = generate_subscription_invoice(sub.id, billing_context_for(sample_data["home_id"]), today=FEB_15)
            partial = mark_paid(invoice.id, "1000.00")
            assert partial.status == "partially_paid"
            assert partial.balance_due == Decimal("1359.06")
            with pytest.raises(InvariantViolationError):
                mark_paid(invoice.id, "2000.00")
            assert db.session.get(Invoice, invoice.id).paid_amount == Decimal("1000.00")
            paid = mark_paid(invoice.id, "1359.06")
            assert paid.status == "paid"
            assert paid.balance_due == Decimal("0.00")
            assert db.session.get(Subscription, sub.id).next_billing_date == datetime.date(2025, 3, 15)
            with pytest.raises(StateConflictError):
                mark_paid(invoice.id, "1.00")
        assert "invoice.paid" in events.types()

    def test_overdue_moves_subscription_past_due(self, app, sample_data):
        with app.app_context():
            sub = _subscribe(sample_data["home_id"], sample_data["plan_id"])
            invoice, _ = generate_subscription_invoice(sub.id, billing_context_for(sample_data["home_id"]), today=FEB_15)
            unchanged = mark_invoice_overdue(invoice.id, today=datetime.date(2025, 3, 2))
            assert unchanged.status == "pending"
            overdue = mark_invoice_overdue(invoice.id, today=datetime.date(2025, 3, 3))
            assert overdue.status == "overdue"
            assert db.session.get(Subscription, sub.id).status == "past_due"

    def test_cancel_invoice(self, app, sample_data):
        with app.app_context():
            sub = _subscribe(sample_data["home_id"], sample_data["plan_id"])
            ctx = billing_context_for(sample_data["home_id"])
            invoice, _ = generate_subscription_invoice(sub.id, ctx, today=FEB_15)
            cancelled = cancel_invoice(invoice.id, "issued in error")
            assert cancelled.status == "cancelled"
            assert cancelled.balance_due == Decimal("2948.82")
            with pytest.raises(IllegalTransitionError):
                cancel_invoice(invoice.id)

    def test_cannot_cancel_paid_invoice(self, app, sample_data):
        with app.app_context():
            sub = _subscribe(sample_data["home_id"], sample_data["plan_id"])
            invoice, _ = generate_subscription_invoice(sub.id, billing_context_for(sample_data["home_id"]), today=FEB_15)
            mark_paid(invoice.id, "100.00")
            with pytest.raises(StateConflictError):
                cancel_invoice(invoice.id)

    def test_free_invoice_is_settled_immediately(self, app, sample_data):
        with app.app_context():
            db.session.add(Coupon(code="FREE", discount_type="percentage", discount_value=Decimal("100")))
            db.session.commit()
            sub = _subscribe(sample_data["home_id"], sample_data["plan_id"], "FREE")
            invoice, _ = generate_subscription_invoice(sub.id, billing_context_for(sample_data["home_id"]), today=FEB_15)
            assert invoice.total_amount == Decimal("0.00")
            assert invoice.status == "paid"

    def test_number_pattern(self, app, sample_data):
        with app.app_context():
            number = generate_number(
                "invoice", "INV-[YY][MM]-[CCC]", sample_data["home_id"], on_date=datetime.date(2025, 3, 5)
            )
            assert number == "INV-2503-001"
            with pytest.raises(ValueError):
                generate_number("invoice", "INV-[YYYY]", sample_data["home_id"])


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


def _overdue_invoice(tenant_id, plan_id, coupon_code="WELCOME20"):
    sub = _subscribe(tenant_id, plan_id, coupon_code)
    invoice, _ = generate_subscription_invoice(sub.id, billing_context_for(tenant_id), today=FEB_15)
    mark_invoice_overdue(invoice.id, today=datetime.date(2025, 3, 3))
    return sub.id, invoice.id


class TestPaymentRecorder:
    def test_payment_reactivates_past_due_subscription(self, app, sample_data, events):
        with app.app_context():
            sub_id, invoice_id = _overdue_invoice(sample_data["home_id"], sample_data["plan_id"])
            assert db.session.get(Subscription, sub_id).status == "past_due"
            payment, created = record_payment("razorpay", "pay_001", "2359.06", invoice_id=invoice_id)
            assert created is True
            assert payment.unmatched is False
            assert payment.tenant_id == sample_data["home_id"]
            invoice = db.session.get(Invoice, invoice_id)
            assert invoice.status == "paid"
            assert invoice.balance_due == Decimal("0.00")
            sub = db.session.get(Subscription, sub_id)
            assert sub.status == "active"
            assert sub.next_billing_date == datetime.date(2025, 3, 15)
        assert "payment.recorded" in events.types()

    def test_replay_is_a_no_op(self, app, sample_data):
        with app.app_context():
            _sub_id, invoice_id = _overdue_invoice(sample_data["home_id"], sample_data["plan_id"])
            first, _ = record_payment("razorpay", "pay_001", "1000.00", invoice_id=invoice_id)
            again, created = record_payment("razorpay", "pay_001", "1000.00", invoice_id=invoice_id)
            assert created is False
            assert again.id == first.id
            assert Payment.query.count() == 1
            assert db.session.get(Invoice, invoice_id).paid_amount == Decimal("1000.00")

    def test_unmatched_payment_is_kept(self, app, sample_data):
        with app.app_context():
            payment, created = record_payment("razorpay", "pay_lost", "100.00", invoice_id=9999)
            assert created is True
            assert payment.unmatched is True
            assert payment.status == "completed"
            assert payment.tenant_id is None
            assert "9999" in payment.reconciliation_note

    def test_overpayment_is_stored_unmatched(self, app, sample_data):
        with app.app_context():
            _sub_id, invoice_id = _overdue_invoice(sample_data["home_id"], sample_data["plan_id"])
            payment, _ = record_payment("razorpay", "pay_big", "5000.00", invoice_id=invoice_id)
            assert payment.unmatched is True
            assert db.session.get(Invoice, invoice_id).paid_amount == Decimal("0.00")

    def test_reconcile_unmatched_payment(self, app, sample_data):
        with app.app_context():
            _sub_id, invoice_id = _overdue_invoice(sample_data["home_id"], sample_data["plan_id"])
            payment, _ = record_payment("razorpay", "pay_lost", "100.00", invoice_id=9999)
            reconciled = reconcile_payment(payment.id, invoice_id=invoice_id)
            assert reconciled.unmatched is False
            assert reconciled.tenant_id == sample_data["home_id"]
            invoice = db.session.get(Invoice, invoice_id)
            assert invoice.status == "partially_paid"
            assert invoice.paid_amount == Decimal("100.00")
            with pytest.raises(StateConflictError):
                reconcile_payment(payment.id, invoice_id=invoice_id)

    def test_payment_against_pending_subscription(self, app, sample_data):
        with app.app_context():
            sub = _subscribe(sample_data["home_id"], sample_data["plan_id"], await_payment=True)
            record_payment("razorpay", "pay_first", "2948.82", subscription_id=sub.id)
            sub = db.session.get(Subscription, sub.id)
            assert sub.status == "active"
            assert sub.next_billing_date == FEB_15

    def test_invalid_amount_rejected(self, app, sample_data):
        with app.app_context():
            with pytest.raises(ValidationError):
                record_payment("razorpay", "pay_zero", "0", invoice_id=1)
            with pytest.raises(ValidationError):
                record_payment("razorpay", "", "10", invoice_id=1)

    def test_subscription_overpayment_does_not_reactivate(self, app, sample_data):
        with app.app_context():
            sub_id, invoice_id = _overdue_invoice(sample_data["home_id"], sample_data["plan_id"])
            payment, created = record_payment("razorpay", "pay_sub_over", "2360.00", subscription_id=sub_id)
            assert created is True
            assert payment.unmatched is True
            assert payment.subscription_id is None
            assert "exceeds the balance due" in payment.reconciliation_note
            sub = db.session.get(Subscription, sub_id)
            assert sub.status == "past_due"
            assert sub.next_billing_date == FEB_15
            invoice = db.session.get(Invoice, invoice_id)
            assert invoice.status == "overdue"
            assert invoice.balance_due == Decimal("2359.06")

            exact, _ = record_payment("razorpay", "pay_sub_exact", "2359.06", subscription_id=sub_id)
            assert exact.unmatched is False
            assert exact.invoice_id == invoice_id
            assert db.session.get(Invoice, invoice_id).status == "paid"
            sub = db.session.get(Subscription, sub_id)
            assert sub.status == "active"
            assert sub.next_billing_date == datetime.date(2025, 3, 15)

    def test_replay_with_different_amount_is_logged(self, app, sample_data, caplog):
        with app.app_context():
            _sub_id, invoice_id = _overdue_invoice(sample_data["home_id"], sample_data["plan_id"])
            first, _ = record_payment("razorpay", "pay_001", "1000.00", invoice_id=invoice_id)
            with caplog.at_level(logging.ERROR, logger="services.payment"):
                again, created = record_payment("razorpay", "pay_001", "1500.00", invoice_id=invoice_id)
            assert created is False
            assert again.id == first.id
            assert again.amount == Decimal("1000.00")
            errors = [r for r in caplog.records if r.levelno == logging.ERROR and r.name == "services.payment"]
            assert len(errors) == 1
            assert "pay_001" in errors[0].getMessage()
            assert db.session.get(Invoice, invoice_id).paid_amount == Decimal("1000.00")

    def test_concurrent_confirmation_returns_winner(self, app, sample_data, monkeypatch):
        with app.app_context():
            _sub_id, invoice_id = _overdue_invoice(sample_data["home_id"], sample_data["plan_id"])
            winner, _ = record_payment("razorpay", "pay_race", "1000.00", invoice_id=invoice_id)
            calls = _miss_first_lookup(monkeypatch, payment_service, "find_payment")
            payment, created = record_payment("razorpay", "pay_race", "1000.00", invoice_id=invoice_id)
            assert created is False
            assert payment.id == winner.id
            assert len(calls) == 2
            assert Payment.query.count() == 1
            assert db.session.get(Invoice, invoice_id).paid_amount == Decimal("1000.00")

    def test_refund_requests_never_exceed_payment(self, app, sample_data, events):
        with app.app_context():
            _sub_id, invoice_id = _overdue_invoice(sample_data["home_id"], sample_data["plan_id"])
            payment, _ = record_payment("razorpay", "pay_001", "2359.06", invoice_id=invoice_id)
            partial = request_refund(payment.id, "service outage credit", "1000.00")
            assert partial.refund_type == "partial"
            assert partial.status == "pending"
            assert partial.invoice_id == invoice_id
            assert partial.requested_by == "system"
            with pytest.raises(InvariantViolationError):
                request_refund(payment.id, "too much", "1359.07")
            rest = request_refund(payment.id, "account closed")
            assert rest.amount == Decimal("1359.06")
            assert rest.refund_type == "partial"
            with pytest.raises(InvariantViolationError):
                request_refund(payment.id, "again")
            with pytest.raises(ValidationError):
                request_refund(payment.id, "  ")
            with pytest.raises(ValidationError):
                request_refund(payment.id, "bad amount", "-5")
            with pytest.raises(NotFoundError):
                request_refund(payment.id, "wrong tenant", tenant_id=sample_data["other_id"])
            assert RefundRequest.query.count() == 2
            assert AuditLog.query.filter_by(action="refund_requested").count() == 2
        assert events.types().count("refund.requested") == 2

    def test_full_refund_of_unmatched_payment(self, app, sample_data):
        with app.app_context():
            payment, _ = record_payment("razorpay", "pay_lost", "100.00", invoice_id=9999)
            refund = request_refund(payment.id, "unknown payer")
            assert refund.refund_type == "full"
            assert refund.amount == Decimal("100.00")
            assert refund.tenant_id is None
            assert refund.invoice_id is None


# ---------------------------------------------------------------------------
# Commissions
# ---------------------------------------------------------------------------


class TestCommissionEngine:
    def test_amount_rounding(self):
        assert calculate_commission_amount(Decimal("2359.06"), "percentage", Decimal("10")) == Decimal("235.91")
        assert calculate_commission_amount(Decimal("2359.06"), "fixed", Decimal("250")) == Decimal("250.00")
        with pytest.raises(ValidationError):
            calculate_commission_amount(Decimal("1"), "percentage", Decimal("-1"))

    def test_commission_created_once_per_payment(self, app, sample_data, events):
        with app.app_context():
            link_partner_tenant(sample_data["partner_id"], sample_data["home_id"])
            _sub_id, invoice_id = _overdue_invoice(sample_data["home_id"], sample_data["plan_id"])
            payment, _ = record_payment("razorpay", "pay_001", "2359.06", invoice_id=invoice_id)
            commission = Commission.query.filter_by(payment_id=payment.id).one()
            assert commission.commission_amount == Decimal("235.91")
            assert commission.status == "pending"
            again = calculate_commission_for_payment(payment.id)
            assert again.id == commission.id
            assert Commission.query.count() == 1
        assert "commission.created" in events.types()

    def test_tenant_override_rate(self, app, sample_data):
        with app.app_context():
            link_partner_tenant(sample_data["partner_id"], sample_data["remote_id"], "5")
            sub = _subscribe(sample_data["remote_id"], sample_data["plan_id"])
            invoice, _ = generate_subscription_invoice(sub.id, billing_context_for(sample_data["remote_id"]), today=FEB_15)
            assert invoice.igst_amount == Decimal("449.82")
            payment, _ = record_payment("razorpay", "pay_r1", "2948.82", invoice_id=invoice.id)
            commission = Commission.query.filter_by(payment_id=payment.id).one()
            assert commission.commission_rate == Decimal("5.00")
            assert commission.commission_amount == Decimal("147.44")

    def test_one_partner_per_tenant(self, app, sample_data):
        with app.app_context():
            link_partner_tenant(sample_data["partner_id"], sample_data["home_id"])
            second = create_partner({"name": "Another", "email": "another@example.com", "commission_value": "7"})
            with pytest.raises(StateConflictError):
                link_partner_tenant(second.id, sample_data["home_id"])

    def test_transitions_and_summary(self, app, sample_data):
        with app.app_context():
            link_partner_tenant(sample_data["partner_id"], sample_data["home_id"])
            _sub_id, invoice_id = _overdue_invoice(sample_data["home_id"], sample_data["plan_id"])
            record_payment("razorpay", "pay_001", "1000.00", invoice_id=invoice_id)
            record_payment("razorpay", "pay_002", "1359.06", invoice_id=invoice_id)
            first, second = Commission.query.order_by(Commission.id).all()
            assert transition_commission(first.id, "approve").status == "approved"
            assert transition_commission(first.id, "pay").status == "paid"
            with pytest.raises(IllegalTransitionError):
                transition_commission(first.id, "cancel")
            with pytest.raises(IllegalTransitionError):
                transition_commission(second.id, "pay")
            with pytest.raises(ValidationError):
                transition_commission(second.id, "refund")
            summary = partner_commission_summary(sample_data["partner_id"])
            assert summary["paid"]["count"] == 1
            assert summary["paid"]["total_amount"] == Decimal("100.00")
            assert summary["pending"]["total_amount"] == Decimal("135.91")
            assert summary["outstanding_amount"] == Decimal("135.91")

    def test_pending_commission_backfill(self, app, sample_data):
        with app.app_context():
            _sub_id, invoice_id = _overdue_invoice(sample_data["home_id"], sample_data["plan_id"])
            record_payment("razorpay", "pay_001", "2359.06", invoice_id=invoice_id)
            assert Commission.query.count() == 0
            link_partner_tenant(sample_data["partner_id"], sample_data["home_id"])
            created = calculate_pending_commissions()
            assert len(created) == 1
            assert calculate_pending_commissions() == []

    def test_fractional_override_rate_is_kept(self, app, sample_data):
        with app.app_context():
            link = link_partner_tenant(sample_data["partner_id"], sample_data["home_id"], "7.125")
            assert link.custom_commission_value == Decimal("7.125")
            _sub_id, invoice_id = _overdue_invoice(sample_data["home_id"], sample_data["plan_id"])
            payment, _ = record_payment("razorpay", "pay_001", "2359.06", invoice_id=invoice_id)
            commission = Commission.query.filter_by(payment_id=payment.id).one()
            assert commission.commission_rate == Decimal("7.125")
            assert commission.commission_amount == Decimal("168.08")


# ---------------------------------------------------------------------------
# Scheduled jobs
# ---------------------------------------------------------------------------


class TestBillingJobs:
    def test_renewals_are_idempotent(self, app, sample_data):
        with app.app_context():
            sub = _subscribe(sample_data["home_id"], sample_data["plan_id"])
            assert process_renewals(datetime.date(2025, 2, 14)) == []
            created = process_renewals(FEB_15)
            assert len(created) == 1
            assert process_renewals(FEB_15) == []
            assert Invoice.query.filter_by(subscription_id=sub.id).count() == 1

    def test_expire_trials(self, app, sample_data):
        with app.app_context():
            renewing = _subscribe(sample_data["home_id"], sample_data["trial_plan_id"])
            lapsing = _subscribe(sample_data["other_id"], sample_data["trial_plan_id"], auto_renew=False)
            assert expire_trials(datetime.date(2025, 1, 28)) == {"activated": [], "expired": []}
            result = expire_trials(datetime.date(2025, 1, 29))
            assert result == {"activated": [renewing.id], "expired": [lapsing.id]}
            assert db.session.get(Subscription, lapsing.id).status == "expired"

    def test_overdue_and_lapse(self, app, sample_data, events):
        with app.app_context():
            sub = _subscribe(sample_data["home_id"], sample_data["plan_id"])
            invoice, _ = generate_subscription_invoice(sub.id, billing_context_for(sample_data["home_id"]), today=FEB_15)
            assert mark_overdue_invoices(datetime.date(2025, 3, 3)) == [invoice.id]
            # due 2025-03-02 plus 7 days of grace
            assert cancel_lapsed_subscriptions(datetime.date(2025, 3, 9)) == []
            assert cancel_lapsed_subscriptions(datetime.date(2025, 3, 10)) == [sub.id]
            assert db.session.get(Subscription, sub.id).status == "cancelled"
        assert "subscription.cancelled" in events.types()

    def test_run_daily(self, app, sample_data):
        with app.app_context():
            _subscribe(sample_data["home_id"], sample_data["plan_id"])
            result = run_daily(FEB_15)
            assert set(result) == {"trials", "renewals", "overdue", "lapsed"}
            assert len(result["renewals"]) == 1

    def test_cli_run_daily(self, app, sample_data):
        with app.app_context():
            _subscribe(sample_data["home_id"], sample_data["plan_id"])
        runner = app.test_cli_runner()
        result = runner.invoke(args=["billing", "renew", "--date", "2025-02-15"])
        assert result.exit_code == 0
        assert "Created 1 renewal invoice(s)." in result.output
        result = runner.invoke(args=["billing", "run-daily", "--date", "2025-02-15"])
        assert result.exit_code == 0

    def test_month_period(self):
        assert month_period(2025, 1) == (datetime.date(2025, 1, 1), datetime.date(2025, 1, 31))
        assert month_period(2024, 2) == (datetime.date(2024, 2, 1), datetime.date(2024, 2, 29))
        assert month_period(2024, 12) == (datetime.date(2024, 12, 1), datetime.date(2024, 12, 31))

    def test_monthly_usage_invoices(self, app, sample_data):
        with app.app_context():
            home = _subscribe(sample_data["home_id"], sample_data["plan_id"])
            remote = _subscribe(sample_data["remote_id"], sample_data["plan_id"])
            _record_scenario_usage(sample_data["home_id"], home.id)
            record_usage(sample_data["remote_id"], remote.id, "api_calls", 100, "0.01", "2025-01-10", "2025-01-10")
            record_usage(sample_data["remote_id"], remote.id, "api_calls", 100, "0.01", "2025-02-01", "2025-02-01")
            january = month_period(2025, 1)
            result = generate_usage_invoices(*january, today=datetime.date(2025, 2, 1))
            assert result["failed"] == []
            assert len(result["generated"]) == 2
            subtotals = sorted(db.session.get(Invoice, invoice_id).subtotal for invoice_id in result["generated"])
            assert subtotals == [Decimal("1.00"), Decimal("510.00")]
            assert UsageRecord.query.filter_by(is_billed=False).count() == 1
            assert generate_usage_invoices(*january, today=datetime.date(2025, 2, 1)) == {"generated": [], "failed": []}

    def test_cli_usage_invoices(self, app, sample_data):
        with app.app_context():
            sub = _subscribe(sample_data["home_id"], sample_data["plan_id"])
            _record_scenario_usage(sample_data["home_id"], sub.id)
        runner = app.test_cli_runner()
        result = runner.invoke(args=["billing", "usage-invoices", "--month", "2025-01", "--date", "2025-02-01"])
        assert result.exit_code == 0
        assert "Usage invoices for 2025-01: 1 generated, 0 failed." in result.output
        # without --month the previous month is billed
        result = runner.invoke(args=["billing", "usage-invoices", "--date", "2025-02-10"])
        assert result.exit_code == 0
        assert "Usage invoices for 2025-01: 0 generated, 0 failed." in result.output
        result = runner.invoke(args=["billing", "usage-invoices", "--month", "2025/01"])
        assert result.exit_code == 2
        with app.app_context():
            assert Invoice.query.filter_by(invoice_type="usage").count() == 1


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


class _FakeResponse:
    def __init__(self, data, status_code=200):
        self.data = data
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"{self.status_code} error")

    def json(self):
        return self.data


class _FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.requests = []
        self.auth = None

    def request(self, method, url, timeout=None, **kwargs):
        self.requests.append((method, url, kwargs))
        if self.error is not None:
            raise self.error
        return self.response


def _gateway_config():
    return GatewayConfig(
        enabled=True, name="razorpay", base_url="https://gateway.test/v1",
        api_key="key", api_secret="secret",
    )


class TestCollaborators:
    def test_gateway_verifies_signature_and_status(self):
        session = _FakeSession(_FakeResponse({"id": "order_1", "status": "paid"}))
        gateway = HttpPaymentGateway(_gateway_config(), session=session)
        assert gateway.verify_payment("order_1", gateway.sign("order_1")) is True
        assert session.requests[-1][1] == "https://gateway.test/v1/orders/order_1"
        assert gateway.verify_payment("order_1", "forged") is False

    def test_gateway_create_order_uses_minor_units(self):
        session = _FakeSession(_FakeResponse({"id": "order_9"}))
        gateway = HttpPaymentGateway(_gateway_config(), session=session)
        assert gateway.create_order(Decimal("2359.06"), "INR") == "order_9"
        assert session.requests[0][2]["json"] == {"amount": 235906, "currency": "INR"}

    def test_gateway_timeout_is_external_dependency_error(self):
        session = _FakeSession(error=requests.exceptions.Timeout())
        gateway = HttpPaymentGateway(_gateway_config(), session=session)
        with pytest.raises(ExternalDependencyError):
            gateway.create_order(Decimal("1"), "INR")

    def test_failing_event_sink_does_not_undo_commit(self, app, sample_data):
        class BrokenSink(EventSink):
            def emit(self, event_type, payload):
                raise RuntimeError("sink down")

        app.extensions[EVENT_SINK_KEY] = BrokenSink()
        with app.app_context():
            sub = _subscribe(sample_data["home_id"], sample_data["plan_id"])
            assert db.session.get(Subscription, sub.id).status == "active"

    def test_audit_trail(self, app, sample_data):
        with app.app_context():
            sub = _subscribe(sample_data["home_id"], sample_data["plan_id"])
            cancel_subscription(sub.id, "done")
            actions = [
                row.action for row in
                AuditLog.query.filter_by(entity_type="subscription", entity_id=sub.id).order_by(AuditLog.id)
            ]
            assert actions == ["create", "subscription_cancel", "cancel"]
            entry = AuditLog.query.filter_by(action="subscription_cancel").one()
            assert entry.actor == "system"
            assert entry.before == {"status": "active"}
            assert entry.after == {"status": "cancelled"}


# ---------------------------------------------------------------------------
# HTTP API
# ---------------------------------------------------------------------------


class TestAppCreation:
    def test_create_app(self, app):
        assert app is not None
        assert app.config["TESTING"] is True

    def test_config_objects(self, app):
        assert app.config["BILLING_CONFIG"].platform_state_code == "29"
        assert app.config["GATEWAY_CONFIG"].enabled is False

    def test_blueprints_registered(self, app):
        for name in ("plans", "coupons", "subscriptions", "usage", "invoices", "payments", "partners"):
            assert name in app.blueprints

    def test_security_headers(self, client):
        resp = client.get("/plans")
        assert resp.headers["X-Content-Type-Options"] == "nosniff"
        assert resp.headers["X-Frame-Options"] == "DENY"


class TestErrorMapping:
    def test_unknown_route_is_json_404(self, client):
        resp = client.get("/nope")
        assert resp.status_code == 404
        assert resp.get_json()["error"]["kind"] == "not_found"

    def test_tenant_required(self, client, sample_data):
        resp = client.post("/subscriptions", json={"plan_id": sample_data["plan_id"]})
        assert resp.status_code == 403
        assert resp.get_json()["error"]["kind"] == "permission_denied"

    def test_unknown_tenant_rejected(self, client, sample_data):
        resp = client.get("/subscriptions/current", headers=_headers(9999))
        assert resp.status_code == 403

    def test_malformed_tenant_header(self, client, sample_data):
        resp = client.get("/subscriptions/current", headers={"X-Tenant-ID": "abc"})
        assert resp.status_code == 400

    def test_validation_error(self, client, sample_data):
        resp = client.post("/subscriptions", json={}, headers=_headers(sample_data["home_id"]))
        assert resp.status_code == 400
        body = resp.get_json()["error"]
        assert body["kind"] == "validation_error"
        assert body["message"] == "plan_id is required."

    def test_non_object_body_rejected(self, client, sample_data):
        resp = client.post("/subscriptions", json=[1, 2], headers=_headers(sample_data["home_id"]))
        assert resp.status_code == 400

    def test_permission_denied(self, client, sample_data):
        resp = client.post("/plans", json={"code": "x", "name": "X", "price": "1"},
                           headers=_headers(role="tenant"))
        assert resp.status_code == 403

    def test_unexpected_error_hides_details(self, app, client):
        def explode():
            raise RuntimeError("database password is hunter2")

        app.add_url_rule("/explode", "explode", explode)
        resp = client.get("/explode")
        assert resp.status_code == 500
        body = resp.get_json()["error"]
        assert body["kind"] == "internal_error"
        assert "hunter2" not in body["message"]
        assert len(body["correlation_id"]) == 32


class TestPlanRoutes:
    def test_list_plans(self, client, sample_data):
        resp = client.get("/plans")
        assert resp.status_code == 200
        codes = [plan["code"] for plan in resp.get_json()]
        assert "pro-monthly" in codes

    def test_admin_creates_and_deactivates_plan(self, client, sample_data):
        admin = _headers(role="admin", actor="ops@platform")
        resp = client.post("/plans", json={"code": "team", "name": "Team", "price": "4999"}, headers=admin)
        assert resp.status_code == 201
        plan_id = resp.get_json()["id"]
        resp = client.put(f"/plans/{plan_id}", json={"price": "5999"}, headers=admin)
        assert resp.get_json()["price"] == "5999.00"
        resp = client.post(f"/plans/{plan_id}/deactivate", json={}, headers=admin)
        assert resp.get_json()["is_active"] is False
        codes = [plan["code"] for plan in client.get("/plans").get_json()]
        assert "team" not in codes


class TestSubscriptionRoutes:
    def test_create_and_conflict(self, app, client, sample_data):
        headers = _headers(sample_data["home_id"], actor="alice")
        resp = client.post("/subscriptions", json={"plan_id": sample_data["plan_id"], "coupon_code": "WELCOME20"},
                           headers=headers)
        assert resp.status_code == 201
        body = resp.get_json()
        assert body["total_amount"] == "2359.06"
        assert body["discount_amount"] == "499.80"
        resp = client.post("/subscriptions", json={"plan_id": sample_data["plan_id"]}, headers=headers)
        assert resp.status_code == 409
        assert resp.get_json()["error"]["kind"] == "state_conflict"
        with app.app_context():
            entry = AuditLog.query.filter_by(entity_type="subscription", action="create").one()
            assert entry.actor == "alice"

    def test_exhausted_coupon_is_409(self, app, client, sample_data):
        with app.app_context():
            db.session.add(Coupon(code="GONE", discount_type="fixed", discount_value=Decimal("1"),
                                  max_uses=1, times_used=1))
            db.session.commit()
        resp = client.post("/subscriptions", json={"plan_id": sample_data["plan_id"], "coupon_code": "GONE"},
                           headers=_headers(sample_data["home_id"]))
        assert resp.status_code == 409
        error = resp.get_json()["error"]
        assert error["kind"] == "coupon_exhausted"
        assert error["reason"] == "exhausted"

    def test_tenant_isolation(self, client, sample_data):
        resp = client.post("/subscriptions", json={"plan_id": sample_data["plan_id"]},
                           headers=_headers(sample_data["home_id"]))
        sub_id = resp.get_json()["id"]
        assert client.get(f"/subscriptions/{sub_id}", headers=_headers(sample_data["home_id"])).status_code == 200
        assert client.get(f"/subscriptions/{sub_id}", headers=_headers(sample_data["other_id"])).status_code == 404
        resp = client.post(f"/subscriptions/{sub_id}/cancel", json={}, headers=_headers(sample_data["other_id"]))
        assert resp.status_code == 404

    def test_current_and_cancel(self, client, sample_data):
        headers = _headers(sample_data["home_id"])
        assert client.get("/subscriptions/current", headers=headers).status_code == 404
        sub_id = client.post("/subscriptions", json={"plan_id": sample_data["plan_id"]}, headers=headers).get_json()["id"]
        assert client.get("/subscriptions/current", headers=headers).get_json()["id"] == sub_id
        resp = client.post(f"/subscriptions/{sub_id}/cancel", json={"reason": "moving on"}, headers=headers)
        assert resp.status_code == 200
        assert resp.get_json()["status"] == "cancelled"
        resp = client.post(f"/subscriptions/{sub_id}/cancel", json={}, headers=headers)
        assert resp.status_code == 409
        assert resp.get_json()["error"]["kind"] == "illegal_transition"

    def test_metrics_requires_billing_role(self, client, sample_data):
        assert client.get("/subscriptions/metrics").status_code == 403
        resp = client.get("/subscriptions/metrics", headers=_headers(role="admin"))
        assert resp.status_code == 200
        assert resp.get_json()["total_subscriptions"] == 0


class TestInvoiceRoutes:
    def test_generate_pay_and_list(self, client, sample_data):
        headers = _headers(sample_data["home_id"])
        sub_id = client.post("/subscriptions", json={"plan_id": sample_data["plan_id"], "coupon_code": "WELCOME20"},
                             headers=headers).get_json()["id"]
        resp = client.post("/invoices/generate", json={"subscription_id": sub_id}, headers=headers)
        assert resp.status_code == 201
        invoice = resp.get_json()
        assert invoice["total_amount"] == "2359.06"
        resp = client.post("/invoices/generate", json={"subscription_id": sub_id}, headers=headers)
        assert resp.status_code == 200
        assert resp.get_json()["id"] == invoice["id"]

        resp = client.put(f"/invoices/{invoice['id']}/mark-paid", json={"paid_amount": "2359.06"}, headers=headers)
        assert resp.status_code == 403
        billing = _headers(sample_data["home_id"], role="billing")
        resp = client.put(f"/invoices/{invoice['id']}/mark-paid", json={"paid_amount": "9999"}, headers=billing)
        assert resp.status_code == 400
        assert resp.get_json()["error"]["kind"] == "invariant_violation"
        resp = client.put(f"/invoices/{invoice['id']}/mark-paid", json={"paid_amount": "2359.06"}, headers=billing)
        assert resp.status_code == 200
        assert resp.get_json()["status"] == "paid"
        assert resp.get_json()["balance_due"] == "0.00"

        listed = client.get("/invoices?status=paid", headers=headers).get_json()
        assert [inv["id"] for inv in listed] == [invoice["id"]]
        assert client.get(f"/invoices/{invoice['id']}", headers=_headers(sample_data["other_id"])).status_code == 404
        assert client.get("/invoices?status=bogus", headers=headers).status_code == 400

    def test_mark_paid_rejects_malformed_amount(self, client, sample_data):
        headers = _headers(sample_data["home_id"])
        sub_id = client.post("/subscriptions", json={"plan_id": sample_data["plan_id"]},
                             headers=headers).get_json()["id"]
        invoice = client.post("/invoices/generate", json={"subscription_id": sub_id}, headers=headers).get_json()
        billing = _headers(sample_data["home_id"], role="billing")
        for bad in ("abc", None, "NaN", "Infinity", [1], {"value": 1}):
            resp = client.put(f"/invoices/{invoice['id']}/mark-paid", json={"paid_amount": bad}, headers=billing)
            assert resp.status_code == 400, bad
            assert resp.get_json()["error"]["kind"] == "validation_error"
        current = client.get(f"/invoices/{invoice['id']}", headers=headers).get_json()
        assert current["paid_amount"] == "0.00"
        assert current["status"] == "pending"


class TestPaymentRoutes:
    def _invoice(self, client, sample_data):
        headers = _headers(sample_data["home_id"])
        sub_id = client.post("/subscriptions", json={"plan_id": sample_data["plan_id"]},
                             headers=headers).get_json()["id"]
        return client.post("/invoices/generate", json={"subscription_id": sub_id}, headers=headers).get_json()

    def test_record_and_replay(self, client, sample_data):
        invoice = self._invoice(client, sample_data)
        payload = {
            "gateway_name": "razorpay", "gateway_transaction_id": "pay_abc",
            "amount": invoice["total_amount"], "invoice_id": invoice["id"],
        }
        resp = client.post("/payments", json=payload)
        assert resp.status_code == 201
        payment = resp.get_json()
        assert payment["unmatched"] is False
        resp = client.post("/payments", json=payload)
        assert resp.status_code == 200
        assert resp.get_json()["id"] == payment["id"]
        paid = client.get(f"/invoices/{invoice['id']}", headers=_headers(sample_data["home_id"])).get_json()
        assert paid["status"] == "paid"
        assert paid["paid_amount"] == invoice["total_amount"]

    def test_gateway_verification(self, app, client, sample_data):
        invoice = self._invoice(client, sample_data)
        app.extensions[GATEWAY_KEY] = FakeGateway(verified=False)
        payload = {
            "gateway_name": "razorpay", "gateway_transaction_id": "pay_forged", "amount": "10",
            "invoice_id": invoice["id"], "order_ref": "order_1", "signature": "bad",
        }
        resp = client.post("/payments", json=payload)
        assert resp.status_code == 400
        with app.app_context():
            assert Payment.query.count() == 0
        resp = client.post("/payments", json=dict(payload, signature=None))
        assert resp.status_code == 400

    def test_reconcile_route(self, client, sample_data):
        invoice = self._invoice(client, sample_data)
        payment = client.post("/payments", json={
            "gateway_name": "razorpay", "gateway_transaction_id": "pay_orphan", "amount": "50.00",
        }).get_json()
        assert payment["unmatched"] is True
        resp = client.post(f"/payments/{payment['id']}/reconcile", json={"invoice_id": invoice["id"]},
                           headers=_headers(role="billing"))
        assert resp.status_code == 200
        assert resp.get_json()["invoice_id"] == invoice["id"]

    def test_refund_route(self, client, sample_data):
        invoice = self._invoice(client, sample_data)
        payment = client.post("/payments", json={
            "gateway_name": "razorpay", "gateway_transaction_id": "pay_back",
            "amount": invoice["total_amount"], "invoice_id": invoice["id"],
        }).get_json()
        url = f"/payments/{payment['id']}/refunds"
        home = sample_data["home_id"]
        resp = client.post(url, json={"reason": "duplicate charge"}, headers=_headers(home))
        assert resp.status_code == 403
        billing = _headers(home, role="billing", actor="ops@platform")
        resp = client.post(url, json={"reason": "duplicate charge", "amount": "abc"}, headers=billing)
        assert resp.status_code == 400
        assert resp.get_json()["error"]["kind"] == "validation_error"
        resp = client.post(url, json={"reason": "duplicate charge"}, headers=billing)
        assert resp.status_code == 201
        refund = resp.get_json()
        assert refund["refund_type"] == "full"
        assert refund["amount"] == invoice["total_amount"]
        assert refund["status"] == "pending"
        assert refund["requested_by"] == "ops@platform"
        resp = client.post(url, json={"reason": "duplicate charge"}, headers=billing)
        assert resp.status_code == 400
        assert resp.get_json()["error"]["kind"] == "invariant_violation"
        other = _headers(sample_data["other_id"], role="billing")
        assert client.post(url, json={"reason": "duplicate charge"}, headers=other).status_code == 404


class TestCouponRoutes:
    def test_validate(self, client, sample_data):
        resp = client.get(f"/coupons/validate/WELCOME20?plan_id={sample_data['plan_id']}")
        assert resp.status_code == 200
        body = resp.get_json()
        assert body["valid"] is True
        assert body["discount_amount"] == "499.80"
        resp = client.get("/coupons/validate/NOPE?amount=100")
        assert resp.status_code == 200
        assert resp.get_json()["valid"] is False

    def test_admin_create_and_list(self, client, sample_data):
        admin = _headers(role="admin")
        resp = client.post("/coupons", json={
            "code": "summer10", "discount_type": "fixed", "discount_value": "100", "max_uses": 10,
        }, headers=admin)
        assert resp.status_code == 201
        assert resp.get_json()["code"] == "SUMMER10"
        resp = client.post("/coupons", json={"code": "SUMMER10", "discount_type": "fixed", "discount_value": "1"},
                           headers=admin)
        assert resp.status_code == 409
        codes = [coupon["code"] for coupon in client.get("/coupons", headers=admin).get_json()]
        assert codes == ["SUMMER10", "WELCOME20"]


class TestUsageRoutes:
    def test_record_summarize_and_invoice(self, client, sample_data):
        headers = _headers(sample_data["home_id"])
        sub_id = client.post("/subscriptions", json={"plan_id": sample_data["plan_id"]},
                             headers=headers).get_json()["id"]
        item = {
            "subscription_id": sub_id, "metric_name": "api_calls", "quantity": 1000, "unit_price": "0.01",
            "period_start": "2025-01-01", "period_end": "2025-01-31", "idempotency_key": "evt-1",
        }
        resp = client.post("/usage", json=item, headers=headers)
        assert resp.status_code == 201
        assert resp.get_json()["created"] is True
        resp = client.post("/usage", json=item, headers=headers)
        assert resp.status_code == 200
        assert resp.get_json()["created"] is False
        resp = client.post("/usage", json=[dict(item, metric_name="storage_gb", quantity=50, unit_price="10",
                                                idempotency_key="evt-2")], headers=headers)
        assert resp.status_code == 201

        summary = client.get(
            f"/usage/summary?subscription_id={sub_id}&period_start=2025-01-01&period_end=2025-01-31",
            headers=headers,
        ).get_json()
        assert summary["api_calls"]["total_amount"] == "10.00"
        assert summary["storage_gb"]["total_amount"] == "500.00"
        assert len(client.get("/usage?unbilled=1", headers=headers).get_json()) == 2

        resp = client.post("/usage/generate-invoice", json={
            "subscription_id": sub_id, "period_start": "2025-01-01", "period_end": "2025-01-31",
        }, headers=headers)
        assert resp.status_code == 201
        assert resp.get_json()["subtotal"] == "510.00"
        assert client.get("/usage?unbilled=1", headers=headers).get_json() == []

    def test_reverse_route(self, client, sample_data):
        headers = _headers(sample_data["home_id"])
        sub_id = client.post("/subscriptions", json={"plan_id": sample_data["plan_id"]},
                             headers=headers).get_json()["id"]
        usage = client.post("/usage", json={
            "subscription_id": sub_id, "metric_name": "api_calls", "quantity": 10, "unit_price": "1",
            "period_start": "2025-01-01", "period_end": "2025-01-31",
        }, headers=headers).get_json()
        resp = client.post(f"/usage/{usage['id']}/reverse", json={"reason": "test data"}, headers=headers)
        assert resp.status_code == 201
        assert resp.get_json()["reverses_usage_id"] == usage["id"]
        resp = client.post(f"/usage/{usage['id']}/reverse", json={"reason": "again"}, headers=headers)
        assert resp.status_code == 409


class TestPartnerRoutes:
    def test_partner_flow(self, client, sample_data):
        admin = _headers(role="admin")
        resp = client.post("/partners", json={"name": "Reseller", "email": "Resell@Example.com",
                                              "commission_value": "10"}, headers=admin)
        assert resp.status_code == 201
        partner_id = resp.get_json()["id"]
        resp = client.post(f"/partners/{partner_id}/tenants", json={"tenant_id": sample_data["home_id"]},
                           headers=admin)
        assert resp.status_code == 201

        headers = _headers(sample_data["home_id"])
        sub_id = client.post("/subscriptions", json={"plan_id": sample_data["plan_id"], "coupon_code": "WELCOME20"},
                             headers=headers).get_json()["id"]
        invoice = client.post("/invoices/generate", json={"subscription_id": sub_id}, headers=headers).get_json()
        client.post("/payments", json={"gateway_name": "razorpay", "gateway_transaction_id": "pay_p1",
                                       "amount": "2359.06", "invoice_id": invoice["id"]})

        body = client.get(f"/partners/{partner_id}/commissions", headers=admin).get_json()
        assert len(body["commissions"]) == 1
        commission = body["commissions"][0]
        assert commission["commission_amount"] == "235.91"
        assert body["summary"]["pending"]["count"] == 1

        url = f"/partners/commissions/{commission['id']}"
        assert client.put(url, json={"action": "pay"}, headers=admin).status_code == 409
        assert client.put(url, json={"action": "bogus"}, headers=admin).status_code == 400
        resp = client.put(url, json={"action": "approve"}, headers=admin)
        assert resp.status_code == 200
        assert resp.get_json()["status"] == "approved"
        assert client.put(url, json={"action": "approve"}, headers=_headers(role="billing")).status_code == 403
