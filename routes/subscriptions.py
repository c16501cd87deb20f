"""Subscription routes (tenant-scoped)."""

from flask import Blueprint, jsonify

from errors import NotFoundError, ValidationError
from models import Subscription
from serializers import jsonable, subscription_to_dict
from services.auth import role_required
from services.subscription import (
    cancel_subscription,
    change_subscription_status,
    create_subscription,
    get_billing_metrics,
    get_live_subscription,
)
from services.tenant import (
    get_billing_context,
    get_current_tenant_id,
    require_tenant,
    tenant_get_or_404,
)
from utils import get_json_body, parse_date, required_id

subscriptions_bp = Blueprint("subscriptions", __name__)


@subscriptions_bp.route("/subscriptions", methods=["POST"])
def create():
    data = get_json_body()
    ctx = get_billing_context()
    start_date = None
    if data.get("start_date"):
        start_date = parse_date(str(data["start_date"]))
        if start_date is None:
            raise ValidationError("start_date must be a YYYY-MM-DD date.")
    sub = create_subscription(
        ctx,
        required_id(data, "plan_id"),
        data.get("coupon_code") or None,
        start_date=start_date,
        auto_renew=bool(data.get("auto_renew", True)),
        await_payment=bool(data.get("await_payment", False)),
    )
    return jsonify(subscription_to_dict(sub)), 201


@subscriptions_bp.route("/subscriptions/metrics", methods=["GET"])
@role_required("manage_billing")
def metrics():
    """Platform-wide figures for admins; a tenant header narrows them to that tenant."""
    return jsonify(jsonable(get_billing_metrics(get_current_tenant_id())))


@subscriptions_bp.route("/subscriptions/current", methods=["GET"])
def current():
    sub = get_live_subscription(require_tenant())
    if sub is None:
        raise NotFoundError("No active subscription.")
    return jsonify(subscription_to_dict(sub))


@subscriptions_bp.route("/subscriptions/<int:subscription_id>", methods=["GET"])
def detail(subscription_id):
    return jsonify(subscription_to_dict(tenant_get_or_404(Subscription, subscription_id)))


@subscriptions_bp.route("/subscriptions/<int:subscription_id>/cancel", methods=["POST"])
def cancel(subscription_id):
    data = get_json_body()
    sub = cancel_subscription(subscription_id, data.get("reason"), tenant_id=require_tenant())
    return jsonify(subscription_to_dict(sub))


@subscriptions_bp.route("/subscriptions/<int:subscription_id>/status", methods=["POST"])
@role_required("manage_billing")
def change_status(subscription_id):
    data = get_json_body()
    sub = change_subscription_status(
        subscription_id, (data.get("event") or "").strip(), tenant_id=require_tenant()
    )
    return jsonify(subscription_to_dict(sub))
