"""Usage metering routes (tenant-scoped)."""

from flask import Blueprint, jsonify, request

from errors import ValidationError
from extensions import limiter
from models import UsageRecord
from serializers import invoice_to_dict, jsonable, usage_to_dict
from services.invoice import generate_usage_invoice
from services.tenant import get_billing_context, require_tenant, tenant_query
from services.usage import aggregate_usage, record_usage_batch, reverse_usage
from utils import get_json_body, optional_id, required_date, required_id

usage_bp = Blueprint("usage", __name__)


@usage_bp.route("/usage", methods=["POST"])
@limiter.limit("300 per minute")
def record():
    """Accept one usage object or a list of them.

    Responds 201 when anything new was stored, 200 when every item was a
    replay of an earlier delivery.
    """
    payload = request.get_json(silent=True)
    if isinstance(payload, dict):
        items = [payload]
    elif isinstance(payload, list) and all(isinstance(item, dict) for item in payload):
        items = payload
    else:
        raise ValidationError("Request body must be a usage object or a list of them.")

    results = record_usage_batch(require_tenant(), items)
    body = [dict(usage_to_dict(rec), created=created) for rec, created in results]
    any_created = any(created for _rec, created in results)
    if isinstance(payload, dict):
        return jsonify(body[0]), 201 if any_created else 200
    return jsonify(body), 201 if any_created else 200


@usage_bp.route("/usage", methods=["GET"])
def index():
    query = tenant_query(UsageRecord)
    subscription_id = optional_id(request.args, "subscription_id")
    if subscription_id:
        query = query.filter_by(subscription_id=subscription_id)
    if request.args.get("unbilled", "").lower() in ("1", "true", "yes"):
        query = query.filter_by(is_billed=False)
    return jsonify([usage_to_dict(rec) for rec in query.order_by(UsageRecord.id).all()])


@usage_bp.route("/usage/summary", methods=["GET"])
def summary():
    tid = require_tenant()
    subscription_id = required_id(request.args, "subscription_id")
    period_start = required_date(request.args, "period_start")
    period_end = required_date(request.args, "period_end")
    totals = aggregate_usage(tid, subscription_id, period_start, period_end)
    return jsonify(jsonable(totals))


@usage_bp.route("/usage/<int:usage_id>/reverse", methods=["POST"])
def reverse(usage_id):
    data = get_json_body()
    reversal = reverse_usage(usage_id, data.get("reason") or "", tenant_id=require_tenant())
    return jsonify(usage_to_dict(reversal)), 201


@usage_bp.route("/usage/generate-invoice", methods=["POST"])
def generate_invoice():
    data = get_json_body()
    invoice, created = generate_usage_invoice(
        get_billing_context(),
        required_id(data, "subscription_id"),
        required_date(data, "period_start"),
        required_date(data, "period_end"),
    )
    return jsonify(invoice_to_dict(invoice)), 201 if created else 200
