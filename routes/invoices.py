"""Invoice routes (tenant-scoped)."""

from datetime import datetime, time, timezone

from flask import Blueprint, jsonify, request

from errors import ValidationError
from models import VALID_INVOICE_STATUSES, Invoice
from serializers import invoice_to_dict
from services.auth import role_required
from services.invoice import (
    cancel_invoice,
    generate_subscription_invoice,
    list_invoices,
    mark_paid,
)
from services.tenant import get_billing_context, require_tenant, tenant_get_or_404
from utils import get_json_body, optional_id, parse_date, required_id

invoices_bp = Blueprint("invoices", __name__)


@invoices_bp.route("/invoices", methods=["GET"])
def index():
    status = request.args.get("status") or None
    if status and status not in VALID_INVOICE_STATUSES:
        raise ValidationError(f"Unknown invoice status '{status}'.")
    subscription_id = optional_id(request.args, "subscription_id")
    invoices = list_invoices(require_tenant(), status=status, subscription_id=subscription_id)
    return jsonify([invoice_to_dict(inv, with_items=False) for inv in invoices])


@invoices_bp.route("/invoices/<int:invoice_id>", methods=["GET"])
def detail(invoice_id):
    return jsonify(invoice_to_dict(tenant_get_or_404(Invoice, invoice_id)))


@invoices_bp.route("/invoices/generate", methods=["POST"])
def generate():
    data = get_json_body()
    invoice, created = generate_subscription_invoice(
        required_id(data, "subscription_id"), get_billing_context()
    )
    return jsonify(invoice_to_dict(invoice)), 201 if created else 200


@invoices_bp.route("/invoices/<int:invoice_id>/mark-paid", methods=["PUT"])
@role_required("manage_billing")
def pay(invoice_id):
    data = get_json_body()
    if "paid_amount" not in data:
        raise ValidationError("paid_amount is required.")
    payment_date = None
    if data.get("payment_date"):
        day = parse_date(str(data["payment_date"]))
        if day is None:
            raise ValidationError("payment_date must be a YYYY-MM-DD date.")
        payment_date = datetime.combine(day, time.min, tzinfo=timezone.utc)
    invoice = mark_paid(invoice_id, data["paid_amount"], payment_date, tenant_id=require_tenant())
    return jsonify(invoice_to_dict(invoice))


@invoices_bp.route("/invoices/<int:invoice_id>/cancel", methods=["POST"])
@role_required("manage_billing")
def cancel(invoice_id):
    data = get_json_body()
    invoice = cancel_invoice(invoice_id, data.get("reason"), tenant_id=require_tenant())
    return jsonify(invoice_to_dict(invoice))
