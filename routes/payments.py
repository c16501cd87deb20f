"""Payment confirmation routes.

Confirmations come from the gateway (or the storefront relaying a gateway
callback), not from a tenant session, so the tenant is derived from the
referenced invoice or subscription rather than from ``X-Tenant-ID``.
"""

import logging

from flask import Blueprint, current_app, jsonify

from errors import ValidationError
from extensions import limiter
from serializers import commission_to_dict, payment_to_dict, refund_to_dict
from services.auth import role_required
from services.commission import calculate_pending_commissions
from services.gateway import GATEWAY_KEY
from services.payment import reconcile_payment, record_payment, request_refund
from services.tenant import get_current_tenant_id
from utils import get_json_body, optional_id

logger = logging.getLogger(__name__)

payments_bp = Blueprint("payments", __name__)


def _verify_with_gateway(data: dict) -> None:
    order_ref = data.get("order_ref")
    signature = data.get("signature")
    if not order_ref and not signature:
        return
    if not order_ref or not signature:
        raise ValidationError("order_ref and signature must be sent together.")
    gateway = current_app.extensions[GATEWAY_KEY]
    if not gateway.verify_payment(str(order_ref), str(signature)):
        logger.warning("Rejected unverified payment confirmation for order %s", order_ref)
        raise ValidationError("Payment confirmation could not be verified.")


@payments_bp.route("/payments", methods=["POST"])
@limiter.limit("60 per minute")
def create():
    data = get_json_body()
    # Verified before any transaction is opened.
    _verify_with_gateway(data)
    payment, created = record_payment(
        data.get("gateway_name") or "",
        str(data.get("gateway_transaction_id") or ""),
        data.get("amount"),
        optional_id(data, "invoice_id"),
        optional_id(data, "subscription_id"),
        currency=data.get("currency"),
    )
    return jsonify(payment_to_dict(payment)), 201 if created else 200


@payments_bp.route("/payments/<int:payment_id>/reconcile", methods=["POST"])
@role_required("manage_billing")
def reconcile(payment_id):
    data = get_json_body()
    payment = reconcile_payment(
        payment_id, optional_id(data, "invoice_id"), optional_id(data, "subscription_id")
    )
    return jsonify(payment_to_dict(payment))


@payments_bp.route("/payments/<int:payment_id>/refunds", methods=["POST"])
@role_required("manage_billing")
def refund(payment_id):
    data = get_json_body()
    refund_request = request_refund(
        payment_id, data.get("reason") or "", data.get("amount"), tenant_id=get_current_tenant_id()
    )
    return jsonify(refund_to_dict(refund_request)), 201


@payments_bp.route("/payments/commissions/calculate", methods=["POST"])
@role_required("manage_partners")
def calculate_commissions():
    created = calculate_pending_commissions()
    return jsonify([commission_to_dict(c) for c in created])
