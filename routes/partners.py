"""Partner and commission routes (platform admin)."""

from flask import Blueprint, jsonify, request

from errors import ValidationError
from models import VALID_COMMISSION_STATUSES
from serializers import commission_to_dict, jsonable, partner_tenant_to_dict, partner_to_dict
from services.auth import role_required
from services.commission import (
    create_partner,
    get_partner,
    link_partner_tenant,
    list_commissions,
    partner_commission_summary,
    transition_commission,
)
from utils import get_json_body, required_id

partners_bp = Blueprint("partners", __name__)


@partners_bp.route("/partners", methods=["POST"])
@role_required("manage_partners")
def create():
    partner = create_partner(get_json_body())
    return jsonify(partner_to_dict(partner)), 201


@partners_bp.route("/partners/<int:partner_id>/tenants", methods=["POST"])
@role_required("manage_partners")
def link_tenant(partner_id):
    data = get_json_body()
    link = link_partner_tenant(
        partner_id, required_id(data, "tenant_id"), data.get("custom_commission_value")
    )
    return jsonify(partner_tenant_to_dict(link)), 201


@partners_bp.route("/partners/<int:partner_id>/commissions", methods=["GET"])
@role_required("manage_partners")
def commissions(partner_id):
    partner = get_partner(partner_id)
    status = request.args.get("status") or None
    if status and status not in VALID_COMMISSION_STATUSES:
        raise ValidationError(f"Unknown commission status '{status}'.")
    return jsonify({
        "partner": partner_to_dict(partner),
        "commissions": [commission_to_dict(c) for c in list_commissions(partner.id, status)],
        "summary": jsonable(partner_commission_summary(partner.id)),
    })


@partners_bp.route("/partners/commissions/<int:commission_id>", methods=["PUT"])
@role_required("manage_partners")
def update_commission(commission_id):
    data = get_json_body()
    commission = transition_commission(commission_id, (data.get("action") or "").strip())
    return jsonify(commission_to_dict(commission))
