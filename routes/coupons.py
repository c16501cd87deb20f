"""Coupon routes."""

from flask import Blueprint, jsonify, request

from errors import ValidationError
from serializers import coupon_to_dict, jsonable
from services.auth import role_required
from services.coupon import create_coupon, list_coupons, preview_coupon
from services.tenant import get_current_tenant_id
from utils import get_json_body, optional_id, parse_decimal

coupons_bp = Blueprint("coupons", __name__)


@coupons_bp.route("/coupons", methods=["GET"])
@role_required("manage_catalog")
def index():
    active_only = request.args.get("active_only", "").lower() in ("1", "true", "yes")
    return jsonify([coupon_to_dict(c) for c in list_coupons(active_only=active_only)])


@coupons_bp.route("/coupons", methods=["POST"])
@role_required("manage_catalog")
def create():
    coupon = create_coupon(get_json_body())
    return jsonify(coupon_to_dict(coupon)), 201


@coupons_bp.route("/coupons/validate/<code>", methods=["GET"])
def validate(code):
    """Preview a coupon for a plan without redeeming it."""
    plan_id = optional_id(request.args, "plan_id")
    amount = None
    if request.args.get("amount"):
        amount = parse_decimal(request.args["amount"])
        if amount is None:
            raise ValidationError("amount must be a number.")
    result = preview_coupon(code, plan_id, get_current_tenant_id(), amount)
    return jsonify(jsonable(result))
