"""Plan catalog routes."""

from flask import Blueprint, jsonify, request

from serializers import plan_to_dict
from services.auth import role_required
from services.plan_catalog import create_plan, deactivate_plan, get_plan, list_plans, update_plan
from utils import get_json_body

plans_bp = Blueprint("plans", __name__)


@plans_bp.route("/plans", methods=["GET"])
def index():
    include_inactive = request.args.get("include_inactive", "").lower() in ("1", "true", "yes")
    return jsonify([plan_to_dict(p) for p in list_plans(active_only=not include_inactive)])


@plans_bp.route("/plans/<int:plan_id>", methods=["GET"])
def detail(plan_id):
    return jsonify(plan_to_dict(get_plan(plan_id)))


@plans_bp.route("/plans", methods=["POST"])
@role_required("manage_catalog")
def create():
    plan = create_plan(get_json_body())
    return jsonify(plan_to_dict(plan)), 201


@plans_bp.route("/plans/<int:plan_id>", methods=["PUT"])
@role_required("manage_catalog")
def update(plan_id):
    plan = update_plan(plan_id, get_json_body())
    return jsonify(plan_to_dict(plan))


@plans_bp.route("/plans/<int:plan_id>/deactivate", methods=["POST"])
@role_required("manage_catalog")
def deactivate(plan_id):
    plan = deactivate_plan(plan_id, get_json_body().get("reason"))
    return jsonify(plan_to_dict(plan))
