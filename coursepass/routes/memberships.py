"""個人會籍路由。"""

from __future__ import annotations

from typing import Any, Dict

from flask import Blueprint, current_app, jsonify, request

from ..common.errors import InvalidRequest


memberships_bp = Blueprint("coursepass_memberships", __name__, url_prefix="/memberships")


def _components() -> Dict[str, Any]:
    return current_app.extensions["coursepass_components"]


@memberships_bp.get("")
def list_memberships():
    memberships = _components()["membership_store"].list_memberships(
        user_id=request.args.get("user_id"),
        email=request.args.get("email"),
        status=request.args.get("status"),
    )
    return jsonify({"memberships": [m.to_dict() for m in memberships], "total": len(memberships)})


@memberships_bp.get("/expiring")
def list_expiring():
    days = request.args.get("days", 7, type=int)
    if days is None or days < 0:
        raise InvalidRequest("days must be a non-negative integer")
    memberships = _components()["membership_store"].list_expiring(days)
    return jsonify({"memberships": [m.to_dict() for m in memberships], "days": days})


@memberships_bp.get("/<int:membership_id>")
def get_membership(membership_id: int):
    return jsonify(_components()["membership_store"].get_membership(membership_id).to_dict())


@memberships_bp.post("/<int:membership_id>/activate")
def activate_membership(membership_id: int):
    membership = _components()["membership_store"].activate_membership(membership_id)
    return jsonify(membership.to_dict())
