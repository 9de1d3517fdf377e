"""企業訂閱與座位管理路由。"""

from __future__ import annotations

from typing import Any, Dict

from flask import Blueprint, current_app, jsonify, request

from ..common.errors import InvalidRequest
from ..services import UserRef


subscriptions_bp = Blueprint("coursepass_subscriptions", __name__, url_prefix="/corporate-subscriptions")
members_bp = Blueprint("coursepass_members", __name__, url_prefix="/corporate-members")


def _components() -> Dict[str, Any]:
    return current_app.extensions["coursepass_components"]


def _required(payload: Dict[str, Any], *fields: str) -> None:
    missing = [f for f in fields if payload.get(f) in (None, "")]
    if missing:
        raise InvalidRequest(f"missing fields: {', '.join(missing)}", fields=missing)


@subscriptions_bp.post("")
def create_subscription():
    payload = request.get_json(silent=True) or {}
    _required(payload, "company_id", "plan_id", "seats_total")
    subscription = _components()["subscription_store"].create_subscription(
        company_id=payload["company_id"],
        plan_id=payload["plan_id"],
        seats_total=payload["seats_total"],
        amount_paid=payload.get("amount_paid", 0),
    )
    return jsonify(subscription.to_dict()), 201


@subscriptions_bp.get("")
def list_subscriptions():
    subscriptions = _components()["subscription_store"].list_subscriptions(
        company_id=request.args.get("company_id"),
    )
    return jsonify({"subscriptions": [s.to_dict() for s in subscriptions], "total": len(subscriptions)})


@subscriptions_bp.get("/<int:subscription_id>")
def get_subscription(subscription_id: int):
    return jsonify(_components()["subscription_store"].get_subscription(subscription_id).to_dict())


@subscriptions_bp.post("/<int:subscription_id>/activate")
def activate_subscription(subscription_id: int):
    subscription = _components()["subscription_store"].activate_subscription(subscription_id)
    return jsonify(subscription.to_dict())


@subscriptions_bp.get("/<int:subscription_id>/members")
def list_subscription_members(subscription_id: int):
    _components()["subscription_store"].get_subscription(subscription_id)
    members = _components()["member_store"].list_members(subscription_id=subscription_id)
    return jsonify({"members": [m.to_dict() for m in members], "total": len(members)})


@members_bp.post("")
def assign_seat():
    payload = request.get_json(silent=True) or {}
    _required(payload, "subscription_id", "user")
    if not isinstance(payload["user"], dict):
        raise InvalidRequest("user must be an object")
    try:
        subscription_id = int(payload["subscription_id"])
    except (TypeError, ValueError):
        raise InvalidRequest("subscription_id must be an integer")
    member = _components()["member_store"].assign_seat(subscription_id, UserRef.from_dict(payload["user"]))
    return jsonify(member.to_dict()), 201


@members_bp.get("")
def list_members():
    subscription_id = request.args.get("subscription_id", type=int)
    members = _components()["member_store"].list_members(
        subscription_id=subscription_id,
        company_id=request.args.get("company_id"),
    )
    return jsonify({"members": [m.to_dict() for m in members], "total": len(members)})


@members_bp.get("/<int:member_id>")
def get_member(member_id: int):
    return jsonify(_components()["member_store"].get_member(member_id).to_dict())


@members_bp.post("/<int:member_id>/activate")
def activate_member_card(member_id: int):
    return jsonify(_components()["member_store"].activate_member_card(member_id).to_dict())


@members_bp.delete("/<int:member_id>")
def remove_member(member_id: int):
    removed = _components()["member_store"].remove_member(member_id)
    return jsonify({"member_id": member_id, "removed": removed})
