"""訂單路由。"""

from __future__ import annotations

from typing import Any, Dict

from flask import Blueprint, current_app, jsonify, request

from ..common.errors import InvalidRequest
from ..common.utils.pagination import paginate
from ..services import OrderStatus, UserRef


orders_bp = Blueprint("coursepass_orders", __name__, url_prefix="/orders")


def _components() -> Dict[str, Any]:
    return current_app.extensions["coursepass_components"]


@orders_bp.post("")
def create_order():
    payload = request.get_json(silent=True) or {}
    if payload.get("plan_id") is None:
        raise InvalidRequest("plan_id is required")
    buyer = UserRef.from_dict(payload.get("buyer") if isinstance(payload.get("buyer"), dict) else None)
    order = _components()["order_store"].create_order(
        plan_id=payload["plan_id"],
        buyer=buyer,
        amount=payload.get("amount"),
        quantity=payload.get("quantity", 1),
    )
    return jsonify(order.to_dict()), 201


@orders_bp.get("")
def list_orders():
    orders = _components()["order_store"].list_orders(
        status=request.args.get("status"),
        user_id=request.args.get("user_id"),
        email=request.args.get("email"),
    )
    items, page, page_size = paginate(
        orders,
        request.args.get("page", 1, type=int),
        request.args.get("page_size", 20, type=int),
    )
    return jsonify(
        {
            "orders": [o.to_dict() for o in items],
            "total": len(orders),
            "page": page,
            "page_size": page_size,
        }
    )


@orders_bp.get("/<int:order_id>")
def get_order(order_id: int):
    order = _components()["order_store"].get_order(order_id)
    return jsonify(order.to_dict())


@orders_bp.patch("/<int:order_id>")
def update_order(order_id: int):
    payload = request.get_json(silent=True) or {}
    status = str(payload.get("status") or "").upper()
    if not status:
        raise InvalidRequest("status is required")

    checkout = _components()["checkout"]
    if status == OrderStatus.COMPLETED.value:
        outcome = checkout.complete_order(order_id, payment_id=payload.get("payment_id"))
        return jsonify(outcome.order.to_dict())
    order = _components()["order_store"].update_status(
        order_id,
        status,
        payment_id=payload.get("payment_id"),
        reason=payload.get("reason"),
    )
    return jsonify(order.to_dict())


@orders_bp.post("/<int:order_id>/reconcile")
def reconcile_order(order_id: int):
    return jsonify(_components()["checkout"].reconcile_order(order_id))
