"""模擬金流付款路由。"""

from __future__ import annotations

from typing import Any, Dict

from flask import Blueprint, current_app, jsonify, request

from ..common.errors import InvalidRequest


payments_bp = Blueprint("coursepass_payments", __name__, url_prefix="/payments")


def _components() -> Dict[str, Any]:
    return current_app.extensions["coursepass_components"]


@payments_bp.post("")
def create_payment():
    payload = request.get_json(silent=True) or {}
    order_id = payload.get("order_id")
    if order_id is None:
        raise InvalidRequest("order_id is required")
    try:
        order_id = int(order_id)
    except (TypeError, ValueError):
        raise InvalidRequest("order_id must be an integer")

    result = _components()["checkout"].pay_order(
        order_id,
        amount=payload.get("amount"),
        description=payload.get("description"),
        return_url=payload.get("return_url"),
    )
    # 金流逾時，結果待之後對帳確認
    if result["status"] == "pending":
        return jsonify(result), 202
    return jsonify(result), 201


@payments_bp.get("/<payment_id>")
def get_payment(payment_id: str):
    return jsonify(_components()["gateway"].get_payment(payment_id).to_dict())
