"""管理端路由：手動掃描、一致性報告與統計。"""

from __future__ import annotations

from typing import Any, Dict

from flask import Blueprint, current_app, jsonify


admin_bp = Blueprint("coursepass_admin", __name__, url_prefix="/admin")


def _components() -> Dict[str, Any]:
    return current_app.extensions["coursepass_components"]


@admin_bp.post("/sweep")
def run_sweep():
    report = _components()["sweeper"].sweep()
    return jsonify(report.to_dict())


@admin_bp.get("/invariants")
def invariants():
    violations = _components()["sweeper"].check_invariants()
    return jsonify({"ok": not violations, "violations": violations})


@admin_bp.get("/stats")
def stats():
    components = _components()
    return jsonify(
        {
            "orders": components["order_store"].statistics(),
            "memberships": components["membership_store"].statistics(),
            "subscriptions": components["subscription_store"].statistics(),
            "members": components["member_store"].statistics(),
            "sweeper_running": components["sweeper"].running,
        }
    )
