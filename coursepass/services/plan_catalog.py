"""可購買方案的唯讀目錄。"""

from __future__ import annotations

import json
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Dict, List, Optional

from ..common.errors import NotFound


INDIVIDUAL = "individual"
CORPORATE = "corporate"
PUBLISHED = "PUBLISHED"


@dataclass(frozen=True)
class Plan:
    """可購買的方案；由引擎外部維護，此處不做修改。"""

    id: int
    title: str
    user_type: str
    price: Decimal
    duration_days: int
    activation_window_days: int = 30
    status: str = PUBLISHED

    @property
    def is_corporate(self) -> bool:
        return self.user_type == CORPORATE

    @property
    def is_published(self) -> bool:
        return self.status == PUBLISHED

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "title": self.title,
            "user_type": self.user_type,
            "price": str(self.price),
            "duration_days": self.duration_days,
            "activation_window_days": self.activation_window_days,
            "status": self.status,
        }


DEFAULT_PLANS: List[Plan] = [
    Plan(id=1, title="Individual season plan", user_type=INDIVIDUAL, price=Decimal("3000.00"), duration_days=90),
    Plan(id=2, title="Individual annual plan", user_type=INDIVIDUAL, price=Decimal("10000.00"), duration_days=365),
    Plan(id=3, title="Corporate custom plan", user_type=CORPORATE, price=Decimal("0.00"), duration_days=365),
    Plan(id=4, title="Corporate annual seat plan", user_type=CORPORATE, price=Decimal("2400.00"), duration_days=365),
]


class PlanCatalog:
    """以檔案提供方案查詢，檔案不存在時使用內建方案。"""

    def __init__(self, data_file: Optional[Path] = None, plans: Optional[List[Plan]] = None) -> None:
        self._data_file = data_file
        if plans is not None:
            self._plans = {p.id: p for p in plans}
        else:
            self._plans = {p.id: p for p in self._load()}

    def list_plans(self, user_type: Optional[str] = None, published_only: bool = False) -> List[Plan]:
        plans = sorted(self._plans.values(), key=lambda p: p.id)
        if user_type:
            plans = [p for p in plans if p.user_type == user_type]
        if published_only:
            plans = [p for p in plans if p.is_published]
        return plans

    def get_plan(self, plan_id: int) -> Optional[Plan]:
        try:
            return self._plans.get(int(plan_id))
        except (TypeError, ValueError):
            return None

    def require_plan(self, plan_id: int) -> Plan:
        plan = self.get_plan(plan_id)
        if plan is None:
            raise NotFound(f"plan {plan_id} not found", plan_id=plan_id)
        return plan

    def _load(self) -> List[Plan]:
        if self._data_file is None:
            return list(DEFAULT_PLANS)
        if not self._data_file.exists():
            self._data_file.parent.mkdir(parents=True, exist_ok=True)
            self._data_file.write_text(
                json.dumps([p.to_dict() for p in DEFAULT_PLANS], ensure_ascii=False, indent=2) + "\n",
                encoding="utf-8",
            )
            return list(DEFAULT_PLANS)
        try:
            payload = json.loads(self._data_file.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ValueError("plans.json is not valid JSON") from exc
        if not isinstance(payload, list):
            raise ValueError("plans.json must hold an array of plans")
        plans: List[Plan] = []
        for item in payload:
            if not isinstance(item, dict) or "id" not in item:
                continue
            try:
                price = Decimal(str(item.get("price", "0")))
            except InvalidOperation as exc:
                raise ValueError(f"plan {item.get('id')} has an invalid price") from exc
            plans.append(
                Plan(
                    id=int(item["id"]),
                    title=str(item.get("title", "Untitled plan")),
                    user_type=str(item.get("user_type", INDIVIDUAL)),
                    price=price,
                    duration_days=int(item.get("duration_days", 0)),
                    activation_window_days=int(item.get("activation_window_days", 30)),
                    status=str(item.get("status", PUBLISHED)),
                )
            )
        return plans
