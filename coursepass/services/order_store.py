"""訂單紀錄與其 CREATED/COMPLETED/CANCELED 狀態機。"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Set

from ..common.errors import InvalidAmount, InvalidPlanType, InvalidRequest, InvalidStateTransition, PlanUnavailable
from ..common.services.logging import log_event
from ..common.utils.timeutils import parse_iso, to_iso
from ..common.utils.validators import ensure_positive_int, to_decimal
from .plan_catalog import PlanCatalog
from .record_store import RecordStore, UserRef, money_to_str


class OrderStatus(str, Enum):
    CREATED = "CREATED"
    COMPLETED = "COMPLETED"
    CANCELED = "CANCELED"


TERMINAL_ORDER_STATUSES = {OrderStatus.COMPLETED, OrderStatus.CANCELED}


@dataclass
class Order:
    id: int
    plan_id: int
    buyer: UserRef
    amount: Decimal
    status: OrderStatus
    created_at: datetime
    updated_at: datetime
    expires_at: datetime
    quantity: int = 1
    payment_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    compensated: bool = False

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "plan_id": self.plan_id,
            "buyer": self.buyer.to_dict(),
            "quantity": self.quantity,
            "amount": money_to_str(self.amount),
            "status": self.status.value,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
            "expires_at": to_iso(self.expires_at),
            "payment_id": self.payment_id,
            "paid_at": to_iso(self.paid_at),
            "cancel_reason": self.cancel_reason,
            "compensated": self.compensated,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Order":
        return cls(
            id=int(data["id"]),
            plan_id=int(data["plan_id"]),
            buyer=UserRef.from_dict(data.get("buyer")),
            amount=Decimal(str(data["amount"])),
            status=OrderStatus(data["status"]),
            created_at=parse_iso(data["created_at"]),
            updated_at=parse_iso(data.get("updated_at") or data["created_at"]),
            expires_at=parse_iso(data["expires_at"]),
            quantity=int(data.get("quantity", 1)),
            payment_id=data.get("payment_id"),
            paid_at=parse_iso(data.get("paid_at")),
            cancel_reason=data.get("cancel_reason"),
            compensated=bool(data.get("compensated", False)),
        )


class OrderStore(RecordStore[Order]):
    """購買紀錄的稽核軌跡，只新增不刪除。"""

    collection = "orders"
    entity = "order"

    def __init__(self, backend, plans: PlanCatalog, *, ttl_minutes: int = 15, **kwargs) -> None:
        self._plans = plans
        self._ttl = timedelta(minutes=ttl_minutes)
        self._payment_claims: Set[int] = set()
        super().__init__(backend, **kwargs)

    def _record_from_dict(self, data: dict) -> Order:
        return Order.from_dict(data)

    def _record_to_dict(self, record: Order) -> dict:
        return record.to_dict()

    def create_order(
        self,
        plan_id: int,
        buyer: UserRef,
        amount: Optional[object] = None,
        quantity: int = 1,
    ) -> Order:
        plan = self._plans.require_plan(plan_id)
        if not plan.is_published:
            raise PlanUnavailable(f"plan {plan.id} is not available for purchase", plan_id=plan.id)
        if buyer is None or buyer.is_empty():
            raise InvalidRequest("buyer needs a user_id or an email")
        quantity = ensure_positive_int(quantity, "quantity")
        if plan.is_corporate:
            if not buyer.company_id:
                raise InvalidPlanType("corporate plans are bought on behalf of a company", plan_id=plan.id)
        elif quantity != 1:
            raise InvalidAmount("individual plans are sold one per order", quantity=quantity)

        expected = plan.price * quantity
        charged = expected if amount is None else to_decimal(amount)
        if charged <= 0:
            raise InvalidAmount("amount must be greater than zero", amount=str(charged))
        if charged != expected:
            raise InvalidAmount(
                f"amount {charged} does not match plan price {expected}",
                amount=str(charged),
                expected=str(expected),
            )
        charged = expected

        with self._mutation():
            now = self._now()
            order = Order(
                id=self._next_id(),
                plan_id=plan.id,
                buyer=buyer,
                amount=charged,
                status=OrderStatus.CREATED,
                created_at=now,
                updated_at=now,
                expires_at=now + self._ttl,
                quantity=quantity,
            )
            self._records[order.id] = order
        self._publish("order.created", order_id=order.id, plan_id=plan.id, amount=str(charged))
        return dataclasses.replace(order)

    def get_order(self, order_id: int) -> Order:
        with self._lock:
            return dataclasses.replace(self._require(order_id))

    def list_orders(
        self,
        status: Optional[str] = None,
        user_id: Optional[str] = None,
        email: Optional[str] = None,
    ) -> List[Order]:
        orders = self._all()
        if status:
            orders = [o for o in orders if o.status.value == str(status).upper()]
        if user_id:
            orders = [o for o in orders if o.buyer.user_id == str(user_id)]
        if email:
            orders = [o for o in orders if (o.buyer.email or "").lower() == email.lower()]
        return orders

    def update_status(
        self,
        order_id: int,
        new_status: object,
        payment_id: Optional[str] = None,
        reason: Optional[str] = None,
        claim_held: bool = False,
    ) -> Order:
        try:
            target = OrderStatus(str(getattr(new_status, "value", new_status)).upper())
        except ValueError:
            raise InvalidStateTransition(f"unknown order status {new_status!r}", order_id=order_id)

        with self._mutation():
            order = self._require(order_id)
            if order.status != OrderStatus.CREATED or target not in TERMINAL_ORDER_STATUSES:
                raise InvalidStateTransition(
                    f"order {order.id} cannot move from {order.status.value} to {target.value}",
                    order_id=order.id,
                    status=order.status.value,
                )
            if order.id in self._payment_claims and not claim_held:
                raise InvalidStateTransition(
                    f"order {order.id} has a payment in progress",
                    order_id=order.id,
                    status=order.status.value,
                )
            now = self._now()
            updated = dataclasses.replace(
                order,
                status=target,
                payment_id=payment_id or order.payment_id,
                paid_at=now if target == OrderStatus.COMPLETED else None,
                cancel_reason=reason if target == OrderStatus.CANCELED else None,
                updated_at=now,
            )
            self._records[order.id] = updated
        self._publish(f"order.{target.value.lower()}", order_id=updated.id, payment_id=updated.payment_id)
        return dataclasses.replace(updated)

    def compensate_completion(self, order_id: int, reason: str) -> Order:
        """將開通失敗的 COMPLETED 訂單補償為 CANCELED。"""
        with self._mutation():
            order = self._require(order_id)
            if order.status != OrderStatus.COMPLETED:
                raise InvalidStateTransition(
                    f"order {order.id} is {order.status.value}, only COMPLETED orders are compensated",
                    order_id=order.id,
                )
            updated = dataclasses.replace(
                order,
                status=OrderStatus.CANCELED,
                cancel_reason=reason,
                compensated=True,
                updated_at=self._now(),
            )
            self._records[order.id] = updated
        log_event("warning", "order.compensated", order_id=updated.id, payment_id=updated.payment_id, reason=reason)
        self._publish("order.compensated", order_id=updated.id, reason=reason)
        return dataclasses.replace(updated)

    def claim_for_payment(self, order_id: int) -> Order:
        """標記 CREATED 訂單正有金流請求進行中。

        在 ``release_payment_claim`` 之前，``sweep_expired`` 會略過此訂單，
        且只有持有標記者能變更其狀態。
        """
        with self._lock:
            order = self._require(order_id)
            if order.id in self._payment_claims:
                raise InvalidStateTransition(
                    f"order {order.id} already has a payment in progress",
                    order_id=order.id,
                )
            if order.status != OrderStatus.CREATED:
                raise InvalidStateTransition(
                    f"order {order.id} is {order.status.value}, only CREATED orders can be paid",
                    order_id=order.id,
                    status=order.status.value,
                )
            self._payment_claims.add(order.id)
            return dataclasses.replace(order)

    def release_payment_claim(self, order_id: int) -> None:
        with self._lock:
            self._payment_claims.discard(order_id)

    def has_payment_claim(self, order_id: int) -> bool:
        with self._lock:
            return order_id in self._payment_claims

    def is_expired(self, order: Order) -> bool:
        return order.status == OrderStatus.CREATED and order.expires_at < self._now()

    def sweep_expired(self) -> List[Order]:
        with self._lock:
            now = self._now()
            due = [
                o
                for o in self._records.values()
                if o.status == OrderStatus.CREATED and o.expires_at < now and o.id not in self._payment_claims
            ]
            if not due:
                return []
            with self._mutation():
                swept = []
                for order in due:
                    updated = dataclasses.replace(
                        order,
                        status=OrderStatus.CANCELED,
                        cancel_reason="expired",
                        updated_at=now,
                    )
                    self._records[order.id] = updated
                    swept.append(updated)
        for order in swept:
            self._publish("order.canceled", order_id=order.id, reason="expired")
        return [dataclasses.replace(o) for o in swept]

    def statistics(self) -> Dict[str, object]:
        orders = self._all()
        by_status = {s.value: 0 for s in OrderStatus}
        revenue = Decimal("0")
        for order in orders:
            by_status[order.status.value] += 1
            if order.status == OrderStatus.COMPLETED:
                revenue += order.amount
        return {
            "total_orders": len(orders),
            "by_status": by_status,
            "compensated_orders": sum(1 for o in orders if o.compensated),
            "total_revenue": str(revenue),
        }
