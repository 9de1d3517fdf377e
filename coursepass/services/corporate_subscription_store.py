"""依企業方案購買的公司座位池。"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional

from ..common.errors import (
    DeadlineExpired,
    DuplicateRecord,
    InvalidAmount,
    InvalidPlanType,
    InvalidStateTransition,
    SeatExhausted,
)
from ..common.utils.timeutils import parse_iso, to_iso
from ..common.utils.validators import ensure_positive_int, to_decimal
from .company_directory import CompanyDirectory
from .plan_catalog import PlanCatalog
from .record_store import RecordStore, money_to_str


class SubscriptionStatus(str, Enum):
    INACTIVE = "INACTIVE"
    ACTIVATED = "ACTIVATED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


CLOSED_SUBSCRIPTION_STATUSES = {SubscriptionStatus.EXPIRED, SubscriptionStatus.CANCELLED}


@dataclass
class CorporateSubscription:
    id: int
    company_id: str
    plan_id: int
    seats_total: int
    seats_used: int
    seats_available: int
    status: SubscriptionStatus
    purchase_date: datetime
    activation_deadline: datetime
    amount_paid: Decimal
    duration_days: int
    company_name: str = ""
    plan_title: str = ""
    order_id: Optional[int] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "company_id": self.company_id,
            "company_name": self.company_name,
            "plan_id": self.plan_id,
            "plan_title": self.plan_title,
            "duration_days": self.duration_days,
            "order_id": self.order_id,
            "seats_total": self.seats_total,
            "seats_used": self.seats_used,
            "seats_available": self.seats_available,
            "status": self.status.value,
            "purchase_date": to_iso(self.purchase_date),
            "activation_deadline": to_iso(self.activation_deadline),
            "amount_paid": money_to_str(self.amount_paid),
            "updated_at": to_iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CorporateSubscription":
        order_id = data.get("order_id")
        return cls(
            id=int(data["id"]),
            company_id=str(data["company_id"]),
            plan_id=int(data["plan_id"]),
            seats_total=int(data["seats_total"]),
            seats_used=int(data.get("seats_used", 0)),
            seats_available=int(data.get("seats_available", data["seats_total"])),
            status=SubscriptionStatus(data["status"]),
            purchase_date=parse_iso(data["purchase_date"]),
            activation_deadline=parse_iso(data["activation_deadline"]),
            amount_paid=Decimal(str(data.get("amount_paid") or "0")),
            duration_days=int(data.get("duration_days", 0)),
            company_name=str(data.get("company_name") or ""),
            plan_title=str(data.get("plan_title") or ""),
            order_id=int(order_id) if order_id is not None else None,
            updated_at=parse_iso(data.get("updated_at")),
        )


class CorporateSubscriptionStore(RecordStore[CorporateSubscription]):
    """持有座位計數；只能透過 ``adjust_seats`` 變更。"""

    collection = "corporate_subscriptions"
    entity = "subscription"

    def __init__(self, backend, plans: PlanCatalog, companies: CompanyDirectory, **kwargs) -> None:
        self._plans = plans
        self._companies = companies
        super().__init__(backend, **kwargs)

    def _record_from_dict(self, data: dict) -> CorporateSubscription:
        return CorporateSubscription.from_dict(data)

    def _record_to_dict(self, record: CorporateSubscription) -> dict:
        return record.to_dict()

    def create_subscription(
        self,
        company_id: str,
        plan_id: int,
        seats_total: int,
        amount_paid: object = 0,
        order_id: Optional[int] = None,
    ) -> CorporateSubscription:
        plan = self._plans.require_plan(plan_id)
        if not plan.is_corporate:
            raise InvalidPlanType(f"plan {plan.id} is not a corporate plan", plan_id=plan.id)
        company = self._companies.require_company(company_id)
        seats = ensure_positive_int(seats_total, "seats_total")
        paid = to_decimal(amount_paid, "amount_paid")
        if paid < 0:
            raise InvalidAmount("amount_paid cannot be negative", amount_paid=str(paid))

        with self._mutation():
            if order_id is not None and any(s.order_id == int(order_id) for s in self._records.values()):
                raise DuplicateRecord(f"order {order_id} already has a subscription", order_id=order_id)
            now = self._now()
            subscription = CorporateSubscription(
                id=self._next_id(),
                company_id=company.company_id,
                company_name=company.name,
                plan_id=plan.id,
                plan_title=plan.title,
                duration_days=plan.duration_days,
                order_id=int(order_id) if order_id is not None else None,
                seats_total=seats,
                seats_used=0,
                seats_available=seats,
                status=SubscriptionStatus.INACTIVE,
                purchase_date=now,
                activation_deadline=now + timedelta(days=plan.activation_window_days),
                amount_paid=paid,
                updated_at=now,
            )
            self._records[subscription.id] = subscription
        self._publish(
            "subscription.created",
            subscription_id=subscription.id,
            company_id=company.company_id,
            seats_total=seats,
        )
        return dataclasses.replace(subscription)

    def activate_subscription(self, subscription_id: int) -> CorporateSubscription:
        with self._mutation():
            subscription = self._require(subscription_id)
            if subscription.status != SubscriptionStatus.INACTIVE:
                raise InvalidStateTransition(
                    f"subscription {subscription.id} is {subscription.status.value}, only INACTIVE can be activated",
                    subscription_id=subscription.id,
                    status=subscription.status.value,
                )
            now = self._now()
            if now > subscription.activation_deadline:
                raise DeadlineExpired(
                    f"subscription {subscription.id} had to be activated by "
                    f"{to_iso(subscription.activation_deadline)}",
                    subscription_id=subscription.id,
                )
            updated = dataclasses.replace(subscription, status=SubscriptionStatus.ACTIVATED, updated_at=now)
            self._records[subscription.id] = updated
        self._publish("subscription.activated", subscription_id=updated.id)
        return dataclasses.replace(updated)

    def adjust_seats(self, subscription_id: int, delta: int) -> CorporateSubscription:
        """將 ``delta`` 個座位歸還座位池（正數）或自池中取出（負數）。"""
        with self._mutation():
            subscription = self._require(subscription_id)
            if subscription.seats_available + delta < 0:
                raise SeatExhausted(
                    subscription_id=subscription.id,
                    seats_available=subscription.seats_available,
                )
            if subscription.seats_used - delta < 0:
                raise InvalidStateTransition(
                    f"subscription {subscription.id} has only {subscription.seats_used} seats in use",
                    subscription_id=subscription.id,
                )
            updated = dataclasses.replace(
                subscription,
                seats_used=subscription.seats_used - delta,
                seats_available=subscription.seats_available + delta,
                updated_at=self._now(),
            )
            self._records[subscription.id] = updated
        self._publish(
            "subscription.seats_adjusted",
            subscription_id=updated.id,
            delta=delta,
            seats_used=updated.seats_used,
            seats_available=updated.seats_available,
        )
        return dataclasses.replace(updated)

    def get_subscription(self, subscription_id: int) -> CorporateSubscription:
        with self._lock:
            return dataclasses.replace(self._require(subscription_id))

    def find_by_order(self, order_id: int) -> Optional[CorporateSubscription]:
        for subscription in self._all():
            if subscription.order_id == int(order_id):
                return subscription
        return None

    def list_subscriptions(self, company_id: Optional[str] = None) -> List[CorporateSubscription]:
        subscriptions = self._all()
        if company_id:
            subscriptions = [s for s in subscriptions if s.company_id == str(company_id)]
        return subscriptions

    def sweep_expired(self) -> List[CorporateSubscription]:
        with self._lock:
            now = self._now()
            due = [
                s
                for s in self._records.values()
                if s.status == SubscriptionStatus.INACTIVE and s.activation_deadline < now
            ]
            if not due:
                return []
            changes = [dataclasses.replace(s, status=SubscriptionStatus.EXPIRED, updated_at=now) for s in due]
            with self._mutation():
                for updated in changes:
                    self._records[updated.id] = updated
        for updated in changes:
            self._publish("subscription.expired", subscription_id=updated.id, reason="activation_deadline")
        return [dataclasses.replace(s) for s in changes]

    def statistics(self) -> Dict[str, object]:
        subscriptions = self._all()
        by_status = {s.value: 0 for s in SubscriptionStatus}
        revenue = Decimal("0")
        for subscription in subscriptions:
            by_status[subscription.status.value] += 1
            revenue += subscription.amount_paid
        return {
            "total_subscriptions": len(subscriptions),
            "by_status": by_status,
            "seats_total": sum(s.seats_total for s in subscriptions),
            "seats_used": sum(s.seats_used for s in subscriptions),
            "seats_available": sum(s.seats_available for s in subscriptions),
            "total_revenue": str(revenue),
        }
