"""個人會籍：PURCHASED → ACTIVATED → EXPIRED。"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional

from ..common.errors import (
    ActiveMembershipExists,
    DeadlineExpired,
    DuplicateRecord,
    InvalidPlanType,
    InvalidRequest,
    InvalidStateTransition,
)
from ..common.utils.timeutils import parse_iso, to_iso
from ..common.utils.validators import to_decimal
from .plan_catalog import PlanCatalog
from .record_store import RecordStore, UserRef, money_to_str


class MembershipStatus(str, Enum):
    PURCHASED = "PURCHASED"
    ACTIVATED = "ACTIVATED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


@dataclass
class Membership:
    id: int
    user: UserRef
    plan_id: int
    order_id: Optional[int]
    amount_paid: Decimal
    status: MembershipStatus
    purchase_date: datetime
    activation_deadline: datetime
    duration_days: int
    plan_title: str = ""
    activation_date: Optional[datetime] = None
    expiry_date: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "user": self.user.to_dict(),
            "plan_id": self.plan_id,
            "plan_title": self.plan_title,
            "order_id": self.order_id,
            "amount_paid": money_to_str(self.amount_paid),
            "status": self.status.value,
            "purchase_date": to_iso(self.purchase_date),
            "activation_deadline": to_iso(self.activation_deadline),
            "activation_date": to_iso(self.activation_date),
            "expiry_date": to_iso(self.expiry_date),
            "duration_days": self.duration_days,
            "updated_at": to_iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Membership":
        order_id = data.get("order_id")
        return cls(
            id=int(data["id"]),
            user=UserRef.from_dict(data.get("user")),
            plan_id=int(data["plan_id"]),
            order_id=int(order_id) if order_id is not None else None,
            amount_paid=Decimal(str(data.get("amount_paid") or "0")),
            status=MembershipStatus(data["status"]),
            purchase_date=parse_iso(data["purchase_date"]),
            activation_deadline=parse_iso(data["activation_deadline"]),
            duration_days=int(data.get("duration_days", 0)),
            plan_title=str(data.get("plan_title") or ""),
            activation_date=parse_iso(data.get("activation_date")),
            expiry_date=parse_iso(data.get("expiry_date")),
            updated_at=parse_iso(data.get("updated_at")),
        )


class MembershipStore(RecordStore[Membership]):
    """會籍於訂單完成時建立，永不刪除。"""

    collection = "memberships"
    entity = "membership"

    def __init__(
        self,
        backend,
        plans: PlanCatalog,
        *,
        never_activated_policy: str = "expired",
        single_active_membership: bool = True,
        **kwargs,
    ) -> None:
        if never_activated_policy not in ("expired", "cancelled"):
            raise ValueError("never_activated_policy must be 'expired' or 'cancelled'")
        self._plans = plans
        self._never_activated_status = (
            MembershipStatus.EXPIRED if never_activated_policy == "expired" else MembershipStatus.CANCELLED
        )
        self._single_active = single_active_membership
        super().__init__(backend, **kwargs)

    def _record_from_dict(self, data: dict) -> Membership:
        return Membership.from_dict(data)

    def _record_to_dict(self, record: Membership) -> dict:
        return record.to_dict()

    def create_membership(
        self,
        user: UserRef,
        plan_id: int,
        order_id: Optional[int],
        amount_paid: object,
    ) -> Membership:
        plan = self._plans.require_plan(plan_id)
        if plan.is_corporate:
            raise InvalidPlanType(f"plan {plan.id} is a corporate plan", plan_id=plan.id)
        if user is None or user.is_empty():
            raise InvalidRequest("membership needs a user_id or an email")
        paid = to_decimal(amount_paid, "amount_paid")

        with self._mutation():
            if order_id is not None and any(m.order_id == int(order_id) for m in self._records.values()):
                raise DuplicateRecord(f"order {order_id} already has a membership", order_id=order_id)
            now = self._now()
            membership = Membership(
                id=self._next_id(),
                user=user,
                plan_id=plan.id,
                order_id=int(order_id) if order_id is not None else None,
                amount_paid=paid,
                status=MembershipStatus.PURCHASED,
                purchase_date=now,
                activation_deadline=now + timedelta(days=plan.activation_window_days),
                duration_days=plan.duration_days,
                plan_title=plan.title,
                updated_at=now,
            )
            self._records[membership.id] = membership
        self._publish(
            "membership.purchased",
            membership_id=membership.id,
            order_id=membership.order_id,
            plan_id=plan.id,
        )
        return dataclasses.replace(membership)

    def activate_membership(self, membership_id: int) -> Membership:
        with self._mutation():
            membership = self._require(membership_id)
            if membership.status != MembershipStatus.PURCHASED:
                raise InvalidStateTransition(
                    f"membership {membership.id} is {membership.status.value}, only PURCHASED can be activated",
                    membership_id=membership.id,
                    status=membership.status.value,
                )
            now = self._now()
            if now > membership.activation_deadline:
                raise DeadlineExpired(
                    f"membership {membership.id} had to be activated by {to_iso(membership.activation_deadline)}",
                    membership_id=membership.id,
                    activation_deadline=to_iso(membership.activation_deadline),
                )
            if self._single_active and self._has_active(membership):
                raise ActiveMembershipExists(membership_id=membership.id)
            updated = dataclasses.replace(
                membership,
                status=MembershipStatus.ACTIVATED,
                activation_date=now,
                expiry_date=now + timedelta(days=membership.duration_days),
                updated_at=now,
            )
            self._records[membership.id] = updated
        self._publish(
            "membership.activated",
            membership_id=updated.id,
            expiry_date=to_iso(updated.expiry_date),
        )
        return dataclasses.replace(updated)

    def _has_active(self, membership: Membership) -> bool:
        return any(
            m.status == MembershipStatus.ACTIVATED and m.id != membership.id and m.user.same_person(membership.user)
            for m in self._records.values()
        )

    def get_membership(self, membership_id: int) -> Membership:
        with self._lock:
            return dataclasses.replace(self._require(membership_id))

    def find_by_order(self, order_id: int) -> Optional[Membership]:
        for membership in self._all():
            if membership.order_id == int(order_id):
                return membership
        return None

    def list_memberships(
        self,
        user_id: Optional[str] = None,
        email: Optional[str] = None,
        status: Optional[str] = None,
    ) -> List[Membership]:
        memberships = self._all()
        if user_id:
            memberships = [m for m in memberships if m.user.user_id == str(user_id)]
        if email:
            memberships = [m for m in memberships if (m.user.email or "").lower() == email.lower()]
        if status:
            memberships = [m for m in memberships if m.status.value == str(status).upper()]
        return memberships

    def list_expiring(self, within_days: int = 7) -> List[Membership]:
        """列出將於 ``within_days`` 天內到期的 ACTIVATED 會籍。"""
        now = self._now()
        horizon = now + timedelta(days=within_days)
        return [
            m
            for m in self._all()
            if m.status == MembershipStatus.ACTIVATED and m.expiry_date and now < m.expiry_date <= horizon
        ]

    def sweep_expired(self) -> List[Membership]:
        with self._lock:
            now = self._now()
            changes: List[Membership] = []
            for m in self._records.values():
                if m.status == MembershipStatus.ACTIVATED and m.expiry_date and m.expiry_date < now:
                    changes.append(dataclasses.replace(m, status=MembershipStatus.EXPIRED, updated_at=now))
                elif m.status == MembershipStatus.PURCHASED and m.activation_deadline < now:
                    changes.append(dataclasses.replace(m, status=self._never_activated_status, updated_at=now))
            if not changes:
                return []
            with self._mutation():
                for updated in changes:
                    self._records[updated.id] = updated
        for updated in changes:
            self._publish(f"membership.{updated.status.value.lower()}", membership_id=updated.id, reason="sweep")
        return [dataclasses.replace(m) for m in changes]

    def statistics(self) -> Dict[str, object]:
        memberships = self._all()
        by_status = {s.value: 0 for s in MembershipStatus}
        for membership in memberships:
            by_status[membership.status.value] += 1
        return {"total_memberships": len(memberships), "by_status": by_status}
