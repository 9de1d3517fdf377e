"""定期掃描各生命週期儲存庫的逾期紀錄，並檢查跨儲存庫一致性。"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from ..common.services.logging import log_event
from ..common.utils.timeutils import Clock, to_iso, utcnow
from .checkout_service import CheckoutService
from .corporate_member_store import CorporateMemberStore
from .corporate_subscription_store import CorporateSubscriptionStore
from .membership_store import MembershipStatus, MembershipStore
from .order_store import OrderStatus, OrderStore


@dataclass
class SweepReport:
    swept_at: datetime
    reconciled: List[int] = field(default_factory=list)
    orders: List[int] = field(default_factory=list)
    memberships: List[int] = field(default_factory=list)
    subscriptions: List[int] = field(default_factory=list)
    members: List[int] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.orders) + len(self.memberships) + len(self.subscriptions) + len(self.members)

    def to_dict(self) -> Dict[str, object]:
        return {
            "swept_at": to_iso(self.swept_at),
            "reconciled": self.reconciled,
            "orders": self.orders,
            "memberships": self.memberships,
            "subscriptions": self.subscriptions,
            "members": self.members,
            "total": self.total,
        }


class ExpirationSweeper:
    def __init__(
        self,
        orders: OrderStore,
        memberships: MembershipStore,
        subscriptions: CorporateSubscriptionStore,
        members: CorporateMemberStore,
        *,
        checkout: Optional[CheckoutService] = None,
        interval_seconds: float = 60,
        clock: Clock = utcnow,
    ) -> None:
        self._orders = orders
        self._memberships = memberships
        self._subscriptions = subscriptions
        self._members = members
        self._checkout = checkout
        self.interval_seconds = interval_seconds
        self._clock = clock
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._sweep_lock = threading.Lock()

    def sweep(self) -> SweepReport:
        with self._sweep_lock:
            report = SweepReport(swept_at=self._clock())
            # 帳本已有結果的付款先結算，再處理逾期訂單
            if self._checkout is not None:
                report.reconciled = self._checkout.reconcile_expired()
            report.orders = [o.id for o in self._orders.sweep_expired()]
            report.memberships = [m.id for m in self._memberships.sweep_expired()]
            report.subscriptions = [s.id for s in self._subscriptions.sweep_expired()]
            report.members = [m.id for m in self._members.sweep_expired()]
        if report.total or report.reconciled:
            log_event(
                "info",
                "sweep.completed",
                reconciled=len(report.reconciled),
                orders=len(report.orders),
                memberships=len(report.memberships),
                subscriptions=len(report.subscriptions),
                members=len(report.members),
            )
        return report

    def check_invariants(self) -> List[str]:
        """列出所有違反跨儲存庫一致性規則的紀錄。"""
        violations: List[str] = []

        members_by_subscription: Dict[int, int] = {}
        for member in self._members.list_members():
            members_by_subscription[member.subscription_id] = members_by_subscription.get(member.subscription_id, 0) + 1

        for sub in self._subscriptions.list_subscriptions():
            if sub.seats_used + sub.seats_available != sub.seats_total:
                violations.append(
                    f"subscription {sub.id}: seats_used {sub.seats_used} + seats_available "
                    f"{sub.seats_available} != seats_total {sub.seats_total}"
                )
            if sub.seats_used < 0 or sub.seats_available < 0:
                violations.append(f"subscription {sub.id}: negative seat counter")
            assigned = members_by_subscription.get(sub.id, 0)
            if assigned != sub.seats_used:
                violations.append(f"subscription {sub.id}: {assigned} members but seats_used is {sub.seats_used}")

        for order in self._orders.list_orders(status=OrderStatus.COMPLETED.value):
            if self._memberships.find_by_order(order.id) is None and self._subscriptions.find_by_order(order.id) is None:
                violations.append(f"order {order.id}: COMPLETED without a membership or subscription")

        for membership in self._memberships.list_memberships(status=MembershipStatus.ACTIVATED.value):
            if membership.activation_date is None or membership.expiry_date is None:
                violations.append(f"membership {membership.id}: ACTIVATED without activation or expiry date")
                continue
            if membership.expiry_date != membership.activation_date + timedelta(days=membership.duration_days):
                violations.append(f"membership {membership.id}: expiry_date is not activation_date + duration_days")
            if membership.activation_date > membership.activation_deadline:
                violations.append(f"membership {membership.id}: activated after its deadline")

        if violations:
            log_event("error", "invariants.violated", count=len(violations), violations=violations[:20])
        return violations

    def start(self) -> bool:
        """以背景執行緒每 ``interval_seconds`` 秒執行一次 ``sweep``；已在執行時回傳 False。"""
        if self._thread is not None and self._thread.is_alive():
            return False
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="coursepass-sweeper", daemon=True)
        self._thread.start()
        log_event("info", "sweeper.started", interval_seconds=self.interval_seconds)
        return True

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
            log_event("info", "sweeper.stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self.sweep()
            except Exception as exc:
                # 保持計時執行緒存活，下一輪再重試
                log_event("error", "sweep.failed", error=str(exc), error_type=type(exc).__name__)
