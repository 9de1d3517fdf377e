"""企業訂閱中分配給具名員工的座位。"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional

from ..common.errors import DeadlineExpired, InvalidRequest, InvalidStateTransition
from ..common.services.logging import log_event
from ..common.utils.timeutils import parse_iso, to_iso
from .corporate_subscription_store import (
    CLOSED_SUBSCRIPTION_STATUSES,
    CorporateSubscriptionStore,
    SubscriptionStatus,
)
from .record_store import RecordStore, UserRef


class CardStatus(str, Enum):
    INACTIVE = "inactive"
    ACTIVATED = "activated"
    EXPIRED = "expired"


@dataclass
class CorporateMember:
    id: int
    subscription_id: int
    user: UserRef
    card_status: CardStatus
    issued_date: datetime
    activation_deadline: datetime
    activation_date: Optional[datetime] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "subscription_id": self.subscription_id,
            "user": self.user.to_dict(),
            "card_status": self.card_status.value,
            "issued_date": to_iso(self.issued_date),
            "activation_deadline": to_iso(self.activation_deadline),
            "activation_date": to_iso(self.activation_date),
            "start_date": to_iso(self.start_date),
            "end_date": to_iso(self.end_date),
            "updated_at": to_iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CorporateMember":
        return cls(
            id=int(data["id"]),
            subscription_id=int(data["subscription_id"]),
            user=UserRef.from_dict(data.get("user")),
            card_status=CardStatus(data["card_status"]),
            issued_date=parse_iso(data["issued_date"]),
            activation_deadline=parse_iso(data["activation_deadline"]),
            activation_date=parse_iso(data.get("activation_date")),
            start_date=parse_iso(data.get("start_date")),
            end_date=parse_iso(data.get("end_date")),
            updated_at=parse_iso(data.get("updated_at")),
        )


class CorporateMemberStore(RecordStore[CorporateMember]):
    """座位持有人。鎖定順序：先成員儲存庫，再訂閱儲存庫。"""

    collection = "corporate_members"
    entity = "member"

    def __init__(
        self,
        backend,
        subscriptions: CorporateSubscriptionStore,
        *,
        activation_deadline_days: int = 30,
        auto_expire_inactive: bool = True,
        **kwargs,
    ) -> None:
        self._subscriptions = subscriptions
        self._activation_window = timedelta(days=activation_deadline_days)
        self._auto_expire_inactive = auto_expire_inactive
        super().__init__(backend, **kwargs)

    def _record_from_dict(self, data: dict) -> CorporateMember:
        return CorporateMember.from_dict(data)

    def _record_to_dict(self, record: CorporateMember) -> dict:
        return record.to_dict()

    def assign_seat(self, subscription_id: int, user: UserRef) -> CorporateMember:
        if user is None or user.is_empty():
            raise InvalidRequest("seat holder needs a user_id or an email")

        with self._lock, self._subscriptions.lock:
            subscription = self._subscriptions.get_subscription(subscription_id)
            if subscription.status in CLOSED_SUBSCRIPTION_STATUSES:
                raise InvalidStateTransition(
                    f"subscription {subscription.id} is {subscription.status.value}",
                    subscription_id=subscription.id,
                    status=subscription.status.value,
                )
            self._subscriptions.adjust_seats(subscription.id, -1)
            try:
                with self._mutation():
                    now = self._now()
                    member = CorporateMember(
                        id=self._next_id(),
                        subscription_id=subscription.id,
                        user=user,
                        card_status=CardStatus.INACTIVE,
                        issued_date=now,
                        activation_deadline=now + self._activation_window,
                        updated_at=now,
                    )
                    self._records[member.id] = member
            except Exception:
                self._release_reserved_seat(subscription.id)
                raise
        self._publish("member.assigned", member_id=member.id, subscription_id=subscription.id)
        return dataclasses.replace(member)

    def _release_reserved_seat(self, subscription_id: int) -> None:
        try:
            self._subscriptions.adjust_seats(subscription_id, 1)
        except Exception as exc:
            log_event(
                "error",
                "member.seat_release_failed",
                subscription_id=subscription_id,
                error=str(exc),
            )

    def activate_member_card(self, member_id: int) -> CorporateMember:
        with self._mutation():
            member = self._require(member_id)
            subscription = self._subscriptions.get_subscription(member.subscription_id)
            if subscription.status != SubscriptionStatus.ACTIVATED:
                raise InvalidStateTransition(
                    f"subscription {subscription.id} is {subscription.status.value}, cards need an ACTIVATED one",
                    member_id=member.id,
                    subscription_id=subscription.id,
                )
            if member.card_status == CardStatus.ACTIVATED:
                raise InvalidStateTransition(
                    f"member {member.id} card is already activated",
                    member_id=member.id,
                )
            now = self._now()
            if member.card_status == CardStatus.INACTIVE and now > member.activation_deadline:
                raise DeadlineExpired(
                    f"member {member.id} had to be activated by {to_iso(member.activation_deadline)}",
                    member_id=member.id,
                )
            if member.card_status == CardStatus.EXPIRED and member.activation_date is None:
                raise DeadlineExpired(
                    f"member {member.id} card lapsed without ever being activated",
                    member_id=member.id,
                )
            updated = dataclasses.replace(
                member,
                card_status=CardStatus.ACTIVATED,
                activation_date=member.activation_date or now,
                start_date=now,
                end_date=now + timedelta(days=subscription.duration_days),
                updated_at=now,
            )
            self._records[member.id] = updated
        self._publish(
            "member.activated",
            member_id=updated.id,
            subscription_id=updated.subscription_id,
            end_date=to_iso(updated.end_date),
        )
        return dataclasses.replace(updated)

    def remove_member(self, member_id: int) -> bool:
        with self._lock, self._subscriptions.lock:
            member = self._require(member_id)
            with self._mutation():
                del self._records[member.id]
            try:
                self._subscriptions.adjust_seats(member.subscription_id, 1)
            except Exception:
                self._restore_member(member)
                raise
        self._publish("member.removed", member_id=member.id, subscription_id=member.subscription_id)
        return True

    def _restore_member(self, member: CorporateMember) -> None:
        try:
            with self._mutation():
                self._records[member.id] = member
        except Exception as exc:
            # 座位未歸還，但不會超賣
            log_event(
                "critical",
                "member.restore_failed",
                member_id=member.id,
                subscription_id=member.subscription_id,
                error=str(exc),
            )

    def get_member(self, member_id: int) -> CorporateMember:
        with self._lock:
            return dataclasses.replace(self._require(member_id))

    def list_members(
        self,
        subscription_id: Optional[int] = None,
        company_id: Optional[str] = None,
    ) -> List[CorporateMember]:
        members = self._all()
        if subscription_id is not None:
            members = [m for m in members if m.subscription_id == int(subscription_id)]
        if company_id:
            owned = {s.id for s in self._subscriptions.list_subscriptions(company_id=company_id)}
            members = [m for m in members if m.subscription_id in owned]
        return members

    def sweep_expired(self) -> List[CorporateMember]:
        with self._lock:
            now = self._now()
            changes: List[CorporateMember] = []
            for m in self._records.values():
                if m.card_status == CardStatus.ACTIVATED and m.end_date and m.end_date < now:
                    changes.append(dataclasses.replace(m, card_status=CardStatus.EXPIRED, updated_at=now))
                elif (
                    self._auto_expire_inactive
                    and m.card_status == CardStatus.INACTIVE
                    and m.activation_deadline < now
                ):
                    changes.append(dataclasses.replace(m, card_status=CardStatus.EXPIRED, updated_at=now))
            if not changes:
                return []
            with self._mutation():
                for updated in changes:
                    self._records[updated.id] = updated
        for updated in changes:
            self._publish("member.expired", member_id=updated.id, subscription_id=updated.subscription_id)
        return [dataclasses.replace(m) for m in changes]

    def statistics(self) -> Dict[str, object]:
        members = self._all()
        by_status = {s.value: 0 for s in CardStatus}
        for member in members:
            by_status[member.card_status.value] += 1
        return {"total_members": len(members), "by_status": by_status}
