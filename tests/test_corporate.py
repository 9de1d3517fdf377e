import threading
from datetime import timedelta
from decimal import Decimal

import pytest

from coursepass.common.errors import (
    DeadlineExpired,
    InvalidAmount,
    InvalidPlanType,
    InvalidStateTransition,
    NotFound,
    PersistenceFailure,
    SeatExhausted,
)
from coursepass.services import (
    CardStatus,
    CompanyDirectory,
    CorporateMemberStore,
    CorporateSubscriptionStore,
    PlanCatalog,
    SubscriptionStatus,
    UserRef,
)


def seat_user(n):
    return UserRef(user_id=f"emp_{n}", email=f"emp{n}@hsinchu-semi.example", name=f"Employee {n}")


def assert_seat_sum(subscription):
    assert subscription.seats_used + subscription.seats_available == subscription.seats_total
    assert subscription.seats_used >= 0


@pytest.fixture
def subscription(subscription_store):
    return subscription_store.create_subscription("comp_001", plan_id=4, seats_total=5, amount_paid="12000")


@pytest.fixture
def active_subscription(subscription_store, subscription):
    return subscription_store.activate_subscription(subscription.id)


class TestCreateSubscription:
    """Tests for CorporateSubscriptionStore.create_subscription."""

    def test_new_pool_is_inactive_and_empty(self, subscription, clock):
        assert subscription.status is SubscriptionStatus.INACTIVE
        assert subscription.seats_total == 5
        assert subscription.seats_used == 0
        assert subscription.seats_available == 5
        assert subscription.company_name == "Hsinchu Semiconductor Co."
        assert subscription.amount_paid == Decimal("12000")
        assert subscription.activation_deadline == clock.now + timedelta(days=30)

    def test_unknown_company(self, subscription_store):
        with pytest.raises(NotFound):
            subscription_store.create_subscription("comp_999", plan_id=4, seats_total=5)

    def test_unknown_plan(self, subscription_store):
        with pytest.raises(NotFound):
            subscription_store.create_subscription("comp_001", plan_id=99, seats_total=5)

    def test_individual_plan_is_rejected(self, subscription_store):
        with pytest.raises(InvalidPlanType):
            subscription_store.create_subscription("comp_001", plan_id=1, seats_total=5)

    @pytest.mark.parametrize("seats, amount", [(0, 100), (-3, 100), (5, -1)])
    def test_invalid_seats_or_amount(self, subscription_store, seats, amount):
        with pytest.raises(InvalidAmount):
            subscription_store.create_subscription("comp_001", plan_id=4, seats_total=seats, amount_paid=amount)


class TestActivateSubscription:
    def test_activate(self, active_subscription):
        assert active_subscription.status is SubscriptionStatus.ACTIVATED

    def test_activate_twice(self, subscription_store, active_subscription):
        with pytest.raises(InvalidStateTransition):
            subscription_store.activate_subscription(active_subscription.id)

    def test_activate_after_deadline(self, subscription_store, subscription, clock):
        clock.now = subscription.activation_deadline + timedelta(seconds=1)
        with pytest.raises(DeadlineExpired):
            subscription_store.activate_subscription(subscription.id)
        assert subscription_store.get_subscription(subscription.id).status is SubscriptionStatus.INACTIVE


class TestAdjustSeats:
    def test_adjust_keeps_the_sum(self, subscription_store, subscription):
        updated = subscription_store.adjust_seats(subscription.id, -2)
        assert (updated.seats_used, updated.seats_available) == (2, 3)
        assert_seat_sum(updated)

    def test_cannot_take_more_than_available(self, subscription_store, subscription):
        with pytest.raises(SeatExhausted):
            subscription_store.adjust_seats(subscription.id, -6)
        assert subscription_store.get_subscription(subscription.id).seats_available == 5

    def test_cannot_release_unused_seats(self, subscription_store, subscription):
        with pytest.raises(InvalidStateTransition):
            subscription_store.adjust_seats(subscription.id, 1)


class TestAssignSeat:
    """Seat assignment against a five-seat pool."""

    def test_pool_exhaustion_and_reclaim(self, subscription_store, member_store, active_subscription):
        members = []
        for n in range(5):
            members.append(member_store.assign_seat(active_subscription.id, seat_user(n)))
            assert_seat_sum(subscription_store.get_subscription(active_subscription.id))

        with pytest.raises(SeatExhausted):
            member_store.assign_seat(active_subscription.id, seat_user(5))
        assert subscription_store.get_subscription(active_subscription.id).seats_available == 0

        assert member_store.remove_member(members[0].id) is True
        assert_seat_sum(subscription_store.get_subscription(active_subscription.id))

        sixth = member_store.assign_seat(active_subscription.id, seat_user(5))
        pool = subscription_store.get_subscription(active_subscription.id)
        assert sixth.card_status is CardStatus.INACTIVE
        assert (pool.seats_used, pool.seats_available) == (5, 0)

    def test_inactive_subscription_accepts_assignments(self, member_store, subscription):
        member = member_store.assign_seat(subscription.id, seat_user(1))
        assert member.subscription_id == subscription.id

    def test_expired_subscription_rejects_assignments(self, subscription_store, member_store, subscription, clock):
        clock.advance(days=31)
        subscription_store.sweep_expired()

        with pytest.raises(InvalidStateTransition):
            member_store.assign_seat(subscription.id, seat_user(1))

    def test_unknown_subscription(self, member_store):
        with pytest.raises(NotFound):
            member_store.assign_seat(404, seat_user(1))

    def test_member_flush_failure_returns_the_seat(self, backend, subscription_store, member_store, subscription):
        backend.fail("corporate_members")

        with pytest.raises(PersistenceFailure):
            member_store.assign_seat(subscription.id, seat_user(1))

        pool = subscription_store.get_subscription(subscription.id)
        assert (pool.seats_used, pool.seats_available) == (0, 5)
        assert member_store.list_members() == []

    def test_concurrent_assignments_never_oversell(self, subscription_store, member_store, active_subscription):
        outcomes = []
        lock = threading.Lock()

        def grab(n):
            try:
                member_store.assign_seat(active_subscription.id, seat_user(n))
                result = "ok"
            except SeatExhausted:
                result = "exhausted"
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=grab, args=(n,)) for n in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("ok") == 5
        assert outcomes.count("exhausted") == 15
        pool = subscription_store.get_subscription(active_subscription.id)
        assert_seat_sum(pool)
        assert len(member_store.list_members(subscription_id=active_subscription.id)) == pool.seats_used == 5


class TestActivateMemberCard:
    def test_activation_uses_subscription_duration(self, member_store, active_subscription, clock):
        member = member_store.assign_seat(active_subscription.id, seat_user(1))
        clock.advance(days=2)

        card = member_store.activate_member_card(member.id)

        assert card.card_status is CardStatus.ACTIVATED
        assert card.activation_date == clock.now
        assert card.start_date == clock.now
        assert card.end_date == clock.now + timedelta(days=365)

    def test_parent_must_be_activated(self, member_store, subscription):
        member = member_store.assign_seat(subscription.id, seat_user(1))
        with pytest.raises(InvalidStateTransition):
            member_store.activate_member_card(member.id)
        assert member_store.get_member(member.id).card_status is CardStatus.INACTIVE

    def test_already_activated(self, member_store, active_subscription):
        member = member_store.assign_seat(active_subscription.id, seat_user(1))
        member_store.activate_member_card(member.id)
        with pytest.raises(InvalidStateTransition):
            member_store.activate_member_card(member.id)

    def test_member_deadline(self, member_store, active_subscription, clock):
        member = member_store.assign_seat(active_subscription.id, seat_user(1))
        clock.now = member.activation_deadline + timedelta(seconds=1)

        with pytest.raises(DeadlineExpired):
            member_store.activate_member_card(member.id)

    def test_reactivation_preserves_first_activation_date(self, member_store, active_subscription, clock):
        member = member_store.assign_seat(active_subscription.id, seat_user(1))
        first = member_store.activate_member_card(member.id)
        clock.advance(days=366)
        member_store.sweep_expired()
        assert member_store.get_member(member.id).card_status is CardStatus.EXPIRED

        renewed = member_store.activate_member_card(member.id)

        assert renewed.card_status is CardStatus.ACTIVATED
        assert renewed.activation_date == first.activation_date
        assert renewed.start_date == clock.now

    def test_never_activated_expired_card_cannot_be_revived(self, member_store, active_subscription, clock):
        member = member_store.assign_seat(active_subscription.id, seat_user(1))
        clock.advance(days=31)
        member_store.sweep_expired()

        with pytest.raises(DeadlineExpired):
            member_store.activate_member_card(member.id)


class TestRemoveMember:
    def test_remove_reclaims_seat(self, subscription_store, member_store, active_subscription):
        member = member_store.assign_seat(active_subscription.id, seat_user(1))

        assert member_store.remove_member(member.id) is True

        with pytest.raises(NotFound):
            member_store.get_member(member.id)
        pool = subscription_store.get_subscription(active_subscription.id)
        assert (pool.seats_used, pool.seats_available) == (0, 5)

    def test_remove_unknown_member(self, member_store):
        with pytest.raises(NotFound):
            member_store.remove_member(77)

    def test_delete_failure_keeps_seat_taken(self, backend, subscription_store, member_store, active_subscription):
        member = member_store.assign_seat(active_subscription.id, seat_user(1))
        backend.fail("corporate_members")

        with pytest.raises(PersistenceFailure):
            member_store.remove_member(member.id)

        backend.heal()
        assert member_store.get_member(member.id).id == member.id
        pool = subscription_store.get_subscription(active_subscription.id)
        assert (pool.seats_used, pool.seats_available) == (1, 4)

    def test_seat_return_failure_restores_the_member(
        self, backend, subscription_store, member_store, sweeper, active_subscription
    ):
        member = member_store.assign_seat(active_subscription.id, seat_user(1))
        backend.fail("corporate_subscriptions")

        with pytest.raises(PersistenceFailure):
            member_store.remove_member(member.id)

        backend.heal()
        assert member_store.get_member(member.id).id == member.id
        pool = subscription_store.get_subscription(active_subscription.id)
        assert (pool.seats_used, pool.seats_available) == (1, 4)
        saved = [row["id"] for row in backend.load("corporate_members")]
        assert saved == [member.id]
        assert sweeper.check_invariants() == []

    def test_failed_restore_keeps_the_seat_taken(
        self, backend, subscription_store, member_store, active_subscription, monkeypatch, capsys
    ):
        member = member_store.assign_seat(active_subscription.id, seat_user(1))

        def seat_ledger_down(subscription_id, delta):
            backend.fail("corporate_members")
            raise PersistenceFailure("seat ledger unavailable")

        monkeypatch.setattr(subscription_store, "adjust_seats", seat_ledger_down)

        with pytest.raises(PersistenceFailure, match="seat ledger unavailable"):
            member_store.remove_member(member.id)

        backend.heal()
        pool = subscription_store.get_subscription(active_subscription.id)
        assert_seat_sum(pool)
        assert pool.seats_used >= len(member_store.list_members(subscription_id=pool.id))
        assert "member.restore_failed" in capsys.readouterr().out


class TestCorporateSweep:
    def test_inactive_subscription_past_deadline_expires(self, subscription_store, subscription, clock):
        clock.advance(days=30, seconds=1)

        swept = subscription_store.sweep_expired()

        assert [s.status for s in swept] == [SubscriptionStatus.EXPIRED]
        assert subscription_store.sweep_expired() == []

    def test_activated_subscription_is_not_swept(self, subscription_store, active_subscription, clock):
        clock.advance(days=60)
        assert subscription_store.sweep_expired() == []

    def test_cards_past_end_date_expire(self, member_store, active_subscription, clock):
        member = member_store.assign_seat(active_subscription.id, seat_user(1))
        member_store.activate_member_card(member.id)
        clock.advance(days=365, seconds=1)

        assert [m.id for m in member_store.sweep_expired()] == [member.id]

    def test_inactive_cards_can_be_kept(self, clock, backend):
        plans = PlanCatalog()
        subscriptions = CorporateSubscriptionStore(backend, plans, CompanyDirectory(), clock=clock)
        members = CorporateMemberStore(backend, subscriptions, auto_expire_inactive=False, clock=clock)
        pool = subscriptions.create_subscription("comp_002", plan_id=4, seats_total=2)
        member = members.assign_seat(pool.id, seat_user(1))
        clock.advance(days=45)

        assert members.sweep_expired() == []
        assert members.get_member(member.id).card_status is CardStatus.INACTIVE


class TestSubscriptionQueries:
    def test_statistics(self, subscription_store, member_store, active_subscription):
        member_store.assign_seat(active_subscription.id, seat_user(1))
        subscription_store.create_subscription("comp_002", plan_id=3, seats_total=10, amount_paid=0)

        stats = subscription_store.statistics()

        assert stats["total_subscriptions"] == 2
        assert stats["by_status"]["ACTIVATED"] == 1
        assert stats["by_status"]["INACTIVE"] == 1
        assert (stats["seats_total"], stats["seats_used"], stats["seats_available"]) == (15, 1, 14)
        assert Decimal(stats["total_revenue"]) == Decimal("12000")

    def test_list_by_company(self, subscription_store, subscription):
        subscription_store.create_subscription("comp_002", plan_id=4, seats_total=1)
        assert [s.id for s in subscription_store.list_subscriptions(company_id="comp_001")] == [subscription.id]

    def test_list_members_by_company(self, subscription_store, member_store, active_subscription):
        other = subscription_store.create_subscription("comp_002", plan_id=4, seats_total=2)
        ours = member_store.assign_seat(active_subscription.id, seat_user(1))
        member_store.assign_seat(other.id, seat_user(2))

        assert [m.id for m in member_store.list_members(company_id="comp_001")] == [ours.id]
        assert member_store.list_members(company_id="comp_404") == []
