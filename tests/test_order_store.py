from datetime import timedelta
from decimal import Decimal

import pytest

from coursepass.common.db import MemoryBackend
from coursepass.common.errors import (
    InvalidAmount,
    InvalidPlanType,
    InvalidRequest,
    InvalidStateTransition,
    NotFound,
    PlanUnavailable,
)
from coursepass.services import OrderStatus, OrderStore, Plan, PlanCatalog, UserRef


class TestCreateOrder:
    """Tests for OrderStore.create_order."""

    def test_amount_defaults_to_plan_price(self, order_store, alice, clock):
        order = order_store.create_order(plan_id=1, buyer=alice)

        assert order.id == 1
        assert order.status is OrderStatus.CREATED
        assert order.amount == Decimal("3000.00")
        assert order.created_at == clock.now
        assert order.expires_at == clock.now + timedelta(minutes=15)

    def test_matching_amount_is_accepted(self, order_store, alice):
        order = order_store.create_order(plan_id=1, buyer=alice, amount=3000)
        assert order.amount == Decimal("3000.00")

    @pytest.mark.parametrize("amount", [0, -5, "2999.99", "abc"])
    def test_invalid_amount_is_rejected(self, order_store, alice, amount):
        with pytest.raises(InvalidAmount):
            order_store.create_order(plan_id=1, buyer=alice, amount=amount)
        assert order_store.count() == 0

    def test_unknown_plan_raises_not_found(self, order_store, alice):
        with pytest.raises(NotFound):
            order_store.create_order(plan_id=99, buyer=alice)

    def test_unpublished_plan_is_unavailable(self, alice):
        plans = PlanCatalog(
            plans=[Plan(id=7, title="Retired", user_type="individual", price=Decimal("100"), duration_days=30, status="ARCHIVED")]
        )
        store = OrderStore(MemoryBackend(), plans)

        with pytest.raises(PlanUnavailable):
            store.create_order(plan_id=7, buyer=alice)

    def test_guest_buyer_with_email_only(self, order_store):
        order = order_store.create_order(plan_id=1, buyer=UserRef(email="guest@example.com", name="Guest"))
        assert order.buyer.user_id is None
        assert order.buyer.email == "guest@example.com"

    def test_empty_buyer_is_rejected(self, order_store):
        with pytest.raises(InvalidRequest):
            order_store.create_order(plan_id=1, buyer=UserRef(name="Nobody"))

    def test_individual_plan_sells_one_per_order(self, order_store, alice):
        with pytest.raises(InvalidAmount):
            order_store.create_order(plan_id=1, buyer=alice, quantity=2)

    def test_corporate_plan_requires_company(self, order_store, alice):
        with pytest.raises(InvalidPlanType):
            order_store.create_order(plan_id=4, buyer=alice, quantity=3)

    def test_corporate_amount_is_price_times_seats(self, order_store, corporate_buyer):
        order = order_store.create_order(plan_id=4, buyer=corporate_buyer, quantity=3)
        assert order.quantity == 3
        assert order.amount == Decimal("7200.00")

    def test_ids_are_sequential_and_persisted(self, order_store, backend, alice):
        order_store.create_order(plan_id=1, buyer=alice)
        order_store.create_order(plan_id=2, buyer=alice)

        saved = backend.load("orders")
        assert [row["id"] for row in saved] == [1, 2]
        assert saved[1]["amount"] == "10000.00"

    def test_created_event_is_published(self, order_store, alice, recorder):
        order_store.create_order(plan_id=1, buyer=alice)
        assert "order.created" in recorder.names()


class TestUpdateStatus:
    """Orders only move CREATED -> COMPLETED or CREATED -> CANCELED."""

    def test_complete_sets_payment_fields(self, order_store, alice, clock):
        order = order_store.create_order(plan_id=1, buyer=alice)
        clock.advance(minutes=2)

        updated = order_store.update_status(order.id, OrderStatus.COMPLETED, payment_id="pay_1")

        assert updated.status is OrderStatus.COMPLETED
        assert updated.payment_id == "pay_1"
        assert updated.paid_at == clock.now
        assert order_store.get_order(order.id).status is OrderStatus.COMPLETED

    def test_cancel_records_reason(self, order_store, alice):
        order = order_store.create_order(plan_id=1, buyer=alice)
        updated = order_store.update_status(order.id, "canceled", reason="user abandoned")
        assert updated.status is OrderStatus.CANCELED
        assert updated.cancel_reason == "user abandoned"
        assert updated.paid_at is None

    @pytest.mark.parametrize("first", [OrderStatus.COMPLETED, OrderStatus.CANCELED])
    @pytest.mark.parametrize("second", [OrderStatus.COMPLETED, OrderStatus.CANCELED, OrderStatus.CREATED])
    def test_terminal_states_are_immutable(self, order_store, alice, first, second):
        order = order_store.create_order(plan_id=1, buyer=alice)
        order_store.update_status(order.id, first, payment_id="pay_x")

        with pytest.raises(InvalidStateTransition):
            order_store.update_status(order.id, second)
        assert order_store.get_order(order.id).status is first

    def test_created_to_created_is_rejected(self, order_store, alice):
        order = order_store.create_order(plan_id=1, buyer=alice)
        with pytest.raises(InvalidStateTransition):
            order_store.update_status(order.id, OrderStatus.CREATED)

    def test_unknown_status_is_rejected(self, order_store, alice):
        order = order_store.create_order(plan_id=1, buyer=alice)
        with pytest.raises(InvalidStateTransition):
            order_store.update_status(order.id, "EXPIRED")

    def test_unknown_order_raises_not_found(self, order_store):
        with pytest.raises(NotFound):
            order_store.update_status(404, OrderStatus.COMPLETED)

    def test_returned_record_is_a_copy(self, order_store, alice):
        order = order_store.create_order(plan_id=1, buyer=alice)
        order.status = OrderStatus.COMPLETED
        assert order_store.get_order(order.id).status is OrderStatus.CREATED


class TestCompensateCompletion:
    def test_completed_order_is_canceled_and_flagged(self, order_store, alice, recorder):
        order = order_store.create_order(plan_id=1, buyer=alice)
        order_store.update_status(order.id, OrderStatus.COMPLETED, payment_id="pay_1")

        compensated = order_store.compensate_completion(order.id, reason="provisioning failed")

        assert compensated.status is OrderStatus.CANCELED
        assert compensated.compensated is True
        assert compensated.payment_id == "pay_1"
        assert "order.compensated" in recorder.names()

    def test_only_completed_orders_are_compensated(self, order_store, alice):
        order = order_store.create_order(plan_id=1, buyer=alice)
        with pytest.raises(InvalidStateTransition):
            order_store.compensate_completion(order.id, reason="nothing to undo")


class TestSweepExpired:
    """Tests for the order half of the expiration sweep."""

    def test_expired_orders_are_canceled(self, order_store, alice, clock):
        order = order_store.create_order(plan_id=1, buyer=alice)
        clock.advance(minutes=15, seconds=1)

        swept = order_store.sweep_expired()

        assert [o.id for o in swept] == [order.id]
        current = order_store.get_order(order.id)
        assert current.status is OrderStatus.CANCELED
        assert current.cancel_reason == "expired"

    def test_sweep_is_idempotent(self, order_store, alice, clock):
        order_store.create_order(plan_id=1, buyer=alice)
        clock.advance(minutes=20)

        assert len(order_store.sweep_expired()) == 1
        assert order_store.sweep_expired() == []

    def test_orders_inside_ttl_are_untouched(self, order_store, alice, clock):
        order = order_store.create_order(plan_id=1, buyer=alice)
        clock.advance(minutes=15)

        assert order_store.sweep_expired() == []
        assert order_store.get_order(order.id).status is OrderStatus.CREATED

    def test_completed_orders_are_never_swept(self, order_store, alice, clock):
        order = order_store.create_order(plan_id=1, buyer=alice)
        order_store.update_status(order.id, OrderStatus.COMPLETED, payment_id="pay_1")
        clock.advance(days=1)

        assert order_store.sweep_expired() == []
        assert order_store.get_order(order.id).status is OrderStatus.COMPLETED

    def test_claimed_orders_are_skipped_until_released(self, order_store, alice, clock):
        order = order_store.create_order(plan_id=1, buyer=alice)
        order_store.claim_for_payment(order.id)
        clock.advance(minutes=20)

        assert order_store.sweep_expired() == []
        assert order_store.get_order(order.id).status is OrderStatus.CREATED

        order_store.release_payment_claim(order.id)
        assert [o.id for o in order_store.sweep_expired()] == [order.id]


class TestPaymentClaims:
    """An order with a gateway call in flight belongs to the caller holding the claim."""

    def test_claim_returns_the_order(self, order_store, alice):
        order = order_store.create_order(plan_id=1, buyer=alice)

        claimed = order_store.claim_for_payment(order.id)

        assert claimed.id == order.id
        assert order_store.has_payment_claim(order.id) is True

    def test_second_claim_is_refused(self, order_store, alice):
        order = order_store.create_order(plan_id=1, buyer=alice)
        order_store.claim_for_payment(order.id)

        with pytest.raises(InvalidStateTransition, match="in progress"):
            order_store.claim_for_payment(order.id)

    def test_closed_orders_cannot_be_claimed(self, order_store, alice):
        order = order_store.create_order(plan_id=1, buyer=alice)
        order_store.update_status(order.id, OrderStatus.CANCELED)

        with pytest.raises(InvalidStateTransition):
            order_store.claim_for_payment(order.id)
        assert order_store.has_payment_claim(order.id) is False

    def test_unknown_order(self, order_store):
        with pytest.raises(NotFound):
            order_store.claim_for_payment(42)

    def test_only_the_claim_holder_changes_status(self, order_store, alice):
        order = order_store.create_order(plan_id=1, buyer=alice)
        order_store.claim_for_payment(order.id)

        with pytest.raises(InvalidStateTransition, match="in progress"):
            order_store.update_status(order.id, OrderStatus.CANCELED)
        assert order_store.get_order(order.id).status is OrderStatus.CREATED

        completed = order_store.update_status(order.id, OrderStatus.COMPLETED, payment_id="pay_1", claim_held=True)
        assert completed.status is OrderStatus.COMPLETED

    def test_release_is_idempotent(self, order_store, alice):
        order = order_store.create_order(plan_id=1, buyer=alice)
        order_store.claim_for_payment(order.id)

        order_store.release_payment_claim(order.id)
        order_store.release_payment_claim(order.id)

        assert order_store.has_payment_claim(order.id) is False


class TestQueries:
    def test_list_orders_filters(self, order_store, alice, bob):
        first = order_store.create_order(plan_id=1, buyer=alice)
        order_store.create_order(plan_id=2, buyer=bob)
        order_store.update_status(first.id, OrderStatus.COMPLETED, payment_id="pay_1")

        assert [o.id for o in order_store.list_orders(status="completed")] == [first.id]
        assert [o.buyer.name for o in order_store.list_orders(user_id="u_bob")] == ["Bob"]
        assert len(order_store.list_orders(email="ALICE@example.com")) == 1

    def test_statistics_counts_revenue_of_completed_orders(self, order_store, alice, bob):
        first = order_store.create_order(plan_id=1, buyer=alice)
        second = order_store.create_order(plan_id=2, buyer=bob)
        order_store.update_status(first.id, OrderStatus.COMPLETED, payment_id="pay_1")
        order_store.update_status(second.id, OrderStatus.CANCELED)

        stats = order_store.statistics()

        assert stats["total_orders"] == 2
        assert stats["by_status"] == {"CREATED": 0, "COMPLETED": 1, "CANCELED": 1}
        assert Decimal(stats["total_revenue"]) == Decimal("3000.00")
