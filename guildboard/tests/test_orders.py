"""
Unit Tests for the Order Engine

Tests cover:
1. Order creation, editing and deletion
2. Claim submission
3. Claim approval: slots, auto-close and credit
4. Claim rejection
5. Idempotent decisions
"""

import pytest
from uuid import UUID

from guildboard.errors import (
    AlreadyProcessedError,
    CapacityExceededError,
    InvalidInputError,
    OrderNotFoundError,
)
from guildboard.ledger import PointsLedger
from guildboard.models import (
    ClaimStatus,
    CreateOrderRequest,
    OrderStatus,
    Rank,
    StudentKey,
    UpdateOrderRequest,
)
from guildboard.orders import OrderEngine
from guildboard.storage import InMemoryStorage


MISSING_ID = UUID("00000000-0000-0000-0000-000000000000")


def make_engine(auto_close: bool = True) -> OrderEngine:
    storage = InMemoryStorage()
    return OrderEngine(storage, PointsLedger(storage), auto_close=auto_close)


def post_order(engine: OrderEngine, max_slots: int = 1, reward_points: int = 50, rank: Rank = Rank.B):
    return engine.create_order(CreateOrderRequest(
        title="Write a parser",
        description="Any language",
        rank=rank,
        max_slots=max_slots,
        reward_points=reward_points,
    ))


class TestOrderLifecycle:
    """Tests for creating and editing orders."""

    def test_new_order_is_open_and_empty(self):
        engine = make_engine()

        order = post_order(engine, max_slots=3)

        assert order.status == OrderStatus.OPEN
        assert order.taken_slots == 0
        assert engine.list_open_orders()[0].id == order.id

    def test_reward_outside_band_is_allowed(self):
        engine = make_engine()

        order = post_order(engine, reward_points=5000, rank=Rank.F)

        assert order.reward_points == 5000
        assert not Rank.F.suggests(5000)

    def test_rank_order(self):
        assert Rank.SS.weight > Rank.S.weight > Rank.A.weight > Rank.F.weight
        assert Rank.SS.reward_band == (500, 1000)
        assert Rank.F.reward_band == (5, 10)

    def test_update_cannot_break_slot_invariant(self):
        engine = make_engine()
        order = post_order(engine, max_slots=2)

        with pytest.raises(InvalidInputError):
            engine.update_order(order.id, UpdateOrderRequest(taken_slots=3))

    def test_completed_order_can_be_reopened_by_edit(self):
        engine = make_engine()
        order = post_order(engine, max_slots=1)
        claim = engine.submit_claim(order.id, "Alice", "CS-101")
        engine.approve_claim(claim)

        reopened = engine.update_order(order.id, UpdateOrderRequest(max_slots=2, status=OrderStatus.OPEN))

        assert reopened.status == OrderStatus.OPEN
        assert reopened.max_slots == 2
        assert reopened.taken_slots == 1

    def test_cannot_complete_order_with_free_slots(self):
        engine = make_engine()
        order = post_order(engine, max_slots=2)

        with pytest.raises(InvalidInputError):
            engine.update_order(order.id, UpdateOrderRequest(status=OrderStatus.COMPLETED))

        assert engine.get_order(order.id).status == OrderStatus.OPEN

    def test_full_order_can_be_completed_by_edit(self):
        engine = make_engine(auto_close=False)
        order = post_order(engine, max_slots=1)
        engine.approve_claim(engine.submit_claim(order.id, "Alice", "CS-101"))

        completed = engine.update_order(order.id, UpdateOrderRequest(status=OrderStatus.COMPLETED))

        assert completed.status == OrderStatus.COMPLETED

    def test_growing_completed_order_requires_reopening(self):
        engine = make_engine()
        order = post_order(engine, max_slots=1)
        engine.approve_claim(engine.submit_claim(order.id, "Alice", "CS-101"))

        with pytest.raises(InvalidInputError):
            engine.update_order(order.id, UpdateOrderRequest(max_slots=2))

    def test_delete_order(self):
        engine = make_engine()
        order = post_order(engine)

        engine.delete_order(order.id)

        assert engine.list_orders() == []
        with pytest.raises(OrderNotFoundError):
            engine.delete_order(order.id)


class TestSubmitClaim:
    """Tests for claim submission."""

    def test_submit_creates_pending_claim_without_taking_slot(self):
        engine = make_engine()
        order = post_order(engine, max_slots=1)

        claim = engine.submit_claim(order.id, "Alice", "CS-101", "done, see repo")

        assert claim.status == ClaimStatus.PENDING
        assert claim.order_title == "Write a parser"
        assert claim.order_reward_points == 50
        assert engine.get_order(order.id).taken_slots == 0

    def test_submit_does_not_check_capacity(self):
        engine = make_engine(auto_close=False)
        order = post_order(engine, max_slots=1)
        engine.approve_claim(engine.submit_claim(order.id, "Alice", "CS-101"))

        claim = engine.submit_claim(order.id, "Bob", "CS-101")

        assert claim.status == ClaimStatus.PENDING

    def test_submit_for_missing_order(self):
        engine = make_engine()

        with pytest.raises(OrderNotFoundError):
            engine.submit_claim(MISSING_ID, "Alice", "CS-101")

    def test_submit_requires_identity(self):
        engine = make_engine()
        order = post_order(engine)

        with pytest.raises(InvalidInputError):
            engine.submit_claim(order.id, "Alice", "   ")

    def test_pending_claims_are_joined_with_order(self):
        engine = make_engine()
        order = post_order(engine)
        engine.submit_claim(order.id, "Alice", "CS-101")

        pending = engine.list_pending_claims()

        assert len(pending) == 1
        assert pending[0].order.id == order.id

    def test_claim_survives_order_deletion(self):
        engine = make_engine()
        order = post_order(engine)
        claim = engine.submit_claim(order.id, "Alice", "CS-101")

        engine.delete_order(order.id)
        aggregate = engine.get_claim_with_order(claim.id)

        assert aggregate.order is None
        assert aggregate.claim.order_title == "Write a parser"


class TestApproveClaim:
    """Tests for claim approval."""

    def test_round_trip_closes_single_slot_order(self):
        engine = make_engine()
        order = post_order(engine, max_slots=1, reward_points=50)
        claim = engine.submit_claim(order.id, "Alice", "CS-101")

        approved, updated_order, student = engine.approve_claim(claim)

        assert approved.status == ClaimStatus.APPROVED
        assert updated_order.taken_slots == 1
        assert updated_order.status == OrderStatus.COMPLETED
        assert student.total_points == 50
        assert engine.ledger.find_student(StudentKey("Alice", "CS-101")).total_points == 50

    def test_auto_close_disabled_keeps_order_open(self):
        engine = make_engine(auto_close=False)
        order = post_order(engine, max_slots=1)
        claim = engine.submit_claim(order.id, "Alice", "CS-101")

        _, updated_order, _ = engine.approve_claim(claim)

        assert updated_order.taken_slots == 1
        assert updated_order.status == OrderStatus.OPEN

    def test_partial_fill_keeps_order_open(self):
        engine = make_engine()
        order = post_order(engine, max_slots=2)

        _, updated_order, _ = engine.approve_claim(engine.submit_claim(order.id, "Alice", "CS-101"))

        assert updated_order.status == OrderStatus.OPEN
        assert updated_order.free_slots == 1

    def test_capacity_exceeded_leaves_claim_pending(self):
        engine = make_engine(auto_close=False)
        order = post_order(engine, max_slots=1)
        first = engine.submit_claim(order.id, "Alice", "CS-101")
        second = engine.submit_claim(order.id, "Bob", "CS-101")
        engine.approve_claim(first)

        with pytest.raises(CapacityExceededError):
            engine.approve_claim(second)

        assert engine.get_claim(second.id).status == ClaimStatus.PENDING
        assert engine.get_order(order.id).taken_slots == 1
        assert engine.ledger.find_student(StudentKey("Bob", "CS-101")) is None

    def test_approve_twice_credits_once(self):
        engine = make_engine()
        order = post_order(engine, max_slots=3, reward_points=50)
        claim = engine.submit_claim(order.id, "Alice", "CS-101")
        engine.approve_claim(claim)

        # Stale copy still says pending
        with pytest.raises(AlreadyProcessedError):
            engine.approve_claim(claim)
        # Fresh copy says approved
        with pytest.raises(AlreadyProcessedError):
            engine.approve_claim(engine.get_claim(claim.id))

        assert engine.get_order(order.id).taken_slots == 1
        assert engine.ledger.find_student(StudentKey("Alice", "CS-101")).total_points == 50

    def test_reward_accumulates_across_orders(self):
        engine = make_engine()
        first = post_order(engine, reward_points=50)
        second = post_order(engine, reward_points=30)

        engine.approve_claim(engine.submit_claim(first.id, "Alice", "CS-101"))
        engine.approve_claim(engine.submit_claim(second.id, "Alice", "CS-101"))

        assert engine.ledger.find_student(StudentKey("Alice", "CS-101")).total_points == 80

    def test_completed_order_refuses_approval(self):
        engine = make_engine()
        order = post_order(engine, max_slots=2)
        claim = engine.submit_claim(order.id, "Alice", "CS-101")
        # Closed outside the engine, e.g. by a direct database edit
        engine.storage.update("orders", order.id, {"status": OrderStatus.COMPLETED})

        with pytest.raises(CapacityExceededError):
            engine.approve_claim(claim)

        assert engine.get_claim(claim.id).status == ClaimStatus.PENDING
        assert engine.get_order(order.id).taken_slots == 0
        assert engine.ledger.find_student(StudentKey("Alice", "CS-101")) is None

    def test_approve_for_deleted_order(self):
        engine = make_engine()
        order = post_order(engine)
        claim = engine.submit_claim(order.id, "Alice", "CS-101")
        engine.delete_order(order.id)

        with pytest.raises(OrderNotFoundError):
            engine.approve_claim(claim)

        assert engine.get_claim(claim.id).status == ClaimStatus.PENDING


class TestRejectClaim:
    """Tests for claim rejection."""

    def test_reject_touches_neither_slots_nor_points(self):
        engine = make_engine()
        order = post_order(engine, max_slots=1)
        claim = engine.submit_claim(order.id, "Alice", "CS-101")

        rejected = engine.reject_claim(claim)

        assert rejected.status == ClaimStatus.REJECTED
        assert engine.get_order(order.id).taken_slots == 0
        assert engine.get_order(order.id).status == OrderStatus.OPEN
        assert engine.ledger.find_student(StudentKey("Alice", "CS-101")) is None

    def test_cannot_reject_approved_claim(self):
        engine = make_engine()
        order = post_order(engine, max_slots=2)
        claim = engine.submit_claim(order.id, "Alice", "CS-101")
        engine.approve_claim(claim)

        with pytest.raises(AlreadyProcessedError):
            engine.reject_claim(claim)

        assert engine.get_claim(claim.id).status == ClaimStatus.APPROVED
        assert engine.get_order(order.id).taken_slots == 1

    def test_cannot_approve_rejected_claim(self):
        engine = make_engine()
        order = post_order(engine)
        claim = engine.submit_claim(order.id, "Alice", "CS-101")
        engine.reject_claim(claim)

        with pytest.raises(AlreadyProcessedError):
            engine.approve_claim(claim)

        assert engine.get_order(order.id).taken_slots == 0


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
