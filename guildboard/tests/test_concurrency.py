"""
Concurrency Tests

Approvals race each other from several threads against one store. Each test
releases all workers together through a barrier and then checks that slots,
balances and statuses come out exactly as if the winners ran one by one.
"""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from guildboard.errors import (
    AlreadyProcessedError,
    CapacityExceededError,
    InsufficientBalanceError,
    StoreUnavailableError,
)
from guildboard.ledger import PointsLedger
from guildboard.models import (
    ClaimStatus,
    CreateOrderRequest,
    CreateRewardRequest,
    PurchaseStatus,
    StudentKey,
)
from guildboard.orders import OrderEngine
from guildboard.redemption import RedemptionEngine
from guildboard.storage import InMemoryStorage


ALICE = StudentKey("Alice", "CS-101")


def race(workers: int, fn, args):
    barrier = threading.Barrier(workers)

    def run(arg):
        barrier.wait()
        try:
            return fn(arg)
        except Exception as e:
            return e

    with ThreadPoolExecutor(max_workers=workers) as pool:
        return list(pool.map(run, args))


def make_engines():
    storage = InMemoryStorage()
    ledger = PointsLedger(storage)
    return OrderEngine(storage, ledger), RedemptionEngine(storage, ledger), ledger


class TestSlotRace:
    """Concurrent claim approvals against one order."""

    def test_five_approvals_for_three_slots(self):
        orders, _, ledger = make_engines()
        order = orders.create_order(CreateOrderRequest(title="Mentor a newcomer", max_slots=3, reward_points=20))
        claims = [orders.submit_claim(order.id, f"Student {i}", "CS-101") for i in range(5)]

        results = race(5, orders.approve_claim, claims)

        succeeded = [r for r in results if isinstance(r, tuple)]
        refused = [r for r in results if isinstance(r, CapacityExceededError)]
        assert len(succeeded) == 3
        assert len(refused) == 2

        final = orders.get_order(order.id)
        assert final.taken_slots == 3
        assert sum(1 for c in claims if orders.get_claim(c.id).status == ClaimStatus.APPROVED) == 3
        assert sum(s.total_points for s in ledger.list_students()) == 60

    def test_same_claim_approved_concurrently(self):
        orders, _, ledger = make_engines()
        order = orders.create_order(CreateOrderRequest(title="Fix the projector", max_slots=5, reward_points=50))
        claim = orders.submit_claim(order.id, "Alice", "CS-101")

        results = race(5, orders.approve_claim, [claim] * 5)

        assert sum(1 for r in results if isinstance(r, tuple)) == 1
        assert sum(1 for r in results if isinstance(r, AlreadyProcessedError)) == 4
        assert orders.get_order(order.id).taken_slots == 1
        assert ledger.find_student(ALICE).total_points == 50

    def test_first_credits_for_new_student_do_not_duplicate(self):
        orders, _, ledger = make_engines()
        order = orders.create_order(CreateOrderRequest(title="Clean the lab", max_slots=4, reward_points=10))
        claims = [orders.submit_claim(order.id, "Alice", "CS-101") for _ in range(4)]

        race(4, orders.approve_claim, claims)

        students = ledger.list_students()
        assert len(students) == 1
        assert students[0].total_points == 40


class TestBalanceRace:
    """Concurrent purchase approvals for one student."""

    def test_balance_never_goes_negative(self):
        _, redemption, ledger = make_engines()
        ledger.credit(ALICE, 100)
        reward = redemption.create_reward(CreateRewardRequest(title="Front-row seat", price=40))
        purchases = [redemption.submit_purchase(reward.id, "Alice", "CS-101") for _ in range(3)]

        results = race(3, redemption.approve_purchase, purchases)

        assert sum(1 for r in results if isinstance(r, tuple)) == 2
        assert sum(1 for r in results if isinstance(r, InsufficientBalanceError)) == 1
        assert ledger.find_student(ALICE).total_points == 20

        statuses = sorted(redemption.get_purchase(p.id).status.value for p in purchases)
        assert statuses == ["approved", "approved", "pending"]

    def test_same_purchase_approved_concurrently(self):
        _, redemption, ledger = make_engines()
        ledger.credit(ALICE, 100)
        reward = redemption.create_reward(CreateRewardRequest(title="Extra credit", price=30))
        purchase = redemption.submit_purchase(reward.id, "Alice", "CS-101")

        results = race(4, redemption.approve_purchase, [purchase] * 4)

        assert sum(1 for r in results if isinstance(r, tuple)) == 1
        assert ledger.find_student(ALICE).total_points == 70
        assert redemption.get_purchase(purchase.id).status == PurchaseStatus.APPROVED


class TestStoreTimeout:
    """A store that cannot answer in time reports itself unavailable."""

    def test_lock_timeout_raises_store_unavailable(self):
        storage = InMemoryStorage(timeout=0.05)
        ledger = PointsLedger(storage)

        storage._lock.acquire()
        try:
            with pytest.raises(StoreUnavailableError):
                ledger.credit(ALICE, 10)
        finally:
            storage._lock.release()

        assert ledger.find_student(ALICE) is None
