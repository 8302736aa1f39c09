import logging
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID, uuid4

from .errors import (
    AlreadyProcessedError,
    CapacityExceededError,
    ClaimNotFoundError,
    GuildError,
    InvalidInputError,
    OrderNotFoundError,
)
from .ledger import PointsLedger
from .models import (
    ClaimStatus,
    ClaimWithOrder,
    CreateOrderRequest,
    Order,
    OrderClaim,
    OrderStatus,
    Student,
    UpdateOrderRequest,
)
from .storage import LedgerStore, to_row

logger = logging.getLogger(__name__)


class OrderEngine:
    """
    Order lifecycle and slot accounting.

    Claims reserve nothing when submitted. A slot is taken only when a claim
    is approved, and a rejection never touches the order.
    """

    def __init__(self, storage: LedgerStore, ledger: PointsLedger, auto_close: bool = True):
        self.storage = storage
        self.ledger = ledger
        self.auto_close = auto_close

    # Orders

    def create_order(self, request: CreateOrderRequest) -> Order:
        if not request.rank.suggests(request.reward_points):
            low, high = request.rank.reward_band
            logger.warning(
                "Order '%s' pays %d points, outside the %s band %d-%d",
                request.title, request.reward_points, request.rank.value, low, high,
            )
        order = Order(
            id=uuid4(),
            title=request.title.strip(),
            description=request.description,
            rank=request.rank,
            max_slots=request.max_slots,
            taken_slots=0,
            reward_points=request.reward_points,
            status=OrderStatus.OPEN,
            created_at=datetime.now(timezone.utc),
        )
        self.storage.insert("orders", to_row(order))
        logger.info("Created order %s '%s' (%s, %d slots)", order.id, order.title, order.rank.value, order.max_slots)
        return order

    def update_order(self, order_id: UUID, request: UpdateOrderRequest) -> Order:
        current = self.get_order(order_id)
        changes = request.model_dump(exclude_none=True)
        if not changes:
            return current

        max_slots = changes.get("max_slots", current.max_slots)
        taken_slots = changes.get("taken_slots", current.taken_slots)
        if taken_slots > max_slots:
            raise InvalidInputError(f"Order {order_id} cannot have {taken_slots} of {max_slots} slots taken")
        status = changes.get("status", current.status)
        if status == OrderStatus.COMPLETED and taken_slots < max_slots:
            raise InvalidInputError(
                f"Order {order_id} has {max_slots - taken_slots} free slots and cannot be completed"
            )

        # Guard on the counters we validated against so a concurrent approval is not overwritten
        row = self.storage.update(
            "orders",
            order_id,
            changes,
            expect={"taken_slots": current.taken_slots, "max_slots": current.max_slots},
        )
        if row is None:
            if self.storage.get("orders", order_id) is None:
                raise OrderNotFoundError(f"Order {order_id} not found")
            raise AlreadyProcessedError(f"Order {order_id} changed while being edited, reload and retry")
        logger.info("Updated order %s: %s", order_id, sorted(changes))
        return Order(**row)

    def delete_order(self, order_id: UUID) -> None:
        if not self.storage.delete("orders", order_id):
            raise OrderNotFoundError(f"Order {order_id} not found")
        logger.info("Deleted order %s", order_id)

    def get_order(self, order_id: UUID) -> Order:
        row = self.storage.get("orders", order_id)
        if not row:
            raise OrderNotFoundError(f"Order {order_id} not found")
        return Order(**row)

    def list_orders(self) -> list[Order]:
        rows = self.storage.select("orders", order_by="created_at", descending=True)
        return [Order(**r) for r in rows]

    def list_open_orders(self) -> list[Order]:
        rows = self.storage.select(
            "orders", {"status": OrderStatus.OPEN}, order_by="created_at", descending=True
        )
        return [Order(**r) for r in rows]

    # Claims

    def submit_claim(self, order_id: UUID, student_name: str, student_group: str, comment: str = "") -> OrderClaim:
        student_name = (student_name or "").strip()
        student_group = (student_group or "").strip()
        if not student_name or not student_group:
            raise InvalidInputError("Student name and group are required to take an order")

        order = self.get_order(order_id)
        claim = OrderClaim(
            id=uuid4(),
            order_id=order.id,
            student_name=student_name,
            student_group=student_group,
            comment=comment or "",
            status=ClaimStatus.PENDING,
            created_at=datetime.now(timezone.utc),
            order_title=order.title,
            order_reward_points=order.reward_points,
        )
        self.storage.insert("order_claims", to_row(claim))
        logger.info("Claim %s submitted for order %s by %s (%s)", claim.id, order.id, student_name, student_group)
        return claim

    def get_claim(self, claim_id: UUID) -> OrderClaim:
        row = self.storage.get("order_claims", claim_id)
        if not row:
            raise ClaimNotFoundError(f"Claim {claim_id} not found")
        return OrderClaim(**row)

    def get_claim_with_order(self, claim_id: UUID) -> ClaimWithOrder:
        claim = self.get_claim(claim_id)
        order_row = self.storage.get("orders", claim.order_id)
        return ClaimWithOrder(claim=claim, order=Order(**order_row) if order_row else None)

    def list_claims(self, status: Optional[ClaimStatus] = None) -> list[ClaimWithOrder]:
        filters = {"status": status} if status else None
        rows = self.storage.select("order_claims", filters, order_by="created_at")
        return self._join_orders([OrderClaim(**r) for r in rows])

    def list_pending_claims(self) -> list[ClaimWithOrder]:
        return self.list_claims(ClaimStatus.PENDING)

    def approve_claim(self, claim: OrderClaim) -> tuple[OrderClaim, Order, Student]:
        if not claim.can_decide():
            raise AlreadyProcessedError(f"Claim {claim.id} is already {claim.status.value}")

        order = self.get_order(claim.order_id)
        reserved = self.storage.adjust(
            "orders", order.id, "taken_slots", 1,
            maximum_column="max_slots", expect={"status": OrderStatus.OPEN},
        )
        if reserved is None:
            current = self.storage.get("orders", order.id)
            if current is None:
                raise OrderNotFoundError(f"Order {order.id} not found")
            if current["status"] == OrderStatus.COMPLETED.value:
                raise CapacityExceededError(f"Order '{order.title}' is already completed")
            raise CapacityExceededError(f"Order '{order.title}' has no free slots")

        try:
            row = self.storage.update(
                "order_claims",
                claim.id,
                {"status": ClaimStatus.APPROVED},
                expect={"status": ClaimStatus.PENDING},
            )
        except GuildError:
            self._release_slot(order.id)
            raise
        if row is None:
            # Someone else decided this claim first; give the slot back
            self._release_slot(order.id)
            raise AlreadyProcessedError(f"Claim {claim.id} was already decided")

        order = Order(**reserved)
        closed_here = False
        try:
            if self.auto_close and order.is_full:
                closed = self.storage.update(
                    "orders", order.id, {"status": OrderStatus.COMPLETED}, expect={"status": OrderStatus.OPEN}
                )
                if closed is not None:
                    closed_here = True
                    order = Order(**closed)
                    logger.info("Order %s '%s' is full and now completed", order.id, order.title)

            student = self.ledger.credit(claim.student_key, order.reward_points)
        except GuildError:
            self._undo_approval(claim, order.id, reopen=closed_here)
            raise

        logger.info(
            "Approved claim %s: %s (%s) earned %d points, order %s at %d/%d",
            claim.id, claim.student_name, claim.student_group, order.reward_points,
            order.id, order.taken_slots, order.max_slots,
        )
        return OrderClaim(**row), order, student

    def _release_slot(self, order_id: UUID) -> None:
        self.storage.adjust("orders", order_id, "taken_slots", -1, minimum=0)

    def _undo_approval(self, claim: OrderClaim, order_id: UUID, reopen: bool) -> None:
        """Put a claim back to pending after its credit failed, so the approval can be retried."""
        logger.warning("Credit for claim %s failed, returning it to pending", claim.id)
        self.storage.update(
            "order_claims", claim.id, {"status": ClaimStatus.PENDING}, expect={"status": ClaimStatus.APPROVED}
        )
        self._release_slot(order_id)
        if reopen:
            self.storage.update(
                "orders", order_id, {"status": OrderStatus.OPEN}, expect={"status": OrderStatus.COMPLETED}
            )

    def reject_claim(self, claim: OrderClaim) -> OrderClaim:
        if not claim.can_decide():
            raise AlreadyProcessedError(f"Claim {claim.id} is already {claim.status.value}")

        row = self.storage.update(
            "order_claims",
            claim.id,
            {"status": ClaimStatus.REJECTED},
            expect={"status": ClaimStatus.PENDING},
        )
        if row is None:
            raise AlreadyProcessedError(f"Claim {claim.id} was already decided")
        logger.info("Rejected claim %s by %s (%s)", claim.id, claim.student_name, claim.student_group)
        return OrderClaim(**row)

    def _join_orders(self, claims: list[OrderClaim]) -> list[ClaimWithOrder]:
        orders: dict[UUID, Optional[Order]] = {}
        result = []
        for claim in claims:
            if claim.order_id not in orders:
                row = self.storage.get("orders", claim.order_id)
                orders[claim.order_id] = Order(**row) if row else None
            result.append(ClaimWithOrder(claim=claim, order=orders[claim.order_id]))
        return result
