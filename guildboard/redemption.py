import logging
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID, uuid4

from .errors import (
    AlreadyProcessedError,
    GuildError,
    InvalidInputError,
    InvalidStateTransitionError,
    PurchaseNotFoundError,
    RewardNotFoundError,
)
from .ledger import PointsLedger
from .models import (
    CreateRewardRequest,
    PurchaseStatus,
    PurchaseWithReward,
    Reward,
    RewardPurchase,
    Student,
    StudentKey,
    UpdateRewardRequest,
)
from .storage import LedgerStore, to_row

logger = logging.getLogger(__name__)

MAX_QUANTITY = 10


class RedemptionEngine:
    def __init__(self, storage: LedgerStore, ledger: PointsLedger):
        self.storage = storage
        self.ledger = ledger

    # Catalog

    def create_reward(self, request: CreateRewardRequest) -> Reward:
        reward = Reward(
            id=uuid4(),
            title=request.title.strip(),
            description=request.description,
            price=request.price,
            is_active=request.is_active,
            created_at=datetime.now(timezone.utc),
        )
        self.storage.insert("rewards", to_row(reward))
        logger.info("Created reward %s '%s' at %d points", reward.id, reward.title, reward.price)
        return reward

    def update_reward(self, reward_id: UUID, request: UpdateRewardRequest) -> Reward:
        changes = request.model_dump(exclude_none=True)
        if not changes:
            return self.get_reward(reward_id)
        row = self.storage.update("rewards", reward_id, changes)
        if row is None:
            raise RewardNotFoundError(f"Reward {reward_id} not found")
        logger.info("Updated reward %s: %s", reward_id, sorted(changes))
        return Reward(**row)

    def delete_reward(self, reward_id: UUID) -> None:
        if not self.storage.delete("rewards", reward_id):
            raise RewardNotFoundError(f"Reward {reward_id} not found")
        logger.info("Deleted reward %s", reward_id)

    def get_reward(self, reward_id: UUID) -> Reward:
        row = self.storage.get("rewards", reward_id)
        if not row:
            raise RewardNotFoundError(f"Reward {reward_id} not found")
        return Reward(**row)

    def list_active_rewards(self) -> list[Reward]:
        rows = self.storage.select("rewards", {"is_active": True}, order_by="price")
        return [Reward(**r) for r in rows]

    def list_rewards(self) -> list[Reward]:
        rows = self.storage.select("rewards", order_by="created_at", descending=True)
        return [Reward(**r) for r in rows]

    # Purchases

    def submit_purchase(
        self,
        reward_id: UUID,
        student_name: str,
        student_group: str,
        quantity: int = 1,
        comment: str = "",
    ) -> RewardPurchase:
        student_name = (student_name or "").strip()
        student_group = (student_group or "").strip()
        if not student_name or not student_group:
            raise InvalidInputError("Student name and group are required to buy a reward")
        if quantity < 1 or quantity > MAX_QUANTITY:
            raise InvalidInputError(f"Quantity must be between 1 and {MAX_QUANTITY}, got {quantity}")

        reward = self.get_reward(reward_id)
        if not reward.is_active:
            raise RewardNotFoundError(f"Reward {reward_id} is not available")

        # Price is fixed now; later catalog changes do not touch this purchase
        purchase = RewardPurchase(
            id=uuid4(),
            reward_id=reward.id,
            student_name=student_name,
            student_group=student_group,
            quantity=quantity,
            total_price=reward.price * quantity,
            comment=comment or "",
            status=PurchaseStatus.PENDING,
            created_at=datetime.now(timezone.utc),
            reward_title=reward.title,
        )
        self.storage.insert("reward_purchases", to_row(purchase))
        logger.info(
            "Purchase %s submitted: %d x '%s' for %d points by %s (%s)",
            purchase.id, quantity, reward.title, purchase.total_price, student_name, student_group,
        )
        return purchase

    def get_purchase(self, purchase_id: UUID) -> RewardPurchase:
        row = self.storage.get("reward_purchases", purchase_id)
        if not row:
            raise PurchaseNotFoundError(f"Purchase {purchase_id} not found")
        return RewardPurchase(**row)

    def get_purchase_with_reward(self, purchase_id: UUID) -> PurchaseWithReward:
        purchase = self.get_purchase(purchase_id)
        reward_row = self.storage.get("rewards", purchase.reward_id)
        return PurchaseWithReward(purchase=purchase, reward=Reward(**reward_row) if reward_row else None)

    def list_purchases(
        self,
        status: Optional[PurchaseStatus] = None,
        student_key: Optional[StudentKey] = None,
    ) -> list[PurchaseWithReward]:
        filters = {}
        if status:
            filters["status"] = status
        if student_key:
            filters["student_name"] = student_key.name
            filters["student_group"] = student_key.group
        rows = self.storage.select("reward_purchases", filters or None, order_by="created_at", descending=True)

        rewards: dict[UUID, Optional[Reward]] = {}
        result = []
        for purchase in (RewardPurchase(**r) for r in rows):
            if purchase.reward_id not in rewards:
                reward_row = self.storage.get("rewards", purchase.reward_id)
                rewards[purchase.reward_id] = Reward(**reward_row) if reward_row else None
            result.append(PurchaseWithReward(purchase=purchase, reward=rewards[purchase.reward_id]))
        return result

    def approve_purchase(self, purchase: RewardPurchase) -> tuple[RewardPurchase, Student]:
        if not purchase.can_approve():
            raise AlreadyProcessedError(f"Purchase {purchase.id} is already {purchase.status.value}")

        # The debit is a conditional update on the live balance; on failure nothing was written
        student = self.ledger.debit(purchase.student_key, purchase.total_price)

        try:
            row = self.storage.update(
                "reward_purchases",
                purchase.id,
                {"status": PurchaseStatus.APPROVED},
                expect={"status": PurchaseStatus.PENDING},
            )
        except GuildError:
            logger.warning("Approving purchase %s failed after the debit, refunding %d points",
                           purchase.id, purchase.total_price)
            self.ledger.credit(purchase.student_key, purchase.total_price)
            raise
        if row is None:
            # Decided elsewhere while we were debiting; refund our own debit
            self.ledger.credit(purchase.student_key, purchase.total_price)
            raise AlreadyProcessedError(f"Purchase {purchase.id} was already decided")

        logger.info(
            "Approved purchase %s: %s (%s) spent %d points, balance %d",
            purchase.id, purchase.student_name, purchase.student_group, purchase.total_price, student.total_points,
        )
        return RewardPurchase(**row), student

    def reject_purchase(self, purchase: RewardPurchase) -> RewardPurchase:
        if not purchase.can_reject():
            raise AlreadyProcessedError(f"Purchase {purchase.id} is already {purchase.status.value}")

        row = self.storage.update(
            "reward_purchases",
            purchase.id,
            {"status": PurchaseStatus.REJECTED},
            expect={"status": PurchaseStatus.PENDING},
        )
        if row is None:
            raise AlreadyProcessedError(f"Purchase {purchase.id} was already decided")
        logger.info("Rejected purchase %s by %s (%s)", purchase.id, purchase.student_name, purchase.student_group)
        return RewardPurchase(**row)

    def mark_delivered(self, purchase: RewardPurchase) -> RewardPurchase:
        if purchase.status == PurchaseStatus.DELIVERED:
            raise AlreadyProcessedError(f"Purchase {purchase.id} is already delivered")
        if not purchase.can_deliver():
            raise InvalidStateTransitionError(
                f"Cannot deliver purchase in {purchase.status.value} state. Only approved purchases can be delivered."
            )

        row = self.storage.update(
            "reward_purchases",
            purchase.id,
            {"status": PurchaseStatus.DELIVERED},
            expect={"status": PurchaseStatus.APPROVED},
        )
        if row is None:
            raise AlreadyProcessedError(f"Purchase {purchase.id} was already delivered")
        logger.info("Delivered purchase %s to %s (%s)", purchase.id, purchase.student_name, purchase.student_group)
        return RewardPurchase(**row)
