import logging
from typing import Optional
from uuid import UUID

from .config import Settings
from .coordinator import ApprovalCoordinator, AuthGate, TokenGate
from .ledger import PointsLedger
from .models import (
    ClaimDecision,
    ClaimDecisionResponse,
    ClaimWithOrder,
    CreateOrderRequest,
    CreateRewardRequest,
    Order,
    OrderClaim,
    PointsOverrideResponse,
    PurchaseAction,
    PurchaseDecisionResponse,
    PurchaseStatus,
    PurchaseWithReward,
    Reward,
    RewardPurchase,
    Student,
    StudentKey,
    SubmitClaimRequest,
    SubmitPurchaseRequest,
    UpdateOrderRequest,
    UpdateRewardRequest,
)
from .orders import OrderEngine
from .redemption import RedemptionEngine
from .storage import InMemoryStorage, LedgerStore

logger = logging.getLogger(__name__)


def create_storage(settings: Settings) -> LedgerStore:
    if settings.database_url:
        from .sql_storage import SqlStorage

        logger.info("Using SQL store")
        return SqlStorage.from_url(settings.database_url, settings.store_timeout)
    logger.info("Using in-memory store")
    return InMemoryStorage(timeout=settings.store_timeout)


class GuildService:
    """Everything the HTTP layer needs, wired from one set of settings."""

    def __init__(
        self,
        storage: Optional[LedgerStore] = None,
        settings: Optional[Settings] = None,
        gate: Optional[AuthGate] = None,
    ):
        self.settings = settings or Settings()
        self.storage = storage or create_storage(self.settings)
        self.ledger = PointsLedger(self.storage)
        self.orders = OrderEngine(self.storage, self.ledger, auto_close=self.settings.auto_close_orders)
        self.redemption = RedemptionEngine(self.storage, self.ledger)
        self.coordinator = ApprovalCoordinator(
            self.orders, self.redemption, self.ledger, gate or TokenGate(self.settings.admin_token)
        )

    # Participant-facing

    def list_open_orders(self) -> list[Order]:
        return self.orders.list_open_orders()

    def list_orders(self) -> list[Order]:
        return self.orders.list_orders()

    def submit_claim(self, order_id: UUID, request: SubmitClaimRequest) -> OrderClaim:
        return self.orders.submit_claim(order_id, request.student_name, request.student_group, request.comment)

    def list_active_rewards(self) -> list[Reward]:
        return self.redemption.list_active_rewards()

    def submit_purchase(self, reward_id: UUID, request: SubmitPurchaseRequest) -> RewardPurchase:
        return self.redemption.submit_purchase(
            reward_id, request.student_name, request.student_group, request.quantity, request.comment
        )

    def list_students(self) -> list[Student]:
        return self.ledger.list_students()

    # Moderator-facing

    def create_order(self, caller: Optional[str], request: CreateOrderRequest) -> Order:
        self.coordinator.require_privileged(caller, "create orders")
        return self.orders.create_order(request)

    def update_order(self, caller: Optional[str], order_id: UUID, request: UpdateOrderRequest) -> Order:
        self.coordinator.require_privileged(caller, "edit orders")
        return self.orders.update_order(order_id, request)

    def delete_order(self, caller: Optional[str], order_id: UUID) -> None:
        self.coordinator.require_privileged(caller, "delete orders")
        self.orders.delete_order(order_id)

    def list_pending_claims(self, caller: Optional[str]) -> list[ClaimWithOrder]:
        self.coordinator.require_privileged(caller, "review claims")
        return self.orders.list_pending_claims()

    def decide_claim(self, caller: Optional[str], claim_id: UUID, decision: ClaimDecision) -> ClaimDecisionResponse:
        return self.coordinator.decide_claim(caller, claim_id, decision)

    def list_rewards(self, caller: Optional[str]) -> list[Reward]:
        self.coordinator.require_privileged(caller, "view the full catalog")
        return self.redemption.list_rewards()

    def create_reward(self, caller: Optional[str], request: CreateRewardRequest) -> Reward:
        self.coordinator.require_privileged(caller, "create rewards")
        return self.redemption.create_reward(request)

    def update_reward(self, caller: Optional[str], reward_id: UUID, request: UpdateRewardRequest) -> Reward:
        self.coordinator.require_privileged(caller, "edit rewards")
        return self.redemption.update_reward(reward_id, request)

    def delete_reward(self, caller: Optional[str], reward_id: UUID) -> None:
        self.coordinator.require_privileged(caller, "delete rewards")
        self.redemption.delete_reward(reward_id)

    def list_purchases(
        self,
        caller: Optional[str],
        status: Optional[PurchaseStatus] = None,
        student_key: Optional[StudentKey] = None,
    ) -> list[PurchaseWithReward]:
        self.coordinator.require_privileged(caller, "review purchases")
        return self.redemption.list_purchases(status, student_key)

    def decide_purchase(
        self, caller: Optional[str], purchase_id: UUID, action: PurchaseAction
    ) -> PurchaseDecisionResponse:
        return self.coordinator.decide_purchase(caller, purchase_id, action)

    def adjust_student_points(
        self, caller: Optional[str], student_id: UUID, new_total: int, reason: Optional[str] = None
    ) -> PointsOverrideResponse:
        return self.coordinator.adjust_student_points(caller, student_id, new_total, reason)

    def delete_student(self, caller: Optional[str], student_id: UUID) -> None:
        self.coordinator.require_privileged(caller, "delete students")
        self.ledger.delete_student(student_id)
