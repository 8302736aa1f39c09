"""
Moderator-facing entry points.

One call here is one human decision. The coordinator checks the caller is
privileged, loads the aggregate, hands it to the owning engine and returns
the outcome. Engine failures propagate unchanged and nothing is rolled
forward or compensated at this level.
"""

import hmac
import logging
from typing import Optional, Protocol
from uuid import UUID

from .errors import InvalidInputError, NotPrivilegedError
from .ledger import PointsLedger
from .models import (
    ClaimDecision,
    ClaimDecisionResponse,
    PointsOverrideResponse,
    PurchaseAction,
    PurchaseDecisionResponse,
)
from .orders import OrderEngine
from .redemption import RedemptionEngine

logger = logging.getLogger(__name__)


class AuthGate(Protocol):
    def is_privileged(self, caller: Optional[str]) -> bool:
        ...


class TokenGate:
    """Privileged when the caller presents the configured moderator token."""

    def __init__(self, token: Optional[str]):
        self.token = token

    def is_privileged(self, caller: Optional[str]) -> bool:
        if not self.token or not caller:
            return False
        return hmac.compare_digest(caller.encode(), self.token.encode())


class ApprovalCoordinator:
    def __init__(
        self,
        orders: OrderEngine,
        redemption: RedemptionEngine,
        ledger: PointsLedger,
        gate: AuthGate,
    ):
        self.orders = orders
        self.redemption = redemption
        self.ledger = ledger
        self.gate = gate

    def require_privileged(self, caller: Optional[str], action: str) -> None:
        if not self.gate.is_privileged(caller):
            logger.warning("Refused %s for unprivileged caller", action)
            raise NotPrivilegedError(f"Moderator rights required to {action}")

    def decide_claim(self, caller: Optional[str], claim_id: UUID, decision: ClaimDecision) -> ClaimDecisionResponse:
        self.require_privileged(caller, f"{decision.value} claims")
        aggregate = self.orders.get_claim_with_order(claim_id)

        if decision == ClaimDecision.APPROVE:
            claim, order, student = self.orders.approve_claim(aggregate.claim)
            return ClaimDecisionResponse(
                claim=claim,
                order=order,
                student=student,
                message=f"Claim approved, {order.reward_points} points credited to {claim.student_name}",
            )
        if decision == ClaimDecision.REJECT:
            claim = self.orders.reject_claim(aggregate.claim)
            return ClaimDecisionResponse(claim=claim, order=aggregate.order, message="Claim rejected")
        raise InvalidInputError(f"Unknown claim decision {decision}")

    def decide_purchase(
        self, caller: Optional[str], purchase_id: UUID, action: PurchaseAction
    ) -> PurchaseDecisionResponse:
        self.require_privileged(caller, f"{action.value} purchases")
        aggregate = self.redemption.get_purchase_with_reward(purchase_id)
        purchase = aggregate.purchase

        if action == PurchaseAction.APPROVE:
            purchase, student = self.redemption.approve_purchase(purchase)
            return PurchaseDecisionResponse(
                purchase=purchase,
                reward=aggregate.reward,
                student=student,
                message=f"Purchase approved, {purchase.total_price} points debited from {purchase.student_name}",
            )
        if action == PurchaseAction.REJECT:
            purchase = self.redemption.reject_purchase(purchase)
            return PurchaseDecisionResponse(purchase=purchase, reward=aggregate.reward, message="Purchase rejected")
        if action == PurchaseAction.DELIVER:
            purchase = self.redemption.mark_delivered(purchase)
            return PurchaseDecisionResponse(
                purchase=purchase, reward=aggregate.reward, message="Purchase marked as delivered"
            )
        raise InvalidInputError(f"Unknown purchase action {action}")

    def adjust_student_points(
        self,
        caller: Optional[str],
        student_id: UUID,
        new_total: int,
        reason: Optional[str] = None,
        performed_by: Optional[str] = "moderator",
    ) -> PointsOverrideResponse:
        self.require_privileged(caller, "override student points")
        student, override = self.ledger.override_points(student_id, new_total, performed_by, reason)
        return PointsOverrideResponse(
            student=student,
            override=override,
            message=f"Balance of {student.name} set to {new_total} (was {override.previous_total})",
        )
