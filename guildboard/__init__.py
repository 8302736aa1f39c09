"""
Guild Board: quests, points and rewards

This package provides:
- Ranked orders with slot accounting, taken only on approval
- A points ledger with atomic credit and debit
- Reward purchases: pending → approved → delivered / rejected
- A moderator coordinator behind a privilege check
- In-memory and SQL record stores
"""

from .models import (
    Rank,
    OrderStatus,
    ClaimStatus,
    PurchaseStatus,
    Order,
    OrderClaim,
    Reward,
    RewardPurchase,
    Student,
)
from .service import GuildService

__all__ = [
    "Rank",
    "OrderStatus",
    "ClaimStatus",
    "PurchaseStatus",
    "Order",
    "OrderClaim",
    "Reward",
    "RewardPurchase",
    "Student",
    "GuildService",
]
