from datetime import datetime
from enum import Enum
from typing import NamedTuple, Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict


class Rank(str, Enum):
    SS = "SS"
    S = "S"
    A = "A"
    B = "B"
    C = "C"
    D = "D"
    E = "E"
    F = "F"

    @property
    def weight(self) -> int:
        # SS is the highest rank
        return len(RANK_ORDER) - RANK_ORDER.index(self)

    @property
    def reward_band(self) -> tuple[int, int]:
        return RANK_REWARD_BANDS[self]

    def suggests(self, reward_points: int) -> bool:
        low, high = self.reward_band
        return low <= reward_points <= high


RANK_ORDER = [Rank.SS, Rank.S, Rank.A, Rank.B, Rank.C, Rank.D, Rank.E, Rank.F]

RANK_REWARD_BANDS = {
    Rank.SS: (500, 1000),
    Rank.S: (200, 500),
    Rank.A: (100, 200),
    Rank.B: (50, 100),
    Rank.C: (25, 50),
    Rank.D: (15, 25),
    Rank.E: (10, 15),
    Rank.F: (5, 10),
}


class OrderStatus(str, Enum):
    OPEN = "open"
    COMPLETED = "completed"


class ClaimStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class PurchaseStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    DELIVERED = "delivered"


class ClaimDecision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


class PurchaseAction(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    DELIVER = "deliver"


class StudentKey(NamedTuple):
    name: str
    group: str


class Order(BaseModel):
    id: UUID
    title: str
    description: str = ""
    rank: Rank
    max_slots: int = Field(..., ge=1)
    taken_slots: int = Field(default=0, ge=0)
    reward_points: int = Field(..., ge=0)
    status: OrderStatus = OrderStatus.OPEN
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @property
    def is_full(self) -> bool:
        return self.taken_slots >= self.max_slots

    @property
    def free_slots(self) -> int:
        return max(0, self.max_slots - self.taken_slots)


class OrderClaim(BaseModel):
    id: UUID
    order_id: UUID
    student_name: str
    student_group: str
    comment: str = ""
    status: ClaimStatus = ClaimStatus.PENDING
    created_at: datetime
    # Snapshot taken at submission, kept if the order is deleted later
    order_title: Optional[str] = None
    order_reward_points: Optional[int] = None

    model_config = ConfigDict(from_attributes=True)

    @property
    def student_key(self) -> StudentKey:
        return StudentKey(self.student_name, self.student_group)

    def can_decide(self) -> bool:
        return self.status == ClaimStatus.PENDING


class Reward(BaseModel):
    id: UUID
    title: str
    description: str = ""
    price: int = Field(..., gt=0)
    is_active: bool = True
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class RewardPurchase(BaseModel):
    id: UUID
    reward_id: UUID
    student_name: str
    student_group: str
    quantity: int = Field(..., ge=1, le=10)
    total_price: int = Field(..., ge=0)
    comment: str = ""
    status: PurchaseStatus = PurchaseStatus.PENDING
    created_at: datetime
    reward_title: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)

    @property
    def student_key(self) -> StudentKey:
        return StudentKey(self.student_name, self.student_group)

    def can_approve(self) -> bool:
        return self.status == PurchaseStatus.PENDING

    def can_reject(self) -> bool:
        return self.status == PurchaseStatus.PENDING

    def can_deliver(self) -> bool:
        return self.status == PurchaseStatus.APPROVED


class Student(BaseModel):
    id: UUID
    name: str
    student_group: str
    total_points: int = Field(default=0, ge=0)

    model_config = ConfigDict(from_attributes=True)

    @property
    def key(self) -> StudentKey:
        return StudentKey(self.name, self.student_group)


class PointOverride(BaseModel):
    id: UUID
    student_id: UUID
    previous_total: int
    new_total: int
    performed_by: Optional[str] = None
    reason: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ClaimWithOrder(BaseModel):
    claim: OrderClaim
    order: Optional[Order] = None


class PurchaseWithReward(BaseModel):
    purchase: RewardPurchase
    reward: Optional[Reward] = None


class CreateOrderRequest(BaseModel):
    title: str = Field(..., min_length=1)
    description: str = ""
    rank: Rank = Rank.C
    max_slots: int = Field(default=1, ge=1)
    reward_points: int = Field(default=10, ge=0)

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "title": "Prepare a talk on sorting algorithms",
            "description": "Ten minutes, slides optional",
            "rank": "B",
            "max_slots": 2,
            "reward_points": 75
        }
    })


class UpdateOrderRequest(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    rank: Optional[Rank] = None
    max_slots: Optional[int] = Field(default=None, ge=1)
    taken_slots: Optional[int] = Field(default=None, ge=0)
    reward_points: Optional[int] = Field(default=None, ge=0)
    status: Optional[OrderStatus] = None


class SubmitClaimRequest(BaseModel):
    student_name: str = Field(..., min_length=1)
    student_group: str = Field(..., min_length=1)
    comment: str = ""


class CreateRewardRequest(BaseModel):
    title: str = Field(..., min_length=1)
    description: str = ""
    price: int = Field(default=100, gt=0)
    is_active: bool = True


class UpdateRewardRequest(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    price: Optional[int] = Field(default=None, gt=0)
    is_active: Optional[bool] = None


class SubmitPurchaseRequest(BaseModel):
    student_name: str = Field(..., min_length=1)
    student_group: str = Field(..., min_length=1)
    quantity: int = Field(default=1, ge=1, le=10)
    comment: str = ""


class ClaimDecisionRequest(BaseModel):
    decision: ClaimDecision


class PurchaseDecisionRequest(BaseModel):
    action: PurchaseAction


class PointsOverrideRequest(BaseModel):
    total_points: int = Field(..., ge=0)
    reason: Optional[str] = None


class ClaimDecisionResponse(BaseModel):
    claim: OrderClaim
    order: Optional[Order] = None
    student: Optional[Student] = None
    message: str


class PurchaseDecisionResponse(BaseModel):
    purchase: RewardPurchase
    reward: Optional[Reward] = None
    student: Optional[Student] = None
    message: str


class PointsOverrideResponse(BaseModel):
    student: Student
    override: PointOverride
    message: str
