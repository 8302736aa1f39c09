import logging
from typing import Optional
from uuid import UUID

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Response, status
from fastapi.middleware.cors import CORSMiddleware

from .config import Settings
from .errors import (
    AlreadyProcessedError,
    CapacityExceededError,
    GuildError,
    InsufficientBalanceError,
    InvalidInputError,
    InvalidStateTransitionError,
    NotFoundError,
    NotPrivilegedError,
    StoreUnavailableError,
)
from .models import (
    ClaimDecisionRequest,
    ClaimDecisionResponse,
    ClaimWithOrder,
    CreateOrderRequest,
    CreateRewardRequest,
    Order,
    OrderClaim,
    PointsOverrideRequest,
    PointsOverrideResponse,
    PurchaseDecisionRequest,
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
from .service import GuildService

logger = logging.getLogger(__name__)

ERROR_STATUS = [
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (NotPrivilegedError, status.HTTP_403_FORBIDDEN),
    (InsufficientBalanceError, status.HTTP_409_CONFLICT),
    (CapacityExceededError, status.HTTP_409_CONFLICT),
    (AlreadyProcessedError, status.HTTP_409_CONFLICT),
    (InvalidStateTransitionError, status.HTTP_400_BAD_REQUEST),
    (InvalidInputError, status.HTTP_400_BAD_REQUEST),
    (StoreUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
]


def to_http_error(error: GuildError) -> HTTPException:
    for error_type, code in ERROR_STATUS:
        if isinstance(error, error_type):
            return HTTPException(status_code=code, detail=str(error))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error))


def create_app(service: Optional[GuildService] = None, settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    service = service or GuildService(settings=settings)

    app = FastAPI(
        title="Guild Board API",
        description="Quest board with slot-limited orders, point ledger and reward shop",
        version="1.0.0",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.service = service

    def caller_token(x_guild_token: Optional[str] = Header(default=None)) -> Optional[str]:
        return x_guild_token

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "guild-board"}

    # Orders

    @app.get("/orders", response_model=list[Order], tags=["Orders"])
    def list_orders(open_only: bool = True) -> list[Order]:
        try:
            return service.list_open_orders() if open_only else service.list_orders()
        except GuildError as e:
            raise to_http_error(e)

    @app.post("/orders", response_model=Order, status_code=status.HTTP_201_CREATED, tags=["Orders"])
    def create_order(request: CreateOrderRequest, caller: Optional[str] = Depends(caller_token)) -> Order:
        try:
            return service.create_order(caller, request)
        except GuildError as e:
            raise to_http_error(e)

    @app.patch("/orders/{order_id}", response_model=Order, tags=["Orders"])
    def update_order(
        order_id: UUID, request: UpdateOrderRequest, caller: Optional[str] = Depends(caller_token)
    ) -> Order:
        try:
            return service.update_order(caller, order_id, request)
        except GuildError as e:
            raise to_http_error(e)

    @app.delete("/orders/{order_id}", status_code=status.HTTP_204_NO_CONTENT, tags=["Orders"])
    def delete_order(order_id: UUID, caller: Optional[str] = Depends(caller_token)) -> Response:
        try:
            service.delete_order(caller, order_id)
        except GuildError as e:
            raise to_http_error(e)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    # Claims

    @app.post(
        "/orders/{order_id}/claims",
        response_model=OrderClaim,
        status_code=status.HTTP_201_CREATED,
        tags=["Claims"],
    )
    def submit_claim(order_id: UUID, request: SubmitClaimRequest) -> OrderClaim:
        try:
            return service.submit_claim(order_id, request)
        except GuildError as e:
            raise to_http_error(e)

    @app.get("/claims/pending", response_model=list[ClaimWithOrder], tags=["Claims"])
    def list_pending_claims(caller: Optional[str] = Depends(caller_token)) -> list[ClaimWithOrder]:
        try:
            return service.list_pending_claims(caller)
        except GuildError as e:
            raise to_http_error(e)

    @app.post("/claims/{claim_id}/decision", response_model=ClaimDecisionResponse, tags=["Claims"])
    def decide_claim(
        claim_id: UUID, request: ClaimDecisionRequest, caller: Optional[str] = Depends(caller_token)
    ) -> ClaimDecisionResponse:
        try:
            return service.decide_claim(caller, claim_id, request.decision)
        except GuildError as e:
            raise to_http_error(e)

    # Rewards

    @app.get("/rewards", response_model=list[Reward], tags=["Rewards"])
    def list_active_rewards() -> list[Reward]:
        try:
            return service.list_active_rewards()
        except GuildError as e:
            raise to_http_error(e)

    @app.get("/rewards/all", response_model=list[Reward], tags=["Rewards"])
    def list_rewards(caller: Optional[str] = Depends(caller_token)) -> list[Reward]:
        try:
            return service.list_rewards(caller)
        except GuildError as e:
            raise to_http_error(e)

    @app.post("/rewards", response_model=Reward, status_code=status.HTTP_201_CREATED, tags=["Rewards"])
    def create_reward(request: CreateRewardRequest, caller: Optional[str] = Depends(caller_token)) -> Reward:
        try:
            return service.create_reward(caller, request)
        except GuildError as e:
            raise to_http_error(e)

    @app.patch("/rewards/{reward_id}", response_model=Reward, tags=["Rewards"])
    def update_reward(
        reward_id: UUID, request: UpdateRewardRequest, caller: Optional[str] = Depends(caller_token)
    ) -> Reward:
        try:
            return service.update_reward(caller, reward_id, request)
        except GuildError as e:
            raise to_http_error(e)

    @app.delete("/rewards/{reward_id}", status_code=status.HTTP_204_NO_CONTENT, tags=["Rewards"])
    def delete_reward(reward_id: UUID, caller: Optional[str] = Depends(caller_token)) -> Response:
        try:
            service.delete_reward(caller, reward_id)
        except GuildError as e:
            raise to_http_error(e)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    # Purchases

    @app.post(
        "/rewards/{reward_id}/purchases",
        response_model=RewardPurchase,
        status_code=status.HTTP_201_CREATED,
        tags=["Purchases"],
    )
    def submit_purchase(reward_id: UUID, request: SubmitPurchaseRequest) -> RewardPurchase:
        try:
            return service.submit_purchase(reward_id, request)
        except GuildError as e:
            raise to_http_error(e)

    @app.get("/purchases", response_model=list[PurchaseWithReward], tags=["Purchases"])
    def list_purchases(
        status_filter: Optional[PurchaseStatus] = Query(default=None, alias="status"),
        name: Optional[str] = None,
        group: Optional[str] = None,
        caller: Optional[str] = Depends(caller_token),
    ) -> list[PurchaseWithReward]:
        student_key = StudentKey(name, group) if name and group else None
        try:
            return service.list_purchases(caller, status_filter, student_key)
        except GuildError as e:
            raise to_http_error(e)

    @app.post("/purchases/{purchase_id}/decision", response_model=PurchaseDecisionResponse, tags=["Purchases"])
    def decide_purchase(
        purchase_id: UUID, request: PurchaseDecisionRequest, caller: Optional[str] = Depends(caller_token)
    ) -> PurchaseDecisionResponse:
        try:
            return service.decide_purchase(caller, purchase_id, request.action)
        except GuildError as e:
            raise to_http_error(e)

    # Students

    @app.get("/students", response_model=list[Student], tags=["Students"])
    def list_students() -> list[Student]:
        try:
            return service.list_students()
        except GuildError as e:
            raise to_http_error(e)

    @app.put("/students/{student_id}/points", response_model=PointsOverrideResponse, tags=["Students"])
    def adjust_student_points(
        student_id: UUID, request: PointsOverrideRequest, caller: Optional[str] = Depends(caller_token)
    ) -> PointsOverrideResponse:
        try:
            return service.adjust_student_points(caller, student_id, request.total_points, request.reason)
        except GuildError as e:
            raise to_http_error(e)

    @app.delete("/students/{student_id}", status_code=status.HTTP_204_NO_CONTENT, tags=["Students"])
    def delete_student(student_id: UUID, caller: Optional[str] = Depends(caller_token)) -> Response:
        try:
            service.delete_student(caller, student_id)
        except GuildError as e:
            raise to_http_error(e)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    return app


if __name__ == "__main__":
    import uvicorn

    settings = Settings.from_env()
    logging.basicConfig(level=settings.log_level)
    uvicorn.run(create_app(settings=settings), host="0.0.0.0", port=8000)
