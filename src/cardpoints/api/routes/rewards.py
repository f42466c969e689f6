from typing import NoReturn

from fastapi import APIRouter, Depends, HTTPException

from cardpoints.api.dependencies import get_engine
from cardpoints.domain.models import BackfillSummary, CapUsageSummary, RewardResult
from cardpoints.engine.errors import CapUsagePersistenceConflict, ConfigurationError
from cardpoints.engine.service import RewardEngine
from cardpoints.schemas.requests import AwardRequest, BackfillRequest, CapUsageRequest, SimulateRequest
from cardpoints.schemas.responses import ReverseResponse

router = APIRouter(tags=["rewards"])


def _raise_http(exc: Exception) -> NoReturn:
    if isinstance(exc, ConfigurationError):
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    if isinstance(exc, CapUsagePersistenceConflict):
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    raise HTTPException(status_code=400, detail=str(exc)) from exc


def _check_transaction_id(transaction_id: str, request: AwardRequest) -> None:
    if request.transaction.id != transaction_id:
        raise HTTPException(
            status_code=400,
            detail=f"Transaction id mismatch: path {transaction_id}, body {request.transaction.id}",
        )


@router.post("/simulate", response_model=RewardResult)
def simulate(request: SimulateRequest, engine: RewardEngine = Depends(get_engine)) -> RewardResult:
    try:
        fields = request.model_dump(exclude={"payment_method"})
        return engine.simulate_rewards(payment_method=request.payment_method, **fields)
    except (ConfigurationError, ValueError) as exc:
        _raise_http(exc)


@router.post("/transactions/{transaction_id}/award", response_model=RewardResult)
def record_award(
    transaction_id: str, request: AwardRequest, engine: RewardEngine = Depends(get_engine)
) -> RewardResult:
    _check_transaction_id(transaction_id, request)
    try:
        return engine.record_award(request.user_id, request.transaction)
    except (ConfigurationError, CapUsagePersistenceConflict, ValueError) as exc:
        _raise_http(exc)


@router.put("/transactions/{transaction_id}/award", response_model=RewardResult)
def edit_award(
    transaction_id: str, request: AwardRequest, engine: RewardEngine = Depends(get_engine)
) -> RewardResult:
    _check_transaction_id(transaction_id, request)
    try:
        return engine.edit_award(request.user_id, request.transaction)
    except (ConfigurationError, CapUsagePersistenceConflict, ValueError) as exc:
        _raise_http(exc)


@router.delete("/users/{user_id}/transactions/{transaction_id}/award", response_model=ReverseResponse)
def reverse_award(
    user_id: str, transaction_id: str, engine: RewardEngine = Depends(get_engine)
) -> ReverseResponse:
    try:
        released = engine.reverse_award(user_id, transaction_id)
    except CapUsagePersistenceConflict as exc:
        _raise_http(exc)
    return ReverseResponse(transaction_id=transaction_id, bonus_points_released=released)


@router.post("/users/{user_id}/backfill", response_model=BackfillSummary)
def backfill(
    user_id: str, request: BackfillRequest, engine: RewardEngine = Depends(get_engine)
) -> BackfillSummary:
    try:
        return engine.backfill(user_id, request.transactions)
    except (ConfigurationError, CapUsagePersistenceConflict, ValueError) as exc:
        _raise_http(exc)


@router.post("/users/{user_id}/caps", response_model=list[CapUsageSummary])
def cap_usage(
    user_id: str, request: CapUsageRequest, engine: RewardEngine = Depends(get_engine)
) -> list[CapUsageSummary]:
    try:
        return engine.cap_usage(user_id, request.payment_method, request.reference_date)
    except (ConfigurationError, ValueError) as exc:
        _raise_http(exc)
