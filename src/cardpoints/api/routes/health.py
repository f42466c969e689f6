from fastapi import APIRouter, Depends

from cardpoints.api.dependencies import get_engine
from cardpoints.engine.service import RewardEngine
from cardpoints.schemas.responses import HealthResponse

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
def health(engine: RewardEngine = Depends(get_engine)) -> HealthResponse:
    return HealthResponse(catalog_configured=engine.catalog is not None)
