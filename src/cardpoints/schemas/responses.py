from pydantic import BaseModel


class ReverseResponse(BaseModel):
    transaction_id: str
    bonus_points_released: float


class HealthResponse(BaseModel):
    status: str = "ok"
    catalog_configured: bool
