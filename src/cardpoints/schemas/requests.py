import datetime as dt

from pydantic import BaseModel, Field

from cardpoints.domain.models import PaymentMethod, Transaction


class SimulateRequest(BaseModel):
    amount: float
    currency: str = "USD"
    payment_method: PaymentMethod
    mcc: str | None = None
    merchant_name: str | None = None
    is_online: bool | None = None
    is_contactless: bool | None = None
    converted_amount: float | None = None
    converted_currency: str | None = None
    user_id: str | None = None
    transaction_date: dt.date | None = None
    category: str | None = None
    monthly_spend: float | None = None


class AwardRequest(BaseModel):
    user_id: str
    transaction: Transaction


class BackfillRequest(BaseModel):
    transactions: list[Transaction] = Field(default_factory=list)


class CapUsageRequest(BaseModel):
    payment_method: PaymentMethod
    reference_date: dt.date | None = None
