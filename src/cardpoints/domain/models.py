import datetime as dt
import re
from decimal import Decimal
from typing import Annotated, Any, Literal, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
    field_validator,
    model_validator,
)

PointsRounding = Literal["floor", "nearest", "ceiling"]
AmountRounding = Literal["none", "floor_to_block", "floor5", "floor", "ceiling", "nearest"]
PeriodType = Literal["calendar", "statement_month", "promotional"]
SpendPeriodType = Literal["calendar", "statement_month"]
CapType = Literal["bonus_points", "spend_amount"]
CalculationMethod = Literal["standard", "tiered", "flat_rate", "direct"]

Primitive = Union[bool, int, float, str]

_OPERATION_ALIASES = {"range": "between"}


def _snake_case(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    return re.sub(r"([a-z0-9])([A-Z])", r"\1_\2", value.strip()).lower()


class LeafCondition(BaseModel):
    """A single field test, e.g. ``mcc include [5411, 5499]``.

    Fields and operations are kept as plain strings so that catalog entries
    with unknown names still load; the matcher treats them as non-matching.
    """

    model_config = ConfigDict(populate_by_name=True)

    field: str = Field(validation_alias=AliasChoices("field", "type"))
    operation: str
    values: list[Primitive] = Field(default_factory=list)
    display_name: str | None = Field(
        default=None, validation_alias=AliasChoices("display_name", "displayName")
    )

    @field_validator("field", mode="before")
    @classmethod
    def _normalize_field(cls, value: Any) -> Any:
        return _snake_case(value)

    @field_validator("operation", mode="before")
    @classmethod
    def _normalize_operation(cls, value: Any) -> Any:
        value = _snake_case(value)
        return _OPERATION_ALIASES.get(value, value)

    @model_validator(mode="after")
    def _upgrade_legacy_online(self) -> "LeafCondition":
        # Older catalogs stored "online equals true/false" instead of a
        # transaction_type condition.
        if self.field != "online":
            return self
        self.field = "transaction_type"
        if self.operation == "equals" and self.values:
            flag = str(self.values[0]).lower()
            if flag in ("true", "false"):
                self.operation = "include" if flag == "true" else "exclude"
                self.values = ["online"]
        return self


class CompoundCondition(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    field: Literal["compound"] = Field(
        default="compound", validation_alias=AliasChoices("field", "type")
    )
    operation: str
    sub_conditions: list["Condition"] = Field(
        default_factory=list,
        validation_alias=AliasChoices("sub_conditions", "subConditions"),
    )
    display_name: str | None = Field(
        default=None, validation_alias=AliasChoices("display_name", "displayName")
    )

    @field_validator("operation", mode="before")
    @classmethod
    def _normalize_operation(cls, value: Any) -> Any:
        return _snake_case(value)


def _condition_kind(value: Any) -> str:
    if isinstance(value, dict):
        kind = value.get("field", value.get("type"))
        is_compound = kind == "compound" or "sub_conditions" in value or "subConditions" in value
    else:
        is_compound = isinstance(value, CompoundCondition)
    return "compound" if is_compound else "leaf"


Condition = Annotated[
    Union[
        Annotated[LeafCondition, Tag("leaf")],
        Annotated[CompoundCondition, Tag("compound")],
    ],
    Discriminator(_condition_kind),
]

CompoundCondition.model_rebuild()


class BonusTier(BaseModel):
    """Extra multiplier for a ``tiered`` reward, picked by amount, monthly spend and condition.

    Bounds are inclusive; spend bounds are ignored when monthly spend is unknown.
    """

    multiplier: float
    name: str | None = None
    description: str | None = None
    priority: int = 0
    min_amount: float | None = None
    max_amount: float | None = None
    min_spend: float | None = None
    max_spend: float | None = None
    condition: Condition | None = None


class MonthlyCap(BaseModel):
    value: float = Field(ge=0)
    cap_type: CapType = "bonus_points"


class RewardSpec(BaseModel):
    calculation_method: CalculationMethod = "standard"
    base_multiplier: float = 1
    bonus_multiplier: float = 0
    points_currency: str = "points"
    points_rounding_strategy: PointsRounding = "floor"
    amount_rounding_strategy: AmountRounding = "none"
    block_size: float = Field(default=1, gt=0)
    bonus_tiers: list[BonusTier] = Field(default_factory=list)
    monthly_cap: MonthlyCap | None = None
    monthly_min_spend: float | None = None
    period_type: PeriodType = "calendar"
    cap_group_id: str | None = None
    promo_start_date: dt.date | None = None

    @field_validator("period_type", mode="before")
    @classmethod
    def _normalize_period_type(cls, value: Any) -> Any:
        value = _snake_case(value)
        return "statement_month" if value == "statement" else value

    @field_validator(
        "points_rounding_strategy",
        "amount_rounding_strategy",
        "calculation_method",
        mode="before",
    )
    @classmethod
    def _normalize_strategy(cls, value: Any) -> Any:
        return _snake_case(value)


class RewardRule(BaseModel):
    id: str
    card_type_id: str
    name: str
    description: str = ""
    enabled: bool = True
    priority: int = 0
    conditions: list[Condition] = Field(default_factory=list)
    reward: RewardSpec = Field(default_factory=RewardSpec)
    sequence: int | None = None

    @property
    def scope_id(self) -> str:
        """Cap scope: the shared cap group when set, otherwise the rule itself."""
        return self.reward.cap_group_id or self.id


class PaymentMethod(BaseModel):
    id: str
    issuer: str
    name: str
    card_type_id: str | None = None
    currency: str = "USD"
    points_currency: str = "points"
    statement_day: int = 1
    spend_period_type: SpendPeriodType = "calendar"

    @field_validator("spend_period_type", mode="before")
    @classmethod
    def _normalize_spend_period(cls, value: Any) -> Any:
        value = _snake_case(value)
        return "statement_month" if value == "statement" else value

    @property
    def resolved_card_type_id(self) -> str:
        """Explicit card type, or ``issuer-name`` lowercased with spaces hyphenated.

        ``Chase`` / ``Sapphire Reserve`` resolves to ``chase-sapphire-reserve``.
        """
        if self.card_type_id:
            return self.card_type_id
        if not self.issuer.strip() or not self.name.strip():
            raise ValueError("Both issuer and name are required to derive a card type id")
        issuer = re.sub(r"\s+", "-", self.issuer.strip().lower())
        name = re.sub(r"\s+", "-", self.name.strip().lower())
        return f"{issuer}-{name}"


class TransactionContext(BaseModel):
    amount: float
    currency: str
    card_type_id: str
    date: dt.date
    mcc: str | None = None
    merchant_name: str | None = None
    is_online: bool = False
    is_contactless: bool = False
    converted_amount: float | None = None
    converted_currency: str | None = None
    category: str | None = None
    monthly_spend: float | None = None

    @property
    def calculation_amount(self) -> float:
        if self.converted_amount is not None:
            return self.converted_amount
        return self.amount


class Transaction(BaseModel):
    id: str
    date: dt.date
    amount: float
    currency: str
    payment_method: PaymentMethod
    mcc: str | None = None
    merchant_name: str | None = None
    is_online: bool = False
    is_contactless: bool = False
    converted_amount: float | None = None
    converted_currency: str | None = None
    category: str | None = None

    def to_context(self, monthly_spend: float | None = None) -> TransactionContext:
        return TransactionContext(
            amount=self.amount,
            currency=self.currency,
            card_type_id=self.payment_method.resolved_card_type_id,
            date=self.date,
            mcc=self.mcc,
            merchant_name=self.merchant_name,
            is_online=self.is_online,
            is_contactless=self.is_contactless,
            converted_amount=self.converted_amount,
            converted_currency=self.converted_currency,
            category=self.category,
            monthly_spend=monthly_spend,
        )


class PeriodKey(BaseModel):
    model_config = ConfigDict(frozen=True)

    year: int
    month: int = Field(ge=1, le=12)
    cycle_start_day: int = 1

    def __str__(self) -> str:
        return f"{self.year:04d}-{self.month:02d}/{self.cycle_start_day}"


class CapUsageRecord(BaseModel):
    user_id: str
    scope_id: str
    period_type: PeriodType
    period_key: PeriodKey
    accumulated_value: float = 0
    version: int = 0


class SpendEntry(BaseModel):
    """One committed transaction counted towards its card's monthly spend."""

    user_id: str
    transaction_id: str
    payment_method_id: str
    date: dt.date
    amount: float


class BonusPointsMovement(BaseModel):
    id: str
    transaction_id: str
    scope_id: str
    bonus_points_awarded: float
    created_at: dt.datetime
    user_id: str
    period_type: PeriodType
    period_key: PeriodKey
    cap_type: CapType = "bonus_points"
    usage_delta: float = 0


class PointsBreakdown(BaseModel):
    eligible_amount: float = 0
    blocks: float = 0
    base_points: float = 0
    bonus_points: float = 0
    total_points: float = 0
    raw_bonus: Decimal = Field(default=Decimal(0), exclude=True)
    tier: BonusTier | None = None


class CapDecision(BaseModel):
    scope_id: str
    period_type: PeriodType
    period_key: PeriodKey
    cap_type: CapType
    cap_value: float | None
    candidate_value: float
    awarded_value: float
    previous_usage: float
    new_usage: float

    @property
    def usage_delta(self) -> float:
        if self.cap_value is None:
            return 0.0
        return self.awarded_value

    @property
    def remaining(self) -> float | None:
        if self.cap_value is None:
            return None
        return max(0.0, self.cap_value - self.new_usage)


class RuleSelection(BaseModel):
    rule: RewardRule | None
    reward: RewardSpec
    fallback: bool = False
    min_spend_met: bool = True
    messages: list[str] = Field(default_factory=list)


class RewardResult(BaseModel):
    total_points: float = 0
    base_points: float = 0
    bonus_points: float = 0
    points_currency: str = "points"
    applied_rule: RewardRule | None = None
    applied_tier: BonusTier | None = None
    monthly_spend: float | None = None
    remaining_monthly_bonus_points: float | None = None
    min_spend_met: bool = True
    messages: list[str] = Field(default_factory=list)
    cap: CapDecision | None = None


class CapUsageSummary(BaseModel):
    scope_id: str
    rule_name: str
    used: float
    cap: float
    cap_type: CapType
    period_type: PeriodType
    period_key: PeriodKey
    period_start: dt.date
    period_end: dt.date | None
    percentage: float


class BackfillSummary(BaseModel):
    user_id: str
    transactions_processed: int
    movements_recorded: int
    total_bonus_points: float
    cap_records: int
