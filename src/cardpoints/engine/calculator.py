import logging
from decimal import ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_UP, Decimal
from typing import Sequence

from cardpoints.domain.models import BonusTier, PointsBreakdown, RewardSpec, TransactionContext
from cardpoints.engine.conditions import matches

logger = logging.getLogger(__name__)

_ROUNDING = {
    "floor": ROUND_FLOOR,
    "nearest": ROUND_HALF_UP,
    "ceiling": ROUND_CEILING,
}
_FLOOR5_BLOCK = Decimal(5)


def to_decimal(value: float | int | Decimal) -> Decimal:
    # str() first so 64.68 stays 64.68 instead of its binary expansion.
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_points(value: Decimal, strategy: str) -> Decimal:
    return value.to_integral_value(rounding=_ROUNDING.get(strategy, ROUND_FLOOR))


def _floor_to(amount: Decimal, block: Decimal) -> Decimal:
    return (amount / block).to_integral_value(rounding=ROUND_FLOOR) * block


def eligible_amount(amount: Decimal, reward: RewardSpec) -> Decimal:
    strategy = reward.amount_rounding_strategy
    if strategy == "floor_to_block":
        return _floor_to(amount, to_decimal(reward.block_size))
    if strategy == "floor5":
        return _floor_to(amount, _FLOOR5_BLOCK)
    if strategy in _ROUNDING:
        return amount.to_integral_value(rounding=_ROUNDING[strategy])
    return amount


def _within(value: Decimal, low: float | None, high: float | None) -> bool:
    if low is not None and value < to_decimal(low):
        return False
    if high is not None and value > to_decimal(high):
        return False
    return True


def select_tier(
    tiers: Sequence[BonusTier],
    amount: float,
    monthly_spend: float | None = None,
    context: TransactionContext | None = None,
) -> BonusTier | None:
    """First tier, by ascending priority then declaration order, that fits the purchase.

    A tier condition needs a transaction context; without one such tiers are skipped.
    """
    ordered = sorted(enumerate(tiers), key=lambda item: (item[1].priority, item[0]))
    value = to_decimal(amount)
    for _, tier in ordered:
        if not _within(value, tier.min_amount, tier.max_amount):
            continue
        if monthly_spend is not None and not _within(to_decimal(monthly_spend), tier.min_spend, tier.max_spend):
            continue
        if tier.condition is not None and (context is None or not matches(tier.condition, context)):
            continue
        return tier
    return None


def calculate(
    amount: float,
    reward: RewardSpec,
    monthly_spend: float | None = None,
    context: TransactionContext | None = None,
) -> PointsBreakdown:
    """Compute base and bonus points for one purchase under one ``RewardSpec``.

    Refunds and zero amounts earn nothing. Base and bonus are rounded
    separately so a cap can later clamp the bonus without moving the base.
    ``tiered`` rewards add the selected tier's multiplier to the bonus.
    """
    value = to_decimal(amount)
    if value <= 0:
        return PointsBreakdown()

    eligible = eligible_amount(value, reward)
    blocks = eligible / to_decimal(reward.block_size)

    if reward.calculation_method == "flat_rate":
        raw_base = to_decimal(reward.base_multiplier)
    elif reward.calculation_method == "direct":
        raw_base = eligible
    else:
        raw_base = blocks * to_decimal(reward.base_multiplier)

    bonus_multiplier = to_decimal(reward.bonus_multiplier)
    tier = None
    if reward.calculation_method == "tiered":
        tier = select_tier(reward.bonus_tiers, amount, monthly_spend, context)
        if tier is not None:
            logger.debug("Bonus tier %s applied (multiplier %s)", tier.name or tier.priority, tier.multiplier)
            bonus_multiplier += to_decimal(tier.multiplier)
    raw_bonus = blocks * bonus_multiplier

    base_points = round_points(raw_base, reward.points_rounding_strategy)
    bonus_points = round_points(raw_bonus, reward.points_rounding_strategy)

    return PointsBreakdown(
        eligible_amount=float(eligible),
        blocks=float(blocks),
        base_points=float(base_points),
        bonus_points=float(bonus_points),
        total_points=float(base_points + bonus_points),
        raw_bonus=raw_bonus,
        tier=tier,
    )
