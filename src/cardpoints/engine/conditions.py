import logging
from decimal import Decimal, InvalidOperation
from typing import Iterable

from cardpoints.domain.models import CompoundCondition, LeafCondition, TransactionContext
from cardpoints.engine.errors import MalformedConditionError

logger = logging.getLogger(__name__)

_MEMBERSHIP_OPERATIONS = ("include", "exclude", "equals", "not_equals")
_NEGATIVE_OPERATIONS = ("exclude", "not_equals")


def _require_values(condition: LeafCondition) -> list[str]:
    if not condition.values:
        raise MalformedConditionError(
            f"{condition.field} {condition.operation} needs at least one value"
        )
    return [str(value) for value in condition.values]


def _membership(condition: LeafCondition, actual: str | None, normalize) -> bool:
    if condition.operation not in _MEMBERSHIP_OPERATIONS:
        raise MalformedConditionError(
            f"operation '{condition.operation}' is not supported for {condition.field}"
        )
    values = [normalize(value) for value in _require_values(condition)]
    if actual is None or actual == "":
        return condition.operation in _NEGATIVE_OPERATIONS

    actual = normalize(actual)
    if condition.operation == "include":
        return actual in values
    if condition.operation == "exclude":
        return actual not in values
    if condition.operation == "equals":
        return actual == values[0]
    return actual != values[0]


def _merchant(condition: LeafCondition, merchant_name: str | None) -> bool:
    if condition.operation not in _MEMBERSHIP_OPERATIONS:
        raise MalformedConditionError(
            f"operation '{condition.operation}' is not supported for merchant"
        )
    values = [value.strip().lower() for value in _require_values(condition)]
    if not merchant_name:
        return condition.operation in _NEGATIVE_OPERATIONS

    merchant = merchant_name.strip().lower()
    if condition.operation in ("equals", "not_equals"):
        same = merchant == values[0]
        return same if condition.operation == "equals" else not same

    # Either side may be the abbreviated one.
    hit = any(value and (value in merchant or merchant in value) for value in values)
    return hit if condition.operation == "include" else not hit


def _transaction_type(condition: LeafCondition, context: TransactionContext) -> bool:
    if condition.operation not in _MEMBERSHIP_OPERATIONS:
        raise MalformedConditionError(
            f"operation '{condition.operation}' is not supported for transaction_type"
        )
    flags = {
        "online": context.is_online,
        "in_store": not context.is_online,
        "contactless": context.is_contactless,
    }
    tokens = [value.strip().lower() for value in _require_values(condition)]
    unknown = [token for token in tokens if token not in flags]
    if unknown:
        raise MalformedConditionError(f"unknown transaction type token(s): {unknown}")

    if condition.operation == "include":
        return any(flags[token] for token in tokens)
    if condition.operation == "exclude":
        return not any(flags[token] for token in tokens)
    if condition.operation == "equals":
        return flags[tokens[0]]
    return not flags[tokens[0]]


def _number(value: object) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise MalformedConditionError(f"'{value}' is not a number") from exc


def _amount(condition: LeafCondition, amount: float) -> bool:
    values = [_number(value) for value in _require_values(condition)]
    actual = _number(amount)

    if condition.operation == "greater_than":
        return actual > values[0]
    if condition.operation == "less_than":
        return actual < values[0]
    if condition.operation == "equals":
        return actual == values[0]
    if condition.operation == "not_equals":
        return actual != values[0]
    if condition.operation == "between":
        if len(values) < 2:
            raise MalformedConditionError("between needs a lower and an upper bound")
        low, high = values[0], values[1]
        return low <= actual <= high
    raise MalformedConditionError(f"operation '{condition.operation}' is not supported for amount")


def _evaluate_leaf(condition: LeafCondition, context: TransactionContext) -> bool:
    field = condition.field
    if field == "mcc":
        return _membership(condition, context.mcc, lambda value: value.strip())
    if field == "currency":
        return _membership(condition, context.currency, lambda value: value.strip().upper())
    if field == "category":
        return _membership(condition, context.category, lambda value: value.strip().lower())
    if field == "merchant":
        return _merchant(condition, context.merchant_name)
    if field == "transaction_type":
        return _transaction_type(condition, context)
    if field == "amount":
        return _amount(condition, context.amount)
    raise MalformedConditionError(f"unknown condition field '{field}'")


def _evaluate(condition, context: TransactionContext) -> bool:
    if isinstance(condition, CompoundCondition):
        if condition.operation == "all":
            return all(matches(sub, context) for sub in condition.sub_conditions)
        if condition.operation == "any":
            return any(matches(sub, context) for sub in condition.sub_conditions)
        raise MalformedConditionError(f"unknown compound operation '{condition.operation}'")
    if isinstance(condition, LeafCondition):
        return _evaluate_leaf(condition, context)
    raise MalformedConditionError(f"unsupported condition node {type(condition).__name__}")


def matches(condition, context: TransactionContext) -> bool:
    """Evaluate one condition tree. Malformed conditions never match."""
    try:
        return _evaluate(condition, context)
    except MalformedConditionError as exc:
        logger.warning("Malformed reward condition treated as non-matching: %s", exc)
        return False


def matches_all(conditions: Iterable, context: TransactionContext) -> bool:
    """A rule's top-level condition list is an implicit ``all``; empty matches."""
    return all(matches(condition, context) for condition in conditions)
