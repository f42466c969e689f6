import logging
from typing import Callable, TypeVar

from cardpoints.domain.models import CapDecision, CapUsageRecord, PeriodKey, RewardSpec
from cardpoints.engine.calculator import to_decimal
from cardpoints.engine.errors import CapUsagePersistenceConflict
from cardpoints.repository.cap_usage_store import CapUsageKey, CapUsageStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


def apply_cap(
    candidate_value: float,
    reward: RewardSpec,
    period_key: PeriodKey,
    current_usage: CapUsageRecord | None,
    scope_id: str = "",
    period_type: str | None = None,
) -> CapDecision:
    """Clamp a candidate award against the remaining cap for its period.

    The candidate is bonus points for ``bonus_points`` caps and the converted
    spend for ``spend_amount`` caps. Without a cap the candidate passes through
    and usage is left untouched.
    """
    used = to_decimal(current_usage.accumulated_value if current_usage else 0)
    candidate = max(to_decimal(candidate_value), to_decimal(0))
    cap = reward.monthly_cap

    if cap is None:
        return CapDecision(
            scope_id=scope_id,
            period_type=period_type or reward.period_type,
            period_key=period_key,
            cap_type="bonus_points",
            cap_value=None,
            candidate_value=float(candidate),
            awarded_value=float(candidate),
            previous_usage=float(used),
            new_usage=float(used),
        )

    remaining = max(to_decimal(0), to_decimal(cap.value) - used)
    awarded = min(candidate, remaining)
    return CapDecision(
        scope_id=scope_id,
        period_type=period_type or reward.period_type,
        period_key=period_key,
        cap_type=cap.cap_type,
        cap_value=cap.value,
        candidate_value=float(candidate),
        awarded_value=float(awarded),
        previous_usage=float(used),
        new_usage=float(used + awarded),
    )


class CapTracker:
    """Store-backed cap usage with optimistic concurrency.

    Every write is a compare-and-set on the record version read just before
    the clamp was computed; on conflict the whole decision is recomputed.
    """

    def __init__(self, store: CapUsageStore, max_retries: int = 3):
        self.store = store
        self.max_retries = max(1, max_retries)

    def usage_for(
        self, user_id: str, scope_id: str, period_type: str, period_key: PeriodKey
    ) -> CapUsageRecord | None:
        return self.store.get(CapUsageKey(user_id, scope_id, period_type, period_key))

    def commit(
        self,
        user_id: str,
        scope_id: str,
        period_type: str,
        period_key: PeriodKey,
        decide: Callable[[CapUsageRecord | None], tuple[T, CapDecision]],
    ) -> tuple[T, CapDecision]:
        key = CapUsageKey(user_id, scope_id, period_type, period_key)
        for attempt in range(1, self.max_retries + 1):
            record = self.store.get(key)
            outcome, decision = decide(record)
            if decision.usage_delta <= 0:
                return outcome, decision

            expected_version = record.version if record else 0
            if self.store.compare_and_set(key, expected_version, decision.new_usage):
                logger.debug(
                    "Cap usage for %s %s: %s -> %s",
                    scope_id,
                    period_key,
                    decision.previous_usage,
                    decision.new_usage,
                )
                return outcome, decision

            logger.warning(
                "Cap usage conflict for %s %s (attempt %d/%d); recomputing",
                scope_id,
                period_key,
                attempt,
                self.max_retries,
            )
        raise CapUsagePersistenceConflict(scope_id, period_key, self.max_retries)

    def release(
        self,
        user_id: str,
        scope_id: str,
        period_type: str,
        period_key: PeriodKey,
        amount: float,
    ) -> float:
        """Give back previously consumed cap; usage never drops below zero."""
        key = CapUsageKey(user_id, scope_id, period_type, period_key)
        for _ in range(self.max_retries):
            record = self.store.get(key)
            if record is None:
                logger.warning("No cap usage record to release for %s %s", scope_id, period_key)
                return 0.0
            current = to_decimal(record.accumulated_value)
            new_usage = max(to_decimal(0), current - to_decimal(amount))
            if self.store.compare_and_set(key, record.version, float(new_usage)):
                return float(new_usage)
        raise CapUsagePersistenceConflict(scope_id, period_key, self.max_retries)

    def records_for_user(self, user_id: str) -> list[CapUsageRecord]:
        return self.store.records_for_user(user_id)

    def wipe(self, user_id: str) -> int:
        return self.store.delete_for_user(user_id)
