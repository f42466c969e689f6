import threading
from typing import NamedTuple, Protocol

from cardpoints.domain.models import CapUsageRecord, PeriodKey


class CapUsageKey(NamedTuple):
    user_id: str
    scope_id: str
    period_type: str
    period_key: PeriodKey


class CapUsageStore(Protocol):
    def get(self, key: CapUsageKey) -> CapUsageRecord | None:
        ...

    def compare_and_set(self, key: CapUsageKey, expected_version: int, accumulated_value: float) -> bool:
        """Write ``accumulated_value`` only if the stored version still equals ``expected_version``.

        A missing record has version 0. Returns False on conflict.
        """
        ...

    def records_for_user(self, user_id: str) -> list[CapUsageRecord]:
        ...

    def delete_for_user(self, user_id: str) -> int:
        ...


class InMemoryCapUsageStore:
    def __init__(self) -> None:
        self._records: dict[CapUsageKey, CapUsageRecord] = {}
        self._lock = threading.Lock()

    def get(self, key: CapUsageKey) -> CapUsageRecord | None:
        with self._lock:
            record = self._records.get(key)
            return record.model_copy() if record else None

    def compare_and_set(self, key: CapUsageKey, expected_version: int, accumulated_value: float) -> bool:
        with self._lock:
            current = self._records.get(key)
            current_version = current.version if current else 0
            if current_version != expected_version:
                return False
            self._records[key] = CapUsageRecord(
                user_id=key.user_id,
                scope_id=key.scope_id,
                period_type=key.period_type,
                period_key=key.period_key,
                accumulated_value=accumulated_value,
                version=current_version + 1,
            )
            return True

    def records_for_user(self, user_id: str) -> list[CapUsageRecord]:
        with self._lock:
            records = [record.model_copy() for key, record in self._records.items() if key.user_id == user_id]
        return sorted(
            records,
            key=lambda r: (r.scope_id, r.period_type, r.period_key.year, r.period_key.month, r.period_key.cycle_start_day),
        )

    def delete_for_user(self, user_id: str) -> int:
        with self._lock:
            doomed = [key for key in self._records if key.user_id == user_id]
            for key in doomed:
                del self._records[key]
        return len(doomed)
