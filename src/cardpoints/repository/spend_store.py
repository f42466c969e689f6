import threading
from typing import Protocol

from cardpoints.domain.models import SpendEntry


class SpendStore(Protocol):
    def add(self, entry: SpendEntry) -> None:
        """Raises ``ValueError`` if the user already has an entry for the transaction."""
        ...

    def get(self, user_id: str, transaction_id: str) -> SpendEntry | None:
        ...

    def remove(self, user_id: str, transaction_id: str) -> SpendEntry | None:
        ...

    def for_payment_method(self, user_id: str, payment_method_id: str) -> list[SpendEntry]:
        ...

    def delete_for_user(self, user_id: str) -> int:
        ...


class InMemorySpendStore:
    def __init__(self) -> None:
        self._entries: dict[tuple[str, str], SpendEntry] = {}
        self._lock = threading.Lock()

    def add(self, entry: SpendEntry) -> None:
        key = (entry.user_id, entry.transaction_id)
        with self._lock:
            if key in self._entries:
                raise ValueError(f"Spend for transaction {entry.transaction_id} already recorded")
            self._entries[key] = entry

    def get(self, user_id: str, transaction_id: str) -> SpendEntry | None:
        with self._lock:
            return self._entries.get((user_id, transaction_id))

    def remove(self, user_id: str, transaction_id: str) -> SpendEntry | None:
        with self._lock:
            return self._entries.pop((user_id, transaction_id), None)

    def for_payment_method(self, user_id: str, payment_method_id: str) -> list[SpendEntry]:
        with self._lock:
            return [
                entry for (owner, _), entry in self._entries.items()
                if owner == user_id and entry.payment_method_id == payment_method_id
            ]

    def delete_for_user(self, user_id: str) -> int:
        with self._lock:
            doomed = [key for key in self._entries if key[0] == user_id]
            for key in doomed:
                del self._entries[key]
        return len(doomed)
