import threading
from typing import Protocol

from cardpoints.domain.models import BonusPointsMovement


class BonusPointsLedgerStore(Protocol):
    def append(self, movement: BonusPointsMovement) -> None:
        ...

    def for_transaction(self, user_id: str, transaction_id: str) -> list[BonusPointsMovement]:
        ...

    def delete(self, movement_id: str) -> BonusPointsMovement | None:
        ...

    def all(self) -> list[BonusPointsMovement]:
        ...

    def delete_for_user(self, user_id: str) -> int:
        ...


class InMemoryLedgerStore:
    """Append-only list of movements; deletion is by movement or by user."""

    def __init__(self) -> None:
        self._movements: list[BonusPointsMovement] = []
        self._lock = threading.Lock()

    def append(self, movement: BonusPointsMovement) -> None:
        with self._lock:
            if any(existing.id == movement.id for existing in self._movements):
                raise ValueError(f"Movement {movement.id} already recorded")
            self._movements.append(movement)

    def for_transaction(self, user_id: str, transaction_id: str) -> list[BonusPointsMovement]:
        with self._lock:
            return [
                m for m in self._movements
                if m.user_id == user_id and m.transaction_id == transaction_id
            ]

    def delete(self, movement_id: str) -> BonusPointsMovement | None:
        with self._lock:
            for index, movement in enumerate(self._movements):
                if movement.id == movement_id:
                    return self._movements.pop(index)
        return None

    def all(self) -> list[BonusPointsMovement]:
        with self._lock:
            return list(self._movements)

    def delete_for_user(self, user_id: str) -> int:
        with self._lock:
            before = len(self._movements)
            self._movements = [m for m in self._movements if m.user_id != user_id]
            return before - len(self._movements)
