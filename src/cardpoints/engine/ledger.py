import datetime as dt
import logging
import uuid

from cardpoints.domain.models import BonusPointsMovement, PeriodKey
from cardpoints.engine.caps import CapTracker
from cardpoints.repository.ledger_store import BonusPointsLedgerStore

logger = logging.getLogger(__name__)

_MOVEMENT_NAMESPACE = uuid.UUID("6f1c2a52-7d3e-4d8e-9a51-3b0f2c9e8d41")


def movement_id(user_id: str, transaction_id: str, scope_id: str) -> str:
    return str(uuid.uuid5(_MOVEMENT_NAMESPACE, f"{user_id}:{transaction_id}:{scope_id}"))


class BonusPointsLedger:
    """Per-transaction record of what each capped rule actually consumed.

    Reversal gives back exactly the recorded usage, never a value recomputed
    from the (possibly edited) transaction.
    """

    def __init__(self, store: BonusPointsLedgerStore, cap_tracker: CapTracker):
        self.store = store
        self.cap_tracker = cap_tracker

    def record(
        self,
        transaction_id: str,
        scope_id: str,
        bonus_awarded: float,
        *,
        user_id: str,
        period_type: str,
        period_key: PeriodKey,
        cap_type: str = "bonus_points",
        usage_delta: float | None = None,
        created_at: dt.datetime | None = None,
    ) -> BonusPointsMovement:
        movement = BonusPointsMovement(
            id=movement_id(user_id, transaction_id, scope_id),
            transaction_id=transaction_id,
            scope_id=scope_id,
            bonus_points_awarded=bonus_awarded,
            created_at=created_at or dt.datetime.now(dt.timezone.utc),
            user_id=user_id,
            period_type=period_type,
            period_key=period_key,
            cap_type=cap_type,
            usage_delta=bonus_awarded if usage_delta is None else usage_delta,
        )
        self.store.append(movement)
        logger.info(
            "Recorded %s bonus points for transaction %s in scope %s (%s)",
            bonus_awarded,
            transaction_id,
            scope_id,
            period_key,
        )
        return movement

    def reverse(self, user_id: str, transaction_id: str) -> list[BonusPointsMovement]:
        """Give back each movement's cap usage, then drop the movement.

        A movement is deleted only after its release succeeded, so a failed
        release leaves it in place to be reversed again.
        """
        removed = []
        for movement in self.store.for_transaction(user_id, transaction_id):
            if movement.usage_delta > 0:
                self.cap_tracker.release(
                    movement.user_id,
                    movement.scope_id,
                    movement.period_type,
                    movement.period_key,
                    movement.usage_delta,
                )
            self.store.delete(movement.id)
            removed.append(movement)
        if removed:
            logger.info("Reversed %d movement(s) for transaction %s", len(removed), transaction_id)
        return removed

    def movements_for(self, user_id: str, transaction_id: str) -> list[BonusPointsMovement]:
        return self.store.for_transaction(user_id, transaction_id)

    def total_for_scope(
        self, user_id: str, scope_id: str, period_key: PeriodKey, period_type: str | None = None
    ) -> float:
        return sum(
            movement.bonus_points_awarded
            for movement in self.store.all()
            if movement.user_id == user_id
            and movement.scope_id == scope_id
            and movement.period_key == period_key
            and (period_type is None or movement.period_type == period_type)
        )

    def wipe(self, user_id: str) -> int:
        return self.store.delete_for_user(user_id)
