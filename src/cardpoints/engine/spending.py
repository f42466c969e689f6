import datetime as dt
import logging

from cardpoints.domain.models import PaymentMethod, PeriodKey, SpendEntry, Transaction
from cardpoints.engine.calculator import to_decimal
from cardpoints.engine.periods import resolve_period
from cardpoints.repository.spend_store import SpendStore

logger = logging.getLogger(__name__)


def spend_period(payment_method: PaymentMethod, date: dt.date) -> PeriodKey:
    period_type = payment_method.spend_period_type
    anchor_day = payment_method.statement_day if period_type == "statement_month" else 1
    return resolve_period(date, period_type, anchor_day)


class MonthlySpendTracker:
    """Per-card spend totals derived from committed transactions.

    Monthly spend for a transaction is what the card spent earlier in the same
    spend period, ordered by ``(date, transaction id)``. Live awards and
    backfill read the same entries, so both see the same spend.
    """

    def __init__(self, store: SpendStore):
        self.store = store

    def spend_before(
        self,
        user_id: str,
        payment_method: PaymentMethod,
        date: dt.date,
        transaction_id: str | None = None,
    ) -> float:
        """Spend preceding a purchase; without ``transaction_id`` everything up to ``date`` counts."""
        period = spend_period(payment_method, date)
        total = to_decimal(0)
        for entry in self.store.for_payment_method(user_id, payment_method.id):
            if transaction_id is None:
                if entry.date > date:
                    continue
            elif (entry.date, entry.transaction_id) >= (date, transaction_id):
                continue
            if spend_period(payment_method, entry.date) != period:
                continue
            total += to_decimal(entry.amount)
        return float(total)

    def is_recorded(self, user_id: str, transaction_id: str) -> bool:
        return self.store.get(user_id, transaction_id) is not None

    def record(self, user_id: str, transaction: Transaction, amount: float) -> SpendEntry:
        entry = SpendEntry(
            user_id=user_id,
            transaction_id=transaction.id,
            payment_method_id=transaction.payment_method.id,
            date=transaction.date,
            amount=amount,
        )
        self.store.add(entry)
        return entry

    def forget(self, user_id: str, transaction_id: str) -> SpendEntry | None:
        entry = self.store.remove(user_id, transaction_id)
        if entry is not None:
            logger.debug("Removed %s spend of transaction %s", entry.amount, transaction_id)
        return entry

    def wipe(self, user_id: str) -> int:
        return self.store.delete_for_user(user_id)
