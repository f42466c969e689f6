import datetime as dt
import logging
import threading
import weakref
from collections import Counter
from dataclasses import dataclass
from typing import Callable, Iterable

from cardpoints.domain.models import (
    BackfillSummary,
    BonusPointsMovement,
    CapDecision,
    CapUsageRecord,
    CapUsageSummary,
    PaymentMethod,
    PeriodKey,
    PointsBreakdown,
    RewardResult,
    RuleSelection,
    Transaction,
    TransactionContext,
)
from cardpoints.engine.calculator import calculate, round_points, to_decimal
from cardpoints.engine.caps import CapTracker, apply_cap
from cardpoints.engine.errors import ConfigurationError, RewardEngineError
from cardpoints.engine.ledger import BonusPointsLedger
from cardpoints.engine.periods import period_bounds, resolve_period
from cardpoints.engine.selectors import select_rule
from cardpoints.engine.spending import MonthlySpendTracker
from cardpoints.repository.cap_usage_store import InMemoryCapUsageStore
from cardpoints.repository.ledger_store import InMemoryLedgerStore
from cardpoints.repository.rule_catalog import JsonRuleCatalog, RuleCatalog
from cardpoints.repository.spend_store import InMemorySpendStore

logger = logging.getLogger(__name__)

Converter = Callable[[float, str, str], float]

NO_RULES_MESSAGE = "No reward rules found for this payment method"
CAP_REACHED_MESSAGE = "Monthly bonus points cap reached"


@dataclass(frozen=True)
class _CapScope:
    scope_id: str
    period_type: str
    period_key: PeriodKey


@dataclass
class _Draft:
    """Everything about a calculation that does not depend on cap usage."""

    selection: RuleSelection | None
    breakdown: PointsBreakdown
    points_currency: str
    messages: list[str]
    scope: _CapScope | None = None


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class RewardEngine:
    """Reward calculation pipeline: select rule, compute points, clamp caps.

    ``simulate_rewards`` and ``calculate`` never write anything and are safe
    for live previews. Only ``record_award``, ``edit_award``, ``reverse_award``
    and ``backfill`` touch cap usage and the ledger.
    """

    def __init__(
        self,
        catalog: RuleCatalog | None,
        cap_tracker: CapTracker,
        ledger: BonusPointsLedger,
        converter: Converter | None = None,
        clock: Callable[[], dt.datetime] = _utcnow,
        spend_tracker: MonthlySpendTracker | None = None,
    ):
        self.catalog = catalog
        self.cap_tracker = cap_tracker
        self.ledger = ledger
        self.converter = converter
        self.clock = clock
        self.spend_tracker = spend_tracker or MonthlySpendTracker(InMemorySpendStore())
        # Entries disappear once no caller holds the user's lock.
        self._user_locks: weakref.WeakValueDictionary = weakref.WeakValueDictionary()
        self._user_locks_guard = threading.Lock()

    def _require_catalog(self) -> RuleCatalog:
        if self.catalog is None:
            raise ConfigurationError("Reward rule catalog has not been configured")
        return self.catalog

    def _user_lock(self, user_id: str) -> threading.RLock:
        with self._user_locks_guard:
            lock = self._user_locks.get(user_id)
            if lock is None:
                lock = threading.RLock()
                self._user_locks[user_id] = lock
            return lock

    def _with_conversion(self, context: TransactionContext, payment_method: PaymentMethod) -> TransactionContext:
        if context.converted_amount is not None or self.converter is None:
            return context
        if context.currency.upper() == payment_method.currency.upper():
            return context
        converted = self.converter(context.amount, context.currency, payment_method.currency)
        return context.model_copy(
            update={"converted_amount": converted, "converted_currency": payment_method.currency}
        )

    def _prepare(self, context: TransactionContext, payment_method: PaymentMethod) -> _Draft:
        rules = self._require_catalog().get_rules_for_card_type(context.card_type_id)
        if not rules:
            logger.warning("No reward rules found for card type %s", context.card_type_id)
            return _Draft(
                selection=None,
                breakdown=PointsBreakdown(),
                points_currency=payment_method.points_currency,
                messages=[NO_RULES_MESSAGE],
            )

        selection = select_rule(rules, context)
        draft = _Draft(
            selection=selection,
            breakdown=calculate(context.calculation_amount, selection.reward, context.monthly_spend, context),
            points_currency=selection.reward.points_currency,
            messages=list(selection.messages),
        )
        rule = selection.rule
        if rule is not None and rule.reward.monthly_cap is not None:
            reward = rule.reward
            anchor_day = payment_method.statement_day if reward.period_type == "statement_month" else 1
            draft.scope = _CapScope(
                scope_id=rule.scope_id,
                period_type=reward.period_type,
                period_key=resolve_period(context.date, reward.period_type, anchor_day, reward.promo_start_date),
            )
        return draft

    def _finalize(
        self, draft: _Draft, context: TransactionContext, usage: CapUsageRecord | None
    ) -> tuple[RewardResult, CapDecision | None]:
        breakdown = draft.breakdown
        messages = list(draft.messages)
        selection = draft.selection
        rule = selection.rule if selection else None
        bonus = to_decimal(breakdown.bonus_points)
        decision = None
        remaining_bonus = None

        if rule is not None and draft.scope is not None:
            reward = rule.reward
            cap = reward.monthly_cap
            if cap.cap_type == "spend_amount":
                decision = apply_cap(context.calculation_amount, reward, draft.scope.period_key, usage, draft.scope.scope_id)
                if decision.awarded_value < decision.candidate_value:
                    fraction = to_decimal(decision.awarded_value) / to_decimal(decision.candidate_value)
                    bonus = round_points(breakdown.raw_bonus * fraction, reward.points_rounding_strategy)
            else:
                decision = apply_cap(breakdown.bonus_points, reward, draft.scope.period_key, usage, draft.scope.scope_id)
                bonus = to_decimal(decision.awarded_value)
                remaining_bonus = decision.remaining

            if breakdown.bonus_points > 0 and decision.previous_usage >= cap.value:
                messages.append(CAP_REACHED_MESSAGE)
            elif bonus < to_decimal(breakdown.bonus_points):
                messages.append(f"Bonus points capped at {float(bonus):g} due to monthly limit")

        base = to_decimal(breakdown.base_points)
        result = RewardResult(
            total_points=float(base + bonus),
            base_points=float(base),
            bonus_points=float(bonus),
            points_currency=draft.points_currency,
            applied_rule=rule,
            applied_tier=breakdown.tier,
            remaining_monthly_bonus_points=remaining_bonus,
            monthly_spend=context.monthly_spend,
            min_spend_met=selection.min_spend_met if selection else True,
            messages=messages,
            cap=decision,
        )
        return result, decision

    def calculate(
        self,
        context: TransactionContext,
        payment_method: PaymentMethod,
        user_id: str | None = None,
    ) -> RewardResult:
        """Read-only pipeline; with ``user_id`` the current cap usage is honoured."""
        context = self._with_conversion(context, payment_method)
        draft = self._prepare(context, payment_method)
        usage = None
        if user_id is not None and draft.scope is not None:
            usage = self.cap_tracker.usage_for(
                user_id, draft.scope.scope_id, draft.scope.period_type, draft.scope.period_key
            )
        result, _ = self._finalize(draft, context, usage)
        if result.applied_rule is not None:
            logger.info(
                "Rule %s applied to %.2f %s: base=%s bonus=%s total=%s",
                result.applied_rule.id,
                context.calculation_amount,
                context.converted_currency or context.currency,
                result.base_points,
                result.bonus_points,
                result.total_points,
            )
        return result

    def simulate_rewards(
        self,
        amount: float,
        currency: str,
        payment_method: PaymentMethod,
        mcc: str | None = None,
        merchant_name: str | None = None,
        is_online: bool | None = None,
        is_contactless: bool | None = None,
        converted_amount: float | None = None,
        converted_currency: str | None = None,
        *,
        user_id: str | None = None,
        transaction_date: dt.date | None = None,
        category: str | None = None,
        monthly_spend: float | None = None,
    ) -> RewardResult:
        date = transaction_date or self.clock().date()
        if monthly_spend is None and user_id is not None:
            monthly_spend = self.spend_tracker.spend_before(user_id, payment_method, date)
        context = TransactionContext(
            amount=amount,
            currency=currency,
            card_type_id=payment_method.resolved_card_type_id,
            date=date,
            mcc=mcc,
            merchant_name=merchant_name,
            is_online=bool(is_online),
            is_contactless=bool(is_contactless),
            converted_amount=converted_amount,
            converted_currency=converted_currency,
            category=category,
            monthly_spend=monthly_spend,
        )
        return self.calculate(context, payment_method, user_id=user_id)

    def best_effort(self, amount: float, currency: str, payment_method: PaymentMethod, **kwargs) -> RewardResult:
        """``simulate_rewards`` that degrades to zero points instead of raising.

        Saving a transaction must never be blocked by a points failure, including
        an incomplete payment method (``ValueError``).
        """
        try:
            return self.simulate_rewards(amount, currency, payment_method, **kwargs)
        except (RewardEngineError, ValueError) as exc:
            logger.warning("Points calculation failed for payment method %s: %s", payment_method.id, exc)
            return RewardResult(
                points_currency=payment_method.points_currency,
                messages=[f"Points could not be calculated: {exc}"],
            )

    def _commit(
        self,
        user_id: str,
        transaction: Transaction,
        created_at: dt.datetime,
    ) -> tuple[RewardResult, BonusPointsMovement | None]:
        payment_method = transaction.payment_method
        context = self._with_conversion(transaction.to_context(), payment_method)
        monthly_spend = self.spend_tracker.spend_before(
            user_id, payment_method, transaction.date, transaction.id
        )
        context = context.model_copy(update={"monthly_spend": monthly_spend})
        draft = self._prepare(context, payment_method)

        movement = None
        if draft.scope is None:
            result, _ = self._finalize(draft, context, None)
        else:
            result, decision = self.cap_tracker.commit(
                user_id,
                draft.scope.scope_id,
                draft.scope.period_type,
                draft.scope.period_key,
                lambda record: self._finalize(draft, context, record),
            )
            if decision.usage_delta > 0 or result.bonus_points > 0:
                movement = self._record_movement(user_id, transaction, decision, result, created_at)

        self.spend_tracker.record(user_id, transaction, context.calculation_amount)
        return result, movement

    def _record_movement(
        self,
        user_id: str,
        transaction: Transaction,
        decision: CapDecision,
        result: RewardResult,
        created_at: dt.datetime,
    ) -> BonusPointsMovement:
        try:
            return self.ledger.record(
                transaction.id,
                decision.scope_id,
                result.bonus_points,
                user_id=user_id,
                period_type=decision.period_type,
                period_key=decision.period_key,
                cap_type=decision.cap_type,
                usage_delta=decision.usage_delta,
                created_at=created_at,
            )
        except Exception:
            # Usage without a movement could never be reversed.
            if decision.usage_delta > 0:
                self.cap_tracker.release(
                    user_id,
                    decision.scope_id,
                    decision.period_type,
                    decision.period_key,
                    decision.usage_delta,
                )
            raise

    def _reverse(self, user_id: str, transaction_id: str) -> list[BonusPointsMovement]:
        removed = self.ledger.reverse(user_id, transaction_id)
        self.spend_tracker.forget(user_id, transaction_id)
        return removed

    def record_award(self, user_id: str, transaction: Transaction) -> RewardResult:
        """Calculate and persist a committed transaction's award.

        Monthly spend comes from the user's previously recorded transactions.
        """
        with self._user_lock(user_id):
            if self.spend_tracker.is_recorded(user_id, transaction.id) or self.ledger.movements_for(
                user_id, transaction.id
            ):
                raise ValueError(
                    f"Award for transaction {transaction.id} is already recorded; use edit_award"
                )
            result, _ = self._commit(user_id, transaction, self.clock())
            return result

    def reverse_award(self, user_id: str, transaction_id: str) -> float:
        """Undo one of the user's recorded awards; returns the bonus points given back."""
        with self._user_lock(user_id):
            removed = self._reverse(user_id, transaction_id)
        return float(sum(to_decimal(movement.bonus_points_awarded) for movement in removed))

    def edit_award(self, user_id: str, transaction: Transaction) -> RewardResult:
        with self._user_lock(user_id):
            self._reverse(user_id, transaction.id)
            result, _ = self._commit(user_id, transaction, self.clock())
            return result

    def backfill(self, user_id: str, transactions: Iterable[Transaction]) -> BackfillSummary:
        """Rebuild a user's cap usage, ledger and spend from their transaction history.

        Transactions replay in ``(date, id)`` order because clamping and monthly
        spend depend on what earlier purchases already consumed. A history with
        repeated transaction ids is rejected before anything is wiped.
        """
        ordered = sorted(transactions, key=lambda tx: (tx.date, tx.id))
        duplicates = sorted(tx_id for tx_id, count in Counter(tx.id for tx in ordered).items() if count > 1)
        if duplicates:
            raise ValueError(f"Duplicate transaction ids in backfill history: {', '.join(duplicates)}")

        with self._user_lock(user_id):
            wiped_records = self.cap_tracker.wipe(user_id)
            wiped_movements = self.ledger.wipe(user_id)
            self.spend_tracker.wipe(user_id)
            logger.info(
                "Backfill for %s: wiped %d cap record(s) and %d movement(s)",
                user_id,
                wiped_records,
                wiped_movements,
            )

            movements = 0
            total_bonus = to_decimal(0)
            for transaction in ordered:
                created_at = dt.datetime.combine(transaction.date, dt.time.min, tzinfo=dt.timezone.utc)
                result, movement = self._commit(user_id, transaction, created_at)
                if movement is not None:
                    movements += 1
                total_bonus += to_decimal(result.bonus_points)

            cap_records = len(self.cap_tracker.records_for_user(user_id))

        logger.info("Backfill for %s replayed %d transaction(s)", user_id, len(ordered))
        return BackfillSummary(
            user_id=user_id,
            transactions_processed=len(ordered),
            movements_recorded=movements,
            total_bonus_points=float(total_bonus),
            cap_records=cap_records,
        )

    def cap_usage(
        self,
        user_id: str,
        payment_method: PaymentMethod,
        reference_date: dt.date | None = None,
    ) -> list[CapUsageSummary]:
        """Current usage per cap scope; shared caps are reported once."""
        reference_date = reference_date or self.clock().date()
        rules = self._require_catalog().get_rules_for_card_type(payment_method.resolved_card_type_id)
        capped = [rule for rule in rules if rule.enabled and rule.reward.monthly_cap is not None]

        summaries: list[CapUsageSummary] = []
        seen: set[str] = set()
        for rule in capped:
            if rule.scope_id in seen:
                continue
            seen.add(rule.scope_id)

            reward = rule.reward
            group = [other for other in capped if other.scope_id == rule.scope_id]
            if len(group) == 1:
                name = rule.name
            elif reward.period_type == "promotional":
                name = "Promotional Bonus Cap"
            else:
                name = f"{len(group)} Rules Shared Cap"

            anchor_day = payment_method.statement_day if reward.period_type == "statement_month" else 1
            key = resolve_period(reference_date, reward.period_type, anchor_day, reward.promo_start_date)
            record = self.cap_tracker.usage_for(user_id, rule.scope_id, reward.period_type, key)
            used = record.accumulated_value if record else 0.0
            cap_value = reward.monthly_cap.value
            start, end = period_bounds(key, reward.period_type)
            summaries.append(
                CapUsageSummary(
                    scope_id=rule.scope_id,
                    rule_name=name,
                    used=used,
                    cap=cap_value,
                    cap_type=reward.monthly_cap.cap_type,
                    period_type=reward.period_type,
                    period_key=key,
                    period_start=start,
                    period_end=end,
                    percentage=min(100.0, used / cap_value * 100) if cap_value else 100.0,
                )
            )
        return summaries


def build_engine(
    rule_catalog_file: str | None,
    max_retries: int = 3,
    converter: Converter | None = None,
) -> RewardEngine:
    """Wire an engine over a JSON rule catalog and in-memory usage stores.

    A missing catalog file leaves the engine unconfigured: every calculation
    then raises ``ConfigurationError`` instead of quietly earning zero.
    """
    catalog = None
    if rule_catalog_file:
        try:
            catalog = JsonRuleCatalog(rule_catalog_file)
        except ConfigurationError as exc:
            logger.error("Reward engine starting without a rule catalog: %s", exc)

    cap_tracker = CapTracker(InMemoryCapUsageStore(), max_retries=max_retries)
    ledger = BonusPointsLedger(InMemoryLedgerStore(), cap_tracker)
    spend_tracker = MonthlySpendTracker(InMemorySpendStore())
    return RewardEngine(catalog, cap_tracker, ledger, converter=converter, spend_tracker=spend_tracker)
