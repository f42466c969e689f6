import datetime as dt
import random

import pytest

from cardpoints.domain.models import LeafCondition, PaymentMethod
from cardpoints.engine.caps import CapTracker
from cardpoints.engine.errors import ConfigurationError
from cardpoints.engine.ledger import BonusPointsLedger
from cardpoints.engine.service import CAP_REACHED_MESSAGE, NO_RULES_MESSAGE, RewardEngine
from cardpoints.repository.cap_usage_store import InMemoryCapUsageStore
from cardpoints.repository.ledger_store import InMemoryLedgerStore
from cardpoints.repository.rule_catalog import InMemoryRuleCatalog

ONLINE = LeafCondition(field="transaction_type", operation="include", values=["online"])
TRAVEL = LeafCondition(field="mcc", operation="include", values=["4511"])
MARCH_10 = dt.date(2025, 3, 10)


@pytest.fixture
def online_rules(make_rule):
    return [
        make_rule(
            "online",
            priority=10,
            conditions=[ONLINE],
            base_multiplier=5,
            bonus_multiplier=70,
            block_size=5,
            amount_rounding_strategy="floor_to_block",
            points_currency="DBS Points",
            monthly_cap={"value": 1000, "cap_type": "bonus_points"},
        ),
        make_rule(
            "base",
            priority=1,
            base_multiplier=5,
            block_size=5,
            amount_rounding_strategy="floor_to_block",
            points_currency="DBS Points",
        ),
    ]


@pytest.fixture
def engine(make_engine, online_rules) -> RewardEngine:
    return make_engine(online_rules)


def _usage(engine, scope_id="online", period_type="calendar"):
    records = [r for r in engine.cap_tracker.records_for_user("u1") if r.scope_id == scope_id]
    return sum(r.accumulated_value for r in records if r.period_type == period_type)


def test_end_to_end_online_purchase(engine, payment_method) -> None:
    result = engine.simulate_rewards(64.68, "SGD", payment_method, is_online=True, transaction_date=MARCH_10)

    assert result.applied_rule.id == "online"
    assert (result.base_points, result.bonus_points, result.total_points) == (60, 840, 900)
    assert result.points_currency == "DBS Points"
    assert result.remaining_monthly_bonus_points == 160


def test_simulation_has_no_side_effects(engine, payment_method) -> None:
    for _ in range(3):
        result = engine.simulate_rewards(
            64.68, "SGD", payment_method, is_online=True, user_id="u1", transaction_date=MARCH_10
        )
        assert result.bonus_points == 840

    assert engine.cap_tracker.records_for_user("u1") == []
    assert engine.ledger.store.all() == []


def test_committed_awards_are_clamped(engine, make_transaction) -> None:
    first = engine.record_award("u1", make_transaction("tx-1", 64.68, is_online=True))
    second = engine.record_award("u1", make_transaction("tx-2", 64.68, is_online=True))
    third = engine.record_award("u1", make_transaction("tx-3", 64.68, is_online=True))

    assert first.bonus_points == 840
    assert second.bonus_points == 160
    assert second.remaining_monthly_bonus_points == 0
    assert "Bonus points capped at 160 due to monthly limit" in second.messages
    assert third.bonus_points == 0
    assert third.total_points == 60
    assert CAP_REACHED_MESSAGE in third.messages
    assert _usage(engine) == 1000
    assert engine.ledger.movements_for("u1", "tx-3") == []


def test_simulation_sees_committed_usage(engine, payment_method, make_transaction) -> None:
    engine.record_award("u1", make_transaction("tx-1", 64.68, is_online=True))

    preview = engine.simulate_rewards(
        64.68, "SGD", payment_method, is_online=True, user_id="u1", transaction_date=MARCH_10
    )
    anonymous = engine.simulate_rewards(64.68, "SGD", payment_method, is_online=True, transaction_date=MARCH_10)

    assert preview.bonus_points == 160
    assert anonymous.bonus_points == 840


def test_recording_twice_is_rejected(engine, make_transaction) -> None:
    transaction = make_transaction("tx-1", 64.68, is_online=True)
    engine.record_award("u1", transaction)

    with pytest.raises(ValueError):
        engine.record_award("u1", transaction)


def test_edit_then_recheck_cap(engine, payment_method, make_transaction) -> None:
    engine.record_award("u1", make_transaction("tx-1", 64.68, is_online=True))
    engine.record_award("u1", make_transaction("tx-2", 64.68, is_online=True))

    edited = engine.edit_award("u1", make_transaction("tx-1", 20.0, is_online=True))

    assert edited.bonus_points == 280
    assert _usage(engine) == 440
    preview = engine.simulate_rewards(
        64.68, "SGD", payment_method, is_online=True, user_id="u1", transaction_date=MARCH_10
    )
    assert preview.bonus_points == 560


def test_edit_out_of_capped_rule_releases_usage(engine, make_transaction) -> None:
    engine.record_award("u1", make_transaction("tx-1", 64.68, is_online=True))

    edited = engine.edit_award("u1", make_transaction("tx-1", 64.68, is_online=False))

    assert edited.applied_rule.id == "base"
    assert _usage(engine) == 0
    assert engine.ledger.movements_for("u1", "tx-1") == []


def test_reverse_award(engine, make_transaction) -> None:
    engine.record_award("u1", make_transaction("tx-1", 64.68, is_online=True))
    engine.record_award("u1", make_transaction("tx-2", 64.68, is_online=True))

    assert engine.reverse_award("u1", "tx-2") == 160
    assert _usage(engine) == 840
    assert engine.reverse_award("u1", "tx-2") == 0


def test_shared_cap_group_pools_usage(make_rule, make_engine, make_transaction) -> None:
    shared = {"monthly_cap": {"value": 1000}, "cap_group_id": "pool", "bonus_multiplier": 70, "block_size": 5,
              "amount_rounding_strategy": "floor_to_block", "base_multiplier": 5}
    engine = make_engine(
        [
            make_rule("online", priority=10, conditions=[ONLINE], **shared),
            make_rule("travel", priority=10, conditions=[TRAVEL], **shared),
        ]
    )

    online = engine.record_award("u1", make_transaction("tx-1", 64.68, is_online=True))
    travel = engine.record_award("u1", make_transaction("tx-2", 64.68, mcc="4511"))

    assert online.bonus_points == 840
    assert travel.applied_rule.id == "travel"
    assert travel.bonus_points == 160
    assert _usage(engine, "pool") == 1000
    assert engine.ledger.movements_for("u1", "tx-2")[0].scope_id == "pool"


def test_spend_cap_prorates_bonus(make_rule, make_engine, make_transaction) -> None:
    engine = make_engine(
        [
            make_rule(
                "groceries",
                base_multiplier=1,
                bonus_multiplier=4,
                monthly_cap={"value": 100, "cap_type": "spend_amount"},
            )
        ]
    )

    engine.record_award("u1", make_transaction("tx-1", 80.0))
    result = engine.record_award("u1", make_transaction("tx-2", 50.0))

    assert result.base_points == 50
    assert result.bonus_points == 80
    assert result.total_points == 130
    assert result.remaining_monthly_bonus_points is None
    assert _usage(engine, "groceries") == 100

    assert engine.reverse_award("u1", "tx-2") == 80
    assert _usage(engine, "groceries") == 80


def test_statement_cycles_follow_payment_method(make_rule, make_engine, make_transaction) -> None:
    card = PaymentMethod(id="pm-2", issuer="DBS", name="Womans World Mastercard", statement_day=19)
    engine = make_engine(
        [make_rule("cycle", bonus_multiplier=1, monthly_cap={"value": 500}, period_type="statement")]
    )

    engine.record_award("u1", make_transaction("tx-1", 10.0, date=dt.date(2025, 1, 5), payment_method=card))
    engine.record_award("u1", make_transaction("tx-2", 10.0, date=dt.date(2025, 1, 25), payment_method=card))

    keys = [(r.period_key.year, r.period_key.month, r.period_key.cycle_start_day)
            for r in engine.cap_tracker.records_for_user("u1")]
    assert sorted(keys) == [(2024, 12, 19), (2025, 1, 19)]


def test_backfill_replays_in_date_order(engine, make_transaction) -> None:
    transactions = [
        make_transaction("tx-b", 64.68, date=dt.date(2025, 3, 2), is_online=True),
        make_transaction("tx-a", 64.68, date=dt.date(2025, 3, 1), is_online=True),
        make_transaction("tx-c", 64.68, date=dt.date(2025, 3, 3), is_online=True),
    ]

    summary = engine.backfill("u1", transactions)

    assert summary.transactions_processed == 3
    assert summary.movements_recorded == 2
    assert summary.total_bonus_points == 1000
    assert summary.cap_records == 1
    assert engine.ledger.movements_for("u1", "tx-a")[0].bonus_points_awarded == 840
    assert engine.ledger.movements_for("u1", "tx-b")[0].bonus_points_awarded == 160
    assert engine.ledger.movements_for("u1", "tx-c") == []


def _snapshot(engine):
    records = [r.model_dump_json() for r in engine.cap_tracker.records_for_user("u1")]
    movements = sorted(m.model_dump_json() for m in engine.ledger.store.all())
    return records, movements


def test_backfill_is_idempotent(engine, make_transaction) -> None:
    transactions = [
        make_transaction(f"tx-{day}", 30.0 + day, date=dt.date(2025, 3, day), is_online=day % 2 == 0)
        for day in range(1, 20)
    ]
    engine.record_award("u1", make_transaction("live", 64.68, is_online=True))

    engine.backfill("u1", transactions)
    first = _snapshot(engine)
    engine.backfill("u1", transactions)
    second = _snapshot(engine)

    shuffled = list(transactions)
    random.Random(7).shuffle(shuffled)
    engine.backfill("u1", shuffled)
    third = _snapshot(engine)

    assert first == second == third
    assert engine.ledger.movements_for("u1", "live") == []


def test_unconfigured_engine_raises(payment_method) -> None:
    tracker = CapTracker(InMemoryCapUsageStore())
    engine = RewardEngine(None, tracker, BonusPointsLedger(InMemoryLedgerStore(), tracker))

    with pytest.raises(ConfigurationError):
        engine.simulate_rewards(10.0, "SGD", payment_method)

    fallback = engine.best_effort(10.0, "SGD", payment_method)
    assert fallback.total_points == 0
    assert fallback.messages[0].startswith("Points could not be calculated")


def test_unknown_card_type_earns_nothing(engine) -> None:
    card = PaymentMethod(id="pm-9", issuer="Nobody", name="Plain Card", points_currency="miles")

    result = engine.simulate_rewards(100.0, "SGD", card)

    assert result.total_points == 0
    assert result.applied_rule is None
    assert result.points_currency == "miles"
    assert result.messages == [NO_RULES_MESSAGE]


def test_converter_fills_converted_amount(make_rule, make_engine, payment_method) -> None:
    engine = make_engine(
        [make_rule("base", priority=1, base_multiplier=5, block_size=5, amount_rounding_strategy="floor_to_block")],
        converter=lambda amount, source, target: amount * 2,
    )

    converted = engine.simulate_rewards(50.0, "USD", payment_method)
    explicit = engine.simulate_rewards(50.0, "USD", payment_method, converted_amount=30.0, converted_currency="SGD")

    assert converted.base_points == 100
    assert explicit.base_points == 30


def test_minimum_spend_reported(make_rule, make_engine, payment_method) -> None:
    engine = make_engine(
        [
            make_rule("promo", priority=15, bonus_multiplier=9, monthly_min_spend=600),
            make_rule("base", priority=1),
        ]
    )

    result = engine.simulate_rewards(10.0, "SGD", payment_method, monthly_spend=100)

    assert result.applied_rule.id == "base"
    assert result.min_spend_met is False
    assert "Monthly minimum spend of 600 not met" in result.messages


def test_cap_usage_reports_shared_caps_once(make_rule, make_engine, payment_method, make_transaction) -> None:
    shared = {"monthly_cap": {"value": 1000}, "cap_group_id": "pool", "bonus_multiplier": 70, "block_size": 5,
              "amount_rounding_strategy": "floor_to_block", "base_multiplier": 5}
    engine = make_engine(
        [
            make_rule("online", priority=10, conditions=[ONLINE], **shared),
            make_rule("travel", priority=10, conditions=[TRAVEL], **shared),
            make_rule("dining", priority=5, name="Dining", bonus_multiplier=1, monthly_cap={"value": 500}),
        ]
    )
    engine.record_award("u1", make_transaction("tx-1", 64.68, is_online=True))
    engine.record_award("u1", make_transaction("tx-2", 64.68, mcc="4511"))

    summaries = {s.scope_id: s for s in engine.cap_usage("u1", payment_method, MARCH_10)}

    assert set(summaries) == {"pool", "dining"}
    assert summaries["pool"].rule_name == "2 Rules Shared Cap"
    assert summaries["pool"].used == 1000
    assert summaries["pool"].percentage == 100
    assert summaries["dining"].rule_name == "Dining"
    assert summaries["dining"].used == 0
    assert summaries["dining"].period_start == dt.date(2025, 3, 1)
    assert summaries["dining"].period_end == dt.date(2025, 4, 1)


@pytest.fixture
def min_spend_engine(make_rule, make_engine) -> RewardEngine:
    return make_engine(
        [
            make_rule("promo", priority=15, bonus_multiplier=9, monthly_min_spend=600, monthly_cap={"value": 1000}),
            make_rule("base", priority=1),
        ]
    )


def _spend_history(make_transaction):
    return [
        make_transaction("tx-1", 500.0, date=dt.date(2025, 3, 1)),
        make_transaction("tx-2", 200.0, date=dt.date(2025, 3, 5)),
        make_transaction("tx-3", 10.0, date=dt.date(2025, 3, 10)),
        make_transaction("tx-4", 10.0, date=dt.date(2025, 4, 2)),
    ]


def test_live_awards_use_recorded_monthly_spend(min_spend_engine, make_transaction) -> None:
    results = [min_spend_engine.record_award("u1", tx) for tx in _spend_history(make_transaction)]

    assert [r.monthly_spend for r in results] == [0, 500, 700, 0]
    assert [r.applied_rule.id for r in results] == ["base", "base", "promo", "base"]
    assert results[0].min_spend_met is False
    assert results[2].bonus_points == 90


def test_backfill_matches_live_awards(min_spend_engine, make_transaction) -> None:
    history = _spend_history(make_transaction)
    for transaction in history:
        min_spend_engine.record_award("u1", transaction)
    live_movements = [(m.transaction_id, m.bonus_points_awarded) for m in min_spend_engine.ledger.store.all()]
    live_usage = _usage(min_spend_engine, "promo")

    summary = min_spend_engine.backfill("u1", reversed(history))

    assert [(m.transaction_id, m.bonus_points_awarded) for m in min_spend_engine.ledger.store.all()] == live_movements
    assert live_movements == [("tx-3", 90)]
    assert _usage(min_spend_engine, "promo") == live_usage == 90
    assert summary.total_bonus_points == 90


def test_simulation_reads_recorded_spend(min_spend_engine, payment_method, make_transaction) -> None:
    min_spend_engine.record_award("u1", make_transaction("tx-1", 650.0, date=dt.date(2025, 3, 1)))

    known = min_spend_engine.simulate_rewards(
        10.0, "SGD", payment_method, user_id="u1", transaction_date=dt.date(2025, 3, 20)
    )
    next_month = min_spend_engine.simulate_rewards(
        10.0, "SGD", payment_method, user_id="u1", transaction_date=dt.date(2025, 4, 1)
    )

    assert known.monthly_spend == 650
    assert known.applied_rule.id == "promo"
    assert next_month.monthly_spend == 0
    assert next_month.applied_rule.id == "base"


def test_reverse_by_another_user_changes_nothing(engine, make_transaction) -> None:
    engine.record_award("u1", make_transaction("tx-1", 64.68, is_online=True))

    assert engine.reverse_award("u2", "tx-1") == 0
    assert _usage(engine) == 840
    assert len(engine.ledger.movements_for("u1", "tx-1")) == 1


def test_same_transaction_id_for_two_users(engine, make_transaction) -> None:
    engine.record_award("u1", make_transaction("tx-1", 64.68, is_online=True))
    engine.record_award("u2", make_transaction("tx-1", 64.68, is_online=True))

    assert engine.reverse_award("u2", "tx-1") == 840
    assert len(engine.ledger.movements_for("u1", "tx-1")) == 1


def test_backfill_with_repeated_ids_leaves_state_alone(engine, make_transaction) -> None:
    transaction = make_transaction("tx-1", 64.68, is_online=True)
    engine.record_award("u1", transaction)

    with pytest.raises(ValueError, match="tx-1"):
        engine.backfill("u1", [transaction, transaction])

    assert _usage(engine) == 840
    assert len(engine.ledger.movements_for("u1", "tx-1")) == 1
    assert engine.spend_tracker.is_recorded("u1", "tx-1")


class UnavailableLedgerStore(InMemoryLedgerStore):
    def append(self, movement):
        raise OSError("ledger unavailable")


def test_failed_movement_append_gives_cap_back(online_rules, make_transaction) -> None:
    tracker = CapTracker(InMemoryCapUsageStore())
    engine = RewardEngine(
        InMemoryRuleCatalog(online_rules), tracker, BonusPointsLedger(UnavailableLedgerStore(), tracker)
    )

    with pytest.raises(OSError):
        engine.record_award("u1", make_transaction("tx-1", 64.68, is_online=True))

    assert _usage(engine) == 0
    assert not engine.spend_tracker.is_recorded("u1", "tx-1")


def test_best_effort_tolerates_incomplete_payment_method(engine) -> None:
    card = PaymentMethod(id="pm-3", issuer=" ", name="Womans World Mastercard", points_currency="DBS Points")

    with pytest.raises(ValueError):
        engine.simulate_rewards(10.0, "SGD", card)

    fallback = engine.best_effort(10.0, "SGD", card)
    assert fallback.total_points == 0
    assert fallback.points_currency == "DBS Points"
    assert "issuer and name" in fallback.messages[0]


def test_user_locks_are_released(engine, make_transaction) -> None:
    lock = engine._user_lock("u1")
    assert engine._user_lock("u1") is lock
    del lock

    engine.record_award("u1", make_transaction("tx-1", 64.68, is_online=True))
    engine.reverse_award("u2", "tx-1")

    assert len(engine._user_locks) == 0
