import datetime as dt
from pathlib import Path

import pytest

from cardpoints.domain.models import PaymentMethod, RewardRule, Transaction
from cardpoints.engine.caps import CapTracker
from cardpoints.engine.ledger import BonusPointsLedger
from cardpoints.engine.service import RewardEngine
from cardpoints.repository.cap_usage_store import InMemoryCapUsageStore
from cardpoints.repository.ledger_store import InMemoryLedgerStore
from cardpoints.repository.rule_catalog import InMemoryRuleCatalog

SAMPLE_RULES = Path(__file__).resolve().parent.parent / "data" / "rules" / "sample_rules.json"

CARD_TYPE = "dbs-womans-world-mastercard"


@pytest.fixture
def sample_rules_file() -> Path:
    return SAMPLE_RULES


@pytest.fixture
def payment_method() -> PaymentMethod:
    return PaymentMethod(id="pm-1", issuer="DBS", name="Womans World Mastercard", currency="SGD")


@pytest.fixture
def make_rule():
    def _make(rule_id, priority=0, conditions=(), card_type_id=CARD_TYPE, **reward) -> RewardRule:
        return RewardRule(
            id=rule_id,
            card_type_id=card_type_id,
            name=reward.pop("name", rule_id),
            priority=priority,
            enabled=reward.pop("enabled", True),
            conditions=list(conditions),
            reward=reward,
        )

    return _make


@pytest.fixture
def make_engine():
    def _make(rules, converter=None, max_retries=3) -> RewardEngine:
        tracker = CapTracker(InMemoryCapUsageStore(), max_retries=max_retries)
        ledger = BonusPointsLedger(InMemoryLedgerStore(), tracker)
        return RewardEngine(InMemoryRuleCatalog(rules), tracker, ledger, converter=converter)

    return _make


@pytest.fixture
def make_transaction(payment_method):
    def _make(tx_id, amount, date=dt.date(2025, 3, 10), **fields) -> Transaction:
        return Transaction(
            id=tx_id,
            date=date,
            amount=amount,
            currency=fields.pop("currency", "SGD"),
            payment_method=fields.pop("payment_method", payment_method),
            **fields,
        )

    return _make
