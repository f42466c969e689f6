import json
import threading
from pathlib import Path
from typing import Iterable, Protocol

from cardpoints.domain.models import RewardRule
from cardpoints.engine.errors import ConfigurationError


class RuleCatalog(Protocol):
    def get_rules_for_card_type(self, card_type_id: str) -> list[RewardRule]:
        """Rules for one card type in declaration order."""
        ...

    def create_rule(self, rule: RewardRule) -> RewardRule:
        ...

    def update_rule(self, rule: RewardRule) -> RewardRule:
        ...

    def delete_rule(self, rule_id: str) -> None:
        ...


def _declaration_order(rules: Iterable[RewardRule]) -> list[RewardRule]:
    indexed = list(enumerate(rules))
    indexed.sort(key=lambda item: (item[1].sequence if item[1].sequence is not None else item[0], item[0]))
    return [rule for _, rule in indexed]


class InMemoryRuleCatalog:
    def __init__(self, rules: Iterable[RewardRule] = ()):
        self._rules: list[RewardRule] = []
        self._lock = threading.Lock()
        for rule in rules:
            self._add(rule)

    def get_rules_for_card_type(self, card_type_id: str) -> list[RewardRule]:
        with self._lock:
            rules = [rule for rule in self._rules if rule.card_type_id == card_type_id]
        return _declaration_order(rules)

    def create_rule(self, rule: RewardRule) -> RewardRule:
        return self._add(rule)

    def _add(self, rule: RewardRule) -> RewardRule:
        with self._lock:
            if any(existing.id == rule.id for existing in self._rules):
                raise ValueError(f"Rule already exists: {rule.id}")
            if rule.sequence is None:
                next_sequence = max((r.sequence or 0 for r in self._rules), default=0) + 1
                rule = rule.model_copy(update={"sequence": next_sequence})
            self._rules.append(rule)
            return rule

    def update_rule(self, rule: RewardRule) -> RewardRule:
        with self._lock:
            for index, existing in enumerate(self._rules):
                if existing.id == rule.id:
                    if rule.sequence is None:
                        rule = rule.model_copy(update={"sequence": existing.sequence})
                    self._rules[index] = rule
                    return rule
        raise KeyError(f"Rule not found: {rule.id}")

    def delete_rule(self, rule_id: str) -> None:
        with self._lock:
            self._rules = [rule for rule in self._rules if rule.id != rule_id]


class JsonRuleCatalog(InMemoryRuleCatalog):
    """Rule catalog backed by a JSON array file; writes go straight back to disk."""

    def __init__(self, rule_file: str | Path):
        self.rule_file = Path(rule_file)
        if not self.rule_file.exists():
            raise ConfigurationError(f"Rule catalog file not found: {self.rule_file}")

        with self.rule_file.open("r", encoding="utf-8") as fh:
            data = json.load(fh)

        super().__init__(RewardRule.model_validate(item) for item in data)

    def _flush(self) -> None:
        with self._lock:
            payload = [rule.model_dump(mode="json") for rule in self._rules]
        with self.rule_file.open("w", encoding="utf-8") as fh:
            json.dump(payload, fh, ensure_ascii=False, indent=2)

    def create_rule(self, rule: RewardRule) -> RewardRule:
        created = super().create_rule(rule)
        self._flush()
        return created

    def update_rule(self, rule: RewardRule) -> RewardRule:
        updated = super().update_rule(rule)
        self._flush()
        return updated

    def delete_rule(self, rule_id: str) -> None:
        super().delete_rule(rule_id)
        self._flush()
