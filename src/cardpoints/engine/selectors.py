import logging
from typing import Sequence

from cardpoints.domain.models import RewardRule, RewardSpec, RuleSelection, TransactionContext
from cardpoints.engine.conditions import matches_all

logger = logging.getLogger(__name__)

BASE_RULE_PRIORITY = 1
NO_RULE_MESSAGE = "No applicable reward rules found for this transaction"


def _no_match_reward(rules: Sequence[RewardRule]) -> RewardSpec:
    currency = rules[0].reward.points_currency if rules else "points"
    return RewardSpec(base_multiplier=0, bonus_multiplier=0, points_currency=currency)


def _is_base_rule(rule: RewardRule) -> bool:
    return rule.priority == BASE_RULE_PRIORITY and not rule.conditions


def _min_spend_met(rule: RewardRule, context: TransactionContext) -> bool:
    required = rule.reward.monthly_min_spend
    if not required or context.monthly_spend is None:
        return True
    return context.monthly_spend >= required


def select_rule(rules: Sequence[RewardRule], context: TransactionContext) -> RuleSelection:
    """Pick the single rule that applies to a transaction.

    Highest priority wins; equal priorities resolve to the rule declared first
    in ``rules``. The card's catch-all base rule (priority 1, no conditions)
    matches everything, so it is what remains when nothing more specific
    applies. Without one the selection is a zero-multiplier result with
    ``rule=None``.
    """
    eligible = [
        rule
        for rule in rules
        if rule.enabled and rule.card_type_id == context.card_type_id
    ]
    matched = [
        (position, rule)
        for position, rule in enumerate(eligible)
        if matches_all(rule.conditions, context)
    ]
    # Stable sort keeps catalog order within a priority.
    matched.sort(key=lambda item: (-item[1].priority, item[0]))

    messages: list[str] = []
    min_spend_met = True
    for _, rule in matched:
        if not _min_spend_met(rule, context):
            messages.append(f"Monthly minimum spend of {rule.reward.monthly_min_spend:g} not met")
            min_spend_met = False
            logger.debug("Rule %s skipped: minimum spend not met", rule.id)
            continue
        fallback = _is_base_rule(rule)
        if fallback:
            logger.debug("Falling back to base rule %s", rule.id)
        else:
            logger.debug("Selected rule %s (priority %s)", rule.id, rule.priority)
        return RuleSelection(
            rule=rule,
            reward=rule.reward,
            fallback=fallback,
            min_spend_met=min_spend_met,
            messages=messages,
        )

    logger.info(
        "No applicable reward rule for card type %s (%d candidate rules)",
        context.card_type_id,
        len(eligible),
    )
    messages.append(NO_RULE_MESSAGE)
    return RuleSelection(
        rule=None,
        reward=_no_match_reward(eligible),
        fallback=True,
        min_spend_met=min_spend_met,
        messages=messages,
    )
