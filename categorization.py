"""
Rule evaluation for automatic transaction categorization.

Pure functions: no database access, no side effects. Rules are evaluated in
the order they are given and the first match wins; callers pass them in
store order (insertion order).
"""

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Callable, Iterable, Optional, Protocol

from models import RuleField


logger = logging.getLogger(__name__)


class Classifiable(Protocol):
    description: str
    amount: Decimal
    date: date


class RuleLike(Protocol):
    id: int
    field: RuleField
    match_text: str
    category_id: int


@dataclass(frozen=True)
class Candidate:
    """Values a transaction will be classified on, before it is persisted."""

    description: str
    amount: Decimal
    date: date


def parse_amount_pattern(text: str) -> Optional[Decimal]:
    try:
        value = Decimal((text or "").strip())
    except InvalidOperation:
        return None
    if not value.is_finite():
        return None
    return value


def _match_description(match_text: str, txn: Classifiable) -> bool:
    needle = match_text.lower()
    return bool(needle) and needle in (txn.description or "").lower()


def _match_amount(match_text: str, txn: Classifiable) -> bool:
    target = parse_amount_pattern(match_text)
    if target is None:
        logger.debug(f"rule_skip: unparsable amount pattern {match_text!r}")
        return False
    return abs(Decimal(txn.amount)) == target


def _match_date(match_text: str, txn: Classifiable) -> bool:
    return bool(match_text) and match_text in txn.date.isoformat()


_EVALUATORS: dict[RuleField, Callable[[str, Classifiable], bool]] = {
    RuleField.description: _match_description,
    RuleField.amount: _match_amount,
    RuleField.date: _match_date,
}


def matches(rule: RuleLike, txn: Classifiable) -> bool:
    evaluator = _EVALUATORS[RuleField(rule.field)]
    return evaluator(rule.match_text or "", txn)


def first_match(txn: Classifiable, rules: Iterable[RuleLike]) -> Optional[RuleLike]:
    for rule in rules:
        if matches(rule, txn):
            return rule
    return None


def classify(txn: Classifiable, rules: Iterable[RuleLike]) -> Optional[int]:
    """Category id of the first matching rule, or None."""
    rule = first_match(txn, rules)
    return rule.category_id if rule else None
