import json
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    GREATER_THAN_OR_EQUALS = "greater_than_or_equals"
    LESS_THAN_OR_EQUALS = "less_than_or_equals"
    IS_EMPTY = "is_empty"
    IS_NOT_EMPTY = "is_not_empty"
    REGEX = "regex"

    @property
    def is_unary(self) -> bool:
        return self in (ConditionOperator.IS_EMPTY, ConditionOperator.IS_NOT_EMPTY)


@dataclass(frozen=True)
class RuleOutcome:
    input_value: Any
    operator: ConditionOperator
    compare_value: Any
    joiner: str
    result: bool


def to_number(value: Any) -> float | None:
    """Numeric reading of a value, or None when it has none."""
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0.0
        try:
            return float(text)
        except ValueError:
            return None
    return None


def to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"))
    return str(value)


def evaluate_rule(input_value: Any, operator: ConditionOperator, compare_value: Any) -> bool:
    """
    Evaluate one comparison.

    Equality tries a numeric comparison first and falls back to string comparison.
    Raises re.error for an invalid regex pattern.
    """
    text = to_text(input_value)
    compare_text = to_text(compare_value)

    if operator in (ConditionOperator.EQUALS, ConditionOperator.NOT_EQUALS):
        left, right = to_number(input_value), to_number(compare_value)
        if left is not None and right is not None and text.strip() and compare_text.strip():
            equal = left == right
        else:
            equal = text == compare_text
        return equal if operator == ConditionOperator.EQUALS else not equal

    if operator == ConditionOperator.CONTAINS:
        return compare_text in text
    if operator == ConditionOperator.NOT_CONTAINS:
        return compare_text not in text

    if operator in (
        ConditionOperator.GREATER_THAN,
        ConditionOperator.LESS_THAN,
        ConditionOperator.GREATER_THAN_OR_EQUALS,
        ConditionOperator.LESS_THAN_OR_EQUALS,
    ):
        left, right = to_number(input_value), to_number(compare_value)
        if left is None or right is None:
            return False
        return {
            ConditionOperator.GREATER_THAN: left > right,
            ConditionOperator.LESS_THAN: left < right,
            ConditionOperator.GREATER_THAN_OR_EQUALS: left >= right,
            ConditionOperator.LESS_THAN_OR_EQUALS: left <= right,
        }[operator]

    if operator == ConditionOperator.IS_EMPTY:
        return _is_empty(input_value)
    if operator == ConditionOperator.IS_NOT_EMPTY:
        return not _is_empty(input_value)

    if operator == ConditionOperator.REGEX:
        return re.search(compare_text, text) is not None

    return False


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict)):
        return len(value) == 0
    return False


def combine(outcomes: list[RuleOutcome]) -> bool:
    """
    Fold rule results left to right. "and" binds tighter than "or":
    an "or" joiner starts a new group and the result is any(group) of all(rules).
    The joiner of the first rule is ignored.
    """
    if not outcomes:
        return False
    groups: list[list[bool]] = [[outcomes[0].result]]
    for outcome in outcomes[1:]:
        if outcome.joiner == "or":
            groups.append([outcome.result])
        else:
            groups[-1].append(outcome.result)
    return any(all(group) for group in groups)
