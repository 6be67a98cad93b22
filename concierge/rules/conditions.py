"""Condition evaluation against a rule evaluation context"""

import re
from typing import Any, Dict, Optional
import structlog

from .models import ConditionOperator, RuleCondition

logger = structlog.get_logger(__name__)

_MISSING = object()


def resolve_field(context: Dict[str, Any], path: str) -> Any:
    """Follow a dot path through nested dicts and lists"""
    current: Any = context
    for part in path.split("."):
        if isinstance(current, dict):
            current = current.get(part, _MISSING)
        elif isinstance(current, (list, tuple)) and part.isdigit():
            index = int(part)
            current = current[index] if index < len(current) else _MISSING
        else:
            return _MISSING

        if current is _MISSING:
            return _MISSING
    return current


def evaluate_condition(condition: RuleCondition, context: Dict[str, Any]) -> bool:
    """True when the condition holds; a missing or null field never matches"""
    if not condition.field or condition.operator is None:
        return False

    actual = resolve_field(context, condition.field)
    if actual is _MISSING or actual is None:
        return False

    expected = condition.value
    operator = condition.operator
    case_sensitive = condition.case_sensitive

    if operator == ConditionOperator.EQUALS:
        if isinstance(actual, str) and isinstance(expected, str):
            return _fold(actual, case_sensitive) == _fold(expected, case_sensitive)
        return actual == expected

    if operator == ConditionOperator.CONTAINS:
        if isinstance(actual, (list, tuple, set)):
            return any(_same(item, expected, case_sensitive) for item in actual)
        return _fold(str(expected), case_sensitive) in _fold(str(actual), case_sensitive)

    if operator == ConditionOperator.STARTS_WITH:
        return _fold(str(actual), case_sensitive).startswith(_fold(str(expected), case_sensitive))

    if operator == ConditionOperator.ENDS_WITH:
        return _fold(str(actual), case_sensitive).endswith(_fold(str(expected), case_sensitive))

    if operator == ConditionOperator.REGEX:
        flags = 0 if case_sensitive else re.IGNORECASE
        try:
            return re.search(str(expected), str(actual), flags) is not None
        except re.error as e:
            logger.warning("Invalid regex in rule condition", pattern=str(expected), error=str(e))
            return False

    if operator in (ConditionOperator.GREATER_THAN, ConditionOperator.LESS_THAN):
        left, right = _as_number(actual), _as_number(expected)
        if left is None or right is None:
            return False
        return left > right if operator == ConditionOperator.GREATER_THAN else left < right

    if operator in (ConditionOperator.IN, ConditionOperator.NOT_IN):
        if not isinstance(expected, (list, tuple, set)):
            return False
        found = any(_same(actual, item, case_sensitive) for item in expected)
        return found if operator == ConditionOperator.IN else not found

    return False


def _fold(value: str, case_sensitive: bool) -> str:
    return value if case_sensitive else value.lower()


def _same(left: Any, right: Any, case_sensitive: bool) -> bool:
    if isinstance(left, str) and isinstance(right, str):
        return _fold(left, case_sensitive) == _fold(right, case_sensitive)
    return left == right


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
