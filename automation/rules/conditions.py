# automation/rules/conditions.py
from __future__ import annotations

import logging
import math
from typing import Any, Mapping, Optional

from automation.rules.models import ConditionGroup, ConditionOperator, ConditionRule

logger = logging.getLogger(__name__)

_MISSING = object()


def resolve_field(entity: Mapping[str, Any], path: str) -> Any:
    """
    Dotted-path lookup on an entity snapshot.

    Returns the ``_MISSING`` sentinel when any segment is absent. List
    segments accept integer indexes (``contacts.0.email``).
    """
    current: Any = entity
    for part in path.split("."):
        if isinstance(current, Mapping):
            if part not in current:
                return _MISSING
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.lstrip("-").isdigit():
            index = int(part)
            if index >= len(current) or index < -len(current):
                return _MISSING
            current = current[index]
        else:
            return _MISSING
    return current


def to_number(value: Any) -> Optional[float]:
    """Numeric coercion that refuses booleans, blanks and NaN."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        if not value.strip():
            return None
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if math.isnan(number):
        return None
    return number


def _is_empty(value: Any) -> bool:
    if value is _MISSING or value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, tuple, set, dict)):
        return len(value) == 0
    return False


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def values_equal(actual: Any, expected: Any) -> bool:
    actual_num, expected_num = to_number(actual), to_number(expected)
    if actual_num is not None and expected_num is not None:
        return actual_num == expected_num
    if isinstance(actual, (list, tuple, set)):
        return any(values_equal(item, expected) for item in actual)
    return _stringify(actual).strip().lower() == _stringify(expected).strip().lower()


def contains_text(actual: Any, expected: Any) -> bool:
    needle = _stringify(expected).lower()
    if isinstance(actual, (list, tuple, set)):
        return any(needle in _stringify(item).lower() for item in actual)
    return needle in _stringify(actual).lower()


def evaluate_rule(rule: ConditionRule, entity: Mapping[str, Any]) -> bool:
    """Evaluate one comparison. May raise on malformed input; callers isolate faults."""
    actual = resolve_field(entity, rule.field)
    op = rule.operator

    if op == ConditionOperator.IS_EMPTY:
        return _is_empty(actual)
    if op == ConditionOperator.IS_NOT_EMPTY:
        return not _is_empty(actual)

    # A missing field satisfies only is_empty.
    if actual is _MISSING:
        return False

    if op == ConditionOperator.EQUALS:
        return values_equal(actual, rule.value)
    if op == ConditionOperator.NOT_EQUALS:
        return not values_equal(actual, rule.value)

    if op in (ConditionOperator.GREATER_THAN, ConditionOperator.LESS_THAN):
        left, right = to_number(actual), to_number(rule.value)
        if left is None or right is None:
            return False
        return left > right if op == ConditionOperator.GREATER_THAN else left < right

    if op == ConditionOperator.CONTAINS:
        return contains_text(actual, rule.value)
    if op == ConditionOperator.NOT_CONTAINS:
        return not contains_text(actual, rule.value)

    raise ValueError(f"Unsupported operator: {op}")


def _evaluate_child(child: Any, entity: Mapping[str, Any]) -> bool:
    if isinstance(child, ConditionGroup):
        return evaluate(child, entity)
    try:
        return evaluate_rule(child, entity)
    except Exception as e:
        logger.warning(
            "Condition on field %r (%s) failed, treating as false: %s",
            getattr(child, "field", None),
            getattr(child, "operator", None),
            e,
        )
        return False


def evaluate(group: Optional[ConditionGroup], entity: Mapping[str, Any]) -> bool:
    """
    Evaluate a condition tree against an entity snapshot.

    An empty group matches. AND short-circuits on the first false child,
    OR on the first true one. Never raises: a faulty comparison resolves
    to False on its own without aborting the rest of the tree.
    """
    if group is None or not group.rules:
        return True
    if group.logic == "OR":
        return any(_evaluate_child(child, entity) for child in group.rules)
    return all(_evaluate_child(child, entity) for child in group.rules)
