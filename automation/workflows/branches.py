# automation/workflows/branches.py
from __future__ import annotations

import logging
from typing import Any, Mapping

from automation.rules.conditions import contains_text, resolve_field, to_number, values_equal
from automation.workflows.models import BranchConfig

logger = logging.getLogger(__name__)


def compare(actual: Any, operator: str, expected: Any) -> bool:
    """Branch comparison. Ordering operators are numeric and fail closed."""
    if operator == "eq":
        return values_equal(actual, expected)
    if operator == "neq":
        return not values_equal(actual, expected)
    if operator == "contains":
        return contains_text(actual, expected)
    if operator == "not_contains":
        return not contains_text(actual, expected)

    left, right = to_number(actual), to_number(expected)
    if left is None or right is None:
        return False
    if operator == "gt":
        return left > right
    if operator == "gte":
        return left >= right
    if operator == "lt":
        return left < right
    if operator == "lte":
        return left <= right
    raise ValueError(f"Unsupported branch operator: {operator}")


def evaluate_branch(config: BranchConfig, snapshot: Mapping[str, Any], event_count: int = 0) -> bool:
    """
    Resolve a branch node to yes (True) or no (False).

    ``event_count`` is the number of ``config.event_type`` events seen in the
    window, counted by the caller. Any fault resolves to no.
    """
    try:
        if config.condition_type == "event_window":
            return event_count >= config.min_count

        if config.condition_type == "field_compare":
            actual = resolve_field(snapshot, config.field)
            if not isinstance(actual, (str, int, float, bool, list, tuple)):
                actual = None
            return compare(actual, config.operator, config.value)

        if config.condition_type == "score_threshold":
            return compare(snapshot.get("score"), config.operator, config.score)
    except Exception as e:
        logger.warning("Branch evaluation (%s) failed, taking 'no': %s", config.condition_type, e)
        return False

    return False
