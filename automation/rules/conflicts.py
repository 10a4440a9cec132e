# automation/rules/conflicts.py
from __future__ import annotations

from typing import Iterable, List, Optional

from automation.rules.models import (
    AutomationRule,
    ConflictKind,
    ConflictReport,
    MoveStageAction,
    StageEnteredTrigger,
)


def _opposite_action(candidate: AutomationRule, other: AutomationRule) -> Optional[ConflictReport]:
    if candidate.trigger_type != other.trigger_type:
        return None
    if not isinstance(candidate.action, MoveStageAction) or not isinstance(other.action, MoveStageAction):
        return None
    if candidate.action.to_stage == other.action.to_stage:
        return None
    return ConflictReport(
        kind=ConflictKind.OPPOSITE_ACTION,
        rule_ids=[candidate.id, other.id],
        rule_names=[candidate.name, other.name],
        stages=[candidate.action.to_stage, other.action.to_stage],
        message=(
            f'"{candidate.name}" moves to "{candidate.action.to_stage}" while '
            f'"{other.name}" moves to "{other.action.to_stage}" on the same trigger '
            f"({candidate.trigger_type.value})"
        ),
    )


def _loop(candidate: AutomationRule, other: AutomationRule) -> Optional[ConflictReport]:
    rules = (candidate, other)
    if not all(
        isinstance(r.trigger, StageEnteredTrigger) and isinstance(r.action, MoveStageAction) for r in rules
    ):
        return None
    new_from, new_to = candidate.trigger.from_stage, candidate.action.to_stage
    old_from, old_to = other.trigger.from_stage, other.action.to_stage
    if not new_from or not old_from:
        return None
    if new_from != old_to or new_to != old_from:
        return None
    return ConflictReport(
        kind=ConflictKind.LOOP,
        rule_ids=[candidate.id, other.id],
        rule_names=[candidate.name, other.name],
        stages=[new_from, new_to],
        message=(
            f'"{candidate.name}" ({new_from} -> {new_to}) and "{other.name}" '
            f"({old_from} -> {old_to}) reverse each other and may loop"
        ),
    )


def detect_conflicts(candidate: AutomationRule, active_rules: Iterable[AutomationRule]) -> List[ConflictReport]:
    """
    Pairwise advisory check of ``candidate`` against the active rule set.

    The candidate itself (same id) and non-active rules are ignored. Reports
    never block persistence.
    """
    reports: List[ConflictReport] = []
    for other in active_rules:
        if other.id == candidate.id or not other.is_active:
            continue
        for check in (_opposite_action, _loop):
            report = check(candidate, other)
            if report is not None:
                reports.append(report)
    return reports
