"""Action conflict classes, conflict resolution and write-time conflict detection"""

from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from pydantic import BaseModel

from .models import (
    ActionType,
    AppliedAction,
    BusinessRule,
    ConflictSeverity,
    ConflictType,
    RuleAction,
    RuleConflict,
    RuleDraft,
)


class ConflictClass(BaseModel):
    """Group of action types that cannot both apply.

    With ``parameters`` empty, any two actions in the class conflict. Otherwise
    they conflict only when both set one of the listed parameters to
    different values.
    """
    name: str
    action_types: List[ActionType]
    parameters: List[str] = []


DEFAULT_CONFLICT_CLASSES = [
    ConflictClass(name="tone", action_types=[ActionType.SET_RESPONSE_STYLE], parameters=["tone"]),
    ConflictClass(name="escalation", action_types=[ActionType.ESCALATE, ActionType.BLOCK_RESPONSE]),
]

SeverityPolicy = Callable[[ConflictType, RuleDraft, BusinessRule], ConflictSeverity]


def default_severity(conflict_type: ConflictType, candidate: RuleDraft, existing: BusinessRule) -> ConflictSeverity:
    """Action contradictions between equal-priority rules are high, other contradictions medium, the rest low"""
    if conflict_type == ConflictType.ACTION_CONTRADICTION:
        if candidate.priority == existing.priority:
            return ConflictSeverity.HIGH
        return ConflictSeverity.MEDIUM
    return ConflictSeverity.LOW


def actions_conflict(
    first: "RuleAction | AppliedAction",
    second: "RuleAction | AppliedAction",
    classes: Sequence[ConflictClass] = DEFAULT_CONFLICT_CLASSES,
) -> bool:
    for conflict_class in classes:
        if first.type not in conflict_class.action_types or second.type not in conflict_class.action_types:
            continue

        if not conflict_class.parameters:
            return True

        first_params = first.parameters or {}
        second_params = second.parameters or {}
        for param in conflict_class.parameters:
            if (first_params.get(param) is not None
                    and second_params.get(param) is not None
                    and first_params[param] != second_params[param]):
                return True

    return False


def resolve_actions(
    rules: Iterable[BusinessRule],
    classes: Sequence[ConflictClass] = DEFAULT_CONFLICT_CLASSES,
) -> Tuple[List[AppliedAction], List[AppliedAction], int]:
    """Accumulate actions of ``rules`` in order, evicting losers of each conflict.

    The action whose owning rule has the higher priority wins; on a tie the
    already-accumulated action stays. Returns (applied, suppressed,
    conflicts_resolved).
    """
    applied: List[AppliedAction] = []
    suppressed: List[AppliedAction] = []
    conflicts_resolved = 0

    for rule in rules:
        for action in rule.actions:
            if action.type is None:
                continue

            candidate = AppliedAction(
                rule_id=rule.rule_id,
                rule_priority=rule.priority,
                type=action.type,
                parameters=dict(action.parameters or {}),
                priority=action.priority,
            )

            rivals = [existing for existing in applied if actions_conflict(candidate, existing, classes)]
            if not rivals:
                applied.append(candidate)
                continue

            conflicts_resolved += len(rivals)
            if all(candidate.rule_priority > rival.rule_priority for rival in rivals):
                applied = [existing for existing in applied if not any(existing is rival for rival in rivals)]
                suppressed.extend(rivals)
                applied.append(candidate)
            else:
                suppressed.append(candidate)

    return applied, suppressed, conflicts_resolved


def detect_rule_conflicts(
    candidate: RuleDraft,
    existing_rules: Iterable[BusinessRule],
    classes: Sequence[ConflictClass] = DEFAULT_CONFLICT_CLASSES,
    severity_policy: Optional[SeverityPolicy] = None,
    exclude_rule_id: Optional[str] = None,
) -> List[RuleConflict]:
    """Compare a rule about to be written with the active rules of its business"""
    severity_policy = severity_policy or default_severity
    conflicts: List[RuleConflict] = []
    candidate_conditions = _condition_signature(candidate)

    for existing in existing_rules:
        if existing.rule_id == exclude_rule_id or not existing.active:
            continue
        if existing.business_id != candidate.business_id:
            continue

        contradicting = [
            (new_action.type, old_action.type)
            for new_action in candidate.actions
            for old_action in existing.actions
            if new_action.type and old_action.type and actions_conflict(new_action, old_action, classes)
        ]
        if contradicting:
            new_type, old_type = contradicting[0]
            conflicts.append(RuleConflict(
                conflicting_rule_id=existing.rule_id,
                conflict_type=ConflictType.ACTION_CONTRADICTION,
                description=(f"Action {new_type.value} contradicts {old_type.value} "
                             f"of rule '{existing.name or existing.rule_id}'"),
                severity=severity_policy(ConflictType.ACTION_CONTRADICTION, candidate, existing),
            ))

        if candidate_conditions and candidate_conditions == _condition_signature(existing):
            conflicts.append(RuleConflict(
                conflicting_rule_id=existing.rule_id,
                conflict_type=ConflictType.CONDITION_OVERLAP,
                description=f"Conditions are identical to rule '{existing.name or existing.rule_id}'",
                severity=severity_policy(ConflictType.CONDITION_OVERLAP, candidate, existing),
            ))

        if (not contradicting
                and candidate.category == existing.category
                and candidate.priority == existing.priority):
            conflicts.append(RuleConflict(
                conflicting_rule_id=existing.rule_id,
                conflict_type=ConflictType.PRIORITY_CONFLICT,
                description=(f"Same category and priority ({existing.priority}) as rule "
                             f"'{existing.name or existing.rule_id}'"),
                severity=severity_policy(ConflictType.PRIORITY_CONFLICT, candidate, existing),
            ))

    return conflicts


def _condition_signature(rule: RuleDraft) -> frozenset:
    return frozenset(
        (c.field, c.operator, repr(c.value), c.case_sensitive)
        for c in rule.conditions
    )
