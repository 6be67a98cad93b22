"""Business rules engine: conditional response shaping with conflict resolution"""

import asyncio
import uuid
from typing import Dict, Any, List, Optional, Sequence, Tuple
from datetime import datetime, timezone
import pydantic
import structlog

from ..clock import Clock, system_clock
from ..config import Settings, settings as default_settings
from ..errors import NotFoundError, RuleConflictError, ValidationError
from ..metrics import record_rule_cache, record_rule_evaluation
from .cache import TTLCache
from .conditions import evaluate_condition
from .conflicts import (
    DEFAULT_CONFLICT_CLASSES,
    ConflictClass,
    SeverityPolicy,
    default_severity,
    detect_rule_conflicts,
    resolve_actions,
)
from .models import (
    BusinessRule,
    ConflictSeverity,
    RuleConflict,
    RuleDraft,
    RuleEvaluationContext,
    RuleEvaluationResult,
    RuleTestResult,
    RuleTestScenario,
    RuleValidationResult,
    RuleWriteResult,
)
from .rule_store import InMemoryRuleStore

logger = structlog.get_logger(__name__)

IMMUTABLE_FIELDS = {"rule_id", "business_id", "version", "created_at", "updated_at"}


class BusinessRulesEngine:
    """Evaluate business rules against a query context.

    Active rules are cached per business for ``rules_cache_ttl_seconds`` and
    the cache entry is invalidated on every write. Writes are validated and
    checked for conflicts with the business's other active rules; conflicts
    at or above ``rule_blocking_severity`` reject the write.
    """

    def __init__(
        self,
        store: Optional[InMemoryRuleStore] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
        conflict_classes: Optional[Sequence[ConflictClass]] = None,
        severity_policy: Optional[SeverityPolicy] = None,
    ):
        self.settings = settings or default_settings
        self.store = store or InMemoryRuleStore()
        self.clock = clock or system_clock
        self.cache = TTLCache(self.settings.rules_cache_ttl_seconds, clock=self.clock)
        self.conflict_classes = list(conflict_classes or DEFAULT_CONFLICT_CLASSES)
        self.severity_policy = severity_policy or default_severity
        self.blocking_severity = ConflictSeverity(self.settings.rule_blocking_severity)
        self._write_lock = asyncio.Lock()
        self.total_evaluations = 0

    async def evaluate(self, context: RuleEvaluationContext) -> RuleEvaluationResult:
        """Return the actions of every matching rule after conflict resolution"""
        start_time = self.clock.now()

        rules = await self.get_active_rules(context.business_id)
        facts = context.model_dump(mode="python")

        applicable = [rule for rule in rules if self._matches(rule, facts)]
        # Stable sort keeps discovery order among equal priorities
        applicable.sort(key=lambda rule: rule.priority, reverse=True)

        applied, suppressed, conflicts_resolved = resolve_actions(applicable, self.conflict_classes)

        self.total_evaluations += 1
        record_rule_evaluation("matched" if applicable else "no_match", conflicts_resolved)

        if conflicts_resolved:
            logger.info("Rule conflicts resolved",
                        business_id=context.business_id,
                        conflicts=conflicts_resolved,
                        suppressed=[a.rule_id for a in suppressed])

        return RuleEvaluationResult(
            applicable_rules=[rule.rule_id for rule in applicable],
            applied_actions=applied,
            suppressed_actions=suppressed,
            conflicts_resolved=conflicts_resolved,
            execution_time_ms=(self.clock.now() - start_time) * 1000,
        )

    async def get_active_rules(self, business_id: str) -> Tuple[BusinessRule, ...]:
        entry = self.cache.get(business_id)
        if entry is not None:
            record_rule_cache(True)
            return entry.value

        record_rule_cache(False)
        generation = self.cache.generation(business_id)
        rules = tuple(rule for rule in await self.store.list_rules(business_id) if rule.active)
        self.cache.set(business_id, rules, generation)
        return rules

    async def validate_rule(self, draft: RuleDraft, exclude_rule_id: Optional[str] = None) -> RuleValidationResult:
        """Check required fields and compute conflicts with existing active rules"""
        errors: List[str] = []
        warnings: List[str] = []

        if not draft.business_id:
            errors.append("Business ID is required")
        if not draft.category:
            errors.append("Category is required")
        if not draft.rule_type:
            errors.append("Rule type is required")
        if draft.priority < 1 or draft.priority > 100:
            errors.append("Priority must be between 1 and 100")
        if not draft.conditions:
            errors.append("At least one condition is required")
        if not draft.actions:
            errors.append("At least one action is required")

        for condition in draft.conditions:
            if not condition.field:
                errors.append("Condition field is required")
            if condition.operator is None:
                errors.append("Condition operator is required")
            if condition.value is None:
                errors.append("Condition value is required")

        for action in draft.actions:
            if action.type is None:
                errors.append("Action type is required")
            if action.parameters is None:
                errors.append("Action parameters are required")

        if not draft.name:
            warnings.append("Rule has no name")

        conflicts: List[RuleConflict] = []
        if draft.business_id:
            conflicts = detect_rule_conflicts(
                draft,
                await self.store.list_rules(draft.business_id),
                classes=self.conflict_classes,
                severity_policy=self.severity_policy,
                exclude_rule_id=exclude_rule_id,
            )

        return RuleValidationResult(
            valid=not errors,
            errors=errors,
            warnings=warnings,
            conflicts=conflicts,
        )

    async def create_rule(self, draft: RuleDraft) -> RuleWriteResult:
        async with self._write_lock:
            validation = await self.validate_rule(draft)
            self._raise_if_rejected(validation)

            now = self._now()
            rule = BusinessRule(
                **draft.model_dump(),
                rule_id=str(uuid.uuid4()),
                version=1,
                created_at=now,
                updated_at=now,
            )
            await self.store.save(rule)
            self.invalidate_cache(rule.business_id)

        logger.info("Rule created",
                    rule_id=rule.rule_id,
                    business_id=rule.business_id,
                    priority=rule.priority,
                    warnings=len(validation.conflicts))
        return RuleWriteResult(rule=rule, warnings=validation.conflicts)

    async def update_rule(
        self,
        rule_id: str,
        updates: Dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> RuleWriteResult:
        """Write a new version of a rule.

        ``expected_version`` enables optimistic concurrency: the update is
        rejected with RuleConflictError when the stored version differs.
        """
        async with self._write_lock:
            existing = await self.store.get(rule_id)
            if existing is None:
                raise NotFoundError(f"Rule {rule_id} not found")

            if expected_version is not None and expected_version != existing.version:
                raise RuleConflictError(
                    f"Rule {rule_id} is at version {existing.version}, expected {expected_version}"
                )

            merged = existing.model_dump()
            merged.update({k: v for k, v in updates.items() if k not in IMMUTABLE_FIELDS})
            try:
                draft = RuleDraft.model_validate({k: merged[k] for k in RuleDraft.model_fields})
            except pydantic.ValidationError as e:
                errors = [f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in e.errors()]
                raise ValidationError(errors, message="Rule validation failed") from e

            validation = await self.validate_rule(draft, exclude_rule_id=rule_id)
            self._raise_if_rejected(validation)

            rule = BusinessRule(
                **draft.model_dump(),
                rule_id=rule_id,
                version=existing.version + 1,
                created_at=existing.created_at,
                updated_at=self._now(),
            )
            await self.store.save(rule)
            self.invalidate_cache(rule.business_id)

        logger.info("Rule updated", rule_id=rule_id, version=rule.version)
        return RuleWriteResult(rule=rule, warnings=validation.conflicts)

    async def delete_rule(self, rule_id: str):
        async with self._write_lock:
            removed = await self.store.delete(rule_id)
            if removed is None:
                raise NotFoundError(f"Rule {rule_id} not found")
            self.invalidate_cache(removed.business_id)

        logger.info("Rule deleted", rule_id=rule_id, business_id=removed.business_id)

    async def get_rule(self, rule_id: str) -> BusinessRule:
        rule = await self.store.get(rule_id)
        if rule is None:
            raise NotFoundError(f"Rule {rule_id} not found")
        return rule

    async def list_rules(self, business_id: str, active_only: bool = False) -> List[BusinessRule]:
        rules = [r for r in await self.store.list_rules(business_id) if r.active or not active_only]
        return sorted(rules, key=lambda rule: rule.priority, reverse=True)

    async def test_rule(self, draft: RuleDraft, scenarios: List[RuleTestScenario]) -> List[RuleTestResult]:
        """Dry-run a draft rule against sample contexts without storing it"""
        validation = await self.validate_rule(draft)
        if not validation.valid:
            raise ValidationError(validation.errors, message="Rule validation failed")

        now = self._now()
        candidate = BusinessRule(**draft.model_dump(), rule_id="dry-run", created_at=now, updated_at=now)
        results = []

        for scenario in scenarios:
            facts = scenario.context.model_dump(mode="python")
            matched_conditions = [
                i for i, condition in enumerate(candidate.conditions)
                if evaluate_condition(condition, facts)
            ]
            matched = bool(matched_conditions)
            actions = resolve_actions([candidate], self.conflict_classes)[0] if matched else []

            results.append(RuleTestResult(
                scenario=scenario.name,
                matched=matched,
                matched_conditions=matched_conditions,
                actions=actions,
                passed=None if scenario.expected_match is None else scenario.expected_match == matched,
            ))

        return results

    def invalidate_cache(self, business_id: str):
        self.cache.invalidate(business_id)

    def _raise_if_rejected(self, validation: RuleValidationResult):
        if not validation.valid:
            raise ValidationError(
                validation.errors,
                message=f"Rule validation failed: {', '.join(validation.errors)}",
            )

        blocking = [c for c in validation.conflicts if c.severity.rank >= self.blocking_severity.rank]
        if blocking:
            raise RuleConflictError(
                f"{self.blocking_severity.value.capitalize()} severity conflicts detected: "
                + ", ".join(c.description for c in blocking),
                conflicts=blocking,
            )

    @staticmethod
    def _matches(rule: BusinessRule, facts: Dict[str, Any]) -> bool:
        return any(evaluate_condition(condition, facts) for condition in rule.conditions)

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self.clock.now(), tz=timezone.utc)
