"""Data models for business rules"""

from pydantic import BaseModel, ConfigDict, Field
from typing import Dict, Any, List, Optional
from datetime import datetime
from enum import Enum


class RuleCategory(str, Enum):
    RESPONSE_BEHAVIOR = "response_behavior"
    CONTENT_RESTRICTIONS = "content_restrictions"
    BUSINESS_LOGIC = "business_logic"
    QUALITY_CONTROLS = "quality_controls"


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    CONTAINS = "contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    REGEX = "regex"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    IN = "in"
    NOT_IN = "not_in"


class ActionType(str, Enum):
    SET_RESPONSE_STYLE = "set_response_style"
    ADD_DISCLAIMER = "add_disclaimer"
    ESCALATE = "escalate"
    MODIFY_CONTENT = "modify_content"
    APPLY_TEMPLATE = "apply_template"
    BLOCK_RESPONSE = "block_response"


class ConflictType(str, Enum):
    CONDITION_OVERLAP = "condition_overlap"
    ACTION_CONTRADICTION = "action_contradiction"
    PRIORITY_CONFLICT = "priority_conflict"


class ConflictSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return {"low": 1, "medium": 2, "high": 3}[self.value]


class RuleCondition(BaseModel):
    """Single predicate over the evaluation context"""
    field: Optional[str] = None  # dot path, e.g. "customer_context.is_returning"
    operator: Optional[ConditionOperator] = None
    value: Any = None
    case_sensitive: bool = True


class RuleAction(BaseModel):
    """Response-shaping effect of a matched rule"""
    type: Optional[ActionType] = None
    parameters: Optional[Dict[str, Any]] = Field(default_factory=dict)
    priority: int = 0


class RuleDraft(BaseModel):
    """Rule as submitted for creation, validation or a dry run"""
    business_id: Optional[str] = None
    name: str = ""
    description: str = ""
    category: Optional[RuleCategory] = None
    rule_type: Optional[str] = None
    priority: int = 50
    conditions: List[RuleCondition] = []
    actions: List[RuleAction] = []
    active: bool = True
    tags: List[str] = []
    created_by: Optional[str] = None


class BusinessRule(RuleDraft):
    """Stored rule; a new version is written on every update"""
    model_config = ConfigDict(frozen=True)

    rule_id: str
    version: int = 1
    created_at: datetime
    updated_at: datetime


class RuleConflict(BaseModel):
    conflicting_rule_id: str
    conflict_type: ConflictType
    description: str
    severity: ConflictSeverity


class RuleValidationResult(BaseModel):
    valid: bool
    errors: List[str] = []
    warnings: List[str] = []
    conflicts: List[RuleConflict] = []


class RuleWriteResult(BaseModel):
    rule: BusinessRule
    warnings: List[RuleConflict] = []


class RuleEvaluationContext(BaseModel):
    """Facts a rule condition can look at, addressed by dot path"""
    business_id: str
    query_text: str = ""
    intent: Optional[str] = None
    intent_confidence: float = 0.0
    customer_context: Dict[str, Any] = {}
    conversation_context: Dict[str, Any] = {}
    business_context: Dict[str, Any] = {}
    retrieval: Dict[str, Any] = {}


class AppliedAction(BaseModel):
    """Action that survived conflict resolution, tagged with its owning rule"""
    rule_id: str
    rule_priority: int
    type: ActionType
    parameters: Dict[str, Any] = {}
    priority: int = 0


class ResponseDirectives(BaseModel):
    """What the applied actions ask of the generated answer"""
    tone: Optional[str] = None
    style: Optional[str] = None
    length: Optional[str] = None
    disclaimers: List[str] = []
    template: Optional[str] = None
    escalate: bool = False
    escalation_reason: Optional[str] = None
    block: bool = False
    block_message: Optional[str] = None
    content_modifications: List[Dict[str, Any]] = []


class RuleEvaluationResult(BaseModel):
    applicable_rules: List[str] = []
    applied_actions: List[AppliedAction] = []
    suppressed_actions: List[AppliedAction] = []
    conflicts_resolved: int = 0
    execution_time_ms: float = 0.0

    def directives(self) -> ResponseDirectives:
        directives = ResponseDirectives()

        for action in self.applied_actions:
            params = action.parameters
            if action.type == ActionType.SET_RESPONSE_STYLE:
                directives.tone = params.get("tone", directives.tone)
                directives.style = params.get("style", directives.style)
                directives.length = params.get("length", directives.length)
            elif action.type == ActionType.ADD_DISCLAIMER:
                text = params.get("text") or params.get("disclaimer")
                if text:
                    directives.disclaimers.append(str(text))
            elif action.type == ActionType.ESCALATE:
                directives.escalate = True
                directives.escalation_reason = params.get("reason")
            elif action.type == ActionType.BLOCK_RESPONSE:
                directives.block = True
                directives.block_message = params.get("message")
            elif action.type == ActionType.APPLY_TEMPLATE:
                directives.template = params.get("template")
            elif action.type == ActionType.MODIFY_CONTENT:
                directives.content_modifications.append(dict(params))

        return directives


class RuleTestScenario(BaseModel):
    name: str
    context: RuleEvaluationContext
    expected_match: Optional[bool] = None


class RuleTestResult(BaseModel):
    scenario: str
    matched: bool
    matched_conditions: List[int] = []
    actions: List[AppliedAction] = []
    passed: Optional[bool] = None
