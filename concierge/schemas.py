"""Pydantic schemas for the HTTP API"""

from pydantic import BaseModel, Field
from typing import Dict, Any, List, Optional

from .rag.models import ContentType, IndexResult
from .rules.models import BusinessRule, RuleConflict, RuleDraft, RuleTestResult, RuleTestScenario


class ContentUpsert(BaseModel):
    """One piece of business content to (re)index"""
    content_type: ContentType
    content_id: str = Field(..., min_length=1)
    raw_fields: Dict[str, Any]


class ContentBatchRequest(BaseModel):
    items: List[ContentUpsert] = Field(..., min_length=1)
    replace_all: bool = False  # soft-delete live content missing from items


class ContentBatchResponse(BaseModel):
    indexed: int
    failed: int
    removed: int = 0
    results: List[IndexResult]


class RuleUpdateRequest(BaseModel):
    updates: Dict[str, Any]
    expected_version: Optional[int] = None


class RuleResponse(BaseModel):
    rule: BusinessRule
    warnings: List[RuleConflict] = []


class RuleTestRequest(BaseModel):
    rule: RuleDraft
    scenarios: List[RuleTestScenario] = Field(..., min_length=1)


class RuleTestResponse(BaseModel):
    results: List[RuleTestResult]
    passed: Optional[bool] = None
