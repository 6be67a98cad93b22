"""Data models for intent classification"""

from pydantic import BaseModel
from typing import List, Optional
from enum import Enum


class QueryIntent(str, Enum):
    MENU_INQUIRY = "MENU_INQUIRY"
    HOURS_POLICY = "HOURS_POLICY"
    PRICING_QUESTION = "PRICING_QUESTION"
    DIETARY_RESTRICTIONS = "DIETARY_RESTRICTIONS"
    LOCATION_INFO = "LOCATION_INFO"
    GENERAL_CHAT = "GENERAL_CHAT"
    COMPLAINT_FEEDBACK = "COMPLAINT_FEEDBACK"
    UNKNOWN = "UNKNOWN"


class IntentSource(str, Enum):
    RULES = "rules"
    MODEL = "model"
    COMBINED = "combined"
    FALLBACK = "fallback"


class IntentAlternative(BaseModel):
    """Runner-up intent"""
    intent: QueryIntent
    confidence: float


class IntentResult(BaseModel):
    """Intent classification result"""
    intent: QueryIntent
    confidence: float
    alternatives: List[IntentAlternative] = []
    source: IntentSource = IntentSource.RULES
    reasoning: Optional[str] = None
    processing_time_ms: float = 0.0

    @classmethod
    def unknown(cls, reasoning: str, source: IntentSource = IntentSource.FALLBACK) -> "IntentResult":
        return cls(intent=QueryIntent.UNKNOWN, confidence=0.0, source=source, reasoning=reasoning)


class IntentPattern(BaseModel):
    """Keywords and regular expressions that vote for one intent"""
    intent: QueryIntent
    keywords: List[str]
    patterns: List[str]
    examples: List[str] = []
