"""Data models for the query pipeline"""

import json
from pydantic import BaseModel
from typing import Dict, Any, List, Optional
from enum import Enum

from ..intent.models import IntentSource
from ..llm.models import TokenUsage
from ..rules.models import AppliedAction


class PipelineStage(str, Enum):
    """Pipeline state; FAILED is reachable from every other stage"""
    VALIDATING = "validating"
    RATE_LIMITING = "rate_limiting"
    SESSION_RESOLVING = "session_resolving"
    INTENT_CLASSIFYING = "intent_classifying"
    CONTEXT_RETRIEVING = "context_retrieving"
    RULES_EVALUATING = "rules_evaluating"
    GENERATING = "generating"
    LOGGING = "logging"
    DONE = "done"
    FAILED = "failed"


class QueryRequest(BaseModel):
    """Customer query"""
    query: str
    session_id: Optional[str] = None
    customer_id: Optional[str] = None
    client_id: Optional[str] = None  # rate limiting key; defaults to customer or session
    customer_context: Dict[str, Any] = {}


class ProcessingStep(BaseModel):
    """Timing and outcome of one pipeline stage"""
    step_name: str
    start: float
    end: float
    duration_ms: float
    success: bool
    error: Optional[str] = None


class QueryResponse(BaseModel):
    """Answer to a customer query"""
    response: str
    confidence: float
    intent: str
    intent_source: Optional[IntentSource] = None
    session_id: str
    sources: List[str] = []
    context_sources: List[str] = []
    suggestions: List[str] = []
    usage: TokenUsage = TokenUsage()
    applied_actions: List[AppliedAction] = []
    escalated: bool = False
    blocked: bool = False
    degraded_stages: List[str] = []
    processing_time_ms: float = 0.0
    steps: List[ProcessingStep] = []
    metadata: Dict[str, Any] = {}


class StreamEventType(str, Enum):
    CHUNK = "chunk"
    DONE = "done"
    ERROR = "error"


class StreamEvent(BaseModel):
    """Event pushed to a streaming client"""
    type: StreamEventType
    data: Any = None

    @classmethod
    def chunk(cls, text: str) -> "StreamEvent":
        return cls(type=StreamEventType.CHUNK, data={"text": text})

    @classmethod
    def done(cls, response: QueryResponse) -> "StreamEvent":
        return cls(type=StreamEventType.DONE, data=response.model_dump(mode="json"))

    @classmethod
    def error(cls, payload: Dict[str, Any]) -> "StreamEvent":
        return cls(type=StreamEventType.ERROR, data=payload)

    def to_sse(self) -> str:
        """Server-sent events framing"""
        return f"event: {self.type.value}\ndata: {json.dumps(self.data)}\n\n"
