"""Data models for query analytics"""

from pydantic import BaseModel, Field
from typing import Dict, Any, Optional
from datetime import datetime, timezone
from enum import Enum
import uuid


class QueryStatus(str, Enum):
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"
    TIMEOUT = "TIMEOUT"
    RATE_LIMITED = "RATE_LIMITED"
    VALIDATION_ERROR = "VALIDATION_ERROR"


class QueryLogRecord(BaseModel):
    """One processed (or rejected) customer query"""
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    business_id: str
    session_id: Optional[str] = None
    query_text: str
    intent: Optional[str] = None
    confidence: float = 0.0
    context_counts: Dict[str, int] = {}
    processing_time_ms: float = 0.0
    status: QueryStatus
    tokens: int = 0
    cost: float = 0.0
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = {}
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
