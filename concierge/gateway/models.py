"""Data models for the request gateway"""

from pydantic import BaseModel
from typing import List, Optional


class Session(BaseModel):
    """Conversation session"""
    session_id: str
    business_id: str
    customer_id: Optional[str] = None
    created_at: float
    last_activity: float
    turn_count: int = 0
    previous_topics: List[str] = []


class RateLimitStatus(BaseModel):
    allowed: bool
    remaining: int
    retry_after: int = 0


class QueryValidationResult(BaseModel):
    valid: bool
    errors: List[str] = []
    sanitized_query: str = ""
