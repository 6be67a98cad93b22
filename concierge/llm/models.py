"""Data models for text generation"""

from pydantic import BaseModel
from typing import List, Optional


class ChatMessage(BaseModel):
    """Chat message"""
    role: str  # system, user, assistant
    content: str


class TokenUsage(BaseModel):
    """Token counts and their cost in USD"""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cost: float = 0.0


class GenerationResult(BaseModel):
    """Single-shot completion"""
    model_config = {"protected_namespaces": ()}

    text: str
    model: str
    usage: TokenUsage = TokenUsage()
    finish_reason: Optional[str] = None
    generation_time_ms: float = 0.0


class GenerationChunk(BaseModel):
    """Piece of a streamed completion; the last chunk carries usage when the provider reports it"""
    text: str = ""
    finish_reason: Optional[str] = None
    usage: Optional[TokenUsage] = None


def to_openai_messages(messages: List[ChatMessage]) -> List[dict]:
    return [{"role": m.role, "content": m.content} for m in messages]
