"""Data models for content processing, embeddings and context retrieval"""

from pydantic import BaseModel, ConfigDict, Field
from typing import Dict, Any, List, Optional
from datetime import datetime
from enum import Enum


class ContentType(str, Enum):
    """Kinds of business content that can be embedded"""
    MENU = "MENU"
    POLICY = "POLICY"
    FAQ = "FAQ"
    BUSINESS = "BUSINESS"


class ContentItem(BaseModel):
    """Business content submitted for vectorization"""
    model_config = ConfigDict(frozen=True)

    business_id: str
    content_type: ContentType
    content_id: str
    raw_fields: Dict[str, Any]


class ProcessedContent(BaseModel):
    """Vectorizer output"""
    text: str
    token_estimate: int
    metadata: Dict[str, Any] = {}


class EmbeddingRecord(BaseModel):
    """Stored content vector"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str
    business_id: str
    content_type: ContentType
    content_id: str
    normalized_text: str = ""
    vector: Any = Field(repr=False)  # numpy float32 array
    metadata: Dict[str, Any] = {}
    created_at: datetime
    updated_at: datetime
    deleted_at: Optional[datetime] = None

    @property
    def is_live(self) -> bool:
        return self.deleted_at is None


class SearchMatch(BaseModel):
    """Ranked nearest-neighbour hit"""
    embedding_id: str
    business_id: str
    content_type: ContentType
    content_id: str
    content: str
    metadata: Dict[str, Any] = {}
    similarity: float
    updated_at: datetime


class ContextMatch(BaseModel):
    """Embedding match enriched for prompt assembly"""
    content_id: str
    content: str
    snippet: str
    similarity: float
    confidence: float
    metadata: Dict[str, Any] = {}


class MenuMatch(ContextMatch):
    kind: str = "menu"
    name: Optional[str] = None
    price: Optional[float] = None
    category: Optional[str] = None
    allergens: List[str] = []


class PolicyMatch(ContextMatch):
    kind: str = "policy"
    title: Optional[str] = None
    policy_type: Optional[str] = None


class FaqMatch(ContextMatch):
    kind: str = "faq"
    question: Optional[str] = None
    answer: Optional[str] = None


class EmbeddingMatches(BaseModel):
    """Typed content buckets"""
    menu: List[MenuMatch] = []
    policy: List[PolicyMatch] = []
    faq: List[FaqMatch] = []

    def total(self) -> int:
        return len(self.menu) + len(self.policy) + len(self.faq)

    def all_matches(self) -> List[ContextMatch]:
        return [*self.menu, *self.policy, *self.faq]


class BusinessFacts(BaseModel):
    """Read-only business profile used for answers and rules"""
    business_id: str
    name: str
    business_type: str = "restaurant"
    description: str = ""
    phone: Optional[str] = None
    website: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    timezone: str = "UTC"
    hours: Dict[str, str] = {}
    is_open: Optional[bool] = None
    specials: List[str] = []
    policies: List[str] = []
    custom_instructions: Optional[str] = None

    @property
    def location(self) -> str:
        parts = [p for p in (self.address, self.city, self.state, self.zip_code) if p]
        return ", ".join(parts)


class ConversationTurn(BaseModel):
    role: str  # user, assistant
    content: str
    timestamp: datetime
    intent: Optional[str] = None


class ContextBundle(BaseModel):
    """Everything retrieved for one query"""
    business_id: str
    query: str
    embedding_matches: EmbeddingMatches = Field(default_factory=EmbeddingMatches)
    business_facts: Optional[BusinessFacts] = None
    conversation_history: List[ConversationTurn] = []
    failed_sources: List[str] = []
    retrieval_time_ms: float = 0.0

    @classmethod
    def empty(cls, business_id: str, query: str) -> "ContextBundle":
        return cls(business_id=business_id, query=query)

    def sources(self) -> List[str]:
        """Names of the context sources that contributed something"""
        sources = []
        if self.embedding_matches.menu:
            sources.append("menu")
        if self.embedding_matches.policy:
            sources.append("policies")
        if self.embedding_matches.faq:
            sources.append("faqs")
        if self.business_facts is not None:
            sources.append("business_data")
        if self.conversation_history:
            sources.append("conversation")
        return sources

    def source_ids(self) -> List[str]:
        return [m.content_id for m in self.embedding_matches.all_matches()]

    def counts(self) -> Dict[str, int]:
        return {
            "menu": len(self.embedding_matches.menu),
            "policy": len(self.embedding_matches.policy),
            "faq": len(self.embedding_matches.faq),
            "history": len(self.conversation_history),
        }

    def average_confidence(self) -> float:
        matches = self.embedding_matches.all_matches()
        if not matches:
            return 0.0
        return sum(m.confidence for m in matches) / len(matches)

    def to_prompt_context(self) -> str:
        """Render retrieved content as plain text for the generation prompt"""
        sections = []
        if self.embedding_matches.menu:
            sections.append("Menu items:\n" + "\n".join(f"- {m.snippet}" for m in self.embedding_matches.menu))
        if self.embedding_matches.policy:
            sections.append("Policies:\n" + "\n".join(f"- {m.snippet}" for m in self.embedding_matches.policy))
        if self.embedding_matches.faq:
            sections.append("FAQs:\n" + "\n".join(f"- {m.snippet}" for m in self.embedding_matches.faq))
        return "\n\n".join(sections)


class IndexResult(BaseModel):
    """Outcome of indexing one content item"""
    content_id: str
    content_type: ContentType
    success: bool
    embedding_id: Optional[str] = None
    token_estimate: int = 0
    error: Optional[str] = None
