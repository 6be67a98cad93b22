"""Configuration settings for the query engine"""

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings"""

    # Server
    port: int = 8010
    debug: bool = False

    # Redis
    redis_url: str = "redis://redis:6379"

    # Providers
    openai_api_key: str = ""
    embedding_model: str = "text-embedding-3-small"
    embedding_dimension: int = 1536
    generation_model: str = "gpt-4o"
    classifier_model: str = "gpt-4o-mini"
    max_tokens: int = 500
    temperature: float = 0.7
    input_cost_per_1k: float = 0.005
    output_cost_per_1k: float = 0.015
    provider_retry_attempts: int = 3
    provider_retry_base_delay: float = 1.0  # seconds
    embedding_batch_size: int = 5

    # Content processing
    content_max_tokens: int = 8000
    chars_per_token: int = 4

    # Retrieval
    similarity_threshold: float = 0.7
    max_items_per_source: int = 3
    max_context_length: int = 4000
    max_retrieval_query_length: int = 1000
    conversation_history_limit: int = 10
    max_search_results: int = 50

    # Intent detection
    intent_confidence_threshold: float = 0.5
    enable_ai_intent: bool = True

    # Business rules
    rules_cache_ttl_seconds: int = 300
    rule_blocking_severity: str = "high"

    # Gateway
    max_query_length: int = 2000
    min_query_length: int = 1
    rate_limit_requests: int = 60
    rate_limit_window: int = 60  # seconds
    session_timeout_seconds: int = 1800

    # Pipeline
    processing_timeout_seconds: float = 10.0
    enable_streaming: bool = True

    # Analytics
    analytics_enabled: bool = True
    analytics_channel: str = "analytics:queries"
    analytics_buffer_size: int = 10000

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("processing_timeout_seconds")
    @classmethod
    def _check_timeout(cls, value: float) -> float:
        if value < 1 or value > 30:
            raise ValueError("processing_timeout_seconds must be between 1 and 30")
        return value

    @field_validator("embedding_dimension", "content_max_tokens", "chars_per_token", "embedding_batch_size")
    @classmethod
    def _check_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("rule_blocking_severity")
    @classmethod
    def _check_severity(cls, value: str) -> str:
        if value not in ("low", "medium", "high"):
            raise ValueError("rule_blocking_severity must be low, medium or high")
        return value


settings = Settings()
