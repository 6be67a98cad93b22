"""Inbound query validation and sanitisation"""

import re
from collections import Counter
from typing import List, Optional
import structlog

from ..config import Settings, settings as default_settings
from ..errors import ValidationError
from .models import QueryValidationResult

logger = structlog.get_logger(__name__)

BLOCKED_WORDS = [
    "spam", "scam", "hack", "exploit", "inject", "sql",
    "script", "xss", "csrf", "ddos", "phishing",
]

SQL_INJECTION_PATTERNS = [
    re.compile(pattern, re.IGNORECASE) for pattern in (
        r"union\s+select",
        r"drop\s+table",
        r"delete\s+from",
        r"insert\s+into",
        r"update\s+\w+\s+set",
        r"alter\s+table",
        r"create\s+table",
        r"exec\s*\(",
        r"execute\s*\(",
        r"sp_executesql",
        r"xp_cmdshell",
        r"waitfor\s+delay",
        r"benchmark\s*\(",
        r"sleep\s*\(",
    )
]

SESSION_ID_PATTERN = re.compile(r"^[a-zA-Z0-9\-]{8,64}$")
CUSTOMER_ID_PATTERN = re.compile(r"^[a-zA-Z0-9]{3,50}$")

_UNSAFE_CHARS = re.compile(r"[<>'\";]")
_SQL_COMMENTS = re.compile(r"--|/\*|\*/")
_LATIN = re.compile(r"[a-zA-Z]")
_UNSUPPORTED_SCRIPTS = re.compile(r"[\u0400-\u04ff\u4e00-\u9fff\u0600-\u06ff]")

SPAM_MIN_WORDS = 4


class QueryValidator:
    """Reject malformed or abusive queries before any work is done"""

    def __init__(self, settings: Optional[Settings] = None, blocked_words: Optional[List[str]] = None):
        self.settings = settings or default_settings
        words = blocked_words if blocked_words is not None else BLOCKED_WORDS
        self._blocked = re.compile(r"\b(" + "|".join(re.escape(w) for w in words) + r")\b", re.IGNORECASE) if words else None

    def validate_query(self, query: Optional[str]) -> QueryValidationResult:
        """Check a query and return its sanitised form"""
        errors: List[str] = []

        if query is None or not query.strip():
            return QueryValidationResult(valid=False, errors=["Query cannot be empty"])

        if len(query) > self.settings.max_query_length:
            errors.append(f"Query exceeds maximum length of {self.settings.max_query_length} characters")

        sanitized = self.sanitize(query)
        if len(sanitized) < self.settings.min_query_length:
            errors.append("Query cannot be empty")

        errors.extend(self._check_content(sanitized))
        errors.extend(self._check_sql_injection(query))
        errors.extend(self._check_language(sanitized))

        return QueryValidationResult(
            valid=not errors,
            errors=errors,
            sanitized_query=sanitized if not errors else "",
        )

    def validate_request(
        self,
        query: Optional[str],
        session_id: Optional[str] = None,
        customer_id: Optional[str] = None,
    ) -> str:
        """Validate every inbound field, raising ValidationError with all problems found"""
        result = self.validate_query(query)
        errors = list(result.errors)

        if session_id is not None and not self.is_valid_session_id(session_id):
            errors.append("Invalid session ID format")
        if customer_id is not None and not self.is_valid_customer_id(customer_id):
            errors.append("Invalid customer ID format")

        if errors:
            logger.info("Query rejected", errors=errors, query=(query or "")[:100])
            raise ValidationError(errors)

        return result.sanitized_query

    @staticmethod
    def sanitize(text: str) -> str:
        text = _UNSAFE_CHARS.sub("", text)
        text = _SQL_COMMENTS.sub("", text)
        return " ".join(text.split())

    @staticmethod
    def is_valid_session_id(session_id: str) -> bool:
        return isinstance(session_id, str) and bool(SESSION_ID_PATTERN.match(session_id))

    @staticmethod
    def is_valid_customer_id(customer_id: str) -> bool:
        return isinstance(customer_id, str) and bool(CUSTOMER_ID_PATTERN.match(customer_id))

    def _check_content(self, query: str) -> List[str]:
        errors = []

        if self._blocked is not None and self._blocked.search(query):
            errors.append("Query contains inappropriate content")

        words = query.lower().split()
        if len(words) >= SPAM_MIN_WORDS:
            _, most_common = Counter(words).most_common(1)[0]
            if most_common > len(words) * 0.5:
                errors.append("Query appears to be spam")

        return errors

    @staticmethod
    def _check_sql_injection(query: str) -> List[str]:
        for pattern in SQL_INJECTION_PATTERNS:
            if pattern.search(query):
                return ["Query contains potentially malicious SQL patterns"]
        return []

    @staticmethod
    def _check_language(query: str) -> List[str]:
        if not _LATIN.search(query) and _UNSUPPORTED_SCRIPTS.search(query):
            return ["Language not supported. Please use English."]
        return []
