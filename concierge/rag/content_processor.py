"""Turn structured business content into embeddable text"""

import math
import re
from typing import Dict, Any, List, Optional, Tuple

import structlog

from ..config import Settings, settings as default_settings
from ..errors import InvalidInput
from .models import ContentType, ProcessedContent

logger = structlog.get_logger(__name__)

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]")
_DISALLOWED_CHARS = re.compile(r"[^\w\s\-.,!?()$:/'&]")
_WHITESPACE = re.compile(r"\s+")

TRUNCATION_MARKER = "..."

REQUIRED_FIELDS = {
    ContentType.MENU: [("name", "Menu item name is required")],
    ContentType.POLICY: [("title", "Policy title is required"),
                         ("content", "Policy content is required")],
    ContentType.FAQ: [("question", "FAQ question is required"),
                      ("answer", "FAQ answer is required")],
    ContentType.BUSINESS: [("name", "Business name is required")],
}


class ContentProcessor:
    """Format, clean and bound business content for the embedding provider"""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or default_settings
        self.max_tokens = self.settings.content_max_tokens
        self.chars_per_token = self.settings.chars_per_token
        self.formatters = {
            ContentType.MENU: self._format_menu_item,
            ContentType.POLICY: self._format_policy,
            ContentType.FAQ: self._format_faq,
            ContentType.BUSINESS: self._format_business,
        }

    def process(self, content_type: ContentType, data: Dict[str, Any]) -> ProcessedContent:
        """Validate, format, clean and truncate one piece of content.

        Raises InvalidInput when a required field for ``content_type`` is
        missing or blank.
        """
        content_type = ContentType(content_type)
        self._validate(content_type, data)

        raw_text = self.formatters[content_type](data)
        cleaned = self.clean_text(raw_text)
        text, truncated = self.truncate(cleaned)

        metadata = self._build_metadata(content_type, data)
        metadata.update({
            "content_type": content_type.value,
            "original_length": len(raw_text),
            "processed_length": len(text),
            "token_estimate": self.estimate_tokens(text),
            "truncated": truncated,
        })

        if truncated:
            logger.info("Content truncated to token budget",
                        content_type=content_type.value,
                        original_length=len(cleaned),
                        processed_length=len(text))

        return ProcessedContent(
            text=text,
            token_estimate=self.estimate_tokens(text),
            metadata=metadata,
        )

    def estimate_tokens(self, text: str) -> int:
        return math.ceil(len(text) / self.chars_per_token)

    def clean_text(self, text: str) -> str:
        """Strip control characters, unsupported symbols and excess whitespace"""
        text = _CONTROL_CHARS.sub(" ", text)
        text = _DISALLOWED_CHARS.sub("", text)
        return _WHITESPACE.sub(" ", text).strip()

    def truncate(self, text: str) -> Tuple[str, bool]:
        """Bound ``text`` to the token budget, cutting at a word boundary"""
        if self.estimate_tokens(text) <= self.max_tokens:
            return text, False

        budget_chars = self.max_tokens * self.chars_per_token
        # The marker counts against the budget
        max_chars = min(int(budget_chars * 0.9), budget_chars - len(TRUNCATION_MARKER))
        if max_chars <= 0:
            return text[:budget_chars].rstrip(), True

        cut = text[:max_chars]
        if not text[max_chars].isspace():
            last_space = cut.rfind(" ")
            if last_space > 0:
                cut = cut[:last_space]

        return cut.rstrip() + TRUNCATION_MARKER, True

    def _validate(self, content_type: ContentType, data: Dict[str, Any]):
        if not isinstance(data, dict):
            raise InvalidInput(["Content data must be an object"])

        errors = []
        for field, message in REQUIRED_FIELDS[content_type]:
            value = data.get(field)
            if value is None or (isinstance(value, str) and not value.strip()):
                errors.append(message)

        if errors:
            raise InvalidInput(errors)

    def _format_menu_item(self, data: Dict[str, Any]) -> str:
        parts = [str(data["name"])]

        if data.get("description"):
            parts.append(str(data["description"]))
        if data.get("category"):
            parts.append(f"Category: {data['category']}")
        if data.get("price") is not None:
            parts.append(f"Price: {self._format_price(data['price'])}")
        allergens = self._as_list(data.get("allergens"))
        if allergens:
            parts.append(f"Allergens: {', '.join(allergens)}")
        if data.get("calories") is not None:
            parts.append(f"Calories: {data['calories']}")
        if data.get("prep_time") is not None:
            parts.append(f"Prep time: {data['prep_time']} minutes")

        return " - ".join(parts)

    def _format_policy(self, data: Dict[str, Any]) -> str:
        parts = [str(data["title"]), str(data["content"])]

        if data.get("policy_type"):
            parts.append(f"Type: {data['policy_type']}")
        if data.get("effective_date"):
            parts.append(f"Effective: {data['effective_date']}")

        return " - ".join(parts)

    def _format_faq(self, data: Dict[str, Any]) -> str:
        parts = [f"Question: {data['question']}", f"Answer: {data['answer']}"]

        if data.get("category"):
            parts.append(f"Category: {data['category']}")
        tags = self._as_list(data.get("tags"))
        if tags:
            parts.append(f"Tags: {', '.join(tags)}")

        return " - ".join(parts)

    def _format_business(self, data: Dict[str, Any]) -> str:
        parts = [str(data["name"])]

        if data.get("description"):
            parts.append(str(data["description"]))
        if data.get("cuisine"):
            parts.append(f"Cuisine: {data['cuisine']}")
        if data.get("location"):
            parts.append(f"Location: {data['location']}")
        if data.get("industry"):
            parts.append(f"Industry: {data['industry']}")

        return " - ".join(parts)

    def _build_metadata(self, content_type: ContentType, data: Dict[str, Any]) -> Dict[str, Any]:
        if content_type == ContentType.MENU:
            metadata = {
                "title": data["name"],
                "category": data.get("category"),
                "allergens": self._as_list(data.get("allergens")),
            }
            try:
                metadata["price"] = float(data["price"]) if data.get("price") is not None else None
            except (TypeError, ValueError):
                metadata["price"] = None
            return metadata
        if content_type == ContentType.POLICY:
            return {"title": data["title"], "policy_type": data.get("policy_type")}
        if content_type == ContentType.FAQ:
            return {
                "title": data["question"],
                "question": data["question"],
                "answer": data["answer"],
                "category": data.get("category"),
                "tags": self._as_list(data.get("tags")),
            }
        return {"title": data["name"], "cuisine": data.get("cuisine")}

    @staticmethod
    def _format_price(price: Any) -> str:
        try:
            return f"${float(price):.2f}"
        except (TypeError, ValueError):
            return str(price)

    @staticmethod
    def _as_list(value: Any) -> List[str]:
        if not value:
            return []
        if isinstance(value, str):
            return [value]
        return [str(v) for v in value]
