"""Hybrid intent classification: keyword and pattern scoring with a model fallback"""

import json
import re
from typing import Dict, List, Optional, Pattern, Tuple
import structlog

from ..clock import Clock, system_clock
from ..config import Settings, settings as default_settings
from ..errors import UpstreamProviderError
from ..llm.llm_engine import LLMEngine
from ..llm.prompt_manager import PromptManager
from ..metrics import record_intent
from .models import IntentAlternative, IntentPattern, IntentResult, IntentSource, QueryIntent

logger = structlog.get_logger(__name__)

SCORE_SCALE = 5.0
AGREEMENT_BONUS = 0.1
COMBINE_FLOOR = 0.3
PARSE_FAILURE_CONFIDENCE = 0.1

INTENT_PATTERNS = [
    IntentPattern(
        intent=QueryIntent.MENU_INQUIRY,
        keywords=["menu", "food", "dish", "pizza", "burger", "pasta", "salad", "appetizer", "entree",
                  "dessert", "drink", "beverage", "special", "recommendation", "ingredients", "recipe"],
        patterns=[r"what.*on.*menu", r"do you have.*food", r"what.*recommend", r"best.*dish",
                  r"what.*ingredients", r"is.*available"],
        examples=["What's on your menu?", "Do you have pizza?", "What do you recommend?"],
    ),
    IntentPattern(
        intent=QueryIntent.HOURS_POLICY,
        keywords=["hours", "open", "close", "closed", "time", "when", "policy", "rules", "delivery",
                  "pickup", "reservation", "booking"],
        patterns=[r"what.*hours", r"when.*open", r"when.*close", r"are you.*open", r"delivery.*policy",
                  r"reservation.*policy"],
        examples=["What are your hours?", "When do you close?", "Do you deliver?"],
    ),
    IntentPattern(
        intent=QueryIntent.PRICING_QUESTION,
        keywords=["price", "cost", "how much", "expensive", "cheap", "deal", "discount", "special",
                  "promotion", "offer", "dollar", "$"],
        patterns=[r"how much.*cost", r"what.*price", r"how much.*dollar", r"any.*deal",
                  r"discount.*available", r"\$\d+"],
        examples=["How much does the pizza cost?", "What's the price?", "Any deals today?"],
    ),
    IntentPattern(
        intent=QueryIntent.DIETARY_RESTRICTIONS,
        keywords=["vegan", "vegetarian", "gluten", "allergy", "allergic", "dairy", "nuts", "peanut", "soy",
                  "kosher", "halal", "keto", "paleo", "diet"],
        patterns=[r"do you have.*vegan", r"is.*gluten.*free", r"allergic.*to", r"dietary.*restriction",
                  r"special.*diet"],
        examples=["Do you have vegan options?", "I'm allergic to nuts", "Is this gluten-free?"],
    ),
    IntentPattern(
        intent=QueryIntent.LOCATION_INFO,
        keywords=["where", "location", "address", "directions", "near", "close", "delivery", "area", "zip",
                  "city", "street"],
        patterns=[r"where.*located", r"what.*address", r"how.*get.*there", r"deliver.*to", r"near.*me"],
        examples=["Where are you located?", "What's your address?", "Do you deliver to my area?"],
    ),
    IntentPattern(
        intent=QueryIntent.GENERAL_CHAT,
        keywords=["hello", "hi", "hey", "good morning", "good afternoon", "good evening", "how are you",
                  "thank you", "thanks", "bye", "goodbye"],
        patterns=[r"^(hello|hi|hey)[!.?]*$", r"good.*morning", r"how.*are.*you", r"thank.*you"],
        examples=["Hello", "Hi there", "How are you?", "Thank you"],
    ),
    IntentPattern(
        intent=QueryIntent.COMPLAINT_FEEDBACK,
        keywords=["complaint", "problem", "issue", "wrong", "bad", "terrible", "awful", "disappointed",
                  "angry", "upset", "refund", "money back"],
        patterns=[r"my.*order.*wrong", r"terrible.*service", r"want.*refund", r"very.*disappointed",
                  r"worst.*ever"],
        examples=["My order was wrong", "This is terrible", "I want a refund"],
    ),
]


def _keyword_regex(keyword: str) -> Pattern:
    escaped = re.escape(keyword.lower())
    if re.match(r"\w", keyword[0]) and re.match(r"\w", keyword[-1]):
        return re.compile(rf"\b{escaped}\b")
    return re.compile(escaped)


class IntentClassifier:
    """Classify customer queries into the intent taxonomy.

    Keyword hits score 1 and pattern hits score 2; the total is divided by
    5 and clamped to [0, 1]. Below ``intent_confidence_threshold`` the
    generation provider is asked to classify the query as well and the two
    results are combined.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        llm: Optional[LLMEngine] = None,
        prompts: Optional[PromptManager] = None,
        clock: Optional[Clock] = None,
        patterns: Optional[List[IntentPattern]] = None,
    ):
        self.settings = settings or default_settings
        self.llm = llm
        self.prompts = prompts or PromptManager()
        self.clock = clock or system_clock
        self.intent_patterns = patterns or INTENT_PATTERNS
        self._compiled: List[Tuple[QueryIntent, List[Pattern], List[Pattern]]] = [
            (
                p.intent,
                [_keyword_regex(k) for k in p.keywords],
                [re.compile(r, re.IGNORECASE) for r in p.patterns],
            )
            for p in self.intent_patterns
        ]
        self.total_classifications = 0

    async def classify(self, text: str) -> IntentResult:
        start_time = self.clock.now()
        rule_result = self.classify_rules(text)

        if (rule_result.confidence >= self.settings.intent_confidence_threshold
                or not self.settings.enable_ai_intent
                or self.llm is None):
            result = rule_result
        else:
            try:
                model_result = await self.classify_with_model(text)
                result = self._combine(rule_result, model_result)
            except Exception as e:
                logger.warning("Model intent classification failed, using rule-based result",
                               error=str(e),
                               text=text[:100])
                result = rule_result.model_copy(update={
                    "confidence": max(0.1, rule_result.confidence * 0.5),
                    "source": IntentSource.FALLBACK,
                    "reasoning": "Fallback detection due to AI service error",
                })

        result.processing_time_ms = (self.clock.now() - start_time) * 1000
        self.total_classifications += 1
        record_intent(result.intent.value, result.source.value, result.confidence)

        logger.debug("Intent classified",
                     intent=result.intent.value,
                     confidence=result.confidence,
                     source=result.source.value)
        return result

    def classify_rules(self, text: str) -> IntentResult:
        """Score every intent by keyword and pattern hits"""
        lowered = text.lower().strip()
        scores: List[Tuple[QueryIntent, float]] = []

        for intent, keywords, patterns in self._compiled:
            score = sum(1 for k in keywords if k.search(lowered))
            score += sum(2 for p in patterns if p.search(lowered))
            scores.append((intent, min(1.0, score / SCORE_SCALE)))

        # Stable sort keeps table order among equal scores
        scores.sort(key=lambda item: item[1], reverse=True)
        best_intent, best_confidence = scores[0]

        if best_confidence == 0:
            return IntentResult.unknown("No keyword or pattern matched", source=IntentSource.RULES)

        alternatives = [
            IntentAlternative(intent=intent, confidence=confidence)
            for intent, confidence in scores[1:4]
            if confidence > 0.1
        ]

        return IntentResult(
            intent=best_intent,
            confidence=best_confidence,
            alternatives=alternatives,
            source=IntentSource.RULES,
            reasoning=f"Rule-based detection with {best_confidence:.2f} confidence",
        )

    async def classify_with_model(self, text: str) -> IntentResult:
        messages = self.prompts.get_intent_prompt(text)
        generation = await self.llm.complete(
            messages,
            model=self.settings.classifier_model,
            max_tokens=200,
            temperature=0.1,
            operation="intent",
        )
        if not generation.text:
            raise UpstreamProviderError("Empty response from intent classifier", retryable=False)
        return self.parse_model_response(generation.text)

    def parse_model_response(self, content: str) -> IntentResult:
        """Read the first JSON object in ``content``; anything unusable becomes UNKNOWN at 0.1"""
        try:
            match = re.search(r"\{[\s\S]*\}", content)
            if not match:
                raise ValueError("No JSON found in response")

            parsed = json.loads(match.group(0))
            if not isinstance(parsed, dict) or not parsed.get("intent") or not parsed.get("confidence"):
                raise ValueError("Invalid response format")

            intent = QueryIntent(str(parsed["intent"]).upper())
            confidence = min(1.0, max(0.0, float(parsed["confidence"])))
        except (ValueError, TypeError) as e:
            logger.warning("Could not parse intent classifier response", error=str(e), content=content[:200])
            return IntentResult(
                intent=QueryIntent.UNKNOWN,
                confidence=PARSE_FAILURE_CONFIDENCE,
                source=IntentSource.MODEL,
                reasoning="Failed to parse AI response",
            )

        return IntentResult(
            intent=intent,
            confidence=confidence,
            source=IntentSource.MODEL,
            reasoning=parsed.get("reasoning") or "AI-based detection",
        )

    def _combine(self, rule_result: IntentResult, model_result: IntentResult) -> IntentResult:
        if rule_result.confidence > COMBINE_FLOOR and model_result.confidence > COMBINE_FLOOR:
            if rule_result.intent == model_result.intent:
                confidence = min(1.0, (rule_result.confidence + model_result.confidence) / 2 + AGREEMENT_BONUS)
                return IntentResult(
                    intent=rule_result.intent,
                    confidence=confidence,
                    alternatives=rule_result.alternatives,
                    source=IntentSource.COMBINED,
                    reasoning=(f"Combined detection: rule-based ({rule_result.confidence:.2f}) "
                               f"+ AI ({model_result.confidence:.2f})"),
                )

            if model_result.confidence > rule_result.confidence:
                return model_result.model_copy(update={
                    "reasoning": f"AI detection preferred over rule-based ({rule_result.confidence:.2f})",
                })
            return rule_result.model_copy(update={
                "reasoning": f"Rule-based detection preferred over AI ({model_result.confidence:.2f})",
            })

        return model_result if model_result.confidence > rule_result.confidence else rule_result

    def get_supported_intents(self) -> List[str]:
        return [intent.value for intent in QueryIntent]

    def get_intent_stats(self) -> Dict[str, Dict[str, int]]:
        return {
            p.intent.value: {
                "patterns": len(p.patterns),
                "keywords": len(p.keywords),
                "examples": len(p.examples),
            }
            for p in self.intent_patterns
        }
