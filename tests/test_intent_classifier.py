"""Tests for hybrid intent classification."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from concierge.errors import UpstreamProviderError
from concierge.intent.intent_classifier import IntentClassifier
from concierge.intent.models import IntentSource, QueryIntent
from concierge.llm.models import GenerationResult


def model_llm(text: str = None, error: Exception = None):
    llm = MagicMock()
    if error is not None:
        llm.complete = AsyncMock(side_effect=error)
    else:
        llm.complete = AsyncMock(return_value=GenerationResult(text=text, model="gpt-4o-mini"))
    return llm


@pytest.fixture
def ai_settings(settings):
    return settings.model_copy(update={"enable_ai_intent": True})


@pytest.mark.asyncio
async def test_hours_question_classified_by_rules_alone(ai_settings, clock):
    """Test the rule stage is confident enough for a plain hours question."""
    llm = model_llm('{"intent": "UNKNOWN", "confidence": 0.9}')
    classifier = IntentClassifier(ai_settings, llm=llm, clock=clock)

    result = await classifier.classify("What are your hours?")

    assert result.intent == QueryIntent.HOURS_POLICY
    assert result.confidence >= 0.5
    assert result.source == IntentSource.RULES
    llm.complete.assert_not_awaited()


@pytest.mark.parametrize("query,intent", [
    ("Do you have vegan options? I'm allergic to nuts", QueryIntent.DIETARY_RESTRICTIONS),
    ("Where are you located? What's your address?", QueryIntent.LOCATION_INFO),
    ("My order was wrong and I want a refund", QueryIntent.COMPLAINT_FEEDBACK),
    ("hello!", QueryIntent.GENERAL_CHAT),
    ("How much does the lasagna cost?", QueryIntent.PRICING_QUESTION),
])
def test_rule_scoring_picks_expected_intent(settings, query, intent):
    """Test keyword and pattern tables."""
    classifier = IntentClassifier(settings)

    result = classifier.classify_rules(query)

    assert result.intent == intent
    assert 0.0 < result.confidence <= 1.0


def test_unmatched_query_is_unknown(settings):
    """Test no keyword or pattern hit."""
    result = IntentClassifier(settings).classify_rules("xyzzy plugh")

    assert result.intent == QueryIntent.UNKNOWN
    assert result.confidence == 0.0
    assert result.alternatives == []


def test_alternatives_exclude_low_scores(settings):
    """Test runner-up intents."""
    result = IntentClassifier(settings).classify_rules("Is the pizza gluten free and what does it cost?")

    assert len(result.alternatives) <= 3
    assert all(alt.confidence > 0.1 for alt in result.alternatives)
    assert result.intent not in [alt.intent for alt in result.alternatives]


def test_keywords_match_whole_words(settings):
    """Test "hi" does not fire inside other words."""
    result = IntentClassifier(settings).classify_rules("this thing")

    assert result.intent == QueryIntent.UNKNOWN


@pytest.mark.asyncio
async def test_model_used_when_rules_unsure(ai_settings, clock):
    """Test the model stage for low-confidence queries."""
    llm = model_llm('Sure! {"intent": "MENU_INQUIRY", "confidence": 0.8, "reasoning": "asks about a dish"}')
    classifier = IntentClassifier(ai_settings, llm=llm, clock=clock)

    result = await classifier.classify("Tell me about the lasagna")

    assert result.intent == QueryIntent.MENU_INQUIRY
    assert result.confidence == pytest.approx(0.8)
    assert result.source == IntentSource.MODEL
    assert llm.complete.await_args.kwargs["model"] == ai_settings.classifier_model


@pytest.mark.asyncio
async def test_agreement_boosts_confidence(ai_settings, clock):
    """Test agreeing stages are averaged plus a bonus."""
    llm = model_llm('{"intent": "MENU_INQUIRY", "confidence": 0.8}')
    classifier = IntentClassifier(ai_settings, llm=llm, clock=clock)

    result = await classifier.classify("pizza and pasta please")

    assert result.intent == QueryIntent.MENU_INQUIRY
    assert result.confidence == pytest.approx(0.7)
    assert result.source == IntentSource.COMBINED


@pytest.mark.asyncio
async def test_disagreement_prefers_higher_confidence(ai_settings, clock):
    """Test conflicting stages."""
    llm = model_llm('{"intent": "COMPLAINT_FEEDBACK", "confidence": 0.9}')
    classifier = IntentClassifier(ai_settings, llm=llm, clock=clock)

    result = await classifier.classify("pizza and pasta please")

    assert result.intent == QueryIntent.COMPLAINT_FEEDBACK
    assert result.confidence == pytest.approx(0.9)


@pytest.mark.asyncio
async def test_model_failure_degrades_to_half_rule_confidence(ai_settings, clock):
    """Test a provider exception never propagates."""
    llm = model_llm(error=UpstreamProviderError("provider down", retryable=False))
    classifier = IntentClassifier(ai_settings, llm=llm, clock=clock)

    result = await classifier.classify("pizza and pasta please")

    assert result.intent == QueryIntent.MENU_INQUIRY
    assert result.confidence == pytest.approx(0.2)
    assert result.source == IntentSource.FALLBACK


@pytest.mark.parametrize("content", [
    "I think it is about food",
    '{"intent": "ORDER_FOOD", "confidence": 0.9}',
    '{"intent": "MENU_INQUIRY"}',
    '{"intent": "MENU_INQUIRY", "confidence": "high"}',
])
def test_unusable_model_output_becomes_unknown(settings, content):
    """Test parse failures and invalid labels."""
    result = IntentClassifier(settings).parse_model_response(content)

    assert result.intent == QueryIntent.UNKNOWN
    assert result.confidence == pytest.approx(0.1)


@pytest.mark.asyncio
async def test_ai_disabled_skips_model(settings, clock):
    """Test enable_ai_intent switch."""
    llm = model_llm('{"intent": "MENU_INQUIRY", "confidence": 0.8}')
    classifier = IntentClassifier(settings, llm=llm, clock=clock)

    result = await classifier.classify("Tell me about the lasagna")

    assert result.intent == QueryIntent.UNKNOWN
    llm.complete.assert_not_awaited()


def test_supported_intents_and_stats(settings):
    """Test taxonomy introspection."""
    classifier = IntentClassifier(settings)

    assert "UNKNOWN" in classifier.get_supported_intents()
    assert classifier.get_intent_stats()["MENU_INQUIRY"]["keywords"] > 0
