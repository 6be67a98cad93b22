"""Pytest configuration and fixtures."""

import os

# Must be set before concierge.config builds its module-level settings
os.environ["OPENAI_API_KEY"] = ""
os.environ["ANALYTICS_ENABLED"] = "false"
os.environ["REDIS_URL"] = "redis://localhost:6379"

import pytest

from concierge.config import Settings
from concierge.gateway.business_store import BusinessStore
from concierge.orchestrator.factory import build_pipeline
from concierge.rag.models import BusinessFacts
from tests.fakes import FakeOpenAI, ManualClock, instant_sleep


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        openai_api_key="",
        embedding_dimension=8,
        similarity_threshold=0.0,
        enable_ai_intent=False,
        analytics_enabled=False,
        provider_retry_base_delay=0.0,
    )


@pytest.fixture
def business():
    return BusinessFacts(
        business_id="biz-1",
        name="Luigi's Trattoria",
        description="Family-run Italian restaurant",
        phone="555-0100",
        address="12 Main St",
        city="Springfield",
        hours={"monday": "11:00-22:00", "saturday": "10:00-23:00"},
        is_open=True,
        specials=["Half-price pasta on Tuesdays"],
        policies=["Reservations are held for 15 minutes"],
    )


@pytest.fixture
def openai_client(settings):
    return FakeOpenAI(dimension=settings.embedding_dimension)


@pytest.fixture
def components(settings, openai_client, business, clock):
    return build_pipeline(
        settings,
        openai_client=openai_client,
        businesses=BusinessStore([business]),
        clock=clock,
        sleep=instant_sleep,
    )
