"""Pytest configuration and fixtures.

Provides environment isolation, logging configuration, shared doubles and
automatic API test skipping. Isolation fixtures are autouse.
"""

from __future__ import annotations

from contextlib import suppress
import logging
import os

import pytest

from procureflow.agent import InMemoryProcurementBackend
from procureflow.config import Settings
from procureflow.metrics import AgentMetrics
from procureflow.providers.base import Provider
from procureflow.tokens import TokenAccountant
from tests.helpers import GEMINI_MODEL, OPENAI_MODEL, FakeClock, ScriptedClient, WordEncoding


# =============================================================================
# Environment Isolation (Autouse)
# =============================================================================


@pytest.fixture(autouse=True)
def block_dotenv(request, monkeypatch):
    """Prevent python-dotenv from loading project .env files during tests.

    Opt-out: @pytest.mark.allow_dotenv
    """
    if request.node.get_closest_marker("allow_dotenv"):
        return
    with suppress(Exception):
        monkeypatch.setattr(
            "dotenv.load_dotenv", lambda *_args, **_kwargs: False, raising=False
        )


@pytest.fixture(autouse=True)
def isolate_provider_env(request, monkeypatch):
    """Ensure a clean provider environment for each test.

    Clears GEMINI_*, OPENAI_*, GOOGLE_API_KEY and AI_PROVIDER.
    Opt-out: @pytest.mark.allow_env_pollution or @pytest.mark.api
    """
    if request.node.get_closest_marker("allow_env_pollution") or (
        "api" in request.node.keywords
    ):
        return

    for key in list(os.environ.keys()):
        if key.startswith(("GEMINI_", "OPENAI_", "AGENT_", "CIRCUIT_BREAKER_", "LLM_")):
            monkeypatch.delenv(key, raising=False)
    for key in ("GOOGLE_API_KEY", "AI_PROVIDER", "APP_ENV", "LOG_LEVEL", "SERVICE_NAME"):
        monkeypatch.delenv(key, raising=False)


# =============================================================================
# Logging
# =============================================================================


@pytest.fixture(scope="session", autouse=True)
def quiet_noisy_libraries():
    """Suppress noisy third-party loggers."""
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


# =============================================================================
# Shared Doubles
# =============================================================================


@pytest.fixture
def settings() -> Settings:
    """Settings with an OpenAI key, no RPM budget and fast retries."""
    return Settings.model_validate(
        {
            "openai_api_key": "sk-test",
            "openai": {
                "model": OPENAI_MODEL,
                "requests_per_minute": None,
                "max_attempts": 3,
            },
            "retry": {"initial_delay_s": 0.0, "max_delay_s": 0.0, "jitter": False},
        }
    )


@pytest.fixture
def metrics() -> AgentMetrics:
    return AgentMetrics()


@pytest.fixture
def accountant() -> TokenAccountant:
    """Deterministic accountant: one token per whitespace-separated word."""
    return TokenAccountant(encoding_loader=lambda _model, _default: WordEncoding())


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def scripted_client() -> ScriptedClient:
    return ScriptedClient(provider=Provider.OPENAI)


@pytest.fixture
def backend() -> InMemoryProcurementBackend:
    return InMemoryProcurementBackend(
        [
            {
                "id": "item-1",
                "name": "USB-C Cable 1m",
                "category": "Electronics",
                "price": 9.99,
                "description": "Braided USB-C cable",
            },
            {
                "id": "item-2",
                "name": "USB-C Cable 2m",
                "category": "Electronics",
                "price": 12.5,
                "description": "Braided USB-C cable, long",
            },
            {
                "id": "item-3",
                "name": "USB-C Charging Cable",
                "category": "Electronics",
                "price": 15.0,
                "description": "Fast charging cable",
            },
            {
                "id": "item-4",
                "name": "Ergonomic Keyboard",
                "category": "Peripherals",
                "price": 89.0,
                "description": "Split layout",
            },
        ]
    )


# =============================================================================
# Pytest Hooks
# =============================================================================

API_TESTS_REASON = "API tests require ENABLE_API_TESTS=1"


def _api_tests_enabled() -> bool:
    return bool(os.getenv("ENABLE_API_TESTS"))


def pytest_collection_modifyitems(items):
    """Automatically skip API tests when not explicitly enabled."""
    if _api_tests_enabled():
        return
    skip_api = pytest.mark.skip(reason=API_TESTS_REASON)
    for item in items:
        if "api" in item.keywords:
            item.add_marker(skip_api)


# =============================================================================
# API Test Configuration
# =============================================================================


@pytest.fixture
def gemini_api_key():
    """Return GEMINI_API_KEY or skip the test if unavailable."""
    key = os.getenv("GEMINI_API_KEY")
    if not key:
        pytest.skip("GEMINI_API_KEY not set")
    return key


@pytest.fixture
def openai_api_key():
    """Return OPENAI_API_KEY or skip the test if unavailable."""
    key = os.getenv("OPENAI_API_KEY")
    if not key:
        pytest.skip("OPENAI_API_KEY not set")
    return key


@pytest.fixture
def gemini_test_model():
    """Return the model to use for Gemini API tests."""
    return os.getenv("GEMINI_TEST_MODEL", GEMINI_MODEL)


@pytest.fixture
def openai_test_model():
    """Return the model to use for OpenAI API tests."""
    return os.getenv("OPENAI_TEST_MODEL", OPENAI_MODEL)
