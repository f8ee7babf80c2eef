"""
CalmText - Test Configuration and Fixtures

Shared fixtures for all test modules.
"""

import os
import sys
from typing import Generator, List

import pytest
from fastapi.testclient import TestClient

# Ensure backend package is importable
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from calmtext.config import Settings
from calmtext.core.exceptions import CacheError, DurableStoreError, GenerationError, TransportError
from calmtext.core.orchestrator import ConversationOrchestrator
from calmtext.core.session_store import SessionStore
from calmtext.core.types import ContextSnapshot, GenerationResult, SendResult
from calmtext.services.generator import DummyResponseGenerator
from calmtext.sms.transport import DummyTransport
from calmtext.storage.cache import InMemoryCache
from calmtext.storage.durable import InMemoryDurableStore
from calmtext.storage.memory import ConversationMemory


USER = "+14155551234"
OTHER_USER = "+14155559876"


# =============================================================================
# Pytest Configuration
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')")
    config.addinivalue_line("markers", "integration: marks tests requiring external dependencies")


# =============================================================================
# Settings Fixtures
# =============================================================================

@pytest.fixture
def test_settings() -> Settings:
    """
    Create test settings with safe defaults.

    Every backend is in-process; nothing leaves the test run.
    """
    return Settings(
        app_env="testing",
        app_debug=True,
        app_log_level="WARNING",  # Reduce noise in tests
        cache_backend="memory",
        durable_backend="memory",
        generator_backend="dummy",
        transport_backend="dummy",
        session_cleanup_interval_seconds=3600,
    )


# =============================================================================
# Failing Collaborators
# =============================================================================

class FailingCache:
    """Cache tier that is always down."""

    async def get(self, key):
        raise CacheError("cache down")

    async def set_with_ttl(self, key, value, ttl_seconds):
        raise CacheError("cache down")

    async def delete(self, key):
        raise CacheError("cache down")

    async def ping(self):
        return False

    async def close(self):
        return None


class FailingDurableStore:
    """Durable store that is always down."""

    async def connect(self):
        return None

    async def get(self, user_id):
        raise DurableStoreError("db down")

    async def upsert(self, user_id, fields):
        raise DurableStoreError("db down")

    async def insert(self, table, record):
        raise DurableStoreError("db down")

    async def query(self, table, filters=None, order_by=None, descending=False, limit=None):
        raise DurableStoreError("db down")

    async def update(self, table, record_id, fields):
        raise DurableStoreError("db down")

    async def ping(self):
        return False

    async def close(self):
        return None


class FailingGenerator:
    """Generator whose every call raises."""

    def __init__(self):
        self.call_count = 0

    @property
    def generator_id(self) -> str:
        return "failing-generator"

    async def generate(self, message: str, context: ContextSnapshot) -> GenerationResult:
        self.call_count += 1
        raise GenerationError("upstream timeout")

    async def close(self):
        return None


class RecordingTransport:
    """
    Transport that fails the first `fail_first` sends.

    `raise_errors` selects between raising TransportError and returning an
    unsuccessful SendResult.
    """

    def __init__(self, fail_first: int = 1, raise_errors: bool = False):
        self.fail_first = fail_first
        self.raise_errors = raise_errors
        self.attempts: List[str] = []
        self.delivered: List[str] = []

    @property
    def transport_id(self) -> str:
        return "recording-transport"

    async def send(self, to: str, text: str) -> SendResult:
        self.attempts.append(text)
        if len(self.attempts) <= self.fail_first:
            if self.raise_errors:
                raise TransportError("carrier rejected")
            return SendResult(success=False, status="failed", error="carrier rejected")
        self.delivered.append(text)
        return SendResult(success=True, message_id=f"SM{len(self.attempts)}", status="queued")


# =============================================================================
# Storage Fixtures
# =============================================================================

@pytest.fixture
def cache() -> InMemoryCache:
    return InMemoryCache()


@pytest.fixture
def durable() -> InMemoryDurableStore:
    return InMemoryDurableStore()


@pytest.fixture
def memory(durable: InMemoryDurableStore) -> ConversationMemory:
    return ConversationMemory(durable)


@pytest.fixture
def session_store(cache: InMemoryCache, durable: InMemoryDurableStore) -> SessionStore:
    """Session store over healthy in-memory tiers."""
    return SessionStore(cache=cache, durable=durable, cleanup_interval_seconds=3600)


# =============================================================================
# Collaborator Fixtures
# =============================================================================

@pytest.fixture
def generator() -> DummyResponseGenerator:
    return DummyResponseGenerator()


@pytest.fixture
def transport() -> DummyTransport:
    return DummyTransport()


# =============================================================================
# Orchestrator Fixtures
# =============================================================================

@pytest.fixture
def orchestrator(
    session_store: SessionStore,
    memory: ConversationMemory,
    generator: DummyResponseGenerator,
    transport: DummyTransport,
    cache: InMemoryCache,
) -> ConversationOrchestrator:
    """
    Create a test orchestrator with in-memory storage and dummy services.

    Fully functional, but nothing is sent and no external service is called.
    """
    return ConversationOrchestrator(
        sessions=session_store,
        memory=memory,
        generator=generator,
        transport=transport,
        cache=cache,
    )


@pytest.fixture
def orchestrator_failing_generator(
    session_store: SessionStore,
    memory: ConversationMemory,
    transport: DummyTransport,
    cache: InMemoryCache,
) -> ConversationOrchestrator:
    """Orchestrator whose generator always raises."""
    return ConversationOrchestrator(
        sessions=session_store,
        memory=memory,
        generator=FailingGenerator(),
        transport=transport,
        cache=cache,
    )


# =============================================================================
# Sample Data Fixtures
# =============================================================================

@pytest.fixture
def low_risk_messages() -> List[str]:
    """Messages that should never reach the crisis branch."""
    return [
        "I had a good day today",
        "School is stressing me out a little",
        "Thanks for listening, I feel better now.",
        "My mom and I got into an argument",
    ]


@pytest.fixture
def high_risk_messages() -> List[str]:
    """Messages that must be assessed high or critical."""
    return [
        "I want to kill myself",
        "I want to die tonight",
        "he hits me and I want to hurt myself tonight",
        "I have a plan to end my life",
    ]


# =============================================================================
# FastAPI App Fixture
# =============================================================================

@pytest.fixture
def app(test_settings: Settings, orchestrator: ConversationOrchestrator):
    """Create a FastAPI app instance wired to the test orchestrator."""
    # main builds its module-level app on import
    from main import create_app

    return create_app(settings=test_settings, orchestrator=orchestrator)


@pytest.fixture
def client(app) -> Generator[TestClient, None, None]:
    """Create a test client for the FastAPI app."""
    with TestClient(app) as c:
        yield c
