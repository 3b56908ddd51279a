"""
tests/conftest.py

Shared fixtures for the Tasseo test suite.

Everything runs against in-memory fakes (tests/fakes.py): no store, no bot
platform and no model provider is contacted. Retry policies use NO_DELAY so
in-attempt retries do not sleep.
"""

from __future__ import annotations

from uuid import UUID, uuid4

import pytest

from tasseo.config import Settings, reset_settings
from tasseo.core.retry import NO_DELAY
from tasseo.models import AnalysisStatus, Facet
from tasseo.repositories.analyses import ANALYSIS_TABLE, AnalysisRepository, ChatHistoryRepository
from tasseo.services.ledger import CreditLedger
from tasseo.services.sessions import SessionService
from tasseo.services.validation_gate import ValidationGate
from tasseo.workers.pipeline import AnalysisPipeline
from tests.fakes import (
    FakeInvalidSlots,
    FakeLedgerStore,
    FakeSupabaseClient,
    RecordingTransport,
    ScriptedClassifier,
    ScriptedInterpreter,
    ScriptedWriter,
)

IDENTITY = 424242
CHAT_ID = 424242
PLACEHOLDER_ID = 77


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "integration: marks tests as requiring external services (Supabase, Telegram, OpenRouter)",
    )


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch):
    monkeypatch.setenv("ENV_FILE", "/nonexistent/.env")
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        SUPABASE_URL="https://example.supabase.co",
        SUPABASE_SERVICE_ROLE_KEY="service-role-key",
        TELEGRAM_BOT_TOKEN="123:abc",
        OPENROUTER_API_KEY="or-key",
        REJECTION_CONFIDENCE_THRESHOLD=0.8,
        MAX_DAILY_INVALID_RESPONSES=5,
        QUEUE_MAX_ATTEMPTS=4,
        RETRY_MAX_ATTEMPTS=3,
        RETRY_BASE_DELAY_SECONDS=0.0,
        RETRY_MAX_DELAY_SECONDS=0.0,
    )


@pytest.fixture
def supabase() -> FakeSupabaseClient:
    return FakeSupabaseClient()


@pytest.fixture
def ledger_store(supabase) -> FakeLedgerStore:
    return FakeLedgerStore(supabase)


@pytest.fixture
def invalid_slots(supabase) -> FakeInvalidSlots:
    return FakeInvalidSlots(supabase)


@pytest.fixture
def ledger(supabase, ledger_store, settings) -> CreditLedger:
    return CreditLedger(supabase, settings=settings, retry_policy=NO_DELAY)


@pytest.fixture
def repository(supabase) -> AnalysisRepository:
    return AnalysisRepository(supabase)


@pytest.fixture
def chat_history(supabase) -> ChatHistoryRepository:
    return ChatHistoryRepository(supabase)


@pytest.fixture
def sessions(repository) -> SessionService:
    return SessionService(repository)


@pytest.fixture
def writer() -> ScriptedWriter:
    return ScriptedWriter()


@pytest.fixture
def gate(writer, supabase, invalid_slots, settings) -> ValidationGate:
    return ValidationGate(writer, supabase, settings=settings, retry_policy=NO_DELAY)


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def interpreter() -> ScriptedInterpreter:
    return ScriptedInterpreter()


@pytest.fixture
def classifier() -> ScriptedClassifier:
    return ScriptedClassifier()


@pytest.fixture
def pipeline(ledger, gate, sessions, repository, interpreter, classifier, transport, chat_history, settings):
    return AnalysisPipeline(
        ledger=ledger,
        gate=gate,
        sessions=sessions,
        repository=repository,
        interpreter=interpreter,
        classifier=classifier,
        transport=transport,
        chat_history=chat_history,
        settings=settings,
        retry_policy=NO_DELAY,
    )


def seed_record(
    supabase: FakeSupabaseClient,
    *,
    identity: int = IDENTITY,
    facet: str = Facet.LOVE.value,
    status: AnalysisStatus = AnalysisStatus.COMPLETED,
    group: UUID | None = None,
    vision_result: dict | None = None,
    persona: str = "arina",
) -> UUID:
    """Insert an analysis_history row directly and return its id."""
    record_id = uuid4()
    supabase.tables.setdefault(ANALYSIS_TABLE, []).append(
        {
            "id": str(record_id),
            "telegram_user_id": identity,
            "persona": persona,
            "topic": facet,
            "analysis_type": "photo",
            "status": status.value,
            "session_group_id": str(group) if group else None,
            "vision_result": vision_result
            if vision_result is not None
            else {"description": "a bird near the rim", "symbols": ["bird"], "tokens_used": 50},
            "seq": 0,
        }
    )
    return record_id
