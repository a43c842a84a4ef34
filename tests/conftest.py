"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import pytest
from langgraph.checkpoint.memory import InMemorySaver
from sqlalchemy import create_engine

from config import Settings
from database import create_session_factory
from fakes import RoutedAuxModel, ScriptedChatModel, counting_search_tool, make_store
from models import Base
from services.auth import InsecureLocalVerifier
from services.container import build_services
from services.moderation import KeywordClassifier, ModerationGate


@pytest.fixture(scope="function")
def session_factory(tmp_path):
    """Fresh SQLite database file; each worker thread gets its own connection."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'chat.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    yield create_session_factory(engine)
    engine.dispose()


@pytest.fixture(scope="function")
def settings() -> Settings:
    return Settings(auth_mode="insecure-local", moderation_provider="keyword", model_timeout_seconds=5.0)


@pytest.fixture(scope="function")
def memory_store():
    return make_store()


@pytest.fixture(scope="function")
def chat_model() -> ScriptedChatModel:
    return ScriptedChatModel()


@pytest.fixture(scope="function")
def aux_model() -> RoutedAuxModel:
    return RoutedAuxModel()


@pytest.fixture(scope="function")
def search_calls() -> list:
    return []


@pytest.fixture(scope="function")
def make_services(session_factory, memory_store, chat_model, aux_model, search_calls, settings):
    """Build the full service graph over fakes; keyword arguments override collaborators."""

    def _make(settings_override: Settings | None = None, **overrides):
        collaborators = dict(
            session_factory=session_factory,
            checkpointer=InMemorySaver(),
            store=memory_store,
            chat_model=chat_model,
            aux_model=aux_model,
            search_tool=counting_search_tool(search_calls),
            verifier=InsecureLocalVerifier(),
            moderation=ModerationGate(KeywordClassifier()),
        )
        collaborators.update(overrides)
        return build_services(settings_override or settings, **collaborators)

    return _make
