"""Wiring of the turn orchestrator and its collaborators."""
import logging
from dataclasses import dataclass
from typing import Any, Optional

from langchain.chat_models import init_chat_model
from langchain_core.language_models import BaseChatModel
from langchain_core.tools import BaseTool
from langgraph.checkpoint.base import BaseCheckpointSaver
from langgraph.store.base import BaseStore

from config import Settings
from database import SessionFactory
from graph import build_chat_graph
from services.auth import build_verifier
from services.background import BackgroundWork
from services.memory_tasks import CeleryMemoryWriter, InlineMemoryWriter, build_aux_model, build_memory_orchestrator
from services.moderation import ModerationGate, build_moderation_gate
from services.orchestrator import TurnOrchestrator
from services.threads import ThreadResolver
from services.tool_binding import ToolBindingSelector, ToolForcing
from services.transcripts import TranscriptWriter
from services.web_search import build_web_search_tool

logger = logging.getLogger(__name__)


@dataclass
class AppServices:
    settings: Settings
    session_factory: SessionFactory
    verifier: Any
    orchestrator: TurnOrchestrator
    transcripts: TranscriptWriter
    graph: Any
    background: BackgroundWork

    async def aclose(self, drain_timeout: float = 10.0) -> None:
        await self.background.drain(timeout=drain_timeout)
        await self.verifier.aclose()


def build_services(
    settings: Settings,
    *,
    session_factory: SessionFactory,
    checkpointer: BaseCheckpointSaver,
    store: BaseStore,
    chat_model: Optional[BaseChatModel] = None,
    aux_model: Optional[BaseChatModel] = None,
    search_tool: Optional[BaseTool] = None,
    verifier: Any = None,
    moderation: Optional[ModerationGate] = None,
) -> AppServices:
    """Build every collaborator from settings; any of them can be passed in instead."""
    chat_model = chat_model or init_chat_model(settings.chat_model, streaming=True)
    aux_model = aux_model or build_aux_model(settings)
    search_tool = search_tool or build_web_search_tool()
    verifier = verifier or build_verifier(settings)
    moderation = moderation or build_moderation_gate(settings)

    graph = build_chat_graph(chat_model, search_tool).compile(checkpointer=checkpointer)
    background = BackgroundWork()
    memory = build_memory_orchestrator(settings, store, aux_model)
    if settings.memory_write_mode == "celery":
        memory_writer = CeleryMemoryWriter(background)
    else:
        memory_writer = InlineMemoryWriter(memory, background)
    transcripts = TranscriptWriter(session_factory)

    orchestrator = TurnOrchestrator(
        moderation=moderation,
        threads=ThreadResolver(session_factory),
        transcripts=transcripts,
        memory=memory,
        memory_writer=memory_writer,
        selector=ToolBindingSelector(ToolForcing(settings.tool_forcing)),
        graph=graph,
        model_timeout=settings.model_timeout_seconds,
    )
    logger.info(
        f"Services ready (auth={settings.auth_mode}, moderation={settings.moderation_provider}, "
        f"memory_writes={settings.memory_write_mode}, tool_forcing={settings.tool_forcing})"
    )
    return AppServices(
        settings=settings,
        session_factory=session_factory,
        verifier=verifier,
        orchestrator=orchestrator,
        transcripts=transcripts,
        graph=graph,
        background=background,
    )
