"""Dispatch of post-turn memory writes, in-process or through Celery."""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from langchain.chat_models import init_chat_model
from langchain_core.language_models import BaseChatModel
from langgraph.store.base import BaseStore
from langgraph.store.postgres.aio import AsyncPostgresStore

from celery_app import celery
from config import Settings
from database import libpq_conn_string
from services.background import BackgroundWork
from services.memory import MemoryOrchestrator
from services.memory_store import MemoryStoreClient

logger = logging.getLogger(__name__)


def store_index_config(settings: Settings) -> dict:
    return {"dims": settings.embedding_dims, "embed": settings.embedding_model, "fields": ["text"]}


@asynccontextmanager
async def open_memory_store(settings: Settings) -> AsyncIterator[BaseStore]:
    """Open the Postgres-backed memory store with its embedding index."""
    async with AsyncPostgresStore.from_conn_string(
        libpq_conn_string(settings.database_url),
        index=store_index_config(settings),
    ) as store:
        yield store


def build_aux_model(settings: Settings) -> BaseChatModel:
    return init_chat_model(settings.aux_model, temperature=0)


def build_memory_orchestrator(settings: Settings, store: BaseStore, aux_model: BaseChatModel) -> MemoryOrchestrator:
    return MemoryOrchestrator(
        MemoryStoreClient(store, put_attempts=settings.memory_put_attempts),
        aux_model,
        k_user=settings.memory_k_user,
        k_episodic=settings.memory_k_episodic,
        max_chars=settings.memory_max_chars,
        max_user_facts=settings.memory_max_user_facts,
    )


async def _write_memories(user_id: str, thread_id: str, user_message: str, assistant_reply: str) -> int:
    settings = Settings.from_env()
    async with open_memory_store(settings) as store:
        orchestrator = build_memory_orchestrator(settings, store, build_aux_model(settings))
        return await orchestrator.write(user_id, thread_id, user_message, assistant_reply)


@celery.task(name='write_memories', ignore_result=True)
def write_memories(user_id: str, thread_id: str, user_message: str, assistant_reply: str) -> int:
    """
    Celery task: extract and store long-term memories for one finished turn.

    Best-effort: failures are logged and the task reports zero stored items
    instead of retrying, so a retry can never duplicate memories.
    """
    try:
        return asyncio.run(_write_memories(user_id, thread_id, user_message, assistant_reply))
    except Exception as e:
        logger.error(f"Memory write task failed for user {user_id}, thread {thread_id}: {e}")
        return 0


class InlineMemoryWriter:
    """Run memory writes as background tasks in this process."""

    def __init__(self, memory: MemoryOrchestrator, background: BackgroundWork):
        self.memory = memory
        self.background = background

    def dispatch(self, user_id: str, thread_id: str, user_message: str, assistant_reply: str) -> None:
        self.background.submit(
            f"memory-write:{thread_id}",
            self.memory.write(user_id, thread_id, user_message, assistant_reply),
        )


class CeleryMemoryWriter:
    """Hand memory writes to a Celery worker; enqueueing happens off the event loop."""

    def __init__(self, background: BackgroundWork):
        self.background = background

    def dispatch(self, user_id: str, thread_id: str, user_message: str, assistant_reply: str) -> None:
        self.background.submit(
            f"memory-enqueue:{thread_id}",
            asyncio.to_thread(write_memories.delay, user_id, thread_id, user_message, assistant_reply),
        )
