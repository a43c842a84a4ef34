"""Thin client over a LangGraph key/namespace store with semantic search."""
import asyncio
import logging
from typing import List, Optional, Tuple
from uuid import uuid4

from langgraph.store.base import BaseStore
from psycopg import OperationalError

from schemas.memory import MemoryHit, MemoryItem, MemoryKind
from services.errors import UpstreamError

logger = logging.getLogger(__name__)

NAMESPACE_ROOT = "memories"

TRANSIENT_ERRORS = (ConnectionError, TimeoutError, OSError, OperationalError)


def _namespace_label(value: str) -> str:
    # Store namespace labels may not contain periods.
    return value.replace("%", "%25").replace(".", "%2E")


def memory_namespace(user_id: str, kind: MemoryKind) -> Tuple[str, ...]:
    """Namespace holding one user's memories of one kind."""
    return (NAMESPACE_ROOT, _namespace_label(user_id), kind.value)


class MemoryStoreClient:
    """
    Search and append long-term memories, always scoped to one user.

    Writes never update in place: each item gets a fresh key, and a transport
    retry reuses that key so a retried write cannot create a second copy.
    """

    def __init__(self, store: BaseStore, put_attempts: int = 3, retry_delay: float = 0.2):
        self.store = store
        self.put_attempts = max(1, put_attempts)
        self.retry_delay = retry_delay

    async def search(self, user_id: str, kind: MemoryKind, query: str, limit: int) -> List[MemoryHit]:
        """Return up to `limit` memories ranked by relevance, highest first."""
        if limit <= 0:
            return []
        namespace = memory_namespace(user_id, kind)
        try:
            items = await self.store.asearch(namespace, query=query, limit=limit)
        except Exception as e:
            raise UpstreamError(f"memory search failed for {namespace}: {e}") from e

        hits = [
            MemoryHit(key=item.key, text=item.value["text"], kind=kind, score=item.score)
            for item in items
            if tuple(item.namespace) == namespace and item.value.get("text")
        ]
        hits.sort(key=lambda hit: hit.score if hit.score is not None else 0.0, reverse=True)
        return hits[:limit]

    async def put(self, item: MemoryItem, key: Optional[str] = None) -> str:
        """Store a new memory item and return its key."""
        key = key or uuid4().hex
        namespace = memory_namespace(item.user_id, item.kind)
        value = item.model_dump(mode="json")

        for attempt in range(1, self.put_attempts):
            try:
                await self.store.aput(namespace, key, value, index=["text"])
                return key
            except TRANSIENT_ERRORS as e:
                logger.warning(f"Memory write attempt {attempt} to {namespace} failed, retrying: {e}")
                await asyncio.sleep(self.retry_delay * attempt)

        try:
            await self.store.aput(namespace, key, value, index=["text"])
        except TRANSIENT_ERRORS as e:
            raise UpstreamError(f"memory write failed after {self.put_attempts} attempts: {e}") from e
        return key

    async def list_items(self, user_id: str, kind: MemoryKind, limit: int = 100) -> List[MemoryHit]:
        """List a user's memories of one kind without ranking."""
        namespace = memory_namespace(user_id, kind)
        items = await self.store.asearch(namespace, limit=limit)
        return [
            MemoryHit(key=item.key, text=item.value["text"], kind=kind, score=item.score)
            for item in items
            if tuple(item.namespace) == namespace
        ]
