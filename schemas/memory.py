"""Schemas for long-term memory items."""
from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field


class MemoryKind(str, Enum):
    """Long-term memory namespaces kept per user."""
    USER = "user"          # durable facts and preferences
    EPISODIC = "episodic"  # one-line summaries of past exchanges


class MemoryItem(BaseModel):
    """A write-once long-term memory entry."""
    text: str = Field(..., min_length=1)
    kind: MemoryKind
    user_id: str
    source_thread: str
    created_at: datetime


class MemoryHit(BaseModel):
    """A memory returned by semantic search."""
    key: str
    text: str
    kind: MemoryKind
    score: Optional[float] = None
