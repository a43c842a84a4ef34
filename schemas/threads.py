"""Pydantic schemas for thread-related requests and responses."""
import json
from datetime import datetime
from typing import Optional, Dict, Any
from pydantic import BaseModel, Field, ConfigDict, field_validator


class ThreadCreate(BaseModel):
    """Schema for creating a thread."""
    title: Optional[str] = Field(default="New Chat", max_length=255)
    metadata: Optional[Dict[str, Any]] = None


class ThreadUpdate(BaseModel):
    """Rename a thread or replace its metadata; omitted fields are left alone."""
    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    metadata: Optional[Dict[str, Any]] = None

    @field_validator("title")
    @classmethod
    def title_not_blank(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.strip():
            raise ValueError("title must not be blank")
        return value.strip() if value is not None else None


class ThreadResponse(BaseModel):
    """A live thread as returned to its owner."""
    id: str
    user_id: str
    title: Optional[str]
    metadata: Optional[Dict[str, Any]]
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @classmethod
    def from_thread(cls, thread) -> "ThreadResponse":
        """Build from a Thread row, decoding its JSON metadata column."""
        return cls(
            id=thread.id,
            user_id=thread.user_id,
            title=thread.title,
            metadata=json.loads(thread.thread_metadata) if thread.thread_metadata else None,
            created_at=thread.created_at,
            updated_at=thread.updated_at,
        )
