"""Schemas for durable transcript records."""
from datetime import datetime
from enum import Enum
from typing import List
from pydantic import BaseModel, Field


class TranscriptRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class TranscriptRecord(BaseModel):
    """One message in a thread transcript."""
    role: TranscriptRole
    content: str
    timestamp: datetime
    incomplete: bool = Field(default=False, description="Set when the turn was interrupted before completion")


class TranscriptResponse(BaseModel):
    thread_id: str
    messages: List[TranscriptRecord]
