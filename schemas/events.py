"""Stream event models sent to clients over Server-Sent Events."""
from enum import Enum
from typing import Literal, Optional, Union
from pydantic import BaseModel


class EventType(str, Enum):
    """Closed set of stream event kinds."""
    TOKEN = "token"
    POLICY = "policy"
    ERROR = "error"
    DONE = "done"


class TokenEvent(BaseModel):
    """A fragment of assistant output."""
    type: Literal[EventType.TOKEN] = EventType.TOKEN
    text: str


class PolicyEvent(BaseModel):
    """A moderation notice; `stage` tells whether input or output was flagged."""
    type: Literal[EventType.POLICY] = EventType.POLICY
    stage: Literal["input", "output"]
    reason: str


class ErrorEvent(BaseModel):
    """A client-safe error notice."""
    type: Literal[EventType.ERROR] = EventType.ERROR
    message: str


class DoneEvent(BaseModel):
    """Terminal marker; always the last event of a stream."""
    type: Literal[EventType.DONE] = EventType.DONE
    thread_id: Optional[str] = None
    status: Literal["completed", "failed"] = "completed"


StreamEvent = Union[TokenEvent, PolicyEvent, ErrorEvent, DoneEvent]
