from .threads import ThreadCreate, ThreadUpdate, ThreadResponse
from .auth import AuthenticatedUser, TokenClaims
from .transcripts import TranscriptRecord, TranscriptResponse, TranscriptRole
from .memory import MemoryItem, MemoryHit, MemoryKind
from .events import EventType, TokenEvent, PolicyEvent, ErrorEvent, DoneEvent, StreamEvent

__all__ = ["ThreadCreate", "ThreadUpdate", "ThreadResponse",
           "AuthenticatedUser", "TokenClaims",
           "TranscriptRecord", "TranscriptResponse", "TranscriptRole",
           "MemoryItem", "MemoryHit", "MemoryKind",
           "EventType", "TokenEvent", "PolicyEvent", "ErrorEvent", "DoneEvent", "StreamEvent"]
