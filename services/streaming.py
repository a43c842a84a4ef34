"""Stream event state machine and Server-Sent Events framing."""
import logging
from enum import Enum
from typing import AsyncIterator, List, Optional

from schemas.events import DoneEvent, ErrorEvent, PolicyEvent, StreamEvent, TokenEvent

logger = logging.getLogger(__name__)


class EmitterState(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"


class StreamEmitter:
    """
    Produce the ordered events of one turn.

    Idle -> Streaming -> Completed | Failed, plus Idle -> Completed for an
    input block and Idle -> Failed for errors before any token. Every
    terminal transition yields exactly one `done` event; nothing can be
    emitted after it.
    """

    def __init__(self, thread_id: Optional[str] = None):
        self.thread_id = thread_id
        self.state = EmitterState.IDLE

    @property
    def finished(self) -> bool:
        return self.state in (EmitterState.COMPLETED, EmitterState.FAILED)

    def _require(self, *states: EmitterState) -> None:
        if self.state not in states:
            raise RuntimeError(f"stream event not allowed in state {self.state.value}")

    def start(self) -> None:
        self._require(EmitterState.IDLE)
        self.state = EmitterState.STREAMING

    def token(self, text: str) -> TokenEvent:
        self._require(EmitterState.STREAMING)
        return TokenEvent(text=text)

    def block(self, reason: str) -> List[StreamEvent]:
        """Input was flagged: one policy event, then done, with no tokens."""
        self._require(EmitterState.IDLE)
        self.state = EmitterState.COMPLETED
        return [PolicyEvent(stage="input", reason=reason), self._done("completed")]

    def output_notice(self, reason: str) -> PolicyEvent:
        """Output was flagged after streaming; delivered tokens stay delivered."""
        self._require(EmitterState.STREAMING)
        return PolicyEvent(stage="output", reason=reason)

    def fail(self, message: str) -> List[StreamEvent]:
        self._require(EmitterState.IDLE, EmitterState.STREAMING)
        self.state = EmitterState.FAILED
        return [ErrorEvent(message=message), self._done("failed")]

    def complete(self) -> DoneEvent:
        self._require(EmitterState.STREAMING)
        self.state = EmitterState.COMPLETED
        return self._done("completed")

    def _done(self, status: str) -> DoneEvent:
        return DoneEvent(thread_id=self.thread_id, status=status)


def encode_sse(event: StreamEvent) -> str:
    """Frame one event as SSE: an `event:` line, one `data:` line per payload line, a blank line."""
    payload = event.model_dump_json(exclude={"type"})
    lines = [f"event: {event.type.value}"]
    lines.extend(f"data: {line}" for line in payload.splitlines() or [""])
    return "\n".join(lines) + "\n\n"


async def sse_stream(events: AsyncIterator[StreamEvent]) -> AsyncIterator[str]:
    async for event in events:
        yield encode_sse(event)
