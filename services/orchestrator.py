"""Coordination of one chat turn from moderation to the terminal stream event."""
import asyncio
from contextlib import aclosing
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol

from langchain_core.messages import AIMessage, HumanMessage

from dtos.chat_request import ChatRequest
from graph import RESPONDING_NODES
from schemas.events import StreamEvent
from schemas.transcripts import TranscriptRole
from services.content import content_text
from services.errors import ModerationBlocked, ModerationUnavailable, UpstreamError
from services.locks import KeyedLocks
from services.memory import MemoryOrchestrator
from services.moderation import ModerationGate
from services.streaming import StreamEmitter
from services.threads import ThreadResolver
from services.tool_binding import ToolBindingSelector
from services.transcripts import TranscriptWriter

logger = logging.getLogger(__name__)


class MemoryWriter(Protocol):
    def dispatch(self, user_id: str, thread_id: str, user_message: str, assistant_reply: str) -> None:
        ...


@dataclass
class PreparedTurn:
    """Outcome of the checks that run before a stream is opened."""
    user_id: str
    request: ChatRequest
    thread_id: Optional[str] = None
    blocked_reason: Optional[str] = None
    moderation_unavailable: bool = False


_END = object()


@dataclass
class _Failure:
    error: BaseException


class TurnOrchestrator:
    """
    Run a turn: input moderation, thread resolution, memory retrieval,
    tool binding, model streaming, output moderation, transcript and
    best-effort memory writes.

    `open_turn` does everything that may reject the request before a stream
    opens (Forbidden). `stream` then yields the turn's events and always ends
    with exactly one `done`. Turns on the same thread are serialized; turns on
    different threads share nothing.
    """

    def __init__(
        self,
        *,
        moderation: ModerationGate,
        threads: ThreadResolver,
        transcripts: TranscriptWriter,
        memory: MemoryOrchestrator,
        memory_writer: MemoryWriter,
        selector: ToolBindingSelector,
        graph: Any,
        model_timeout: float = 120.0,
    ):
        self.moderation = moderation
        self.threads = threads
        self.transcripts = transcripts
        self.memory = memory
        self.memory_writer = memory_writer
        self.selector = selector
        self.graph = graph
        self.model_timeout = model_timeout
        self._thread_locks = KeyedLocks()

    async def open_turn(self, user_id: str, request: ChatRequest) -> PreparedTurn:
        try:
            await self.moderation.check(request.message, stage="input")
        except ModerationBlocked as blocked:
            logger.info(f"Input from user {user_id} blocked by moderation: {blocked.reason}")
            return PreparedTurn(user_id, request, thread_id=request.thread_id, blocked_reason=blocked.reason)
        except ModerationUnavailable:
            return PreparedTurn(user_id, request, thread_id=request.thread_id, moderation_unavailable=True)

        thread_id = await self.threads.resolve(user_id, request.thread_id)
        return PreparedTurn(user_id, request, thread_id=thread_id)

    async def stream(self, turn: PreparedTurn) -> AsyncIterator[StreamEvent]:
        emitter = StreamEmitter(turn.thread_id)

        if turn.blocked_reason is not None:
            for event in emitter.block(turn.blocked_reason):
                yield event
            return

        if turn.moderation_unavailable:
            for event in emitter.fail(ModerationUnavailable.public_message):
                yield event
            return

        async with self._thread_locks.hold(turn.thread_id):
            try:
                async with aclosing(self._run(turn, emitter)) as events:
                    async for event in events:
                        yield event
            except Exception:
                logger.exception(f"Unexpected failure in turn on thread {turn.thread_id}")
                if not emitter.finished:
                    for event in emitter.fail(UpstreamError.public_message):
                        yield event

    async def _run(self, turn: PreparedTurn, emitter: StreamEmitter) -> AsyncIterator[StreamEvent]:
        user_id, thread_id, request = turn.user_id, turn.thread_id, turn.request
        logger.info(f"Turn started for user {user_id} on thread {thread_id} (tool_flag={request.tool_flag})")

        try:
            await asyncio.to_thread(
                self.transcripts.append_message, thread_id, user_id, TranscriptRole.USER, request.message
            )
            context_block = await self.memory.retrieve(user_id, request.message)
        except Exception as e:
            logger.error(f"Turn setup failed for thread {thread_id}: {e!r}")
            for event in emitter.fail(UpstreamError.public_message):
                yield event
            return

        binding = self.selector.select(request.tool_flag)
        inputs = {
            "messages": [HumanMessage(content=request.message)],
            "context_block": context_block,
            "attachments_context": request.attachments_context,
            "system_tip": self.selector.system_tip(binding),
            "tools_bound": binding.tools_bound,
            "forcing": binding.forcing.value,
        }
        config = {"configurable": {"thread_id": thread_id, "user_id": user_id}}

        parts: List[str] = []
        assistant_recorded = False
        emitter.start()
        try:
            try:
                async with aclosing(self._relay_tokens(inputs, config)) as tokens:
                    async for text in tokens:
                        parts.append(text)
                        yield emitter.token(text)
            except Exception as e:
                if isinstance(e, asyncio.TimeoutError):
                    logger.error(f"Model invocation timed out after {self.model_timeout}s on thread {thread_id}")
                else:
                    logger.error(f"Model invocation failed on thread {thread_id}: {e!r}")
                assistant_recorded = True
                await self._record_assistant(thread_id, user_id, "".join(parts), incomplete=True)
                for event in emitter.fail(UpstreamError.public_message):
                    yield event
                return

            reply = "".join(parts)
            flagged = False
            try:
                await self.moderation.check(reply, stage="output")
            except ModerationBlocked as blocked:
                flagged = True
                logger.info(f"Reply on thread {thread_id} flagged by moderation: {blocked.reason}")
                yield emitter.output_notice(blocked.reason)
            except ModerationUnavailable:
                assistant_recorded = True
                await self._record_assistant(thread_id, user_id, reply)
                for event in emitter.fail(ModerationUnavailable.public_message):
                    yield event
                return

            assistant_recorded = True
            await self._record_assistant(thread_id, user_id, reply)

            if reply and not flagged:
                self.memory_writer.dispatch(user_id, thread_id, request.message, reply)

            logger.info(f"Turn completed on thread {thread_id} ({len(parts)} tokens)")
            yield emitter.complete()
        finally:
            if not assistant_recorded:
                logger.warning(f"Turn on thread {thread_id} interrupted after {len(parts)} tokens")
                # Written inline: after a disconnect the task is cancelled and cannot await.
                try:
                    self.transcripts.append_message(
                        thread_id, user_id, TranscriptRole.ASSISTANT, "".join(parts), incomplete=True
                    )
                except Exception as e:
                    logger.error(f"Could not record interrupted turn on thread {thread_id}: {e!r}")

    async def _record_assistant(self, thread_id: str, user_id: str, content: str, incomplete: bool = False) -> None:
        await asyncio.to_thread(
            self.transcripts.append_message,
            thread_id, user_id, TranscriptRole.ASSISTANT, content, incomplete=incomplete,
        )

    async def _relay_tokens(self, inputs: Dict[str, Any], config: Dict[str, Any]) -> AsyncIterator[str]:
        """
        Yield reply text as the graph streams it, under the turn-level timeout.

        The graph runs in its own task and hands tokens over through a queue,
        so a timeout or a client disconnect cancels the model call promptly.
        """
        queue: asyncio.Queue = asyncio.Queue()

        async def produce() -> None:
            try:
                async for chunk, metadata in self.graph.astream(inputs, config, stream_mode="messages"):
                    if metadata.get("langgraph_node") not in RESPONDING_NODES:
                        continue
                    if not isinstance(chunk, AIMessage):
                        continue
                    text = content_text(chunk.content)
                    if text:
                        queue.put_nowait(text)
                queue.put_nowait(_END)
            except Exception as e:
                queue.put_nowait(_Failure(e))

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.model_timeout
        producer = asyncio.create_task(produce())
        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise asyncio.TimeoutError()
                item = await asyncio.wait_for(queue.get(), remaining)
                if item is _END:
                    return
                if isinstance(item, _Failure):
                    raise item.error
                yield item
        finally:
            if not producer.done():
                producer.cancel()
                await asyncio.gather(producer, return_exceptions=True)
