"""Long-term memory retrieval before generation and extraction after it."""
import asyncio
import json
import logging
import re
from typing import List, Optional, Sequence

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage

from models.threads import utcnow
from schemas.memory import MemoryHit, MemoryItem, MemoryKind
from services.content import content_text
from services.memory_store import MemoryStoreClient

logger = logging.getLogger(__name__)

CONTEXT_HEADER = "Long-term memory about this user. Use it only when it is relevant to the request."
FACTS_HEADER = "Known facts:"
HINTS_HEADER = "Hints from earlier conversations:"

FACT_EXTRACTION_PROMPT = """You extract durable facts about a user from their chat message.
Return a JSON array of at most {limit} short strings. Each string is one stable fact or
preference about the user stated or clearly implied by the message, written in the third
person (for example "The user's name is Sam"). Return [] when there is nothing durable."""

SUMMARY_PROMPT = """Summarize the exchange below in one sentence of at most 30 words,
written in the past tense from the assistant's point of view. Return only that sentence."""

MAX_SUMMARY_CHARS = 300


def _score(hit: MemoryHit) -> float:
    return hit.score if hit.score is not None else 0.0


def _one_line(text: str) -> str:
    return " ".join(text.split())


def _render(facts: Sequence[MemoryHit], hints: Sequence[MemoryHit]) -> Optional[str]:
    if not facts and not hints:
        return None
    lines = [CONTEXT_HEADER]
    if facts:
        lines.append(FACTS_HEADER)
        lines.extend(f"- {_one_line(hit.text)}" for hit in facts)
    if hints:
        lines.append(HINTS_HEADER)
        lines.extend(f"- {_one_line(hit.text)}" for hit in hints)
    return "\n".join(lines)


def render_context_block(
    user_hits: Sequence[MemoryHit],
    episodic_hits: Sequence[MemoryHit],
    max_chars: Optional[int],
) -> Optional[str]:
    """
    Render memories as one compact block, or None when there is nothing to say.

    Facts and episodic hints are listed as separate groups, each sorted by
    descending score. While the block is longer than `max_chars` the
    lowest-scored remaining item is dropped (episodic first on ties), so a
    capped block is always a subset of the uncapped one.
    """
    facts = sorted(user_hits, key=_score, reverse=True)
    hints = sorted(episodic_hits, key=_score, reverse=True)

    block = _render(facts, hints)
    if max_chars is None:
        return block

    while block is not None and len(block) > max_chars:
        if hints and (not facts or _score(hints[-1]) <= _score(facts[-1])):
            hints.pop()
        else:
            facts.pop()
        block = _render(facts, hints)
    return block


def parse_fact_list(raw: str, limit: int) -> List[str]:
    """Parse the fact extractor's reply into at most `limit` distinct facts."""
    text = raw.strip()
    fenced = re.match(r"^```(?:json)?\s*(.*?)\s*```$", text, re.DOTALL)
    if fenced:
        text = fenced.group(1)

    try:
        parsed = json.loads(text)
        candidates = parsed if isinstance(parsed, list) else []
    except json.JSONDecodeError:
        candidates = [line.lstrip("-*• ").strip() for line in text.splitlines()]

    facts: List[str] = []
    for candidate in candidates:
        if not isinstance(candidate, str):
            continue
        fact = _one_line(candidate)
        if fact and fact not in facts:
            facts.append(fact)
        if len(facts) >= limit:
            break
    return facts


class MemoryOrchestrator:
    """
    Two-tier long-term memory around a turn.

    `retrieve` runs before generation and blocks it; `write` runs after the
    reply and never raises, so a memory failure cannot affect the turn.
    """

    def __init__(
        self,
        client: MemoryStoreClient,
        aux_model: BaseChatModel,
        k_user: int = 4,
        k_episodic: int = 4,
        max_chars: int = 900,
        max_user_facts: int = 3,
    ):
        self.client = client
        self.aux_model = aux_model
        self.k_user = k_user
        self.k_episodic = k_episodic
        self.max_chars = max_chars
        self.max_user_facts = max_user_facts

    async def retrieve(self, user_id: str, query: str) -> Optional[str]:
        """Return the rendered memory block for this user and message, if any."""
        user_hits, episodic_hits = await asyncio.gather(
            self.client.search(user_id, MemoryKind.USER, query, self.k_user),
            self.client.search(user_id, MemoryKind.EPISODIC, query, self.k_episodic),
        )
        logger.info(f"Retrieved {len(user_hits)} user and {len(episodic_hits)} episodic memories for user {user_id}")
        return render_context_block(user_hits, episodic_hits, self.max_chars)

    async def extract_facts(self, user_message: str) -> List[str]:
        response = await self.aux_model.ainvoke([
            SystemMessage(content=FACT_EXTRACTION_PROMPT.format(limit=self.max_user_facts)),
            HumanMessage(content=user_message),
        ])
        return parse_fact_list(content_text(response.content), self.max_user_facts)

    async def summarize(self, user_message: str, assistant_reply: str) -> Optional[str]:
        response = await self.aux_model.ainvoke([
            SystemMessage(content=SUMMARY_PROMPT),
            HumanMessage(content=f"User: {user_message}\nAssistant: {assistant_reply}"),
        ])
        lines = [line.strip() for line in content_text(response.content).splitlines() if line.strip()]
        if not lines:
            return None
        return lines[0][:MAX_SUMMARY_CHARS]

    async def _store(self, user_id: str, thread_id: str, kind: MemoryKind, text: str) -> bool:
        item = MemoryItem(text=text, kind=kind, user_id=user_id, source_thread=thread_id, created_at=utcnow())
        try:
            await self.client.put(item)
            return True
        except Exception as e:
            logger.error(f"Failed to store {kind.value} memory for user {user_id}: {e}")
            return False

    async def write(self, user_id: str, thread_id: str, user_message: str, assistant_reply: str) -> int:
        """Extract and store new memories; returns how many items were stored."""
        facts_result, summary_result = await asyncio.gather(
            self.extract_facts(user_message),
            self.summarize(user_message, assistant_reply),
            return_exceptions=True,
        )

        stored = 0
        if isinstance(facts_result, BaseException):
            logger.error(f"Fact extraction failed for user {user_id}: {facts_result}")
        else:
            for fact in facts_result:
                stored += await self._store(user_id, thread_id, MemoryKind.USER, fact)

        if isinstance(summary_result, BaseException):
            logger.error(f"Exchange summary failed for user {user_id}: {summary_result}")
        elif summary_result:
            stored += await self._store(user_id, thread_id, MemoryKind.EPISODIC, summary_result)

        logger.info(f"Stored {stored} new memories for user {user_id} from thread {thread_id}")
        return stored
