"""Safety moderation gate for inbound messages and generated replies."""
import logging
from typing import Awaitable, Callable, Optional

from openai import AsyncOpenAI
from pydantic import BaseModel

from config import Settings
from services.errors import ModerationBlocked, ModerationUnavailable

logger = logging.getLogger(__name__)


class ModerationVerdict(BaseModel):
    """Result of one classification; never persisted."""
    flagged: bool
    reason: Optional[str] = None


Classifier = Callable[[str], Awaitable[ModerationVerdict]]


class OpenAIModerationClassifier:
    """Classify text with the OpenAI moderation endpoint."""

    def __init__(self, client: Optional[AsyncOpenAI] = None, model: str = "omni-moderation-latest"):
        self.client = client or AsyncOpenAI()
        self.model = model

    async def __call__(self, text: str) -> ModerationVerdict:
        response = await self.client.moderations.create(model=self.model, input=text)
        result = response.results[0]
        if not result.flagged:
            return ModerationVerdict(flagged=False)
        categories = result.categories.model_dump(by_alias=True)
        names = sorted(name for name, hit in categories.items() if hit)
        return ModerationVerdict(flagged=True, reason=", ".join(names) or "policy violation")


BLOCKED_PATTERNS = [
    "how to hack",
    "illegal access",
    "bypass authentication",
    "exploit live target",
    "break into account",
    "make a bomb",
    "build a weapon",
]

ALLOWED_THEORETICAL_PATTERNS = [
    "how does",
    "how do attacks work",
    "explain",
]


class KeywordClassifier:
    """
    Deterministic lexical classifier for local development.

    Allow-list patterns are checked before block-list patterns, so
    educational questions pass even when they mention a blocked phrase.
    """

    def __init__(self, blocked=None, allowed=None):
        self.blocked = [p.lower() for p in (blocked or BLOCKED_PATTERNS)]
        self.allowed = [p.lower() for p in (allowed or ALLOWED_THEORETICAL_PATTERNS)]

    async def __call__(self, text: str) -> ModerationVerdict:
        if not text:
            return ModerationVerdict(flagged=False)

        lowered = text.lower()
        if any(p in lowered for p in self.allowed):
            return ModerationVerdict(flagged=False)

        for pattern in self.blocked:
            if pattern in lowered:
                return ModerationVerdict(flagged=True, reason=f"matched blocked phrase '{pattern}'")

        return ModerationVerdict(flagged=False)


async def _never_flag(text: str) -> ModerationVerdict:
    return ModerationVerdict(flagged=False)


class ModerationGate:
    """
    Wrap a classifier with an explicit failure policy.

    With `fail_open=True` a classifier error is logged and treated as not
    flagged; otherwise it raises ModerationUnavailable.
    """

    def __init__(self, classifier: Classifier, fail_open: bool = False):
        self.classifier = classifier
        self.fail_open = fail_open

    async def classify(self, text: str) -> ModerationVerdict:
        try:
            return await self.classifier(text)
        except Exception as e:
            if self.fail_open:
                logger.warning(f"Moderation classifier failed, failing open: {e}")
                return ModerationVerdict(flagged=False)
            logger.error(f"Moderation classifier failed, failing closed: {e}")
            raise ModerationUnavailable(str(e)) from e

    async def check(self, text: str, stage: str = "input") -> None:
        """Raise ModerationBlocked when the text is flagged."""
        verdict = await self.classify(text)
        if verdict.flagged:
            raise ModerationBlocked(verdict.reason or "content policy", stage=stage)


def build_moderation_gate(settings: Settings) -> ModerationGate:
    """Build the gate for the configured provider."""
    if settings.moderation_provider == "openai":
        classifier = OpenAIModerationClassifier()
    elif settings.moderation_provider == "keyword":
        classifier = KeywordClassifier()
    else:
        logger.warning("Moderation is disabled (MODERATION_PROVIDER=none)")
        classifier = _never_flag
    return ModerationGate(classifier, fail_open=settings.moderation_fail_open)
