"""Failure taxonomy surfaced to callers.

Each error carries a `public_message` that is safe to show a client; internal
detail stays in the exception chain and in server logs.
"""


class OrchestratorError(Exception):
    """Base class for failures that end a request or a turn."""

    public_message = "The request could not be completed."

    def __init__(self, detail: str = ""):
        super().__init__(detail or self.public_message)
        self.detail = detail


class Unauthorized(OrchestratorError):
    public_message = "Could not validate credentials"


class Forbidden(OrchestratorError):
    public_message = "You do not have access to this thread"


class ModerationBlocked(OrchestratorError):
    public_message = "This message was blocked by the content policy."

    def __init__(self, reason: str, stage: str = "input"):
        super().__init__(reason)
        self.reason = reason
        self.stage = stage


class ModerationUnavailable(OrchestratorError):
    public_message = "Content moderation is unavailable right now. Please try again later."


class UpstreamError(OrchestratorError):
    public_message = "The assistant is unavailable right now. Please try again later."
