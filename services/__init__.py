from .threads import ThreadService, ThreadResolver
from .transcripts import TranscriptWriter
from .auth import JWKSVerifier, InsecureLocalVerifier, build_verifier
from .moderation import ModerationGate, ModerationVerdict

__all__ = ["ThreadService", "ThreadResolver", "TranscriptWriter",
           "JWKSVerifier", "InsecureLocalVerifier", "build_verifier",
           "ModerationGate", "ModerationVerdict"]
