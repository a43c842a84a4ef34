"""Durable, append-only per-thread transcripts."""
import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from database import SessionFactory
from models.threads import Thread, utcnow
from models.transcripts import Transcript
from schemas.transcripts import TranscriptRecord, TranscriptRole
from services.errors import Forbidden

logger = logging.getLogger(__name__)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class TranscriptWriter:
    """
    Append user and assistant records to a thread's transcript.

    Each append reads the current record list, appends one record and writes
    the whole list back in a single transaction. Record timestamps are kept
    strictly increasing within a thread.
    """

    def __init__(self, session_factory: SessionFactory):
        self.session_factory = session_factory

    def append(self, thread_id: str, user_id: str, record: TranscriptRecord) -> TranscriptRecord:
        with self.session_factory() as db:
            transcript = db.get(Transcript, thread_id, with_for_update=True)
            if transcript is None:
                transcript = Transcript(thread_id=thread_id, user_id=user_id, messages=[])
                db.add(transcript)
            elif transcript.user_id != user_id:
                raise Forbidden(f"transcript {thread_id} is not owned by user {user_id}")

            messages = list(transcript.messages or [])
            timestamp = _as_utc(record.timestamp)
            if messages:
                last = _as_utc(TranscriptRecord.model_validate(messages[-1]).timestamp)
                if timestamp <= last:
                    timestamp = last + timedelta(microseconds=1)

            stored = record.model_copy(update={"timestamp": timestamp})
            messages.append(stored.model_dump(mode="json"))
            # Assign a new list so the JSON column is rewritten as a whole.
            transcript.messages = messages

            thread = db.get(Thread, thread_id)
            if thread is not None:
                thread.updated_at = utcnow()

            db.commit()

        logger.debug(f"Appended {stored.role.value} record to thread {thread_id} ({len(messages)} total)")
        return stored

    def append_message(
        self,
        thread_id: str,
        user_id: str,
        role: TranscriptRole,
        content: str,
        incomplete: bool = False,
    ) -> TranscriptRecord:
        record = TranscriptRecord(role=role, content=content, timestamp=utcnow(), incomplete=incomplete)
        return self.append(thread_id, user_id, record)

    def read(self, thread_id: str, user_id: Optional[str] = None) -> List[TranscriptRecord]:
        with self.session_factory() as db:
            transcript = db.get(Transcript, thread_id)
            if transcript is None:
                return []
            if user_id is not None and transcript.user_id != user_id:
                raise Forbidden(f"transcript {thread_id} is not owned by user {user_id}")
            return [TranscriptRecord.model_validate(m) for m in transcript.messages or []]
