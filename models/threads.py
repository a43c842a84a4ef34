"""Thread model for conversation management."""
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Boolean, Column, String, DateTime, Text, func
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_thread_id() -> str:
    return str(uuid4())


class Thread(Base):
    """
    SQLAlchemy model for conversation threads.
    
    Each thread belongs to exactly one user. The model-side message history is
    checkpointed by LangGraph under the same id; the durable transcript lives in
    the transcripts table.
    """
    __tablename__ = "threads"
    
    id = Column(String(36), primary_key=True, default=new_thread_id, index=True)
    user_id = Column(String, nullable=False, index=True)
    title = Column(String(255), nullable=True, default="New Chat")
    thread_metadata = Column(Text, nullable=True)
    is_deleted = Column(Boolean, nullable=False, default=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow)
