"""Transcript model: one ordered message slot per thread."""
from sqlalchemy import Column, String, DateTime, ForeignKey, JSON, func

from .threads import Base, utcnow


class Transcript(Base):
    """
    SQLAlchemy model for durable per-thread transcripts.
    
    The whole ordered record list is stored in a single JSON column and is
    replaced as a unit on every append, so readers never see a partial write.
    """
    __tablename__ = "transcripts"
    
    thread_id = Column(String(36), ForeignKey("threads.id", ondelete="CASCADE"), primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    messages = Column(JSON, nullable=False, default=list)
    updated_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow)
