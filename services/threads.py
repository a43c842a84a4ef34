"""Thread service for CRUD operations and per-turn thread resolution."""
from typing import Optional, List
import asyncio
from sqlalchemy.orm import Session
from sqlalchemy import desc
import json
import logging

from database import SessionFactory
from models.threads import Thread
from schemas.threads import ThreadCreate, ThreadUpdate
from services.errors import Forbidden
from services.locks import KeyedLocks

logger = logging.getLogger(__name__)


class ThreadService:
    """Service class for thread CRUD operations. Soft-deleted threads are invisible."""
    
    @staticmethod
    def create_thread(db: Session, user_id: str, thread_data: Optional[ThreadCreate] = None) -> Thread:
        """Create a new thread for a user."""
        thread_data = thread_data or ThreadCreate()
        db_thread = Thread(
            user_id=user_id,
            title=thread_data.title,
            thread_metadata=json.dumps(thread_data.metadata) if thread_data.metadata else None
        )
        
        db.add(db_thread)
        db.commit()
        db.refresh(db_thread)
        
        return db_thread
    
    @staticmethod
    def get_thread(db: Session, thread_id: str, user_id: Optional[str] = None) -> Optional[Thread]:
        """Retrieve a live thread by ID."""
        query = db.query(Thread).filter(Thread.id == thread_id, Thread.is_deleted.is_(False))
        
        if user_id:
            query = query.filter(Thread.user_id == user_id)
            
        return query.first()
    
    @staticmethod
    def get_user_threads(db: Session, user_id: str, skip: int = 0, limit: int = 20) -> List[Thread]:
        """Retrieve all live threads for a specific user, most recently active first."""
        return db.query(Thread).filter(
            Thread.user_id == user_id,
            Thread.is_deleted.is_(False)
        ).order_by(
            desc(Thread.updated_at), desc(Thread.created_at)
        ).offset(skip).limit(limit).all()

    @staticmethod
    def get_latest_thread(db: Session, user_id: str) -> Optional[Thread]:
        """Return the user's most recently active live thread, if any."""
        threads = ThreadService.get_user_threads(db, user_id, skip=0, limit=1)
        return threads[0] if threads else None
    
    @staticmethod
    def update_thread(db: Session, thread_id: str, user_id: str, thread_update: ThreadUpdate) -> Optional[Thread]:
        """Rename a thread or replace its metadata."""
        thread = ThreadService.get_thread(db, thread_id, user_id)
        
        if not thread:
            return None
            
        if thread_update.title is not None:
            thread.title = thread_update.title
            
        if thread_update.metadata is not None:
            thread.thread_metadata = json.dumps(thread_update.metadata)
            
        db.commit()
        db.refresh(thread)
        
        return thread
    
    @staticmethod
    def delete_thread(db: Session, thread_id: str, user_id: str) -> bool:
        """Soft-delete a thread; its transcript and checkpoints are kept."""
        thread = ThreadService.get_thread(db, thread_id, user_id)
        
        if not thread:
            return False
            
        thread.is_deleted = True
        db.commit()
        
        return True


class ThreadResolver:
    """
    Map (user id, optional thread id) to the thread a turn belongs to.

    Resolution without a thread id is serialized per user inside this process,
    so concurrent or retried requests reuse one thread instead of each creating
    their own. Separate processes may still race and create a duplicate.
    """

    def __init__(self, session_factory: SessionFactory):
        self.session_factory = session_factory
        self._user_locks = KeyedLocks()

    async def resolve(self, user_id: str, thread_id: Optional[str] = None) -> str:
        if thread_id is not None:
            return await asyncio.to_thread(self._owned_thread, user_id, thread_id)

        async with self._user_locks.hold(user_id):
            return await asyncio.to_thread(self._latest_or_new_thread, user_id)

    def _owned_thread(self, user_id: str, thread_id: str) -> str:
        with self.session_factory() as db:
            thread = ThreadService.get_thread(db, thread_id)
            # Unknown, deleted and foreign threads are indistinguishable to the caller.
            if thread is None or thread.user_id != user_id:
                logger.warning(f"User {user_id} denied access to thread {thread_id}")
                raise Forbidden(f"thread {thread_id} is not owned by user {user_id}")
            return thread.id

    def _latest_or_new_thread(self, user_id: str) -> str:
        with self.session_factory() as db:
            latest = ThreadService.get_latest_thread(db, user_id)
            if latest is not None:
                return latest.id
            created = ThreadService.create_thread(db, user_id)
            logger.info(f"Created thread {created.id} for user {user_id}")
            return created.id
