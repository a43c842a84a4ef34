"""Database configuration and session management."""
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from typing import Callable

from config import Settings

SessionFactory = Callable[[], Session]


def create_db_engine(database_url: str) -> Engine:
    """Create the SQLAlchemy engine for threads and transcripts."""
    return create_engine(database_url, pool_pre_ping=True)


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


DATABASE_URL = Settings.from_env().database_url

engine = create_db_engine(DATABASE_URL)
SessionLocal = create_session_factory(engine)


def libpq_conn_string(database_url: str) -> str:
    """Strip the SQLAlchemy driver suffix so psycopg-based LangGraph savers accept the URL."""
    scheme, sep, rest = database_url.partition("://")
    return f"{scheme.split('+', 1)[0]}{sep}{rest}"
