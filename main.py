from fastapi import APIRouter, FastAPI, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from langgraph.checkpoint.postgres.aio import AsyncPostgresSaver
from contextlib import asynccontextmanager
from typing import Generator, List, Optional
import logging

from sqlalchemy import text
from sqlalchemy.orm import Session

# Local imports
from config import Settings, configure_logging
from database import SessionLocal, engine, libpq_conn_string
from dtos.chat_request import ChatRequest
from models import Base
from schemas import (
    AuthenticatedUser, ThreadCreate, ThreadUpdate, ThreadResponse, TranscriptResponse,
)
from services import ThreadService
from services.container import AppServices, build_services
from services.errors import Forbidden, Unauthorized
from services.memory_tasks import open_memory_store
from services.streaming import sse_stream

logger = logging.getLogger(__name__)


def get_services(request: Request) -> AppServices:
    return request.app.state.services


def get_db(services: AppServices = Depends(get_services)) -> Generator[Session, None, None]:
    """Database session dependency."""
    db = services.session_factory()
    try:
        yield db
    finally:
        db.close()


bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    services: AppServices = Depends(get_services),
) -> AuthenticatedUser:
    """Verify the bearer credential; raises Unauthorized before any side effect."""
    token = credentials.credentials if credentials else None
    return await services.verifier.verify(token)


router = APIRouter()


@router.get("/")
async def root():
    return {"message": "Hello World", "status": "running"}


@router.get("/health")
async def health_check():
    return {"status": "healthy", "service": "chat-orchestrator"}


@router.get("/health/detailed")
async def detailed_health_check(
    services: AppServices = Depends(get_services),
    db: Session = Depends(get_db)
):
    """Health of the database and the configured collaborators."""
    health_status = {
        "status": "healthy",
        "service": "chat-orchestrator",
        "checks": {}
    }

    try:
        db.execute(text("SELECT 1"))
        health_status["checks"]["database"] = {"status": "healthy"}
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        health_status["checks"]["database"] = {"status": "unhealthy"}
        health_status["status"] = "unhealthy"

    settings = services.settings
    health_status["checks"]["auth"] = {"mode": settings.auth_mode}
    health_status["checks"]["moderation"] = {
        "provider": settings.moderation_provider,
        "fail_open": settings.moderation_fail_open,
    }
    health_status["checks"]["memory_writes"] = {
        "mode": settings.memory_write_mode,
        "pending": services.background.pending,
    }

    return health_status


# Stream endpoint with authentication
@router.post("/stream")
async def stream(
    req: ChatRequest,
    current_user: AuthenticatedUser = Depends(get_current_user),
    services: AppServices = Depends(get_services)
):
    """Run one chat turn and stream its events as Server-Sent Events."""
    orchestrator = services.orchestrator
    turn = await orchestrator.open_turn(current_user.user_id, req)

    headers = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}
    if turn.thread_id:
        headers["X-Thread-ID"] = turn.thread_id

    return StreamingResponse(
        sse_stream(orchestrator.stream(turn)),
        media_type="text/event-stream",
        headers=headers
    )


@router.get("/session/{thread_id}")
async def get_session(
    thread_id: str,
    current_user: AuthenticatedUser = Depends(get_current_user),
    services: AppServices = Depends(get_services),
    db: Session = Depends(get_db)
):
    """Return the model-side checkpointed messages of a thread."""
    if not ThreadService.get_thread(db, thread_id, current_user.user_id):
        raise HTTPException(status_code=404, detail="Thread not found")

    config = {"configurable": {"thread_id": thread_id}}
    state = await services.graph.aget_state(config)

    messages = []
    if state and state.values:
        for msg in state.values.get("messages", []):
            messages.append({
                "content": msg.content,
                "type": msg.type,
                "id": getattr(msg, "id", None),
            })

    return {"thread_id": thread_id, "messages": messages}


# Thread management endpoints
@router.post("/threads", response_model=ThreadResponse)
async def create_thread(
    thread: ThreadCreate,
    current_user: AuthenticatedUser = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> ThreadResponse:
    """Create a new conversation thread."""
    db_thread = ThreadService.create_thread(
        db=db,
        user_id=current_user.user_id,
        thread_data=thread
    )
    return ThreadResponse.from_thread(db_thread)


@router.get("/threads", response_model=List[ThreadResponse])
async def list_threads(
    skip: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    current_user: AuthenticatedUser = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> List[ThreadResponse]:
    """List the caller's threads, most recently active first."""
    threads = ThreadService.get_user_threads(
        db=db,
        user_id=current_user.user_id,
        skip=skip,
        limit=limit
    )
    return [ThreadResponse.from_thread(thread) for thread in threads]


@router.get("/threads/{thread_id}", response_model=ThreadResponse)
async def get_thread(
    thread_id: str,
    current_user: AuthenticatedUser = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> ThreadResponse:
    """Get a specific thread by ID."""
    thread = ThreadService.get_thread(db=db, thread_id=thread_id, user_id=current_user.user_id)

    if not thread:
        raise HTTPException(status_code=404, detail="Thread not found")

    return ThreadResponse.from_thread(thread)


@router.patch("/threads/{thread_id}", response_model=ThreadResponse)
async def update_thread(
    thread_id: str,
    thread_update: ThreadUpdate,
    current_user: AuthenticatedUser = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> ThreadResponse:
    """Rename a thread or replace its metadata."""
    updated_thread = ThreadService.update_thread(
        db=db,
        thread_id=thread_id,
        user_id=current_user.user_id,
        thread_update=thread_update
    )

    if not updated_thread:
        raise HTTPException(status_code=404, detail="Thread not found")

    return ThreadResponse.from_thread(updated_thread)


@router.delete("/threads/{thread_id}")
async def delete_thread(
    thread_id: str,
    current_user: AuthenticatedUser = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> dict:
    """Soft-delete a thread."""
    deleted = ThreadService.delete_thread(
        db=db,
        thread_id=thread_id,
        user_id=current_user.user_id
    )

    if not deleted:
        raise HTTPException(status_code=404, detail="Thread not found")

    return {"message": "Thread deleted successfully"}


@router.get("/threads/{thread_id}/transcript", response_model=TranscriptResponse)
async def get_transcript(
    thread_id: str,
    current_user: AuthenticatedUser = Depends(get_current_user),
    services: AppServices = Depends(get_services),
    db: Session = Depends(get_db)
) -> TranscriptResponse:
    """Return the durable transcript of a thread."""
    if not ThreadService.get_thread(db, thread_id, current_user.user_id):
        raise HTTPException(status_code=404, detail="Thread not found")

    records = services.transcripts.read(thread_id, current_user.user_id)
    return TranscriptResponse(thread_id=thread_id, messages=records)


async def unauthorized_handler(request: Request, exc: Unauthorized) -> JSONResponse:
    logger.info(f"Rejected credentials: {exc.detail}")
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        content={"detail": Unauthorized.public_message},
        headers={"WWW-Authenticate": "Bearer"},
    )


async def forbidden_handler(request: Request, exc: Forbidden) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_403_FORBIDDEN, content={"detail": Forbidden.public_message})


@asynccontextmanager
async def lifespan(app: FastAPI):
    if app.state.services is not None:
        yield
        await app.state.services.aclose()
        return

    settings = app.state.settings

    # Create tables if they don't exist
    Base.metadata.create_all(bind=engine)

    conn_string = libpq_conn_string(settings.database_url)
    async with AsyncPostgresSaver.from_conn_string(conn_string) as saver, \
            open_memory_store(settings) as store:
        await saver.setup()  # initialize tables if needed
        await store.setup()
        app.state.services = build_services(
            settings,
            session_factory=SessionLocal,
            checkpointer=saver,
            store=store,
        )

        # yield control back to FastAPI; app is now ready
        yield

        await app.state.services.aclose()


def create_app(settings: Optional[Settings] = None, services: Optional[AppServices] = None) -> FastAPI:
    """Build the FastAPI app; pass `services` to run against injected collaborators."""
    settings = settings or (services.settings if services else Settings.from_env())
    configure_logging(settings.log_level)

    app = FastAPI(
        title="Chat Orchestrator",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.settings = settings
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Thread-ID"],
        max_age=3600
    )
    app.add_exception_handler(Unauthorized, unauthorized_handler)
    app.add_exception_handler(Forbidden, forbidden_handler)
    app.include_router(router)
    return app


app = create_app()
