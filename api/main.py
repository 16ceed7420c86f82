"""
FastAPI application for the alert dispatcher.

This application provides:
1. The dispatch trigger (/cron/send-alerts), called by the scheduler
2. Run log and dead-letter endpoints for operators

Run with:
    uv run uvicorn api.main:app --reload

Then visit http://localhost:8000/docs for interactive API documentation.

Every collaborator (settings, store, channels, clock) is provided through a
dependency function, so tests swap them with ``app.dependency_overrides``.
"""

import logging
import secrets
from contextlib import asynccontextmanager
from functools import lru_cache
from pathlib import Path
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from dispatch.clock import Clock, SystemClock
from dispatch.dead_letters import AlreadyResolvedError, requeue_dead_letter
from dispatch.dispatcher import DispatchReport, Dispatcher, RUN_KIND
from shared.channels import NotificationChannels
from shared.config import Settings, get_settings
from shared.data_store import DataStore
from shared.models import DeadLetter, DispatchRun
from shared.sql_store import SqlStore
from shared.store import DispatchStore, NotFoundError, StoreUnavailableError

# Configure logging
logging.basicConfig(
    level=get_settings().log_level,
    format="%(asctime)s | %(name)-24s | %(levelname)-5s | %(message)s",
    datefmt="%H:%M:%S",
)

logger = logging.getLogger("alerts_api")

SESSION_COOKIE = "session"
SESSION_HEADER = "X-Operator-Session"


# =============================================================================
# Dependencies
# =============================================================================

@lru_cache
def _build_store(database_url: Optional[str], data_dir: Path) -> DispatchStore:
    if database_url:
        return SqlStore(database_url)
    return DataStore(data_dir)


def get_store(settings: Settings = Depends(get_settings)) -> DispatchStore:
    return _build_store(settings.database_url, settings.data_dir)


@lru_cache
def get_channels() -> NotificationChannels:
    return NotificationChannels()


def get_clock() -> Clock:
    return SystemClock()


def require_trigger_auth(
    request: Request,
    settings: Settings = Depends(get_settings),
) -> str:
    """
    Accept either the scheduler's bearer secret or an operator session.

    Returns which credential was used ("cron" or "operator").
    """
    header = request.headers.get("authorization", "")
    if settings.cron_secret and header.startswith("Bearer "):
        token = header[len("Bearer "):]
        if secrets.compare_digest(token.encode(), settings.cron_secret.encode()):
            return "cron"

    session = request.cookies.get(SESSION_COOKIE) or request.headers.get(SESSION_HEADER)
    if session:
        for known in settings.operator_session_tokens:
            if secrets.compare_digest(session.encode(), known.encode()):
                return "operator"

    raise HTTPException(status_code=401, detail="Unauthorized")


# Application lifespan
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    logger.info("Starting alert dispatch API")
    yield
    logger.info("Shutting down")


# Create the FastAPI app
app = FastAPI(
    title="Alert Dispatch",
    description="""
    Fans legislative events out to subscribers as instant alerts or digests.

    ## Endpoints

    - `/cron/send-alerts` - Run one dispatch pass (scheduler or operator)
    - `/runs/latest` - Most recent dispatch run
    - `/dead-letters` - Failed digests and exhausted events awaiting review
    """,
    version="1.0.0",
    lifespan=lifespan,
)


# =============================================================================
# Health Check
# =============================================================================

@app.get("/health", tags=["Health"])
def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "alert-dispatch"}


# =============================================================================
# Dispatch Trigger
# =============================================================================

@app.api_route(
    "/cron/send-alerts",
    methods=["GET", "POST"],
    response_model=DispatchReport,
    tags=["Dispatch"],
)
def send_alerts(
    limit: Optional[int] = Query(default=None, ge=1),
    event_id: Optional[int] = Query(default=None),
    sweep_digests: bool = Query(default=False),
    caller: str = Depends(require_trigger_auth),
    settings: Settings = Depends(get_settings),
    store: DispatchStore = Depends(get_store),
    channels: NotificationChannels = Depends(get_channels),
    clock: Clock = Depends(get_clock),
):
    """
    Run one dispatch pass and return its report.

    Individual event or send failures are reported in the body with a 200.
    Only a store outage before any event was claimed returns 503.
    """
    dispatcher = Dispatcher(store, channels, clock=clock, settings=settings)
    logger.info(f"Dispatch triggered by {caller}")
    try:
        return dispatcher.run_dispatch(limit, event_id=event_id, sweep_digests=sweep_digests)
    except StoreUnavailableError as e:
        logger.error(f"Store unavailable, dispatch aborted: {e}")
        return JSONResponse(status_code=503, content={"ok": False, "error": "Store unavailable"})


# =============================================================================
# Operator Endpoints
# =============================================================================

@app.get("/runs/latest", response_model=DispatchRun, tags=["Operations"])
def latest_run(
    caller: str = Depends(require_trigger_auth),
    store: DispatchStore = Depends(get_store),
):
    """Most recent dispatch run."""
    run = store.latest_run(RUN_KIND)
    if run is None:
        raise HTTPException(status_code=404, detail="No dispatch runs recorded")
    return run


@app.get("/dead-letters", response_model=list[DeadLetter], tags=["Operations"])
def list_dead_letters(
    include_resolved: bool = False,
    caller: str = Depends(require_trigger_auth),
    store: DispatchStore = Depends(get_store),
):
    """Dead-letter records, unresolved only unless asked."""
    return store.list_dead_letters(include_resolved=include_resolved)


@app.post("/dead-letters/{dead_letter_id}/requeue", tags=["Operations"])
def requeue(
    dead_letter_id: int,
    caller: str = Depends(require_trigger_auth),
    store: DispatchStore = Depends(get_store),
    clock: Clock = Depends(get_clock),
):
    """Requeue the deliveries (or event) behind a dead letter and resolve it."""
    try:
        count = requeue_dead_letter(store, dead_letter_id, clock.now())
    except NotFoundError:
        raise HTTPException(status_code=404, detail=f"Dead letter not found: {dead_letter_id}")
    except AlreadyResolvedError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"ok": True, "dead_letter_id": dead_letter_id, "requeued": count}
