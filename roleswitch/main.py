"""RoleSwitch: FastAPI application entry point."""

import uuid
from contextlib import asynccontextmanager

# configure_structlog must run before the other roleswitch imports; structlog
# caches the processor chain on first use.
from roleswitch.core.logging import configure_structlog
from roleswitch.core.config import get_settings as _get_settings_early

_early_settings = _get_settings_early()
configure_structlog(
    log_level="DEBUG" if _early_settings.debug else _early_settings.log_level,
    json_logs=not _early_settings.debug,
)

import httpx
import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from roleswitch.api.responses import fail
from roleswitch.api.routes import api_router
from roleswitch.core.clock import Clock, SystemClock
from roleswitch.core.config import Settings, get_settings
from roleswitch.core.exceptions import LockViolationError, RoleSwitchError
from roleswitch.core.scheduler import AsyncioScheduler, Scheduler
from roleswitch.db.store import JsonFileStorage, RoleSwitchStore
from roleswitch.middleware.correlation import get_correlation_id, setup_correlation_middleware
from roleswitch.schemas.models import DeviceSettings
from roleswitch.services.auth_service import AuthService
from roleswitch.services.note_service import NoteService
from roleswitch.services.role_service import RoleService
from roleswitch.services.session_service import RoleSessionStateMachine
from roleswitch.services.sync_service import SyncEngine

logger = structlog.get_logger(__name__)


def device_defaults(settings: Settings) -> DeviceSettings:
    """Seed values for the persisted device settings on first run."""
    return DeviceSettings(
        transition_seconds=settings.transition_seconds,
        min_session_seconds=settings.min_session_seconds,
        enable_authentication=settings.enable_authentication,
        enable_sync=settings.enable_sync,
        sync_interval_minutes=settings.sync_interval_minutes,
        device_id=settings.device_id,
        device_name=settings.device_name,
    )


def wire_services(app: FastAPI, store: RoleSwitchStore) -> None:
    """Build the services around ``store`` and hang them on ``app.state``."""
    settings: Settings = app.state.settings
    clock: Clock = app.state.clock
    scheduler: Scheduler = app.state.scheduler

    sessions = RoleSessionStateMachine(store, clock, scheduler)
    auth = AuthService(store, clock, tolerance_seconds=settings.signature_tolerance_seconds)

    app.state.store = store
    app.state.sessions = sessions
    app.state.roles = RoleService(store, sessions, clock)
    app.state.notes = NoteService(store, clock)
    app.state.auth = auth
    app.state.sync = SyncEngine(
        store,
        auth,
        clock,
        scheduler,
        transport=app.state.sync_transport,
        timeout=settings.sync_timeout_seconds,
        sessions=sessions,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Load the store, recover stale state, start auto-sync; save on shutdown."""
    settings: Settings = app.state.settings
    logger.info("startup_begin", app_name=settings.app_name, debug=settings.debug)

    if getattr(app.state, "store", None) is None:
        store = await RoleSwitchStore.open(
            JsonFileStorage(settings.data_file),
            defaults=device_defaults(settings),
        )
        wire_services(app, store)
        logger.info("store_opened", data_file=settings.data_file)

    await app.state.sessions.recover()
    device_id = await app.state.sync.ensure_device_id()
    auto_sync = app.state.sync.start_auto_sync()
    logger.info("startup_complete", device_id=device_id, auto_sync=auto_sync)

    yield

    logger.info("shutdown_begin")
    app.state.sync.stop_auto_sync()
    app.state.sessions.shutdown()
    await app.state.store.save()
    logger.info("shutdown_complete")


def _log_failure(request: Request, event: str, status_code: int, **extra) -> str:
    debug_id = str(uuid.uuid4())
    log = logger.error if status_code >= 500 else logger.warning
    log(
        event,
        status_code=status_code,
        debug_id=debug_id,
        correlation_id=get_correlation_id(),
        path=request.url.path,
        method=request.method,
        api_key_id=getattr(request.state, "api_key_id", None),
        **extra,
    )
    return debug_id


async def roleswitch_exception_handler(request: Request, exc: RoleSwitchError) -> JSONResponse:
    """Map domain errors to their HTTP status inside the response envelope."""
    _log_failure(request, "request_failed", exc.status_code, error=str(exc), error_type=type(exc).__name__)
    data = None
    if isinstance(exc, LockViolationError):
        data = {"lockTimeRemaining": exc.remaining_seconds}
    return fail(exc.status_code, str(exc), data=data)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    detail = "; ".join(
        f"{'.'.join(str(part) for part in err.get('loc', ()) if part != 'body')}: {err.get('msg')}"
        for err in errors
    )
    _log_failure(request, "request_invalid", 400, detail=detail)
    return fail(400, f"Invalid request: {detail}")


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    _log_failure(request, "http_exception", exc.status_code, detail=exc.detail)
    return fail(exc.status_code, str(exc.detail))


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Unhandled errors: log with traceback, answer a generic 500."""
    debug_id = _log_failure(
        request,
        "unhandled_exception",
        500,
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=True,
    )
    return fail(500, f"Internal server error (debug_id: {debug_id})")


def create_app(
    settings: Settings | None = None,
    store: RoleSwitchStore | None = None,
    clock: Clock | None = None,
    scheduler: Scheduler | None = None,
    sync_transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Passing ``store`` wires the services immediately (tests, in-process
    peers); otherwise the lifespan loads the store from ``data_file``.
    """
    settings = settings or get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="Role session tracking with signed peer-to-peer sync",
        version="0.1.0",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.clock = clock or SystemClock()
    app.state.scheduler = scheduler or AsyncioScheduler()
    app.state.sync_transport = sync_transport
    app.state.store = None
    if store is not None:
        wire_services(app, store)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=[
            "Content-Type",
            "Authorization",
            "X-API-Key",
            "X-Timestamp",
            "X-Signature",
            "X-Request-ID",
        ],
    )

    # Correlation ID middleware (runs first on incoming requests)
    setup_correlation_middleware(app)

    app.exception_handler(RoleSwitchError)(roleswitch_exception_handler)
    app.exception_handler(RequestValidationError)(validation_exception_handler)
    app.exception_handler(StarletteHTTPException)(http_exception_handler)
    app.exception_handler(Exception)(generic_exception_handler)

    app.include_router(api_router, prefix="/api")

    return app


app = create_app()


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "roleswitch.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )


if __name__ == "__main__":
    run()
