"""
Reference Verification Platform

FastAPI application entry point.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, HTTPException, Request, WebSocket, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from refverify.api.middleware.request_id import RequestIdMiddleware
from refverify.api.v1 import router as api_v1_router
from refverify.config import Settings, get_settings
from refverify.database import async_session_maker, close_db, init_db
from refverify.kernel.errors import ErrorKind
from refverify.kernel.identity.identity_service import session_resolver
from refverify.logging_config import configure_logging, get_logger
from refverify.orchestration.lifecycle_service import LifecycleService
from refverify.realtime import gateway
from refverify.realtime.fanout import NotificationFanout
from refverify.realtime.registry import ConnectionRegistry
from refverify.schemas.common import HealthResponse

settings = get_settings()
logger = get_logger(__name__)


def build_services(app: FastAPI, config: Settings = settings) -> None:
    """
    Create the application-owned services and attach them to ``app.state``.

    The registry, fan-out and lifecycle service live exactly as long as the
    running application; request handlers reach them through dependencies.
    """
    registry = ConnectionRegistry(
        resolve=session_resolver(async_session_maker),
        handshake_timeout=config.handshake_timeout_seconds,
    )
    fanout = NotificationFanout(registry)
    app.state.registry = registry
    app.state.fanout = fanout
    app.state.lifecycle = LifecycleService(
        async_session_maker,
        fanout=fanout,
        batch_max_size=config.batch_max_size,
        batch_concurrency=config.batch_concurrency,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Application lifespan handler.

    Runs startup and shutdown tasks.
    """
    # Configure logging first
    configure_logging(
        log_level=settings.log_level,
        environment=settings.environment,
        debug=settings.debug,
    )

    # Startup
    logger.info("Starting %s v%s", settings.project_name, settings.version)
    await init_db()
    logger.info("Database initialized")
    build_services(app)

    yield

    # Shutdown
    logger.info("Shutting down...")
    await app.state.fanout.drain()
    await app.state.registry.close_all()
    await close_db()
    logger.info("Database connections closed")


# Create FastAPI application
app = FastAPI(
    title=settings.project_name,
    description="""
    Reference Verification Platform

    Community-submitted citation sources, reviewed by country verifiers.

    ## Features

    - **Submissions**: propose sources, browse the approved directory
    - **Review**: approve or reject pending submissions, one at a time or in batches
    - **Audit**: append-only history of every lifecycle change
    - **Real-time**: WebSocket notifications at `/ws`, scoped by user, role and country
    """,
    version=settings.version,
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)


# add_middleware stacks innermost-first, so the last one added is outermost.
app.add_middleware(RequestIdMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _response_headers(request: Request) -> dict:
    req_id = getattr(request.state, "request_id", None)
    return {"X-Request-ID": req_id} if req_id else {}


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Render HTTP errors as ``{"detail", "code"}``."""
    headers = dict(exc.headers or {})
    headers.update(_response_headers(request))
    if isinstance(exc.detail, dict) and "code" in exc.detail:
        content = exc.detail
    else:
        content = {"detail": exc.detail}
    return JSONResponse(status_code=exc.status_code, content=content, headers=headers)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError,
):
    """Handle request validation errors."""
    errors = []
    for error in exc.errors():
        field = ".".join(str(loc) for loc in error["loc"])
        errors.append({
            "field": field,
            "message": error["msg"],
            "type": error["type"],
        })
    content = {
        "detail": "Validation error",
        "code": ErrorKind.VALIDATION_ERROR.value,
        "errors": errors,
    }
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=content,
        headers=_response_headers(request),
    )


@app.exception_handler(Exception)
async def general_exception_handler(
    request: Request,
    exc: Exception,
):
    """Handle unexpected exceptions. Storage faults end up here after rollback."""
    logger.exception("Unhandled exception: %s", exc)
    req_id = getattr(request.state, "request_id", None)
    if settings.debug:
        content = {
            "detail": str(exc),
            "type": type(exc).__name__,
            "request_id": req_id,
        }
    else:
        content = {"detail": "Internal server error", "request_id": req_id}
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=content,
        headers=_response_headers(request),
    )


# Health check endpoint
@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check(request: Request):
    """Check application health."""
    registry = getattr(request.app.state, "registry", None)
    return HealthResponse(
        status="ok",
        version=settings.version,
        database="connected",
        live_connections=len(registry) if registry is not None else 0,
    )


# Root endpoint
@app.get("/", tags=["Root"])
async def root():
    """Root endpoint with API information."""
    return {
        "name": settings.project_name,
        "version": settings.version,
        "docs": "/docs" if settings.debug else "disabled",
        "api": {
            "v1": settings.api_v1_prefix,
            "websocket": "/ws",
        },
    }


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """Real-time notifications; see refverify.realtime.gateway."""
    await gateway.serve(websocket, websocket.app.state.registry)


# Mount API v1 routes
app.include_router(
    api_v1_router,
    prefix=settings.api_v1_prefix,
)


# Main entry point for development
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "refverify.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )
