"""Playlist Export API.

FastAPI application accepting playlist export requests:
- POST /export/playlists/{playlist_id}: Queue a playlist export email
- GET /health: Service health check

The request is only validated, authorized and enqueued here; the export
itself is built and mailed by the worker.

Security features:
- API key authentication
- Caller identity taken from the upstream gateway (X-User-Id)
- Playlist ownership check before enqueueing
- Sanitized error responses

Author: OpenMusic
Version: 1.0.0
"""

from __future__ import annotations

import secrets
import sys
from collections.abc import Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Annotated, Protocol

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import ValidationError as PydanticValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from openmusic_export.api.schemas import (
    ErrorResponse,
    ExportPlaylistRequest,
    ExportResponse,
    HealthResponse,
)
from openmusic_export.broker.producer import ExportProducer
from openmusic_export.config import ExportConfig, load_config
from openmusic_export.core.exceptions import (
    ExportConfigError,
    ExportServiceError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from openmusic_export.core.logger import get_logger, setup_logging
from openmusic_export.database.playlists import PlaylistReader
from openmusic_export.models.job import ExportJob

logger = get_logger(__name__)

SERVER_ERROR_MESSAGE = "Sorry, something went wrong on our side."


# =============================================================================
# Caller Authentication
# =============================================================================
class AuthValidator(Protocol):
    """Resolves the authenticated user of a request."""

    def authenticate(self, request: Request) -> str | None:
        """Return the caller's user id, or None when no credentials are present."""
        ...


class GatewayUserAuth:
    """Trusts the user id forwarded by the upstream API gateway.

    The gateway verifies the access token and forwards the subject in a
    header; this service only runs behind it.
    """

    def __init__(self, header_name: str = "X-User-Id") -> None:
        self.header_name = header_name

    def authenticate(self, request: Request) -> str | None:
        user_id = request.headers.get(self.header_name, "").strip()
        return user_id or None


# =============================================================================
# Application State (Dependency Injection)
# =============================================================================
@dataclass
class AppState:
    """Application state container for dependency injection."""

    config: ExportConfig
    reader: PlaylistReader | None = None
    producer: ExportProducer | None = None
    auth_validator: AuthValidator | None = None


app_state: AppState | None = None


def _service_unavailable() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Service not initialized",
    )


def get_config() -> ExportConfig:
    """Dependency: Get application configuration."""
    if not app_state or not app_state.config:
        raise _service_unavailable()
    return app_state.config


def get_reader() -> PlaylistReader:
    """Dependency: Get playlist reader instance."""
    if not app_state or not app_state.reader:
        raise _service_unavailable()
    return app_state.reader


def get_producer() -> ExportProducer:
    """Dependency: Get export producer instance."""
    if not app_state or not app_state.producer:
        raise _service_unavailable()
    return app_state.producer


def get_auth_validator() -> AuthValidator:
    """Dependency: Get the caller authentication strategy."""
    if not app_state or not app_state.auth_validator:
        raise _service_unavailable()
    return app_state.auth_validator


# =============================================================================
# API Key Authentication
# =============================================================================
API_KEY_HEADER = APIKeyHeader(name="X-API-Key", auto_error=False)


async def verify_api_key(
    api_key: Annotated[str | None, Depends(API_KEY_HEADER)],
    config: Annotated[ExportConfig, Depends(get_config)],
) -> bool:
    """Verify API key if authentication is enabled.

    Returns True if:
    - API_KEY is not configured (auth disabled)
    - API_KEY matches the provided key
    """
    configured_key = config.API_KEY

    if not configured_key:
        return True

    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API key required",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    if not secrets.compare_digest(api_key, configured_key):
        logger.warning("Invalid API key attempt")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    return True


async def get_current_user(
    request: Request,
    _api_key: Annotated[bool, Depends(verify_api_key)],
    validator: Annotated[AuthValidator, Depends(get_auth_validator)],
) -> str:
    """Dependency: Authenticated user id of the caller."""
    user_id = validator.authenticate(request)
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authentication",
        )
    return user_id


# =============================================================================
# Error Responses
# =============================================================================
def _fail(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(status="fail", message=message).model_dump(),
    )


async def _http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    response = _fail(exc.status_code, str(exc.detail))
    if getattr(exc, "headers", None):
        response.headers.update(exc.headers)
    return response


async def _request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    fields = [str(err["loc"][-1]) for err in exc.errors() if err.get("loc")]
    logger.debug(f"Invalid export request: {exc.errors()}")
    return _fail(
        status.HTTP_400_BAD_REQUEST,
        f"Invalid payload: {', '.join(fields) or 'body'}",
    )


async def _service_error_handler(request: Request, exc: ExportServiceError) -> JSONResponse:
    if isinstance(exc, NotFoundError):
        return _fail(status.HTTP_404_NOT_FOUND, str(exc))
    if isinstance(exc, ForbiddenError):
        return _fail(status.HTTP_403_FORBIDDEN, str(exc))
    if isinstance(exc, ValidationError):
        return _fail(status.HTTP_400_BAD_REQUEST, str(exc))
    if exc.is_transient:
        logger.error(f"Dependency unavailable: {exc}")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=ErrorResponse(
                status="error", message="Service temporarily unavailable"
            ).model_dump(),
        )

    logger.error(f"Request failed: {exc}", exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=ErrorResponse(status="error", message=SERVER_ERROR_MESSAGE).model_dump(),
    )


def register_exception_handlers(application: FastAPI) -> None:
    """Map typed service errors to HTTP responses."""
    application.add_exception_handler(StarletteHTTPException, _http_error_handler)
    application.add_exception_handler(RequestValidationError, _request_validation_handler)
    application.add_exception_handler(ExportServiceError, _service_error_handler)


# =============================================================================
# Lifespan Context Manager
# =============================================================================
def build_app_state(config: ExportConfig) -> AppState:
    """Create the reader and the producer for the API process.

    Raises:
        ExportServiceError: If the catalog or the broker cannot be reached.
    """
    reader = PlaylistReader(config)
    producer = ExportProducer(config)
    try:
        producer.init()
    except ExportServiceError:
        reader.close()
        raise
    return AppState(
        config=config,
        reader=reader,
        producer=producer,
        auth_validator=GatewayUserAuth(),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    global app_state

    config = load_config()

    setup_logging(
        log_dir=config.LOG_DIR,
        log_level=config.LOG_LEVEL,
        enable_file=config.LOG_TO_FILE,
        settings=config,
        component="api",
    )

    try:
        app_state = build_app_state(config)
        logger.info(f"Catalog and broker connected, queue: {config.EXPORT_QUEUE_NAME}")
    except Exception as e:
        logger.error(f"Failed to start API: {e}")
        raise

    yield

    logger.info(f"Shutting down {config.SERVICE_NAME}...")
    if app_state:
        if app_state.producer:
            app_state.producer.close()
        if app_state.reader:
            app_state.reader.close()
    app_state = None
    logger.info(f"{config.SERVICE_NAME} stopped")


# =============================================================================
# API Endpoints
# =============================================================================
router = APIRouter()


@router.post(
    "/export/playlists/{playlist_id}",
    response_model=ExportResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        400: {"model": ErrorResponse, "description": "Invalid request"},
        401: {"model": ErrorResponse, "description": "Unauthorized"},
        403: {"model": ErrorResponse, "description": "Not the playlist owner"},
        404: {"model": ErrorResponse, "description": "Playlist not found"},
        503: {"model": ErrorResponse, "description": "Broker unavailable"},
    },
)
def export_playlist(
    playlist_id: str,
    request: ExportPlaylistRequest,
    user_id: Annotated[str, Depends(get_current_user)],
    reader: Annotated[PlaylistReader, Depends(get_reader)],
    producer: Annotated[ExportProducer, Depends(get_producer)],
) -> ExportResponse:
    """Queue a playlist export for the authenticated owner.

    Only the playlist owner may export it. The response means the job was
    accepted, not that the email was sent.
    """
    try:
        job = ExportJob(playlist_id=playlist_id, target_email=request.targetEmail)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid export job: {e.error_count()} error(s)") from e

    reader.verify_playlist_owner(playlist_id, user_id)
    producer.publish(job)

    logger.info(f"Export requested: playlist={playlist_id} user={user_id}")
    return ExportResponse()


@router.get(
    "/health",
    response_model=HealthResponse,
    responses={503: {"model": HealthResponse, "description": "Service unhealthy"}},
)
def health_check(
    reader: Annotated[PlaylistReader, Depends(get_reader)],
    producer: Annotated[ExportProducer, Depends(get_producer)],
    config: Annotated[ExportConfig, Depends(get_config)],
) -> HealthResponse | JSONResponse:
    """Check service health.

    No authentication required - used by load balancers and monitoring.
    """
    db_status = "ok" if reader.health_check() else "error"
    broker_status = "ok" if producer.health_check() else "error"
    overall_status = "ok" if db_status == broker_status == "ok" else "degraded"

    response = HealthResponse(
        status=overall_status,
        db=db_status,
        broker=broker_status,
        version=config.SERVICE_VERSION,
    )

    if overall_status != "ok":
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=response.model_dump(mode="json"),
        )

    return response


# =============================================================================
# FastAPI Application
# =============================================================================
def create_app(lifespan_handler: Callable | None = None) -> FastAPI:
    """Create and configure FastAPI application.

    Args:
        lifespan_handler: Lifespan context manager (production one if None).
    """
    application = FastAPI(
        title="openmusic-export",
        description="Playlist export service: queues playlist exports for email delivery",
        version="1.0.0",
        lifespan=lifespan_handler or lifespan,
    )
    application.include_router(router)
    register_exception_handlers(application)
    return application


app = create_app()


# =============================================================================
# Entry Point
# =============================================================================
def run() -> None:
    """Run the API server."""
    import uvicorn

    try:
        config = load_config()
    except ExportConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    logger.info(f"Starting {config.SERVICE_NAME} on {config.API_HOST}:{config.API_PORT}")
    uvicorn.run(
        "openmusic_export.api.main:app",
        host=config.API_HOST,
        port=config.API_PORT,
        reload=False,
    )


if __name__ == "__main__":
    run()
