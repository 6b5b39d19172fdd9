"""FastAPI application entry point."""

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from courseflow.api.routes import actions, executions, organizations, preview, scopes, templates
from courseflow.core.config import get_settings
from courseflow.core.exceptions import (
    ConfigurationError,
    ConflictError,
    CourseFlowError,
    InvalidTransitionError,
    NotFoundError,
)
from courseflow.core.logging import get_logger, setup_logging
from courseflow.storage.redis_client import close_redis_pool, init_redis_pool

logger = get_logger(__name__)

ERROR_STATUS: list[tuple[type[CourseFlowError], int]] = [
    (NotFoundError, 404),
    (ConflictError, 409),
    (InvalidTransitionError, 409),
    (ConfigurationError, 422),
]


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open the Redis pool for the lifetime of the app."""
    settings = get_settings()

    setup_logging("api")
    await init_redis_pool()
    logger.info("API started", app_name=settings.app_name, version=settings.app_version)
    try:
        yield
    finally:
        await close_redis_pool()
        logger.info("API stopped")


def error_response(status: int, message: str, data=None) -> JSONResponse:
    return JSONResponse(status_code=status, content={"code": status, "message": message, "data": data})


def status_for(exc: CourseFlowError) -> int:
    for error_type, status in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status
    return 500


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Flow action trigger resolution and execution engine",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # preview registers /actions/validate, which must precede /actions/{action_id}
    for module in (preview, actions, executions, scopes, organizations, templates):
        app.include_router(module.router, prefix="/api/v1")

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        if isinstance(exc.detail, str):
            return error_response(exc.status_code, exc.detail)
        return error_response(exc.status_code, "HTTP error", exc.detail)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request,
        exc: RequestValidationError,
    ) -> JSONResponse:
        return error_response(422, "Validation error", jsonable_errors(exc))

    @app.exception_handler(CourseFlowError)
    async def domain_exception_handler(request: Request, exc: CourseFlowError) -> JSONResponse:
        status = status_for(exc)
        if status == 500:
            logger.error("Engine error", exc_info=exc, path=request.url.path, method=request.method)
        return error_response(status, str(exc))

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error("Unhandled exception", exc_info=exc, path=request.url.path, method=request.method)
        return error_response(500, "Internal server error", str(exc) if settings.debug else None)

    @app.get("/health")
    async def health_check() -> dict:
        """Health check endpoint."""
        return {"status": "ok", "version": settings.app_version}

    @app.get("/metrics")
    async def metrics() -> Response:
        """Prometheus exposition."""
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    """Validation errors without the raw exception objects pydantic puts in ``ctx``."""
    errors = []
    for error in exc.errors():
        error = dict(error)
        if "ctx" in error:
            error["ctx"] = {k: str(v) for k, v in error["ctx"].items()}
        errors.append(error)
    return errors


# Application instance for uvicorn
app = create_app()
