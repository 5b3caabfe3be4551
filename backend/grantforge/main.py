from contextlib import asynccontextmanager
from functools import lru_cache
import logging
from pathlib import Path
import time

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from grantforge.api.routers.library import build_library_router
from grantforge.api.routers.proposals import build_proposals_router
from grantforge.api.routers.system import build_system_router
from grantforge.config import settings
from grantforge.observability import (
    configure_logging,
    normalize_request_id,
    reset_request_id,
    sanitize_for_logging,
    set_request_id,
)
from grantforge.provider import BedrockGenerationProvider, GenerationProvider
from grantforge.storage import ObjectStorage, create_object_storage
from grantforge.store import init_db
from grantforge.version import APP_VERSION

logger = logging.getLogger("grantforge.api")


@lru_cache(maxsize=1)
def _cached_generation_provider() -> BedrockGenerationProvider:
    return BedrockGenerationProvider(settings=settings)


def get_generation_provider() -> GenerationProvider:
    return _cached_generation_provider()


@lru_cache(maxsize=1)
def _cached_object_storage() -> ObjectStorage:
    return create_object_storage(settings)


def get_object_storage() -> ObjectStorage:
    return _cached_object_storage()


@asynccontextmanager
async def lifespan(_: FastAPI):
    configure_logging(settings.log_level)
    logger.info("application_startup", extra={"event": "application_startup", "environment": settings.app_env})
    init_db()
    Path(settings.storage_root).mkdir(parents=True, exist_ok=True)
    yield
    logger.info("application_shutdown", extra={"event": "application_shutdown"})


def create_app() -> FastAPI:
    cors_origins = settings.cors_origins_list
    if settings.cors_allow_credentials and any(origin == "*" for origin in cors_origins):
        raise RuntimeError("Invalid CORS_ORIGINS: wildcard '*' is not allowed when credentials are enabled.")

    app = FastAPI(title=settings.app_name, version=APP_VERSION, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["Authorization", "Content-Type", settings.request_id_header],
    )

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):
        request_id = normalize_request_id(request.headers.get(settings.request_id_header))
        request.state.request_id = request_id
        token = set_request_id(request_id)
        started = time.perf_counter()

        logger.info(
            "request_started",
            extra={
                "event": "request_started",
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "query": sanitize_for_logging(dict(request.query_params)),
                "client_ip": request.client.host if request.client else None,
            },
        )

        try:
            response = await call_next(request)
            elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
            response.headers[settings.request_id_header] = request_id
            logger.info(
                "request_completed",
                extra={
                    "event": "request_completed",
                    "request_id": request_id,
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "duration_ms": elapsed_ms,
                },
            )
            return response
        except Exception:
            elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
            logger.exception(
                "request_failed",
                extra={
                    "event": "request_failed",
                    "request_id": request_id,
                    "method": request.method,
                    "path": request.url.path,
                    "duration_ms": elapsed_ms,
                },
            )
            raise
        finally:
            reset_request_id(token)

    # Lambdas resolve the module getters per request so tests can monkeypatch them.
    app.include_router(build_system_router(get_object_storage=lambda: get_object_storage()))
    app.include_router(build_proposals_router(get_generation_provider=lambda: get_generation_provider()))
    app.include_router(
        build_library_router(
            get_generation_provider=lambda: get_generation_provider(),
            get_object_storage=lambda: get_object_storage(),
        )
    )
    return app


app = create_app()
