from __future__ import annotations

from contextlib import asynccontextmanager
from typing import List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from kidsmin.api.error_handling import register_exception_handlers
from kidsmin.api.routes import router
from kidsmin.config import get_settings
from kidsmin.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup so configuration errors surface immediately."""
    from kidsmin.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", version=__version__)

    yield

    try:
        runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def _allowed_origins() -> List[str]:
    settings = get_settings()
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    # Default to the local frontend dev server; avoid wildcard when credentials are enabled
    return [settings.frontend_url, "http://127.0.0.1:4200"]


def create_app() -> FastAPI:
    settings = get_settings()
    application = FastAPI(title="KidsMin Portal Auth", version=__version__, lifespan=lifespan)

    application.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(),
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
        max_age=3600,
    )

    @application.middleware("http")
    async def add_security_headers(request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        # Tokens and codes travel in these bodies
        if request.url.path.startswith("/v1/"):
            response.headers.setdefault(
                "Cache-Control", "no-store, no-cache, must-revalidate, private"
            )
        if request.url.scheme == "https" and settings.enable_hsts:
            response.headers.setdefault(
                "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
            )
        return response

    @application.middleware("http")
    async def add_correlation_id(request, call_next):
        """Tag every log line for a request with its X-Request-ID (client-supplied or new)."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    register_exception_handlers(application)
    application.include_router(router)

    @application.get("/health", tags=["system"])
    async def health() -> dict:
        return {"status": "healthy", "version": __version__}

    return application


app = create_app()
