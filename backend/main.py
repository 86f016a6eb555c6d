import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

import httpx
from fastapi import APIRouter, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.errors import tryon_error_handler
from api.routes import photos, tryon, usage
from config import AppMode, Settings, get_settings
from middleware.logging import RequestLoggingMiddleware, configure_request_logging
from services.errors import TryOnError
from services.tryon_pipeline import URL_FETCH_TIMEOUT_SECONDS, build_pipeline

logger = logging.getLogger(__name__)

APP_VERSION = "1.0.0"

MAX_ERROR_STRING_CHARS = 400
MAX_ERROR_CONTAINER_ITEMS = 50
MAX_ERROR_DEPTH = 8


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s - %(levelname)s - %(message)s",
    )
    # Quiet chatty client libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("google_genai").setLevel(logging.WARNING)


def _truncate_string(value: str, max_chars: int = MAX_ERROR_STRING_CHARS) -> str:
    if len(value) <= max_chars:
        return value
    return f"{value[:max_chars]}…(truncated)"


def _sanitize_for_json(value: Any, *, _depth: int = 0) -> Any:
    """
    Make validation error payloads UTF-8 encodable and bounded.

    Validation details echo request input, which here is usually a base64
    image; long strings are truncated so a bad 10MB payload does not come
    back as a 10MB 422 body.
    """
    if _depth > MAX_ERROR_DEPTH:
        return "<max depth reached>"
    if value is None or isinstance(value, (int, float, bool)):
        return value
    if isinstance(value, str):
        safe = value.encode("utf-8", errors="replace").decode("utf-8", errors="replace")
        return _truncate_string(safe)
    if isinstance(value, bytes):
        return _truncate_string(value.decode("utf-8", errors="replace"))
    if isinstance(value, (list, tuple, set)):
        items = list(value)
        out = [_sanitize_for_json(v, _depth=_depth + 1) for v in items[:MAX_ERROR_CONTAINER_ITEMS]]
        if len(items) > MAX_ERROR_CONTAINER_ITEMS:
            out.append(f"... ({len(items) - MAX_ERROR_CONTAINER_ITEMS} more items truncated)")
        return out
    if isinstance(value, dict):
        return {
            str(_sanitize_for_json(k, _depth=_depth + 1)): _sanitize_for_json(v, _depth=_depth + 1)
            for k, v in list(value.items())[:MAX_ERROR_CONTAINER_ITEMS]
        }
    return _sanitize_for_json(str(value), _depth=_depth + 1)


async def request_validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": _sanitize_for_json(exc.errors())},
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the pipeline on startup unless one was provided; close clients on shutdown."""
    settings: Settings = app.state.settings
    logger.info(f"Starting try-on service in {settings.APP_MODE.value} mode...")
    logger.info(f"Storage backend: {settings.STORAGE_BACKEND}")

    http_client: Optional[httpx.AsyncClient] = None
    if getattr(app.state, "pipeline", None) is None:
        http_client = httpx.AsyncClient(timeout=URL_FETCH_TIMEOUT_SECONDS, follow_redirects=True)
        app.state.pipeline = build_pipeline(settings, http_client=http_client)
        if app.state.pipeline.orchestrator is not None:
            logger.info("Gemini orchestrator initialized")

    yield

    if http_client is not None:
        await http_client.aclose()
    logger.info("Shutting down try-on service...")


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()

    app = FastAPI(
        title="Virtual Try-On Service",
        description="Garment detection and AI try-on generation backed by Google Gemini",
        version=APP_VERSION,
        lifespan=lifespan,
        debug=(settings.APP_MODE == AppMode.DEV and settings.DEBUG),
    )
    app.state.settings = settings
    app.state.pipeline = None

    app.add_exception_handler(RequestValidationError, request_validation_exception_handler)
    app.add_exception_handler(TryOnError, tryon_error_handler)

    configure_request_logging(settings.LOG_LEVEL)
    app.add_middleware(RequestLoggingMiddleware)

    # CORS must be added last (first to process incoming requests)
    origins = settings.CORS_ORIGINS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials="*" not in origins,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )

    api_router = APIRouter(prefix="/api")
    api_router.include_router(tryon.router)
    api_router.include_router(photos.router)
    api_router.include_router(usage.router)
    app.include_router(api_router)

    @app.get("/")
    async def root():
        return {"name": "Virtual Try-On API", "version": APP_VERSION, "docs": "/docs"}

    @app.get("/health")
    async def health_check(request: Request):
        pipeline = request.app.state.pipeline
        ai_enabled = pipeline is not None and pipeline.orchestrator is not None
        return {
            "status": "healthy",
            "mode": settings.APP_MODE.value,
            "ai_enabled": ai_enabled,
            "ai_provider": "google_gemini" if ai_enabled else None,
        }

    return app


settings = get_settings()
configure_logging(settings)
app = create_app(settings)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=(settings.APP_MODE == AppMode.DEV),
    )
