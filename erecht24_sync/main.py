import logging
import logging.config
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from erecht24_sync.config import Settings
from erecht24_sync.dependencies import Container, build_container
from erecht24_sync.routers.admin import router as admin_router
from erecht24_sync.routers.webhook import limiter, router as webhook_router

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "json": {
                    "format": '{"time": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s"}',
                },
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "json",
                },
            },
            "root": {"level": level.upper(), "handlers": ["console"]},
        }
    )


def create_app(container: Optional[Container] = None) -> FastAPI:
    """Build the application around *container* (defaults from the environment)."""
    if container is None:
        container = build_container(Settings())
    configure_logging(container.settings.log_level)

    app = FastAPI(
        title="eRecht24 Sync",
        description="Keeps imprint and privacy policies in sync with eRecht24 via push webhooks.",
        version="1.0.0",
    )
    app.state.container = container

    # Rate-limiting state
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled exception for %s", request.url.path)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    app.include_router(webhook_router)
    app.include_router(admin_router)

    @app.get("/", summary="Health check")
    async def root() -> dict:
        return {"message": "eRecht24 sync is running"}

    return app
