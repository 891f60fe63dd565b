"""Captcha Harvester process entry point.

Runs two servers in one event loop:
- harvest server (HARVEST_PORT): harvest clients and captcha page sockets
- view server (VIEW_PORT): the captcha page itself

Run with: captcha-harvester
"""

import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from .api import health_router, view_router, ws_router
from .api.ws import ConnectionManager
from .core.config import Settings, settings
from .services.broker import CaptchaBroker

logger = logging.getLogger(__name__)


def create_redis_client(app_settings: Settings):
    """Redis client for lifecycle events, or None when disabled."""
    if not app_settings.HARVEST_REDIS_ENABLED:
        return None

    from redis.asyncio import Redis

    logger.info(f"[EVENTS] Publishing to {app_settings.REDIS_EVENTS_URL}/{app_settings.HARVEST_EVENTS_CHANNEL}")
    return Redis.from_url(app_settings.REDIS_EVENTS_URL)


def create_harvest_app(broker: CaptchaBroker | None = None, app_settings: Settings = settings) -> FastAPI:
    """Build the harvest server application around ``broker``."""
    if broker is None:
        broker = CaptchaBroker.from_settings(app_settings, redis_client=create_redis_client(app_settings))

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info(f"[BROKER] Harvest server ready (session timeout: {app_settings.HARVEST_SESSION_TIMEOUT}s)")
        yield
        await broker.shutdown()

    app = FastAPI(
        title=app_settings.APP_NAME,
        description=app_settings.APP_DESCRIPTION,
        version=app_settings.APP_VERSION or "0.1.0",
        lifespan=lifespan,
    )
    app.state.broker = broker
    app.state.connections = ConnectionManager()
    app.include_router(health_router)
    app.include_router(ws_router)
    return app


def create_view_app(app_settings: Settings = settings) -> FastAPI:
    """Build the view server application serving the captcha page."""
    app = FastAPI(title=f"{app_settings.APP_NAME} View", docs_url=None, redoc_url=None, openapi_url=None)
    app.include_router(view_router)
    return app


async def serve(app_settings: Settings = settings) -> None:
    harvest_server = uvicorn.Server(
        uvicorn.Config(
            create_harvest_app(app_settings=app_settings),
            host=app_settings.HARVEST_HOST,
            port=app_settings.HARVEST_PORT,
            log_level=app_settings.LOG_LEVEL.lower(),
        )
    )
    view_server = uvicorn.Server(
        uvicorn.Config(
            create_view_app(app_settings),
            host=app_settings.HARVEST_HOST,
            port=app_settings.VIEW_PORT,
            # Parses absolute-form proxy request targets down to their path
            http="httptools",
            log_level=app_settings.LOG_LEVEL.lower(),
        )
    )
    await asyncio.gather(harvest_server.serve(), view_server.serve())


def run() -> None:
    logging.basicConfig(level=settings.LOG_LEVEL, format=settings.LOG_FORMAT)
    asyncio.run(serve())


if __name__ == "__main__":
    run()
