"""FastAPI application factory for the chat service."""

from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.config import get_settings
from app.core.app_state import state
from app.infra.logging_config import LoggingConfig, get_logger
from app.routers import realtime_router
from app.tasks.expiry_sweeper import run_expiry_sweeper
from app.utils.rate_limit import build_rate_limit_client

logger = get_logger("main")


def create_app(testing: bool = False) -> FastAPI:
    settings = get_settings()
    LoggingConfig(settings.log_level)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        state.rate_limit_client = None if testing else build_rate_limit_client(settings)
        stop_event = asyncio.Event()
        sweeper = None
        if not testing and settings.session_sweep_interval_seconds > 0:
            sweeper = asyncio.create_task(
                run_expiry_sweeper(
                    state.gateway,
                    settings.session_sweep_interval_seconds,
                    stop_event,
                )
            )
        try:
            yield
        finally:
            stop_event.set()
            if sweeper is not None:
                with contextlib.suppress(asyncio.CancelledError):
                    await sweeper
            if state.rate_limit_client is not None:
                state.rate_limit_client.close()
                state.rate_limit_client = None

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.include_router(realtime_router.router)

    @app.get("/health", tags=["system"])
    def health() -> dict[str, str]:
        return {"status": "ok"}

    logger.info("Created %s (environment=%s)", settings.app_name, settings.environment)
    return app


app = create_app()
