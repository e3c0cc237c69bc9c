from fastapi import FastAPI
from contextlib import asynccontextmanager
from fastapi.middleware.cors import CORSMiddleware
from typing import Optional
import structlog

from trendscreen.config import Settings, get_settings
from trendscreen.database import create_engine, create_session_factory
from trendscreen.utils.logging import setup_logging
from trendscreen.utils.retry import RetryPolicy
from trendscreen.routers import health, screener


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings.LOG_LEVEL, settings.LOG_FORMAT)
    log = structlog.get_logger()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        log.info("Application starting up...", version=settings.VERSION)
        for warning in settings.config_warnings():
            log.warning("Configuration warning", warning=warning)

        engine = create_engine(settings)
        app.state.engine = engine
        app.state.session_factory = create_session_factory(engine)
        yield
        # Shutdown
        log.info("Application shutting down...")
        await engine.dispose()

    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.VERSION,
        openapi_url=f"{settings.API_V1_STR}/openapi.json",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.retry_policy = RetryPolicy.from_settings(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Routers
    app.include_router(health.router, tags=["Health"])
    app.include_router(screener.router, prefix=f"{settings.API_V1_STR}/screener", tags=["Screener"])
    return app
