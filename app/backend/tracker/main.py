"""FastAPI application entrypoint."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from tracker.api.router import api_router
from tracker.core.config import get_settings
from tracker.core.logging_setup import setup_logging
from tracker.db.session import SessionLocal
from tracker.services.performance_dashboard import build_performance_dashboard


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    dashboard = build_performance_dashboard(get_settings(), SessionLocal)
    app.state.performance_dashboard = dashboard
    dashboard.start()
    try:
        yield
    finally:
        dashboard.close()


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""

    settings = get_settings()
    setup_logging(settings.log_level)

    app = FastAPI(
        title=settings.app_name,
        version="0.1.0",
        openapi_url=f"{settings.api_prefix}/openapi.json",
        docs_url=f"{settings.api_prefix}/docs",
        redoc_url=f"{settings.api_prefix}/redoc",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router, prefix=settings.api_prefix)

    @app.get("/", tags=["system"])
    def root() -> dict[str, str]:
        return {"service": settings.app_name, "status": "running"}

    return app


app = create_app()


def run() -> None:
    """Serve the application with uvicorn (`tracker-serve`)."""

    settings = get_settings()
    uvicorn.run("tracker.main:app", host=settings.host, port=settings.port, log_level=settings.log_level.lower())
