# collectsync/main.py
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from collectsync import __version__
from collectsync.adapters.wms_http import (
    HttpCollectorDirectory,
    HttpLineSource,
    HttpStockSnapshotProvider,
    HttpSyncChannel,
    build_client,
)
from collectsync.api.routers.collect_sessions import router as collect_sessions_router
from collectsync.api.routers.move_sessions import router as move_sessions_router
from collectsync.api.routers.sync_push import router as sync_push_router
from collectsync.core.config import AppSettings, get_settings
from collectsync.core.logging import setup_logging
from collectsync.http_problem_handlers import register_exception_handlers
from collectsync.metrics import router as metrics_router
from collectsync.services.session_registry import SessionRegistry

logger = logging.getLogger("collectsync")


def _build_lifespan(settings: AppSettings):
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if getattr(app.state, "registry", None) is not None:
            # 测试预先注入了 registry
            yield
            return

        if not settings.WMS_API_BASE_URL:
            raise RuntimeError("WMS_API_BASE_URL is not configured")

        api = build_client(settings.WMS_API_BASE_URL, timeout=settings.HTTP_TIMEOUT_SECONDS)
        sync_url = settings.sync_base_url or settings.WMS_API_BASE_URL
        sync = (
            api
            if sync_url == settings.WMS_API_BASE_URL
            else build_client(sync_url, timeout=settings.HTTP_TIMEOUT_SECONDS)
        )
        app.state.registry = SessionRegistry(
            stock=HttpStockSnapshotProvider(api),
            channel=HttpSyncChannel(sync),
            line_source=HttpLineSource(api),
            collectors=HttpCollectorDirectory(api),
            epsilon=settings.QTY_EPSILON,
        )
        logger.info("collectsync %s started (env=%s, wms=%s)", __version__, settings.ENV, api.base_url)
        try:
            yield
        finally:
            app.state.registry.close_all()
            app.state.registry = None
            if sync is not api:
                await sync.aclose()
            await api.aclose()

    return lifespan


def create_app(settings: Optional[AppSettings] = None) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings.LOG_LEVEL, json=settings.JSON_LOG)

    app = FastAPI(
        title="CollectSync",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=_build_lifespan(settings),
    )
    app.state.registry = None

    if settings.ENV == "dev":
        app.add_middleware(
            CORSMiddleware,
            allow_origins=[
                "http://127.0.0.1:5173",
                "http://localhost:5173",
            ],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    register_exception_handlers(app)

    app.include_router(collect_sessions_router)
    app.include_router(move_sessions_router)
    app.include_router(sync_push_router)
    app.include_router(metrics_router)

    @app.get("/health", tags=["ops"])
    async def health(request: Request) -> Dict[str, Any]:
        registry = request.app.state.registry
        if registry is None:
            return {"status": "starting", "channel": "unknown"}
        channel = registry.channel
        if not channel.connected:
            await channel.ping()
        return {
            "status": "ok",
            "channel": "online" if channel.connected else "offline",
            "sessions": len(registry.sessions()),
        }

    return app


app = create_app()
