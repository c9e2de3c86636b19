from __future__ import annotations

import logging
import os
from typing import Optional, Sequence

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from collabcanvas import __version__
from collabcanvas.config.feature_flags import load_feature_flags
from collabcanvas.config.settings import SyncSettings, load_settings
from collabcanvas.logging_config import init_logging
from collabcanvas.server.core.errors import register_exception_handlers
from collabcanvas.server.core.hub import CanvasHub
from collabcanvas.server.core.middleware import RequestIDMiddleware, TimingMiddleware
from collabcanvas.server.modules import canvas_ws
from collabcanvas.server.routes import canvases, presence, shapes

LOGGER = logging.getLogger(__name__)

DEFAULT_ORIGINS = ("http://localhost:5173", "http://127.0.0.1:5173")


def _resolve_cors_origins(explicit: Optional[Sequence[str]]) -> list[str]:
    origins = list(explicit) if explicit is not None else list(DEFAULT_ORIGINS)
    extra = os.getenv("COLLABCANVAS_CORS_ORIGINS", "")
    if extra:
        origins.extend(origin.strip() for origin in extra.split(",") if origin.strip())
    return list(dict.fromkeys(origins))


def create_app(
    *,
    hub: Optional[CanvasHub] = None,
    settings: Optional[SyncSettings] = None,
    enable_cors: bool = True,
    allowed_origins: Optional[Sequence[str]] = None,
    configure_logging: bool = False,
) -> FastAPI:
    """Application factory used by both CLI launches and ASGI servers."""
    if configure_logging:
        log_path = init_logging(level=os.getenv("COLLABCANVAS_LOG_LEVEL", "INFO"))
        LOGGER.info("Logging to %s", log_path)

    app = FastAPI(title="collabcanvas", version=__version__)
    app.state.version = __version__
    app.state.hub = hub or CanvasHub(settings=settings or load_settings())

    if enable_cors:
        origins = _resolve_cors_origins(allowed_origins)
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )
        LOGGER.debug("CORS enabled", extra={"origins": origins})

    app.add_middleware(TimingMiddleware)
    app.add_middleware(RequestIDMiddleware)

    register_exception_handlers(app)

    @app.on_event("startup")
    async def _on_startup() -> None:
        await app.state.hub.start()

    @app.on_event("shutdown")
    async def _on_shutdown() -> None:
        await app.state.hub.stop()

    app.include_router(canvases.router)
    app.include_router(shapes.router)
    app.include_router(presence.router)
    app.include_router(canvas_ws.router)

    @app.get("/health", tags=["System"], summary="Simple health probe")
    async def core_health():
        return {"status": "ok"}

    @app.get("/status", tags=["System"], summary="Hub and feature overview")
    async def core_status():
        return {
            "ok": True,
            "version": __version__,
            "hub": app.state.hub.stats(),
            "features": load_feature_flags(),
            "settings": app.state.hub.settings.as_dict(),
        }

    return app


__all__ = ["create_app"]
