"""
FastAPI app: /health and /meshconfig (current cached mesh config).
"""

import time
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request

from meshconfig import __version__
from meshconfig.cache import Cache, new_cache_from_file
from meshconfig.config.loader import get_app_settings

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: watch the mesh config file. Shutdown: close the watch."""
    logger.info("startup_start")
    settings = get_app_settings()
    cache = new_cache_from_file(settings.mesh_config_file, debounce=settings.watch_debounce)
    app.state.mesh_cache = cache
    logger.info("mesh_config_watcher_started", path=settings.mesh_config_file)
    logger.info("application_ready")
    yield
    logger.info("shutdown_start")
    cache.close()


app = FastAPI(title="Mesh Config Cache", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log each request (method, path, status, duration)."""
    start = time.monotonic()
    response = await call_next(request)
    duration_ms = (time.monotonic() - start) * 1000
    logger.info(
        "request",
        method=request.method,
        path=request.url.path,
        status=response.status_code,
        duration_ms=round(duration_ms, 2),
    )
    return response


def _cache(request: Request) -> Cache:
    return request.app.state.mesh_cache


@app.get("/health")
async def health() -> dict:
    """Liveness probe."""
    return {"status": "ok"}


@app.get("/meshconfig")
async def get_mesh_config(request: Request) -> dict:
    """Return the current mesh config (camelCase keys)."""
    return _cache(request).get().model_dump(mode="json", by_alias=True)
