from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI

from stagevault.api.error_handling import register_exception_handlers
from stagevault.api.routes import router
from stagevault.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Resolve the backend on startup and release the pool on shutdown."""
    from stagevault.service.runtime import close_runtime, get_runtime

    runtime = get_runtime()
    logger.info("app_started", backend=runtime.store.backend_name, version=__version__)

    yield

    close_runtime()
    logger.info("runtime_cleanup_complete")


app = FastAPI(title="Stagevault", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with the client's X-Request-ID, or a fresh one, for log tracing."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    from stagevault.service.runtime import get_runtime

    runtime = get_runtime()
    return {"status": "ok", "backend": runtime.store.backend_name, "version": __version__}
