"""
Lifeworld REST API
==================
FastAPI server exposing the convergence engine.

Run with:
    uvicorn lifeworld.api.main:app --port 8120
or:
    lifeworld serve
"""

import os
import secrets
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security.api_key import APIKeyHeader
from loguru import logger

from lifeworld import __version__
from lifeworld.core.config import LifeworldConfig, get_config
from lifeworld.core.engine import ConvergenceEngine
from lifeworld.core.exceptions import (
    LifeworldError,
    NotFoundError,
    RecoverableError,
    ValidationError,
    is_debug_mode,
)
from lifeworld.core.logging_config import configure_logging, is_configured
from lifeworld.api.routes import (
    concepts_router,
    convergence_router,
    health_router,
    metrics_router,
    predictive_router,
    scheduler_router,
)

API_KEY_NAME = "X-API-Key"
api_key_header = APIKeyHeader(name=API_KEY_NAME, auto_error=False)


def _expected_api_key(config: LifeworldConfig) -> str:
    return config.api.api_key or os.getenv("LIFEWORLD_API_KEY", "")


async def get_api_key(request: Request, api_key: str = Security(api_key_header)):
    """Enforce X-API-Key when a key is configured; open access otherwise."""
    expected_key = _expected_api_key(request.app.state.config)
    if not expected_key:
        return None
    if not api_key or not secrets.compare_digest(api_key, expected_key):
        raise HTTPException(status_code=403, detail="Invalid or missing API Key")
    return api_key


# --- Lifecycle Management ---

@asynccontextmanager
async def lifespan(app: FastAPI):
    config: LifeworldConfig = app.state.config
    if not is_configured():
        configure_logging(config.observability.log_level, config.observability.json_logs)

    if not _expected_api_key(config):
        logger.warning("No API key configured; the API is open. Set LIFEWORLD_API_KEY or api.api_key.")

    engine: Optional[ConvergenceEngine] = getattr(app.state, "engine", None)
    if engine is None:
        logger.info("Building ConvergenceEngine from config...")
        engine = ConvergenceEngine.from_config(config)
        app.state.engine = engine

    await engine.initialize()
    await engine.start_scheduler()

    yield

    logger.info("Closing ConvergenceEngine...")
    await engine.close()


def create_app(
    config: Optional[LifeworldConfig] = None,
    engine: Optional[ConvergenceEngine] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        config: Configuration; defaults to the global config.
        engine: Pre-built engine (tests inject one backed by the in-memory store).
    """
    config = config or (engine.config if engine else get_config())

    app = FastAPI(
        title="Lifeworld API",
        description="Semantic Convergence & Metrics Engine - REST API",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.config = config
    if engine is not None:
        app.state.engine = engine

    @app.exception_handler(LifeworldError)
    async def lifeworld_exception_handler(request: Request, exc: LifeworldError):
        """
        Centralized exception handler for all Lifeworld errors.
        Returns JSON with error details and stacktrace only in DEBUG mode.
        """
        if exc.recoverable:
            logger.warning(f"Recoverable error: {exc}")
        else:
            logger.error(f"Irrecoverable error: {exc}")

        if isinstance(exc, NotFoundError):
            status_code = 404
        elif isinstance(exc, ValidationError):
            status_code = 400
        elif isinstance(exc, RecoverableError):
            status_code = 503
        else:
            status_code = 500

        return JSONResponse(
            status_code=status_code,
            content=exc.to_dict(include_traceback=is_debug_mode()),
        )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health_router)
    protected = [Depends(get_api_key)]
    for router in (
        metrics_router,
        convergence_router,
        scheduler_router,
        predictive_router,
        concepts_router,
    ):
        app.include_router(router, dependencies=protected)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    cfg = get_config()
    uvicorn.run(app, host=cfg.api.host, port=cfg.api.port)
