"""FastAPI application for the tabular deidentification engine."""

import logging
import threading
import time
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .. import __version__
from ..core.config import Config, get_config
from ..core.errors import DeidentificationError
from ..correspondence.factory import create_store
from ..correspondence.store import CorrespondenceStore
from ..policy.policy_set import PolicySet
from .routes import error_status, router


logger = logging.getLogger(__name__)


def _empty_metrics():
    return {
        'batches_processed': 0,
        'batches_failed': 0,
        'records_transformed': 0,
        'records_suppressed': 0,
        'records_errored': 0,
        'records_abandoned': 0,
    }


def create_app(
    config: Optional[Config] = None,
    policy_set: Optional[PolicySet] = None,
    store: Optional[CorrespondenceStore] = None,
) -> FastAPI:
    """
    Build the API application.

    Args:
        config: Configuration; the global configuration if None
        policy_set: Default policy set; loaded from ``api.policy_path`` if None
        store: Correspondence store; built from configuration if None
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager."""
        # Startup
        logger.info("Starting Tabular Deidentification API...")

        app_config = config or get_config()
        app.state.config = app_config

        if policy_set is not None:
            app.state.policy_set = policy_set
        elif app_config.api.policy_path:
            app.state.policy_set = PolicySet.from_yaml(app_config.api.policy_path)
        else:
            logger.warning("No default policy set configured; requests must carry their policies")
            app.state.policy_set = PolicySet()

        owns_store = store is None
        app.state.store = store or create_store(app_config)
        app.state.metrics = _empty_metrics()
        app.state.metrics_lock = threading.Lock()

        logger.info("API startup completed successfully")

        yield

        # Shutdown
        logger.info("Shutting down Tabular Deidentification API...")
        if owns_store:
            app.state.store.close()

    app = FastAPI(
        title="Tabular Deidentification API",
        description="Policy-driven deidentification of structured records",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(DeidentificationError)
    async def deidentification_exception_handler(request: Request, exc: DeidentificationError):
        """Classified engine errors that escaped a route."""
        logger.warning(f"Request failed with {exc.code}")
        return JSONResponse(status_code=error_status(exc), content=exc.to_dict())

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Global exception handler."""
        logger.error(f"Unhandled exception: {exc}", exc_info=True)

        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "message": "An unexpected error occurred",
            }
        )

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "timestamp": time.time(),
            "version": __version__,
        }

    @app.get("/metrics")
    async def metrics(request: Request):
        """Metrics endpoint for monitoring."""
        state = request.app.state
        with state.metrics_lock:
            batch_stats = dict(state.metrics)

        return {
            "timestamp": time.time(),
            "batch_stats": batch_stats,
            "store": {
                "backend": state.config.correspondence.backend.value,
                "entries": state.store.count(),
            },
            "system_info": {
                "version": __version__,
                "strict_mode": state.config.deidentification.strict_mode,
                "debug": state.config.debug,
            },
        }

    @app.get("/")
    async def root():
        """Root endpoint with API information."""
        return {
            "name": "Tabular Deidentification API",
            "version": __version__,
            "docs_url": "/docs",
            "health_url": "/health",
            "api_base": "/api/v1",
        }

    app.include_router(router, prefix="/api/v1")
    return app


def main() -> None:
    """Run the API server."""
    config = get_config()

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    uvicorn.run(
        "tabular_deidentification.api.main:create_app",
        factory=True,
        host=config.api.host,
        port=config.api.port,
        workers=config.api.workers,
        reload=config.api.reload,
        log_level=config.api.log_level,
        access_log=True
    )


if __name__ == "__main__":
    main()
