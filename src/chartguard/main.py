"""
chartguard - Main Application.

FastAPI application exposing the safe visualization query engine.
"""

import logging
import sys
import traceback
from contextlib import asynccontextmanager
from uuid import UUID, uuid4

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from chartguard import __version__
from chartguard.api.routes.datasets import router as datasets_router
from chartguard.api.routes.metrics import router as metrics_router
from chartguard.api.routes.tables import router as tables_router
from chartguard.api.routes.visualizations import router as visualizations_router
from chartguard.config import get_settings
from chartguard.engine.store import DatasetStore
from chartguard.exceptions import ChartGuardException
from chartguard.observability import get_metrics_store
from chartguard.schemas import HealthResponse

# Configure standard logging
logging.basicConfig(
    level=get_settings().app_log_level.upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger("chartguard")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    settings = get_settings()
    logger.info(
        f"Starting chartguard API v{__version__} "
        f"[env={settings.app_env}] "
        f"[features={settings.features.to_dict()}]"
    )
    yield
    logger.info("Shutting down chartguard API")


def create_app() -> FastAPI:
    """Build the application with its own dataset store."""
    app = FastAPI(
        title="chartguard API",
        description="Safe, explainable visualization queries over large tabular datasets.",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
    app.state.dataset_store = DatasetStore()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately in production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # =========================================================================
    # Middleware
    # =========================================================================

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log all requests."""
        request_id = getattr(request.state, "request_id", "unknown")
        logger.info(f"[{request_id}] {request.method} {request.url.path}")

        response = await call_next(request)

        logger.info(f"[{request_id}] {request.method} {request.url.path} -> {response.status_code}")
        return response

    # Registered last so it runs first and the id is set before logging.
    @app.middleware("http")
    async def add_request_id(request: Request, call_next):
        """Add request ID to all requests."""
        request_id = request.headers.get("X-Request-ID") or str(uuid4())
        request.state.request_id = request_id

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    # =========================================================================
    # Exception Handlers
    # =========================================================================

    @app.exception_handler(ChartGuardException)
    async def chartguard_exception_handler(request: Request, exc: ChartGuardException):
        """Handle chartguard custom exceptions."""
        request_id = None
        request_id_str = getattr(request.state, "request_id", None)
        if request_id_str:
            try:
                request_id = UUID(request_id_str)
            except (ValueError, TypeError):
                request_id = None

        logger.warning(f"ChartGuardException: {exc.code} - {exc.message}")

        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": {
                    "code": exc.code,
                    "message": exc.message,
                    "details": exc.details,
                    "request_id": str(request_id) if request_id else request_id_str,
                }
            },
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle unexpected exceptions."""
        request_id_str = getattr(request.state, "request_id", None)
        get_metrics_store().record_error("INTERNAL_ERROR")

        logger.error(f"Unhandled exception on {request.url.path}")
        logger.error(f"Exception type: {type(exc).__name__}")
        logger.error(f"Exception message: {str(exc)}")
        logger.error(f"Traceback:\n{traceback.format_exc()}")

        return JSONResponse(
            status_code=500,
            content={
                "error": {
                    "code": "INTERNAL_ERROR",
                    "message": str(exc) if get_settings().app_debug else "An unexpected error occurred",
                    "request_id": request_id_str,
                }
            },
        )

    # =========================================================================
    # Health Check
    # =========================================================================

    @app.get("/health", response_model=HealthResponse, tags=["health"])
    async def health_check(request: Request):
        """Health check endpoint."""
        settings = get_settings()
        store: DatasetStore = request.app.state.dataset_store
        return HealthResponse(
            status="degraded" if store.is_poisoned else "healthy",
            version=__version__,
            features=settings.features.to_dict(),
            app_env=settings.app_env,
            is_production=settings.is_production,
            has_data=None if store.is_poisoned else store.has_data(),
        )

    @app.get("/", include_in_schema=False)
    async def root():
        """Root endpoint redirect to docs."""
        return {"message": "Welcome to chartguard API", "docs": "/docs"}

    # =========================================================================
    # Routers
    # =========================================================================

    app.include_router(datasets_router)
    app.include_router(visualizations_router)
    app.include_router(tables_router)
    app.include_router(metrics_router)

    return app


app = create_app()


def run() -> None:
    """Serve the API with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run("chartguard.main:app", host=settings.app_host, port=settings.app_port)
