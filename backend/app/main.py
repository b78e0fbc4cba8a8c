"""Compute Coordinator API - FastAPI application."""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager

from coordinator import __version__
from coordinator.escrow import EscrowNotConfiguredError, Web3EscrowClient
from coordinator.jobs import JobService, SQLiteJobStorage, StorageError
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from .config import get_settings
from .errors import register_error_handlers
from .logging_config import configure_logging, get_logger
from .rate_limit import limiter
from .routes import jobs_router, providers_router

logger = get_logger("api")


def build_job_service(settings) -> JobService:
    """Wire storage, escrow client and engine from settings.

    An escrow client that cannot be built is logged and left out; the
    service still creates, funds and matches jobs, while accept and cancel
    fail with ``escrow_unavailable``.
    """
    config = settings.coordinator_config()
    storage = SQLiteJobStorage(config.db_path)

    escrow = None
    try:
        escrow = Web3EscrowClient.from_config(config)
        logger.info(f"Escrow client initialized | contract={config.escrow_address}")
    except EscrowNotConfiguredError as e:
        logger.warning(f"Escrow client unavailable, running without settlement: {e}")

    return JobService(storage, escrow=escrow, config=config)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    settings = get_settings()
    configure_logging(settings.log_level, json_format=settings.log_json)
    logger.info(f"Starting Compute Coordinator API (debug={settings.debug})")

    if getattr(app.state, "job_service", None) is None:
        app.state.job_service = build_job_service(settings)

    owned_executor = None
    if getattr(app.state, "settlement_executor", None) is None:
        owned_executor = ThreadPoolExecutor(
            max_workers=settings.settlement_workers, thread_name_prefix="settlement"
        )
        app.state.settlement_executor = owned_executor

    service = app.state.job_service
    if settings.reconcile_on_startup and service.escrow is not None:
        report = await asyncio.to_thread(service.reconcile)
        if report.checked:
            logger.info(f"Startup reconcile | {report.to_dict()}")
    yield
    # Shutdown
    logger.info("Shutting down Compute Coordinator API")
    if owned_executor is not None:
        app.state.settlement_executor = None
        owned_executor.shutdown(wait=True)


app = FastAPI(
    title="Compute Coordinator API",
    description="Job lifecycle and escrow settlement for a compute marketplace",
    version=__version__,
    lifespan=lifespan,
)

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

register_error_handlers(app)

# CORS middleware
settings = get_settings()
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(jobs_router)
app.include_router(providers_router)


@app.get("/")
async def root():
    """Health check endpoint."""
    return {
        "service": "compute-coordinator",
        "version": __version__,
        "status": "ok",
    }


@app.get("/health")
async def health(request: Request):
    """Detailed health check with store and escrow status."""
    service = getattr(request.app.state, "job_service", None)
    if service is None:
        return {"status": "starting", "store": "unavailable", "escrow": "unavailable"}

    store_status = "connected"
    try:
        await asyncio.to_thread(service.storage.list_jobs, limit=1)
    except StorageError as e:
        store_status = f"error: {str(e)[:50]}"

    escrow_status = "configured" if service.escrow is not None else "unavailable"
    overall_status = "healthy" if store_status == "connected" else "degraded"

    return {
        "status": overall_status,
        "store": store_status,
        "escrow": escrow_status,
    }
