"""
MiniCRM Campaign Engine - FastAPI Application Entry Point.

Ingests customers and orders, previews and creates segment campaigns, and
tracks per-recipient delivery through vendor receipts. Background work runs
in ``minicrm.worker``, or inside this process when RUN_WORKER_IN_PROCESS is set.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from minicrm.config import get_settings
from minicrm.database import engine, async_session_maker, create_tables
from minicrm.errors import CRMError
from minicrm.orchestration import get_queues, set_queues
from minicrm.redis import close_redis_client
from minicrm.routers import analytics, campaigns, customers, webhooks
from minicrm.worker import build_worker

import minicrm.tasks  # noqa: F401  (registers handlers)

settings = get_settings()
logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown events."""
    await create_tables()
    logger.info("Database tables created")

    queues = get_queues()
    worker = None
    if settings.RUN_WORKER_IN_PROCESS:
        worker = build_worker(queues, settings)
        await worker.start()
        logger.info("In-process worker started")

    yield

    if worker is not None:
        await worker.shutdown()
    vendor = getattr(app.state, "vendor", None)
    if vendor is not None:
        await vendor.aclose()
    await queues.aclose()
    set_queues(None)
    if settings.QUEUE_BACKEND == "redis":
        await close_redis_client()
    await engine.dispose()
    logger.info("Database connection closed")


app = FastAPI(
    title=settings.APP_NAME,
    description="Segment campaigns with asynchronous delivery tracking",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        settings.FRONTEND_URL,
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(CRMError)
async def crm_error_handler(request: Request, exc: CRMError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=500,
        content={"error": {"type": "internal_error", "message": "Internal server error"}},
    )


app.include_router(customers.router, prefix="/api")
app.include_router(campaigns.router, prefix="/api/campaigns")
app.include_router(webhooks.router, prefix="/api")
app.include_router(analytics.router, prefix="/api/analytics")


@app.get("/health")
async def health_check():
    """Deep Health Check: Verifies Database Connectivity."""
    try:
        async with async_session_maker() as session:
            await session.execute(text("SELECT 1"))
    except Exception as e:
        logger.error(f"Health check failed: {e}")
        # Return 503 so load balancers know to stop sending traffic
        raise HTTPException(status_code=503, detail="Database disconnected")
    return {"status": "healthy", "database": "connected"}


@app.get("/")
async def root():
    """Root endpoint with system info."""
    return {"name": settings.APP_NAME, "status": "operational"}
