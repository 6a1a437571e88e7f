"""FastAPI application entry point"""
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from promoreel.core.config import settings
from promoreel.core.logging import setup_logging
from promoreel.core.otel import (
    initialize_otel, instrument_fastapi, instrument_httpx,
    instrument_sqlalchemy, setup_otel_logging
)
from promoreel.db.redis import get_redis_client
from promoreel.db.session import engine, init_db

# Import routers
from promoreel.api import callbacks, credits, videos

setup_logging()
logger = logging.getLogger(__name__)


def start_background_tasks():
    """Run the workers and periodic jobs inside the API process"""
    from promoreel.tasks.credit_reset import credit_reset_scheduler_task
    from promoreel.tasks.generation_worker import generation_worker_task
    from promoreel.tasks.merge_worker import merge_worker_task
    from promoreel.tasks.stale_jobs import stale_job_sweeper_task

    return [
        asyncio.create_task(generation_worker_task()),
        asyncio.create_task(merge_worker_task()),
        asyncio.create_task(stale_job_sweeper_task()),
        asyncio.create_task(credit_reset_scheduler_task()),
    ]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown"""
    # Startup
    if initialize_otel():
        if setup_otel_logging():
            logger.info(f"OpenTelemetry fully initialized, exporting to {settings.OTEL_EXPORTER_OTLP_ENDPOINT}")
        else:
            logger.warning("OpenTelemetry metrics/traces initialized but logging setup failed")
    else:
        logger.info("OpenTelemetry not configured - running without distributed tracing")

    logger.info("Initializing database...")
    try:
        init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

    logger.info("Testing Redis connection...")
    try:
        get_redis_client().ping()
        logger.info("Redis connection successful")
    except Exception as e:
        logger.error(f"Redis connection failed: {e}")
        raise

    instrument_sqlalchemy(engine)

    background_tasks = []
    if settings.RUN_BACKGROUND_TASKS:
        logger.info("Starting background tasks...")
        background_tasks = start_background_tasks()
        logger.info(f"Started {len(background_tasks)} background tasks")

    yield

    # Shutdown
    logger.info("Shutting down...")
    for task in background_tasks:
        task.cancel()


# Create FastAPI app
app = FastAPI(
    title="Promoreel Backend",
    description="Product promo videos assembled from generated scenes",
    version="1.0.0",
    lifespan=lifespan
)

instrument_fastapi(app)
instrument_httpx()

# CORS middleware
allowed_origins = [settings.FRONTEND_URL]
if settings.ENVIRONMENT == "development":
    allowed_origins.extend([
        "http://localhost:3000",
        "http://localhost:8000",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:8000"
    ])

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(callbacks.router)
app.include_router(videos.router)
app.include_router(credits.router)


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"}
    )


# Prometheus metrics endpoint
@app.get("/metrics")
def metrics_endpoint():
    """Prometheus metrics endpoint"""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# Health check endpoint
@app.get("/health")
def health_check():
    """Health check endpoint"""
    return {"status": "healthy"}
