"""FastAPI application entry point"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from payhook import __version__
from payhook.api import finance, webhooks
from payhook.core.config import settings
from payhook.core.logging import setup_logging
from payhook.core.otel import (
    initialize_otel,
    instrument_fastapi,
    instrument_sqlalchemy,
    setup_otel_logging,
)
from payhook.core.security import log_api_access
from payhook.db import redis as redis_module
from payhook.db.session import engine, init_db
from payhook.tasks.dispatcher import ProcessingQueue
from payhook.tasks.scheduler import Scheduler

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown"""
    # Startup
    otel_initialized = initialize_otel()
    if otel_initialized:
        if setup_otel_logging():
            logger.info(f"OpenTelemetry fully initialized, exporting to {settings.OTEL_EXPORTER_OTLP_ENDPOINT}")
        else:
            logger.warning("OpenTelemetry metrics/traces initialized but logging setup failed")
        instrument_sqlalchemy(engine)
    else:
        logger.info("OpenTelemetry not configured - running without distributed tracing")

    logger.info("Initializing database...")
    try:
        init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

    # Only the admin surface needs Redis; webhooks keep flowing without it
    logger.info("Testing Redis connection...")
    try:
        redis_module.ping()
        logger.info("Redis connection successful")
    except Exception as e:
        logger.error(f"Redis connection failed, admin sessions unavailable: {e}")

    dispatcher = ProcessingQueue()
    dispatcher.start()
    app.state.dispatcher = dispatcher

    scheduler = Scheduler()
    app.state.scheduler = scheduler
    if settings.ENABLE_SCHEDULER:
        scheduler.start()
    else:
        logger.info("Scheduler disabled (ENABLE_SCHEDULER=false)")

    yield

    # Shutdown
    logger.info("Shutting down...")
    await scheduler.stop()
    await dispatcher.stop()


# Create FastAPI app
app = FastAPI(
    title="payhook",
    description="Provider webhook ingestion and billing reconciliation",
    version=__version__,
    lifespan=lifespan
)

# Instrument FastAPI with OpenTelemetry
if settings.OTEL_EXPORTER_OTLP_ENDPOINT:
    instrument_fastapi(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(webhooks.router)
app.include_router(finance.router)


@app.middleware("http")
async def access_log_middleware(request: Request, call_next):
    """API access logging for the admin surface"""
    if not request.url.path.startswith("/api/"):
        return await call_next(request)

    status_code = 500
    error = None
    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    except Exception as e:
        error = str(e)
        raise
    finally:
        log_api_access(request, status_code, error)


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
