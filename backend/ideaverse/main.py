"""FastAPI application entry point"""
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from ideaverse.core.config import settings
from ideaverse.core.logging import setup_logging
from ideaverse.core.middleware import global_exception_handler, security_middleware, setup_cors_middleware
from ideaverse.core.otel import initialize_otel, instrument_fastapi, instrument_httpx, instrument_sqlalchemy
from ideaverse.db.redis import get_redis_client
from ideaverse.db.session import engine, init_db

# Import routers
from ideaverse.api import auth, entitlements, generations, subscriptions

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown"""
    # Startup
    if initialize_otel():
        logger.info(f"OpenTelemetry initialized, exporting to {settings.OTEL_EXPORTER_OTLP_ENDPOINT}")
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

    logger.info("Starting scheduler tasks...")
    from ideaverse.tasks.scheduler import expiry_scheduler_task
    expiry_task = asyncio.create_task(expiry_scheduler_task())

    yield

    # Shutdown
    logger.info("Shutting down...")
    expiry_task.cancel()


# Create FastAPI app
app = FastAPI(
    title="Game Ideas Universe Backend",
    description="Entitlements, payments and idea generation",
    version="1.0.0",
    lifespan=lifespan
)

instrument_fastapi(app)
instrument_httpx()

setup_cors_middleware(app)

# Include routers
app.include_router(auth.router)
app.include_router(entitlements.router)
app.include_router(generations.router)
app.include_router(subscriptions.router)

app.middleware("http")(security_middleware)
app.add_exception_handler(Exception, global_exception_handler)


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
