"""
FastAPI application initialization
"""

from fastapi import FastAPI
from api.routes import health, batches, stats
from api.middleware import RequestContextMiddleware
from core.config import settings
from core.logging import setup_logging
from ingestion.scheduler import PipelineScheduler
import logging

setup_logging()

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Product Catalog Pipeline API",
    description="Batch monitoring for the vendor CSV → product catalog pipeline",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(RequestContextMiddleware)

scheduler = PipelineScheduler()

app.include_router(health.router)
app.include_router(batches.router)
app.include_router(stats.router)


@app.on_event("startup")
async def startup_event():
    """Application startup event"""
    logger.info("Starting Product Catalog Pipeline API")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[1] if '@' in settings.DATABASE_URL else 'configured'}")

    if settings.SCHEDULER_ENABLED:
        scheduler.start()


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown event"""
    logger.info("Shutting down Product Catalog Pipeline API")
    if settings.SCHEDULER_ENABLED:
        scheduler.stop()


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Product Catalog Pipeline API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "batches": "/batches",
            "stats": "/stats"
        }
    }
