"""FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from podclip.config import settings
from podclip.db.database import init_db, close_db
from podclip.api.routes import router
from podclip.workers.workflow_runner import workflow_runner

# Configure logging
logging.basicConfig(
    level=logging.INFO if not settings.debug else logging.DEBUG,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    logger.info("Starting podclip...")

    await init_db()
    logger.info(
        f"Database initialized, storage backend: {settings.storage_backend}, "
        f"segment concurrency: {settings.segment_concurrency}"
    )
    if settings.storage_backend == "s3":
        logger.info(f"Clips are written to bucket {settings.bucket_name}")

    yield

    # Shutdown
    logger.info("Shutting down podclip...")
    await workflow_runner.shutdown()
    await close_db()
    logger.info("Shutdown complete")


# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    description="HLS podcast clip composition pipeline",
    version="1.0.0",
    lifespan=lifespan
)

# Include API routes
app.include_router(router, prefix="/api")


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "app": settings.app_name,
        "version": "1.0.0",
        "api": "/api",
        "workflows": "/api/workflows/clips",
        "docs": "/docs"
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "podclip.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug
    )
