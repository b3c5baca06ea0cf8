import os
import time
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from . import metrics
from .config import get_settings
from .pipeline.routes import credit_router, recipe_router, shutdown_service, video_router

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("dishreel starting up...")
    metrics.set_gauge("start_time", time.time())
    settings = get_settings()
    if not settings.redis_url:
        logger.info("No REDIS_URL: job progress is kept in memory")
    yield
    logger.info("dishreel shutting down...")
    await shutdown_service()


app = FastAPI(title="dishreel", lifespan=lifespan)
app.include_router(recipe_router)
app.include_router(video_router)
app.include_router(credit_router)


@app.get("/health")
def health_check():
    """Verify the service is running and credentials are configured."""
    settings = get_settings()
    return {
        "status": "ok",
        "gemini_api_key_set": bool(settings.gemini_api_key),
        "kie_api_key_set": bool(settings.kie_api_key),
        "storage_backend": settings.storage_backend,
        "job_store": "redis" if settings.redis_url else "memory",
    }


@app.get("/metrics")
def metrics_endpoint():
    """Return a snapshot of all pipeline metrics."""
    return metrics.get_snapshot()


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=int(os.environ.get("PORT", "8000")))
