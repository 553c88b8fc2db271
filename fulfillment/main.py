"""
Ops surface for the lifecycle services: health, Prometheus metrics, side-effect DLQ replay.
Run: uvicorn fulfillment.main:app
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import Response

from fulfillment.config import settings
from fulfillment.metrics import get_metrics_bytes, get_metrics_content_type, sqs_queue_messages_in_flight, sqs_queue_messages_waiting
from fulfillment.redis_client import close_redis, get_redis, redis_healthy
from fulfillment.routes import admin
from fulfillment.sqs_client import get_queue_depth

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await get_redis()
    yield
    await close_redis()


app = FastAPI(title="Fulfillment Lifecycle", lifespan=lifespan)
app.include_router(admin.router)


@app.get("/health")
async def health() -> dict:
    if settings.sqs_queue_url:
        return {"status": "ok", "queue": "sqs"}
    return {"status": "ok" if await redis_healthy() else "degraded", "queue": "redis"}


@app.get("/metrics")
async def metrics() -> Response:
    """Prometheus scrape endpoint: lifecycle counters, SQS queue depth (when using SQS)."""
    if settings.sqs_queue_url:
        try:
            waiting, in_flight = await get_queue_depth()
            sqs_queue_messages_waiting.set(waiting)
            sqs_queue_messages_in_flight.set(in_flight)
        except Exception as e:
            logger.warning("Could not read SQS queue depth: %s", e)
    return Response(
        content=get_metrics_bytes(),
        media_type=get_metrics_content_type(),
    )
