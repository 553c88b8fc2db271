from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse

from fulfillment.config import settings
from fulfillment.queue import replay_redis_dlq
from fulfillment.sqs_client import replay_dlq_to_main

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/dlq/replay")
async def dlq_replay(limit: int = Query(default=100, ge=1, le=1000)) -> JSONResponse:
    """
    Replay failed side-effect events from the DLQ (SQS or Redis) to the main queue.
    Returns number of messages replayed.
    """
    if settings.sqs_queue_url:
        replayed = await replay_dlq_to_main(limit=limit)
    else:
        replayed = await replay_redis_dlq(limit=limit)
    return JSONResponse(
        status_code=200,
        content={"status": "ok", "replayed": replayed},
    )
