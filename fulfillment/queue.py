"""
Side-effect event channel. Backend: Redis list (LPUSH / BRPOP) or AWS SQS when SQS_QUEUE_URL is set.
"""
import json

from fulfillment.config import settings
from fulfillment.redis_client import get_redis
from fulfillment.side_effects import SideEffectEvent
from fulfillment.sqs_client import send_message

SIDE_EFFECT_QUEUE_KEY = "queue:side_effects"
SIDE_EFFECT_DLQ_KEY = "queue:side_effects:dlq"


def make_body(event: SideEffectEvent, attempts: int = 0) -> dict:
    return {
        "event_id": event.event_id,
        "event": event.model_dump(mode="json"),
        "attempts": attempts,
    }


async def push_side_effect(event: SideEffectEvent, attempts: int = 0) -> None:
    body = make_body(event, attempts)
    if settings.sqs_queue_url:
        await send_message(body)
    else:
        r = await get_redis()
        await r.lpush(SIDE_EFFECT_QUEUE_KEY, json.dumps(body))


async def replay_redis_dlq(limit: int = 100) -> int:
    """Move up to `limit` events from the Redis DLQ back to the main queue with attempts reset."""
    r = await get_redis()
    replayed = 0
    while replayed < limit:
        raw = await r.rpop(SIDE_EFFECT_DLQ_KEY)
        if raw is None:
            break
        replayed += 1
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            continue
        if not data.get("event"):
            continue
        await r.lpush(SIDE_EFFECT_QUEUE_KEY, json.dumps({
            "event_id": data.get("event_id"),
            "event": data["event"],
            "attempts": 0,
        }))
    return replayed
