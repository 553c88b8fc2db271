"""
Worker: pull side-effect events from Redis or AWS SQS and run them through the SideEffectProcessor
(audit, notifications, operator alerts, refunds, calendar sync).
- Redis: exponential backoff + manual DLQ. SQS: don't delete on failure; SQS redrive to DLQ after max receives.
- Prometheus /metrics on port 9090 (worker metrics).
- Graceful shutdown on SIGTERM.
Run: python -m fulfillment.worker
"""
import asyncio
import json
import logging
import signal
import sys
import threading
import time

import redis.asyncio as redis
from pydantic import ValidationError

from fulfillment.bootstrap import build_postgres_container
from fulfillment.config import settings
from fulfillment.db import close_pool
from fulfillment.metrics import messages_dlq_total, messages_failed_total, messages_processed_total
from fulfillment.queue import SIDE_EFFECT_DLQ_KEY, SIDE_EFFECT_QUEUE_KEY, make_body
from fulfillment.redis_client import close_redis, get_redis
from fulfillment.side_effects import SideEffectEvent, SideEffectProcessor
from fulfillment.sqs_client import change_message_visibility, delete_message, receive_messages

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger(__name__)

BRPOP_TIMEOUT = 5
GRACEFUL_SHUTDOWN_WAIT_SEC = 30
WORKER_METRICS_PORT = 9090


def _start_metrics_server() -> None:
    from prometheus_client import start_http_server
    start_http_server(WORKER_METRICS_PORT)


def parse_message(raw: str) -> tuple[SideEffectEvent | None, int]:
    """Decode a queue body into (event, attempts). Returns (None, 0) for malformed messages."""
    try:
        data = json.loads(raw)
        return SideEffectEvent.model_validate(data.get("event") or {}), int(data.get("attempts", 0))
    except (json.JSONDecodeError, ValidationError, AttributeError, TypeError, ValueError) as e:
        logger.warning("Malformed side-effect message, skipping: %s", e)
        return None, 0


async def process_one_redis(
    r: redis.Redis,
    processor: SideEffectProcessor,
    raw: str,
    sem: asyncio.Semaphore,
) -> None:
    event, attempts = parse_message(raw)
    if event is None:
        return

    async with sem:
        try:
            await processor.process(event)
            logger.info("Processed side effects event_id=%s action=%s", event.event_id, event.action)
            messages_processed_total.inc()
        except Exception as e:
            messages_failed_total.inc()
            logger.exception("Failed side effects event_id=%s (attempt %d): %s", event.event_id, attempts + 1, e)
            next_attempts = attempts + 1
            if next_attempts >= settings.worker_max_retries:
                dlq_message = json.dumps({
                    **make_body(event, next_attempts),
                    "last_error": str(e),
                    "failed_at": time.time(),
                })
                await r.lpush(SIDE_EFFECT_DLQ_KEY, dlq_message)
                messages_dlq_total.inc()
                logger.warning("Moved event_id=%s to DLQ after %d attempts", event.event_id, next_attempts)
            else:
                backoff_sec = 2 ** attempts
                logger.info(
                    "Re-queuing event_id=%s in %ds (attempt %d/%d)",
                    event.event_id, backoff_sec, next_attempts, settings.worker_max_retries,
                )
                await asyncio.sleep(backoff_sec)
                await r.lpush(SIDE_EFFECT_QUEUE_KEY, json.dumps(make_body(event, next_attempts)))


async def process_one_sqs(
    processor: SideEffectProcessor,
    body: str,
    receipt_handle: str,
    receive_count: int,
    sem: asyncio.Semaphore,
) -> None:
    event, _ = parse_message(body)
    if event is None:
        await asyncio.to_thread(delete_message, receipt_handle)
        return

    async with sem:
        try:
            await processor.process(event)
            logger.info("Processed side effects event_id=%s action=%s", event.event_id, event.action)
            messages_processed_total.inc()
            await asyncio.to_thread(delete_message, receipt_handle)
        except Exception as e:
            messages_failed_total.inc()
            logger.exception("Failed side effects event_id=%s (receive #%d): %s", event.event_id, receive_count, e)
            # Not deleted: reappears after the visibility timeout; SQS redrives to the DLQ after max receives
            backoff = min(2 ** receive_count, 900)
            await asyncio.to_thread(change_message_visibility, receipt_handle, backoff)


async def _drain(tasks: set[asyncio.Task]) -> None:
    if not tasks:
        return
    logger.info("Graceful shutdown: waiting for %d in-flight task(s) (max %ds) ...", len(tasks), GRACEFUL_SHUTDOWN_WAIT_SEC)
    _, pending = await asyncio.wait(tasks, timeout=GRACEFUL_SHUTDOWN_WAIT_SEC, return_when=asyncio.ALL_COMPLETED)
    for t in pending:
        t.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)


async def run_worker_redis(shutdown_event: asyncio.Event, processor: SideEffectProcessor) -> None:
    sem = asyncio.Semaphore(settings.worker_concurrency)
    logger.info(
        "Backend=Redis. Listening on %s (concurrency=%d, max_retries=%d) ...",
        SIDE_EFFECT_QUEUE_KEY,
        settings.worker_concurrency,
        settings.worker_max_retries,
    )
    r = await get_redis()
    tasks: set[asyncio.Task] = set()
    try:
        while not shutdown_event.is_set():
            result = await r.brpop(SIDE_EFFECT_QUEUE_KEY, timeout=BRPOP_TIMEOUT)
            if result is None:
                continue
            _key, raw = result
            t = asyncio.create_task(process_one_redis(r, processor, raw, sem))
            tasks.add(t)
            t.add_done_callback(tasks.discard)
    finally:
        await _drain(tasks)
        await close_redis()


async def run_worker_sqs(shutdown_event: asyncio.Event, processor: SideEffectProcessor) -> None:
    sem = asyncio.Semaphore(settings.worker_concurrency)
    logger.info("Backend=SQS. Queue=%s (concurrency=%d) ...", settings.sqs_queue_url, settings.worker_concurrency)
    tasks: set[asyncio.Task] = set()
    try:
        while not shutdown_event.is_set():
            messages = await asyncio.to_thread(receive_messages, None, 10, 5)
            for msg in messages:
                body = msg.get("Body") or "{}"
                receipt = msg.get("ReceiptHandle") or ""
                attrs = msg.get("Attributes") or {}
                receive_count = int(attrs.get("ApproximateReceiveCount", 1))
                t = asyncio.create_task(process_one_sqs(processor, body, receipt, receive_count, sem))
                tasks.add(t)
                t.add_done_callback(tasks.discard)
    finally:
        await _drain(tasks)


async def run_worker(shutdown_event: asyncio.Event) -> None:
    container = await build_postgres_container()
    logger.info("Schema ready.")
    try:
        if settings.sqs_queue_url:
            await run_worker_sqs(shutdown_event, container.processor)
        else:
            await run_worker_redis(shutdown_event, container.processor)
    finally:
        await close_pool()
        logger.info("Worker stopped.")


def main() -> None:
    threading.Thread(target=_start_metrics_server, daemon=True).start()
    logger.info("Metrics server listening on port %s", WORKER_METRICS_PORT)

    shutdown_event = asyncio.Event()

    def on_signal():
        shutdown_event.set()

    loop = asyncio.new_event_loop()
    try:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, on_signal)
    except NotImplementedError:
        signal.signal(signal.SIGTERM, lambda *a: shutdown_event.set())
        signal.signal(signal.SIGINT, lambda *a: shutdown_event.set())

    asyncio.set_event_loop(loop)
    try:
        loop.run_until_complete(run_worker(shutdown_event))
    finally:
        loop.close()


if __name__ == "__main__":
    main()
