"""
AWS SQS helpers for the side-effect queue: send, receive, delete, visibility backoff, depth, DLQ replay.
Used when SQS_QUEUE_URL is set.
"""
import asyncio
import json
import logging
from typing import Any

import boto3

from fulfillment.config import settings

logger = logging.getLogger(__name__)

_sqs_client: Any = None


def _get_client():
    global _sqs_client
    if _sqs_client is None:
        _sqs_client = boto3.client("sqs", region_name=settings.aws_region)
    return _sqs_client


async def send_message(body: dict, queue_url: str | None = None) -> None:
    """Send to the main queue (or `queue_url`); boto3 runs in a thread."""
    client = _get_client()
    await asyncio.to_thread(
        client.send_message,
        QueueUrl=queue_url or settings.sqs_queue_url,
        MessageBody=json.dumps(body),
    )


def receive_messages(queue_url: str | None = None, max_number: int = 10, wait_seconds: int = 5) -> list[dict]:
    """Sync receive (run in a thread). Returns list of {ReceiptHandle, Body, Attributes}."""
    client = _get_client()
    resp = client.receive_message(
        QueueUrl=queue_url or settings.sqs_queue_url,
        MaxNumberOfMessages=max_number,
        WaitTimeSeconds=wait_seconds,
        AttributeNames=["ApproximateReceiveCount"],
    )
    return resp.get("Messages") or []


def delete_message(receipt_handle: str, queue_url: str | None = None) -> None:
    client = _get_client()
    client.delete_message(
        QueueUrl=queue_url or settings.sqs_queue_url,
        ReceiptHandle=receipt_handle,
    )


def change_message_visibility(receipt_handle: str, visibility_timeout: int) -> None:
    """Delay the next delivery of a failed message (retry backoff)."""
    client = _get_client()
    client.change_message_visibility(
        QueueUrl=settings.sqs_queue_url,
        ReceiptHandle=receipt_handle,
        VisibilityTimeout=visibility_timeout,
    )


async def get_queue_depth() -> tuple[int, int]:
    """(ApproximateNumberOfMessages, ApproximateNumberOfMessagesNotVisible) for metrics."""
    if not settings.sqs_queue_url:
        return 0, 0
    client = _get_client()

    def _get():
        r = client.get_queue_attributes(
            QueueUrl=settings.sqs_queue_url,
            AttributeNames=["ApproximateNumberOfMessages", "ApproximateNumberOfMessagesNotVisible"],
        )
        attrs = r.get("Attributes") or {}
        return (
            int(attrs.get("ApproximateNumberOfMessages", 0)),
            int(attrs.get("ApproximateNumberOfMessagesNotVisible", 0)),
        )

    return await asyncio.to_thread(_get)


async def replay_dlq_to_main(limit: int = 100) -> int:
    """Re-send side-effect events from the SQS DLQ to the main queue (attempts reset). Returns count."""
    if not settings.sqs_dlq_url or not settings.sqs_queue_url:
        return 0
    replayed = 0
    while replayed < limit:
        messages = await asyncio.to_thread(receive_messages, settings.sqs_dlq_url, 10, 0)
        if not messages:
            break
        for msg in messages[: limit - replayed]:
            receipt = msg.get("ReceiptHandle") or ""
            try:
                data = json.loads(msg.get("Body") or "{}")
            except json.JSONDecodeError:
                data = {}
            if data.get("event"):
                await send_message({"event_id": data.get("event_id"), "event": data["event"], "attempts": 0})
            else:
                logger.warning("Dropping malformed DLQ message")
            await asyncio.to_thread(delete_message, receipt, settings.sqs_dlq_url)
            replayed += 1
    return replayed
