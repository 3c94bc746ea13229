import asyncio
import json
import logging
import redis.asyncio as aioredis
from bulk_data.config import settings
from bulk_data.api.websocket import manager

logger = logging.getLogger(__name__)

PROGRESS_CHANNEL = "bulk_data_progress"


async def dispatch_progress_message(payload: dict) -> None:
    """Route one message published by a worker to the websocket clients."""
    msg_type = payload.get("type")
    job_id = payload.get("job_id")
    if not job_id:
        logger.debug("Ignoring progress message without job id: %s", payload)
        return

    if msg_type == "complete":
        await manager.broadcast_complete(
            job_id,
            bool(payload.get("success", True)),
            payload.get("message", "")
        )
    else:
        snapshot = {k: v for k, v in payload.items() if k not in ("type", "job_id")}
        await manager.broadcast_progress(job_id, snapshot)


async def redis_progress_subscriber() -> None:
    """Subscribe to the worker progress channel and forward messages to the WebSocket manager."""
    logger.info("Starting Redis progress subscriber")
    redis_client = aioredis.from_url(settings.redis_url)
    pubsub = redis_client.pubsub()
    try:
        await pubsub.subscribe(PROGRESS_CHANNEL)
        logger.info("Subscribed to Redis %r channel", PROGRESS_CHANNEL)

        async for message in pubsub.listen():
            if message is None or message.get("type") != "message":
                continue
            data = message.get("data")
            if not data:
                continue
            if isinstance(data, bytes):
                data = data.decode("utf-8")
            try:
                await dispatch_progress_message(json.loads(data))
            except (ValueError, TypeError) as e:
                logger.warning("Malformed progress message %r: %s", data, e)
                await asyncio.sleep(0.1)
    except asyncio.CancelledError:
        raise
    except Exception:
        logger.exception("Redis progress subscriber stopped")
    finally:
        await pubsub.aclose()
        await redis_client.aclose()
