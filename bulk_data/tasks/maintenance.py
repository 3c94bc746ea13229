import asyncio
import json
import logging
from typing import Any, Dict, Optional

import redis
from celery import Task
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from bulk_data.api.redis_progress import PROGRESS_CHANNEL
from bulk_data.config import settings
from bulk_data.services.loader import load_ndjson, purge_records
from celery_app import celery_app

logger = logging.getLogger(__name__)


def run_async(coro):
    """Run a coroutine on the worker's event loop, creating one if needed."""
    try:
        loop = asyncio.get_event_loop()
        if loop.is_closed():
            raise RuntimeError("Event loop is closed")
    except RuntimeError:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
    return loop.run_until_complete(coro)


async def with_session_factory(fn, *args, **kwargs):
    """Call fn(session_factory, ...) with a worker-local engine."""
    engine = create_async_engine(settings.database_url, echo=False, pool_pre_ping=True)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    try:
        return await fn(session_factory, *args, **kwargs)
    finally:
        await engine.dispose()


class ProgressTask(Task):
    """Task base class reporting progress through task state and Redis."""

    def publish(self, payload: Dict[str, Any]) -> None:
        job_id = self.request.id
        if not job_id:
            return
        try:
            client = redis.Redis.from_url(settings.redis_url)
            client.publish(PROGRESS_CHANNEL, json.dumps({"job_id": job_id, **payload}))
        except redis.RedisError as e:
            # Progress is advisory; the load itself must not fail because of it
            logger.warning("Could not publish progress of %s: %s", job_id, e)

    def update_progress(self, position: int, total: int, count: int) -> None:
        progress = min(position / total, 1) if total else 0
        meta = {"position": position, "total": total, "progress": progress, "count": count}
        self.update_state(state="PROCESSING", meta=meta)
        self.publish({"type": "progress", **meta})


@celery_app.task(name="bulk_data.tasks.maintenance.purge_expired_records")
def purge_expired_records(max_age: Optional[float] = None) -> int:
    """Delete rows older than the configured maximum record age."""
    age = settings.db_maintenance_max_record_age if max_age is None else max_age
    deleted = run_async(with_session_factory(purge_records, age))
    if deleted:
        logger.info("Purged %d expired records", deleted)
    return deleted


@celery_app.task(bind=True, base=ProgressTask, name="bulk_data.tasks.maintenance.load_ndjson_file")
def load_ndjson_file(
    self,
    path: str,
    group_id: Optional[int] = None,
    resource_type: Optional[str] = None
) -> Dict[str, Any]:
    """Load an NDJSON file of resources into the data table."""
    try:
        count = run_async(with_session_factory(
            load_ndjson,
            path,
            group_id=group_id,
            resource_type=resource_type,
            on_progress=self.update_progress
        ))
    except Exception as e:
        logger.error("Loading %s failed: %s", path, e)
        self.publish({"type": "complete", "success": False, "message": str(e)})
        raise

    self.publish({"type": "complete", "success": True, "message": f"Loaded {count} resources"})
    return {"path": path, "count": count}
