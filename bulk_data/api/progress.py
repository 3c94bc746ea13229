import asyncio
import logging
from typing import Any, Dict, Set

from bulk_data.api.websocket import ConnectionManager, manager
from bulk_data.importer.task import Task

logger = logging.getLogger(__name__)

# Keeps references to the in-flight broadcasts until they complete
_pending: Set[asyncio.Task] = set()


def _schedule(coro) -> None:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        coro.close()
        return
    job = loop.create_task(coro)
    _pending.add(job)
    job.add_done_callback(_pending.discard)


def relay_task_progress(task: Task, connections: ConnectionManager = manager) -> Task:
    """Push the progress events of a task to the websockets watching it."""

    def on_progress(snapshot: Dict[str, Any]) -> None:
        if connections.has_listeners(task.id):
            _schedule(connections.broadcast_progress(task.id, snapshot))

    def on_end(snapshot: Dict[str, Any]) -> None:
        if not connections.has_listeners(task.id):
            return
        error = snapshot.get("error")
        _schedule(connections.broadcast_complete(
            task.id,
            success=not error,
            message=error or "Completed"
        ))

    task.on("start", on_progress)
    task.on("progress", on_progress)
    task.once("end", on_end)
    return task
