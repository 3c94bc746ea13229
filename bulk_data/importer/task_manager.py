import asyncio
import logging
import math
import threading
from typing import Dict, Optional, Union

from bulk_data.config import settings
from bulk_data.errors import DuplicateTaskError
from bulk_data.importer.task import Task

logger = logging.getLogger(__name__)

TimerHandle = Union[asyncio.TimerHandle, threading.Timer]


class TaskManager:
    """
    Registry of the running bulk data jobs, keyed by task id.

    Finished tasks are kept for `eviction_delay` seconds so that clients can
    still fetch their result, and are then removed automatically.
    """

    def __init__(self, eviction_delay: Optional[float] = None):
        self.eviction_delay = settings.task_eviction_delay if eviction_delay is None else eviction_delay
        self._tasks: Dict[str, Task] = {}
        self._timers: Dict[str, TimerHandle] = {}
        self._lock = threading.RLock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._tasks)

    def __contains__(self, task_id: str) -> bool:
        return self.has(task_id)

    def get(self, task_id: str) -> Optional[Task]:
        with self._lock:
            return self._tasks.get(task_id)

    def has(self, task_id: str) -> bool:
        with self._lock:
            return task_id in self._tasks

    def add(self, task: Task) -> Task:
        """Register a task and schedule its removal once it ends."""
        with self._lock:
            if task.id in self._tasks:
                raise DuplicateTaskError(f'Task with ID of "{task.id}" already exists')
            self._tasks[task.id] = task

        logger.info("Registered task %s (%s)", task.id[:8], type(task).__name__)
        task.once("end", lambda _info: self._schedule_eviction(task))
        if task.ended:
            self._schedule_eviction(task)
        return task

    def remove(self, task_id: str, cancel: bool = True) -> bool:
        """
        Remove a task from the registry. Returns False if it was not there.
        Unless `cancel` is False, a task that is still running is canceled so
        that its network resources are released.
        """
        with self._lock:
            task = self._tasks.pop(task_id, None)
            timer = self._timers.pop(task_id, None)

        if timer is not None:
            timer.cancel()

        if task is None:
            return False

        if cancel and not task.ended:
            task.cancel()
        logger.info("Removed task %s", task_id[:8])
        return True

    def _evict(self, task: Task) -> None:
        with self._lock:
            self._timers.pop(task.id, None)
            # Removed (and possibly re-added) in the meantime
            if self._tasks.get(task.id) is not task:
                return
            del self._tasks[task.id]
        logger.info("Evicted finished task %s", task.id[:8])

    def _schedule_eviction(self, task: Task) -> None:
        with self._lock:
            if task.id not in self._tasks or task.id in self._timers:
                return
            try:
                loop = asyncio.get_running_loop()
                handle = loop.call_later(self.eviction_delay, self._evict, task)
            except RuntimeError:
                handle = threading.Timer(self.eviction_delay, self._evict, args=(task,))
                handle.daemon = True
                handle.start()
            self._timers[task.id] = handle

    def get_remaining_time(self) -> int:
        """
        Combined remaining time (seconds) of all tracked tasks. Returns 0 if
        all of them are complete and -1 if any of them can't be estimated.
        """
        with self._lock:
            tasks = list(self._tasks.values())

        total = 0.0
        for task in tasks:
            remaining = task.remaining_time
            if remaining < 0:
                return -1
            total += remaining
        return math.ceil(total)

    def end_all(self) -> None:
        """Force every tracked task to end."""
        with self._lock:
            tasks = list(self._tasks.values())
        for task in tasks:
            if not task.ended:
                task.cancel()

    def close(self) -> None:
        """End all tasks, drop pending evictions and empty the registry."""
        self.end_all()
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
            self._tasks.clear()
        for timer in timers:
            timer.cancel()
