import logging
import secrets
import time
from typing import Any, Callable, Dict, List, Optional

from bulk_data.errors import TaskCanceledError

logger = logging.getLogger(__name__)

Listener = Callable[[Dict[str, Any]], Any]


def uint(value: Any, default: int = 0) -> int:
    """Coerce value to a non-negative integer, falling back to default."""
    try:
        number = int(str(value).strip())
    except (TypeError, ValueError):
        return default
    return number if number >= 0 else default


class Task:
    """
    Base class for asynchronous units of work with progress tracking.

    A task goes from pending (not started) to running and finally to ended,
    either successfully or with an error. Interested parties can subscribe
    to the "start", "progress" and "end" events. Every event carries a fresh
    snapshot of the task state produced by `to_json()`.
    """

    # Reaching position == total ends the task. Tasks that must finish some
    # work after the last unit arrives turn this off and call end() themselves.
    auto_end = True

    def __init__(self, **options):
        self.options = dict(options)
        self.id = secrets.token_hex(32)
        self.error: Optional[BaseException] = None
        self._start_time = 0.0
        self._end_time = 0.0
        self._total = 0
        self._position = 0
        self._listeners: Dict[str, List[Listener]] = {}

    # Events ------------------------------------------------------------------

    def on(self, event: str, listener: Listener) -> "Task":
        self._listeners.setdefault(event, []).append(listener)
        return self

    def once(self, event: str, listener: Listener) -> "Task":
        def wrapper(payload):
            self.off(event, wrapper)
            return listener(payload)
        return self.on(event, wrapper)

    def off(self, event: str, listener: Listener) -> "Task":
        listeners = self._listeners.get(event, [])
        if listener in listeners:
            listeners.remove(listener)
        return self

    def emit(self, event: str, payload: Optional[Dict[str, Any]] = None) -> None:
        """Call every listener of event with its own copy of payload."""
        if payload is None:
            payload = self.to_json()
        for listener in list(self._listeners.get(event, [])):
            try:
                listener(dict(payload))
            except Exception:
                logger.exception("Listener for %r of task %s failed", event, self.id[:8])

    # State -------------------------------------------------------------------

    @property
    def start_time(self) -> float:
        return self._start_time

    @start_time.setter
    def start_time(self, value: float) -> None:
        if self._start_time and value != self._start_time:
            logger.warning(
                "Task %s is already started at %s; ignoring new start time %s",
                self.id[:8], self._start_time, value
            )
            return
        self._start_time = value

    @property
    def end_time(self) -> float:
        return self._end_time

    @property
    def started(self) -> bool:
        return self._start_time > 0

    @property
    def ended(self) -> bool:
        return self._end_time > 0

    @property
    def position(self) -> int:
        return self._position

    @position.setter
    def position(self, value: Any) -> None:
        value = uint(value)
        old_position = self._position
        if old_position == value:
            return

        self._position = value

        if old_position == 0:
            if not self._start_time:
                self.start_time = time.time()
            self.emit("start")

        self.emit("progress")

        if self.auto_end and self._total and self._position >= self._total:
            self.end()

    @property
    def total(self) -> int:
        return self._total

    @total.setter
    def total(self, value: Any) -> None:
        self._total = uint(value)

    @property
    def up_time(self) -> float:
        """Seconds since the task was started (0 if it is not started)."""
        if not self._start_time:
            return 0.0
        return (self._end_time or time.time()) - self._start_time

    @property
    def progress(self) -> float:
        """Fraction of work done; -1 when unknown, 1 once ended."""
        if self._end_time:
            return 1.0
        total = self.total
        if not self._start_time or total <= 0:
            return -1.0
        return min(self.position / total, 1.0)

    @property
    def remaining_time(self) -> float:
        """Estimated seconds left; -1 when unknown, 0 once ended."""
        if self._end_time:
            return 0.0

        # Early estimates are too noisy to be useful
        progress = self.progress
        if progress < 0.1:
            return -1.0

        up_time = self.up_time
        return up_time / progress - up_time

    # Lifecycle ---------------------------------------------------------------

    async def init(self) -> None:
        """Optional asynchronous preparation. Subclasses may override."""
        return None

    def start(self):
        raise NotImplementedError(
            "The start() method must be implemented by the Task subclass"
        )

    def end(self, error: Optional[BaseException] = None) -> "Task":
        """Mark the task as ended. Only the first call has any effect."""
        if self._end_time:
            return self

        self._end_time = time.time()
        if not self._start_time:
            self._start_time = self._end_time
        if error is not None:
            self.error = error
            logger.warning("Task %s ended with error: %s", self.id[:8], error)
        else:
            logger.debug("Task %s ended after %.3fs", self.id[:8], self.up_time)

        self.emit("end")
        return self

    def cancel(self) -> "Task":
        """Abort the task. Subclasses release their resources first."""
        return self.end(TaskCanceledError("The task was canceled"))

    def to_json(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "position": self.position,
            "total": self.total,
            "progress": self.progress,
            "upTime": self.up_time,
            "remainingTime": self.remaining_time,
            "started": self.started,
            "ended": self.ended,
            "error": str(self.error) if self.error else None,
        }
