import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Dict, Optional

from fastapi import Depends, Request

from bulk_data.api.dependencies import get_task_manager
from bulk_data.config import settings
from bulk_data.errors import OutcomeError
from bulk_data.importer.task_manager import TaskManager

logger = logging.getLogger(__name__)

WINDOW = 60.0


@dataclass
class ClientRecord:
    first_request_at: float
    requests_per_minute: int = 1
    violated_at: float = 0.0


class RateLimiter:
    """
    Per client accounting of status requests.

    Clients polling more than `max_requests_per_minute` times within a minute
    get 429 responses. If they keep doing that for longer than
    `max_violation_duration` seconds, their job is aborted.
    """

    def __init__(
        self,
        max_requests_per_minute: Optional[int] = None,
        max_violation_duration: Optional[float] = None
    ):
        self.max_requests_per_minute = max_requests_per_minute or settings.max_requests_per_minute
        self.max_violation_duration = (
            settings.max_violation_duration if max_violation_duration is None
            else max_violation_duration
        )
        self._history: Dict[str, ClientRecord] = {}
        self._lock = threading.Lock()

    def reset(self) -> None:
        with self._lock:
            self._history.clear()

    def hit(self, client: str, task_manager: TaskManager, task_id: Optional[str] = None) -> None:
        """Count one request of client, raising OutcomeError when over the limit."""
        now = time.time()
        with self._lock:
            record = self._history.get(client)
            if record is None:
                record = self._history[client] = ClientRecord(first_request_at=now)
            elif now - record.first_request_at > WINDOW:
                # More than one minute since the window started: start over
                record.first_request_at = now
                record.requests_per_minute = 1
                record.violated_at = 0.0
            else:
                record.requests_per_minute += 1

            if record.requests_per_minute <= self.max_requests_per_minute:
                return

            if not record.violated_at:
                record.violated_at = now
            violation = now - record.violated_at
            first_request_at = record.first_request_at

        if violation > self.max_violation_duration:
            if task_id:
                task_manager.remove(task_id)
            logger.warning("Client %s keeps exceeding the rate limit; aborting %s", client, task_id)
            raise OutcomeError("Too many requests. Import aborted!", status_code=429)

        delay = max(math.ceil(WINDOW - (now - first_request_at)), 1)
        logger.info("Client %s exceeded %d requests per minute", client, self.max_requests_per_minute)
        raise OutcomeError(
            f"Too many requests. Please try again in {delay} seconds.",
            status_code=429,
            headers={"Retry-After": str(delay)}
        )


rate_limiter = RateLimiter()


def limit_status_requests(
    request: Request,
    task_manager: TaskManager = Depends(get_task_manager)
) -> None:
    client = request.client.host if request.client else "unknown"
    rate_limiter.hit(client, task_manager, request.path_params.get("job_id"))
