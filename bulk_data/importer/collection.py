import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Union
from urllib.parse import urlencode

import httpx

from bulk_data.config import settings
from bulk_data.importer.download_task import DownloadTask, create_http_client
from bulk_data.importer.task import Task
from bulk_data.schemas.import_job import ImportInput
from bulk_data.schemas.manifest import Manifest, ManifestEntry

logger = logging.getLogger(__name__)


def outcome_url(message: str, severity: str = "information", issue_code: str = "informational") -> str:
    """Link to the generic OperationOutcome endpoint describing a result."""
    query = urlencode({"issueCode": issue_code, "severity": severity, "message": message})
    return f"{settings.base_url.rstrip('/')}/outcome?{query}"


def isoformat(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


class DownloadTaskCollection(Task):
    """
    Downloads multiple NDJSON files in parallel.

    Each input file gets its own DownloadTask. The collection position and
    total are the sums of the children, and the collection ends once every
    child has ended (successfully or not).
    """

    def __init__(
        self,
        files: Iterable[Union[ImportInput, Dict[str, str]]],
        request: str = "",
        client: Optional[httpx.AsyncClient] = None,
        **options
    ):
        super().__init__(request=request, **options)
        self.files: List[ImportInput] = [
            f if isinstance(f, ImportInput) else ImportInput.model_validate(f)
            for f in files
        ]
        self.request = request
        self.tasks: List[DownloadTask] = []
        self.client = client
        self._owns_client = client is None
        self._runner: Optional[asyncio.Task] = None
        self._announced = False

    @property
    def position(self) -> int:
        return sum(task.position for task in self.tasks)

    def _on_child_progress(self, _info: Dict[str, Any]) -> None:
        if self.ended:
            return
        if not self._announced:
            self._announced = True
            self.emit("start")
        self.emit("progress")

    def _on_child_end(self, _info: Dict[str, Any]) -> None:
        if self.tasks and all(task.ended for task in self.tasks):
            self.end()
        elif not self.ended:
            self.emit("progress")

    async def init(self) -> None:
        """
        Make the request for each file to learn its size. Some of these may
        fail early (e.g. 404). Such tasks end with an error and are excluded
        from the transfer, while their siblings continue independently.
        """
        if self.client is None:
            self.client = create_http_client()

        for file in self.files:
            task = DownloadTask(file.url, file.type, client=self.client)
            task.on("progress", self._on_child_progress)
            task.on("end", self._on_child_end)
            self.tasks.append(task)

        results = await asyncio.gather(
            *(task.init() for task in self.tasks),
            return_exceptions=True
        )

        for task, result in zip(self.tasks, results):
            if isinstance(result, BaseException):
                task.end(result)
                logger.warning("Could not start download of %s: %s", task.url, result)
            else:
                self.total += task.total

    async def start(self) -> asyncio.Task:
        """
        Start all downloads in parallel. Returns the asyncio task driving the
        transfers; their content is discarded.
        """
        self.start_time = time.time()

        if not self.tasks:
            await self.init()

        real_tasks = [t for t in self.tasks if not t.ended and not t.error]
        if not real_tasks:
            self.end()

        self._runner = asyncio.create_task(self._run(real_tasks))
        return self._runner

    async def _run(self, tasks: List[DownloadTask]) -> None:
        try:
            await asyncio.gather(*(self._drain(task) for task in tasks))
        finally:
            if self._owns_client and self.client is not None:
                await self.client.aclose()

    @staticmethod
    async def _drain(task: DownloadTask) -> None:
        try:
            async for _ in task.start():
                pass
        except Exception as e:
            # Already recorded on the task and reported in the manifest
            logger.info("Download of %s failed: %s", task.url, e)

    def cancel(self) -> "DownloadTaskCollection":
        super().cancel()
        for task in self.tasks:
            if not task.ended:
                task.cancel()
        if self._runner is not None and not self._runner.done():
            self._runner.cancel()
        return self

    def manifest(self) -> Manifest:
        output = []
        errors = []
        for task in self.tasks:
            if not task.ended:
                continue
            if task.error:
                errors.append(ManifestEntry(
                    type=task.type,
                    inputUrl=task.url,
                    count=task.count,
                    url=outcome_url(
                        f'Failed to import "{task.url}" ({task.type}): {task.error}',
                        severity="error",
                        issue_code="processing"
                    )
                ))
            else:
                output.append(ManifestEntry(
                    type=task.type,
                    inputUrl=task.url,
                    count=task.count,
                    url=outcome_url(
                        f'{task.count} "{task.type}" resources imported '
                        f'successfully from "{task.url}"'
                    )
                ))

        return Manifest(
            transactionTime=isoformat(self.end_time or time.time()),
            request=self.request,
            requiresAccessToken=False,
            output=output,
            error=errors
        )

    def to_json(self) -> Dict[str, Any]:
        out = super().to_json()
        out.update(self.manifest().model_dump(exclude_none=True))
        return out
