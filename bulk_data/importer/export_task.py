import asyncio
import logging
import math
import time
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlencode

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bulk_data.config import settings
from bulk_data.database import async_session
from bulk_data.errors import ExportRequestError
from bulk_data.importer.collection import isoformat, outcome_url
from bulk_data.importer.task import Task
from bulk_data.schemas.manifest import Manifest, ManifestEntry
from bulk_data.services.queries import ResourceQuery

logger = logging.getLogger(__name__)

FILE_EXTENSIONS = {
    "ndjson": "ndjson",
    "csv": "csv",
}

# Generation progress is reported in percent
STEPS = 100


class ExportTask(Task):
    """
    Pretends to generate the files of a bulk data export.

    The files are never written anywhere. Instead, the manifest links point
    to the download endpoint with the `limit`/`offset`/`m` parameters needed
    to stream the right slice of the (virtual) dataset on demand.
    """

    def __init__(
        self,
        types: Sequence[str] = (),
        request: str = "",
        resources_per_file: Optional[int] = None,
        multiplier: int = 1,
        group: Optional[int] = None,
        since: Optional[datetime] = None,
        patients: Optional[Sequence[str]] = None,
        output_format: str = "ndjson",
        extended: bool = False,
        wait_time: Optional[float] = None,
        session_factory: async_sessionmaker = async_session,
        **options
    ):
        super().__init__(request=request, **options)
        self.types = [t for t in types if t]
        self.request = request
        self.resources_per_file = resources_per_file or settings.default_page_size
        self.multiplier = max(int(multiplier), 1)
        self.group = group
        self.since = since
        self.patients = patients
        self.output_format = output_format
        self.extended = extended
        self.wait_time = settings.default_wait_time if wait_time is None else wait_time
        self.session_factory = session_factory
        self.counts: List[Tuple[str, int]] = []
        self.links: List[ManifestEntry] = []
        self._runner: Optional[asyncio.Task] = None

    def query(self) -> ResourceQuery:
        return ResourceQuery(
            types=self.types,
            group=self.group,
            since=self.since,
            patients=self.patients,
            extended=self.extended
        )

    async def _count(self, session: AsyncSession) -> None:
        if self.types:
            result = await session.execute(ResourceQuery().count_by_type())
            available = {row.fhir_type for row in result}
            for resource_type in self.types:
                if resource_type not in available:
                    raise ExportRequestError(
                        f'The requested resource type "{resource_type}" is not '
                        'available on this server'
                    )

        result = await session.execute(self.query().count_by_type())
        self.counts = [(row.fhir_type, row.cnt) for row in result]

    async def init(self) -> None:
        """Count the matching resources and compute the file links."""
        async with self.session_factory() as session:
            await self._count(session)
        self.links = self._build_links()
        self.total = STEPS

    def _file_url(self, number: int, resource_type: str, offset: int) -> str:
        params: Dict[str, Any] = {
            "limit": self.resources_per_file,
            "offset": offset,
            "m": self.multiplier,
        }
        if self.group is not None:
            params["group"] = self.group
        if self.since is not None:
            params["_since"] = self.since.isoformat()
        if self.patients:
            params["patient"] = ",".join(self.patients)
        if self.extended:
            params["extended"] = 1
        extension = FILE_EXTENSIONS[self.output_format]
        return (
            f"{settings.base_url.rstrip('/')}/fhir/bulkfiles/"
            f"{number}.{resource_type}.{extension}?{urlencode(params)}"
        )

    def _build_links(self) -> List[ManifestEntry]:
        page = self.resources_per_file
        links = []
        for resource_type, count in self.counts:
            virtual_count = count * self.multiplier
            for i in range(math.ceil(virtual_count / page)):
                if len(links) >= settings.max_files:
                    raise ExportRequestError(
                        f"Too many files. This export would produce more than "
                        f"{settings.max_files} files.",
                        status_code=413
                    )
                offset = page * i
                links.append(ManifestEntry(
                    type=resource_type,
                    count=min(page, virtual_count - offset),
                    url=self._file_url(i + 1, resource_type, offset)
                ))
        return links

    async def start(self) -> asyncio.Task:
        self.start_time = time.time()
        if not self.total:
            await self.init()
        self._runner = asyncio.create_task(self._generate())
        return self._runner

    async def _generate(self) -> None:
        delay = self.wait_time / STEPS
        try:
            for step in range(1, STEPS + 1):
                if self.ended:
                    return
                if delay:
                    await asyncio.sleep(delay)
                self.position = step
        except Exception as e:
            logger.exception("Export %s failed", self.id[:8])
            self.end(e)

    def cancel(self) -> "ExportTask":
        super().cancel()
        if self._runner is not None and not self._runner.done():
            self._runner.cancel()
        return self

    def manifest(self) -> Manifest:
        found = {link.type for link in self.links}
        errors = [
            ManifestEntry(
                type="OperationOutcome",
                url=outcome_url(
                    f'No resources found for type "{resource_type}"',
                    severity="warning",
                    issue_code="not-found"
                )
            )
            for resource_type in self.types
            if resource_type not in found
        ]
        return Manifest(
            transactionTime=isoformat(self.start_time or time.time()),
            request=self.request,
            requiresAccessToken=False,
            output=self.links,
            error=errors
        )
