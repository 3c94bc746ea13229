"""
Streams rows of the data table as NDJSON (or CSV) files.

The database only holds a limited amount of sample data, but clients can
ask for "virtual" datasets that are `multiplier` times bigger. When the real
rows are exhausted before the virtual total is reached the cursor is rewound
and the same rows are served again. To keep the resulting resources unique,
every UUID found in a repeated row is given a prefix that depends on the page
(`p{page}-{n}-`) or, on the first page, on the number of rewinds
(`o{overflow}-{n}-`).
"""
import asyncio
import csv
import io
import json
import logging
import math
import re
from collections import deque
from datetime import datetime
from typing import Any, AsyncIterator, Deque, List, Mapping, Optional, Protocol, Sequence

from sqlalchemy import Select
from sqlalchemy.ext.asyncio import AsyncSession

from bulk_data.config import settings
from bulk_data.services.queries import ResourceQuery

logger = logging.getLogger(__name__)

HEX = "[a-fA-F0-9]"
RE_UID = re.compile(
    rf"\b({HEX}{{8}}-{HEX}{{4}}-{HEX}{{4}}-{HEX}{{4}}-{HEX}{{12}})\b"
)


def compute_page(offset: int, row_index: int, limit: int) -> int:
    """1-based number of the page the row at `offset + row_index` falls on."""
    return (offset + row_index) // limit + 1


def count_pages(total: int, multiplier: int, limit: int) -> int:
    return math.ceil(total * multiplier / limit)


def should_rewind(row_index: int, total: int, multiplier: int, offset: int, page: int, total_pages: int) -> bool:
    """Whether an exhausted cursor must start over to fill the virtual dataset."""
    return row_index < total * multiplier - offset and page <= total_pages


def id_prefix(page: int, overflow: int, row_number: int) -> str:
    if page > 1:
        return f"p{page}-{row_number}-"
    if overflow:
        return f"o{overflow}-{row_number}-"
    return ""


def rewrite_ids(text: str, prefix: str) -> str:
    if not prefix:
        return text
    return RE_UID.sub(lambda m: prefix + m.group(1), text)


class RowSource(Protocol):
    async def fetch(self, offset: int, limit: int) -> Sequence[Mapping[str, Any]]:
        ...


class SQLRowSource:
    """Runs a SELECT with a moving OFFSET to read the rows chunk by chunk."""

    def __init__(self, session: AsyncSession, query: Select):
        self.session = session
        self.query = query

    async def fetch(self, offset: int, limit: int) -> List[Mapping[str, Any]]:
        result = await self.session.execute(self.query.offset(offset).limit(limit))
        return [dict(row._mapping) for row in result]


class ListRowSource:
    """In-memory rows, mostly useful for tests and fixtures."""

    def __init__(self, rows: Sequence[Mapping[str, Any]]):
        self.rows = list(rows)

    async def fetch(self, offset: int, limit: int) -> List[Mapping[str, Any]]:
        return self.rows[offset:offset + limit]


class FhirStream:
    """
    Cursor over `total` real rows presenting a dataset of `total * multiplier`
    rows, of which at most `limit` are served starting at `offset`.
    """

    def __init__(
        self,
        source: RowSource,
        total: int,
        limit: Optional[int] = None,
        offset: int = 0,
        multiplier: int = 1,
        extended: bool = False,
        throttle: Optional[float] = None,
        chunk_size: Optional[int] = None
    ):
        self.source = source
        self.total = max(int(total), 0)
        self.limit = limit or settings.default_page_size
        self.offset = max(int(offset), 0)
        self.multiplier = max(int(multiplier), 1)
        self.extended = extended
        self.throttle = settings.throttle if throttle is None else throttle
        self.chunk_size = min(chunk_size or settings.rows_per_chunk, self.limit)

        self.row_index = 0
        self.page = compute_page(self.offset, 0, self.limit)
        self.total_pages = count_pages(self.total, self.multiplier, self.limit)

        # Offsets past the real rows start inside one of the virtual copies
        if self.total:
            self.overflow = self.offset // self.total
            self.cursor_offset = self.offset % self.total
        else:
            self.overflow = 0
            self.cursor_offset = self.offset

        self._cache: Deque[Mapping[str, Any]] = deque()

    @classmethod
    async def create(
        cls,
        session: AsyncSession,
        query: ResourceQuery,
        **kwargs
    ) -> "FhirStream":
        """Count the matching rows and build a stream reading them from the DB."""
        total = await session.scalar(query.count()) or 0
        return cls(SQLRowSource(session, query.select()), total, extended=query.extended, **kwargs)

    async def _pull(self) -> Optional[Mapping[str, Any]]:
        if not self._cache:
            rows = await self.source.fetch(self.cursor_offset, self.chunk_size)
            self.cursor_offset += len(rows)
            self._cache.extend(rows)
        return self._cache.popleft() if self._cache else None

    def _rewind(self) -> None:
        self.cursor_offset = 0
        self.overflow += 1
        self._cache.clear()
        logger.debug("Rewinding cursor (overflow=%d, row=%d)", self.overflow, self.row_index)

    @property
    def quota(self) -> int:
        """How many rows of the virtual dataset are left after `offset`."""
        return self.total * self.multiplier - self.offset

    async def next_row(self) -> Optional[Mapping[str, Any]]:
        """Return the next row or None once the stream is exhausted."""
        # The caller asked for this many rows regardless of what else is there
        if self.row_index >= self.limit or self.row_index >= self.quota:
            return None

        row = await self._pull()
        if row is None:
            if not should_rewind(
                self.row_index, self.total, self.multiplier,
                self.offset, self.page, self.total_pages
            ):
                return None
            self._rewind()
            row = await self._pull()
            if row is None:
                return None

        self.page = compute_page(self.offset, self.row_index, self.limit)
        self.row_index += 1
        return row

    def render(self, row: Mapping[str, Any]) -> str:
        """
        Serialize a row. IDs are prefixed on virtual pages, and extended
        streams also carry the modification time as `__modified_date`.
        """
        text = rewrite_ids(
            row["resource_json"],
            id_prefix(self.page, self.overflow, self.row_index)
        )
        if self.extended:
            resource = json.loads(text)
            modified = row.get("modified_date")
            if isinstance(modified, datetime):
                modified = modified.isoformat()
            resource["__modified_date"] = modified
            text = json.dumps(resource)
        return text

    async def lines(self) -> AsyncIterator[str]:
        """Yield the serialized rows, sleeping `throttle` seconds in between."""
        while True:
            row = await self.next_row()
            if row is None:
                break
            yield self.render(row)
            if self.throttle:
                await asyncio.sleep(self.throttle)

    async def iter_ndjson(self) -> AsyncIterator[str]:
        async for line in self.lines():
            # No EOL before the first line and none after the last one
            yield line if self.row_index == 1 else "\n" + line

    async def iter_csv(self) -> AsyncIterator[str]:
        header: Optional[List[str]] = None
        async for line in self.lines():
            resource = json.loads(line)
            if header is None:
                header = list(resource.keys())
                yield csv_line(header)
            yield csv_line([resource.get(key) for key in header])


def csv_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list, bool)):
        return json.dumps(value, separators=(",", ":"))
    return str(value)


def csv_line(values: Sequence[Any]) -> str:
    buffer = io.StringIO()
    csv.writer(buffer, lineterminator="\r\n").writerow([csv_value(v) for v in values])
    return buffer.getvalue()
