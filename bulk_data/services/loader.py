"""
Loads NDJSON fixture files into the data table.

The same NDJSON transform used for imports parses the file, so a broken line
aborts the load with the line number in the error.
"""
import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import aiofiles
from sqlalchemy import delete, insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bulk_data.config import settings
from bulk_data.importer.ndjson import NDJSONParser
from bulk_data.importer.validator import ResourceValidator
from bulk_data.models.data_row import DataRow

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 64 * 1024
BATCH_SIZE = 1000

ProgressCallback = Callable[[int, int, int], Any]


def parse_instant(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def patient_reference(resource: Dict[str, Any]) -> Optional[str]:
    """The id of the patient a resource belongs to, if any."""
    if resource.get("resourceType") == "Patient":
        return resource.get("id")
    for key in ("subject", "patient", "beneficiary"):
        ref = resource.get(key)
        if isinstance(ref, dict):
            reference = ref.get("reference") or ""
            if reference.startswith("Patient/"):
                return reference.split("/", 1)[1]
    return None


def resource_to_row(resource: Dict[str, Any], text: str, group_id: Optional[int] = None) -> Dict[str, Any]:
    meta = resource.get("meta") or {}
    return {
        "resource_json": text,
        "fhir_type": resource["resourceType"],
        "patient_id": patient_reference(resource),
        "group_id": group_id,
        "modified_date": parse_instant(meta.get("lastUpdated")) or datetime.now(timezone.utc),
    }


async def iter_file_chunks(path: str, chunk_size: int = READ_CHUNK_SIZE) -> AsyncIterator[bytes]:
    async with aiofiles.open(path, "rb") as f:
        while True:
            chunk = await f.read(chunk_size)
            if not chunk:
                break
            yield chunk


async def load_ndjson(
    session_factory: async_sessionmaker,
    path: str,
    group_id: Optional[int] = None,
    resource_type: Optional[str] = None,
    batch_size: int = BATCH_SIZE,
    on_progress: Optional[ProgressCallback] = None
) -> int:
    """
    Insert every resource of the NDJSON file at `path` and return how many
    were inserted. `on_progress(bytes_read, total_bytes, inserted)` is called
    after every committed batch.
    """
    total_bytes = os.path.getsize(path)
    parser = NDJSONParser(settings.ndjson_max_line_length)
    validator = ResourceValidator(resource_type) if resource_type else None
    bytes_read = 0
    inserted = 0
    batch: List[Dict[str, Any]] = []

    async def flush(session: AsyncSession) -> None:
        nonlocal inserted, batch
        if batch:
            await session.execute(insert(DataRow), batch)
            await session.commit()
            inserted += len(batch)
            batch = []
        if on_progress is not None:
            on_progress(bytes_read, total_bytes, inserted)

    def collect(resources: List[Any]) -> None:
        for resource in resources:
            if validator is not None:
                validator.validate(resource)
            elif not isinstance(resource, dict) or "resourceType" not in resource:
                raise ValueError(f"Line {parser.line} does not contain a FHIR resource")
            batch.append(resource_to_row(resource, json.dumps(resource, separators=(",", ":")), group_id))

    async with session_factory() as session:
        async for chunk in iter_file_chunks(path):
            bytes_read += len(chunk)
            collect(parser.feed(chunk))
            if len(batch) >= batch_size:
                await flush(session)
        collect(parser.close())
        await flush(session)

    logger.info("Loaded %d resources from %s", inserted, path)
    return inserted


async def purge_records(session_factory: async_sessionmaker, max_age: float) -> int:
    """Delete rows created more than `max_age` seconds ago."""
    cutoff = datetime.fromtimestamp(datetime.now(timezone.utc).timestamp() - max_age, tz=timezone.utc)
    async with session_factory() as session:
        result = await session.execute(delete(DataRow).where(DataRow.created_at < cutoff))
        await session.commit()
    return result.rowcount or 0
