import logging
import re
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Query
from fastapi.responses import StreamingResponse

from bulk_data.api.outcomes import file_expired
from bulk_data.api.routes.exports import TRUTHY, parse_since
from bulk_data.database import async_session
from bulk_data.errors import OutcomeError
from bulk_data.importer.task import uint
from bulk_data.services.fhir_stream import FhirStream
from bulk_data.services.queries import ResourceQuery

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/fhir", tags=["files"])

RE_FILE_NAME = re.compile(r"^(\d+)\.([A-Za-z]+)\.(ndjson|csv)$")

CONTENT_TYPES = {
    "ndjson": "application/fhir+ndjson",
    "csv": "text/csv; charset=UTF-8; header=present",
}


async def stream_file(query: ResourceQuery, output_format: str, **options) -> AsyncIterator[str]:
    """Open a session for the lifetime of the response and stream the rows."""
    async with async_session() as session:
        stream = await FhirStream.create(session, query, **options)
        chunks = stream.iter_csv() if output_format == "csv" else stream.iter_ndjson()
        try:
            async for chunk in chunks:
                yield chunk
        except Exception:
            logger.exception("Streaming %s rows failed", ",".join(query.types))
            raise


@router.get("/bulkfiles/{file_name}")
async def download_file(
    file_name: str,
    limit: Optional[str] = None,
    offset: Optional[str] = None,
    m: Optional[str] = None,
    group: Optional[str] = None,
    since: Optional[str] = Query(None, alias="_since"),
    patient: Optional[str] = None,
    extended: Optional[str] = None,
    err: Optional[str] = None
):
    """Stream one virtual export file. Nothing is stored on disk."""
    if err == "file_expired":
        raise file_expired()

    match = RE_FILE_NAME.match(file_name)
    if not match:
        raise OutcomeError(f'Invalid file name "{file_name}"', status_code=404, issue_code="not-found")
    _, resource_type, output_format = match.groups()

    query = ResourceQuery(
        types=[resource_type],
        group=uint(group) if group else None,
        since=parse_since(since),
        patients=[p for p in (patient or "").split(",") if p],
        extended=(extended or "").lower() in TRUTHY
    )

    return StreamingResponse(
        stream_file(
            query,
            output_format,
            limit=uint(limit) or None,
            offset=uint(offset),
            multiplier=uint(m, 1) or 1
        ),
        media_type=CONTENT_TYPES[output_format]
    )
