import json
import logging
import math
import re
from email.utils import formatdate
from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from bulk_data.api.dependencies import (
    get_task_manager,
    require_fhir_json_accept,
    require_json_content_type,
    require_respond_async,
)
from bulk_data.api.outcomes import cancel_accepted, cancel_not_found, kick_off_accepted
from bulk_data.api.progress import relay_task_progress
from bulk_data.api.rate_limit import limit_status_requests
from bulk_data.config import settings
from bulk_data.errors import OutcomeError
from bulk_data.importer.collection import DownloadTaskCollection
from bulk_data.importer.task_manager import TaskManager
from bulk_data.schemas.import_job import ImportKickOffRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/fhir", tags=["import"])

SUPPORTED_STORAGE_TYPES = ("https", "aws-s3", "gcp-bucket", "azure-blob")
RE_HTTP_URL = re.compile(r"^\s*https?://", re.IGNORECASE)


def bad_request(message: str, status_code: int = 400) -> OutcomeError:
    return OutcomeError(message, status_code=status_code, issue_code="invalid")


def validate_kick_off_payload(payload: Any) -> ImportKickOffRequest:
    """Check the import kick-off body, raising OutcomeError on the first problem."""
    if not isinstance(payload, dict):
        raise bad_request("The request body must be a JSON object")

    input_format = payload.get("inputFormat")
    if not input_format:
        raise bad_request('The "inputFormat" JSON parameter is required')
    if not isinstance(input_format, str):
        raise bad_request('The "inputFormat" JSON parameter must be a string')
    if input_format != "application/fhir+ndjson":
        raise bad_request(
            f"The server did not recognize the provided inputFormat {input_format}. "
            'We currently only recognize Newline Delimited JSON with inputFormat '
            '"application/fhir+ndjson"',
            status_code=415
        )

    input_source = payload.get("inputSource")
    if not input_source:
        raise bad_request('The "inputSource" JSON parameter is required')
    if not isinstance(input_source, str):
        raise bad_request('The "inputSource" JSON parameter must be a string')
    if not RE_HTTP_URL.match(input_source):
        raise bad_request('The "inputSource" JSON parameter must be an URL')

    storage_detail = payload.get("storageDetail") or {"type": "https"}
    if not isinstance(storage_detail, dict):
        raise bad_request('The "storageDetail" JSON parameter must be an object')
    if storage_detail.get("type") not in SUPPORTED_STORAGE_TYPES:
        raise bad_request(
            'The "storageDetail.type" parameter must be one of "'
            + '", "'.join(SUPPORTED_STORAGE_TYPES) + '"'
        )

    items = payload.get("input")
    if not isinstance(items, list):
        raise bad_request("The input must be an array")
    if not items:
        raise bad_request("The input array cannot be empty")
    for item in items:
        if not isinstance(item, dict):
            raise bad_request("All input entries must be objects")
        if not item.get("type") or not isinstance(item["type"], str):
            raise bad_request("All input entries must have 'type' string property")
        url = item.get("url")
        if not url or not isinstance(url, str) or not RE_HTTP_URL.match(url) or url.strip().endswith("://"):
            raise bad_request("All input entries must have a valid 'url' property")

    return ImportKickOffRequest(
        inputFormat=input_format,
        inputSource=input_source,
        storageDetail=storage_detail,
        input=items
    )


def reject_concurrent_jobs(task_manager: TaskManager = Depends(get_task_manager)) -> None:
    """Only one import or export job may be running at a time."""
    remaining = task_manager.get_remaining_time()
    if remaining != 0:
        retry_after = settings.admission_retry_after if remaining < 0 else remaining
        logger.info("Rejecting kick-off request; another job is running (%s s left)", remaining)
        raise OutcomeError(
            "Another import operation is currently running. Please try again later.",
            status_code=429,
            headers={"Retry-After": str(retry_after)}
        )


def polling_delay(remaining_time: float) -> float:
    """Retry-After hint for a running job, kept within a sane range."""
    min_delay = 60 / settings.max_requests_per_minute
    max_delay = min_delay * 2
    if remaining_time < 0:
        return min_delay
    return max(min(remaining_time / 10, max_delay), min_delay)


def http_date(timestamp: float) -> str:
    return formatdate(timestamp, usegmt=True)


@router.post(
    "/$import",
    dependencies=[
        Depends(require_respond_async),
        Depends(require_fhir_json_accept),
        Depends(require_json_content_type),
    ]
)
async def kick_off_import(
    request: Request,
    task_manager: TaskManager = Depends(get_task_manager)
):
    """Start downloading the listed NDJSON files in the background."""
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise bad_request("The request body must be valid JSON")

    body = validate_kick_off_payload(payload)
    reject_concurrent_jobs(task_manager)

    collection = DownloadTaskCollection(body.input, request=str(request.url))
    task_manager.add(collection)
    relay_task_progress(collection)
    await collection.start()

    location = f"{settings.base_url.rstrip('/')}/fhir/import-status/{collection.id}"
    logger.info("Import %s accepted with %d files", collection.id[:8], len(body.input))
    return kick_off_accepted(location)


@router.get("/import-status/{job_id}", dependencies=[Depends(limit_status_requests)])
async def import_status(
    job_id: str,
    task_manager: TaskManager = Depends(get_task_manager)
):
    task = task_manager.get(job_id)
    if task is None or not isinstance(task, DownloadTaskCollection):
        raise OutcomeError("Requested bulk import task not found", status_code=404, issue_code="not-found")

    progress = max(task.progress, 0)

    # Bytes may all be in while the last lines are still being parsed
    if task.ended:
        body = task.to_json()
        end_times = [t.end_time for t in task.tasks if t.end_time] or [task.end_time]
        expires = min(end_times) + settings.db_maintenance_max_record_age
        status_code = 500 if not body["output"] and body["error"] else 200
        return JSONResponse(
            status_code=status_code,
            content=body,
            headers={"Expires": http_date(expires)}
        )

    delay = polling_delay(task.remaining_time)
    return PlainTextResponse(
        f"bulk data import in progress / retry interval: {delay:g}",
        status_code=202,
        headers={
            "Retry-After": str(math.ceil(delay)),
            "X-Progress": f"{progress * 100:g}%",
        }
    )


@router.delete("/import-status/{job_id}")
async def cancel_import(
    job_id: str,
    task_manager: TaskManager = Depends(get_task_manager)
):
    if task_manager.remove(job_id):
        return cancel_accepted()
    raise cancel_not_found()
