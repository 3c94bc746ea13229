import logging
import math
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from bulk_data.api.dependencies import get_task_manager, require_respond_async
from bulk_data.api.outcomes import cancel_accepted, cancel_not_found, kick_off_accepted
from bulk_data.api.progress import relay_task_progress
from bulk_data.api.rate_limit import limit_status_requests
from bulk_data.api.routes.imports import http_date, polling_delay, reject_concurrent_jobs
from bulk_data.config import settings
from bulk_data.errors import ExportRequestError, OutcomeError
from bulk_data.importer.export_task import ExportTask
from bulk_data.importer.task import uint
from bulk_data.importer.task_manager import TaskManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/fhir", tags=["export"])

SUPPORTED_FORMATS = {
    "application/fhir+ndjson": "ndjson",
    "application/ndjson": "ndjson",
    "ndjson": "ndjson",
    "text/csv": "csv",
    "csv": "csv",
}

TRUTHY = ("1", "true", "yes", "on")


def invalid(message: str) -> OutcomeError:
    return OutcomeError(message, status_code=400, issue_code="invalid")


async def read_parameters(request: Request) -> Dict[str, List[Any]]:
    """
    Collect the export parameters from the query string (GET) or from a FHIR
    Parameters resource (POST). Every parameter maps to a list of values.
    """
    if request.method == "GET":
        params: Dict[str, List[Any]] = {}
        for name, value in request.query_params.multi_items():
            params.setdefault(name, []).append(value)
        return params

    try:
        body = await request.json()
    except ValueError:
        body = None
    if not isinstance(body, dict) or body.get("resourceType") != "Parameters":
        raise invalid("The POST body should be a Parameters resource")

    params = {}
    for param in body.get("parameter") or []:
        if not isinstance(param, dict) or "name" not in param:
            continue
        value_key = next((k for k in param if k.startswith("value")), None)
        if value_key is not None:
            params.setdefault(param["name"], []).append(param[value_key])
    return params


def first(params: Dict[str, List[Any]], name: str, default: Any = None) -> Any:
    values = params.get(name)
    return values[0] if values else default


def parse_types(params: Dict[str, List[Any]]) -> List[str]:
    types: List[str] = []
    for value in params.get("_type", []):
        for resource_type in str(value).split(","):
            resource_type = resource_type.strip()
            if resource_type and resource_type not in types:
                types.append(resource_type)
    return types


def parse_since(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        since = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    except ValueError:
        since = None
    if since is not None and since.tzinfo is None:
        since = since.replace(tzinfo=timezone.utc)
    if since is None or since > datetime.now(timezone.utc):
        raise invalid(
            f'Invalid _since parameter "{value}". It must be valid FHIR instant '
            "and cannot be a date in the future"
        )
    return since


def parse_patients(params: Dict[str, List[Any]], method: str) -> List[str]:
    values = params.get("patient", [])
    if values and method != "POST":
        raise invalid('The "patient" parameter is only available in POST requests')
    patients = []
    for value in values:
        reference = value.get("reference") if isinstance(value, dict) else value
        if reference:
            patients.append(str(reference).strip().lstrip("/").replace("Patient/", "", 1))
    return patients


def build_export_task(request: Request, params: Dict[str, List[Any]]) -> ExportTask:
    output_format = str(first(params, "_outputFormat", "application/fhir+ndjson"))
    if output_format not in SUPPORTED_FORMATS:
        raise invalid(f'The "{output_format}" _outputFormat is not supported')

    group = first(params, "group")
    return ExportTask(
        types=parse_types(params),
        request=str(request.url),
        resources_per_file=uint(first(params, "resourcesPerFile")) or None,
        multiplier=uint(first(params, "m"), 1) or 1,
        group=uint(group) if group not in (None, "") else None,
        since=parse_since(first(params, "_since")),
        patients=parse_patients(params, request.method),
        output_format=SUPPORTED_FORMATS[output_format],
        extended=str(first(params, "extended", "")).lower() in TRUTHY
    )


@router.api_route("/$export", methods=["GET", "POST"], dependencies=[Depends(require_respond_async)])
async def kick_off_export(
    request: Request,
    task_manager: TaskManager = Depends(get_task_manager)
):
    """Start a (simulated) system level export."""
    params = await read_parameters(request)
    reject_concurrent_jobs(task_manager)

    task = build_export_task(request, params)
    # Registered before the first await so that concurrent kick-offs see it
    task_manager.add(task)
    try:
        await task.init()
    except ExportRequestError as e:
        task_manager.remove(task.id, cancel=True)
        logger.info("Rejecting export request: %s", e)
        raise OutcomeError(str(e), status_code=e.status_code, issue_code="invalid")
    except Exception:
        task_manager.remove(task.id, cancel=True)
        raise

    relay_task_progress(task)
    await task.start()

    location = f"{settings.base_url.rstrip('/')}/fhir/bulkstatus/{task.id}"
    logger.info("Export %s accepted (%d files)", task.id[:8], len(task.links))
    return kick_off_accepted(location)


@router.get("/bulkstatus/{job_id}", dependencies=[Depends(limit_status_requests)])
async def export_status(
    job_id: str,
    task_manager: TaskManager = Depends(get_task_manager)
):
    task = task_manager.get(job_id)
    if task is None or not isinstance(task, ExportTask):
        raise OutcomeError("Requested bulk export task not found", status_code=404, issue_code="not-found")

    if task.ended:
        if task.error:
            raise OutcomeError(f"Export failed: {task.error}", status_code=500)
        return JSONResponse(
            content=task.manifest().model_dump(exclude_none=True),
            headers={"Expires": http_date(task.end_time + settings.db_maintenance_max_record_age)}
        )

    progress = max(task.progress, 0)
    delay = polling_delay(task.remaining_time)
    return PlainTextResponse(
        f"bulk data export in progress / retry interval: {delay:g}",
        status_code=202,
        headers={
            "Retry-After": str(math.ceil(delay)),
            "X-Progress": f"{progress * 100:g}%",
        }
    )


@router.delete("/bulkstatus/{job_id}")
async def cancel_export(
    job_id: str,
    task_manager: TaskManager = Depends(get_task_manager)
):
    if task_manager.remove(job_id):
        return cancel_accepted()
    raise cancel_not_found()
