from fastapi import Request
from bulk_data.errors import OutcomeError
from bulk_data.importer.task_manager import TaskManager


def get_task_manager(request: Request) -> TaskManager:
    """The registry created at application startup."""
    return request.app.state.task_manager


def require_respond_async(request: Request) -> None:
    if request.headers.get("prefer", "") != "respond-async":
        raise OutcomeError("The Prefer header must be respond-async", status_code=400)


def require_fhir_json_accept(request: Request) -> None:
    if request.headers.get("accept", "") != "application/fhir+json":
        raise OutcomeError("The Accept header must be application/fhir+json", status_code=400)


def require_json_content_type(request: Request) -> None:
    content_type = request.headers.get("content-type", "").split(";")[0].strip()
    if content_type != "application/json":
        raise OutcomeError("The Content-Type header must be application/json", status_code=400)
