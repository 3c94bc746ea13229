from typing import Dict, Optional
from fastapi import Request
from fastapi.responses import JSONResponse
from bulk_data.errors import OutcomeError
from bulk_data.schemas.outcome import OperationOutcome


def outcome_response(
    message: str,
    status_code: int = 500,
    severity: str = "error",
    issue_code: str = "processing",
    headers: Optional[Dict[str, str]] = None
) -> JSONResponse:
    """Reply with a single-issue OperationOutcome."""
    outcome = OperationOutcome.create(message, severity=severity, issue_code=issue_code)
    return JSONResponse(
        status_code=status_code,
        content=outcome.model_dump(),
        headers=headers
    )


async def outcome_error_handler(request: Request, exc: OutcomeError) -> JSONResponse:
    return outcome_response(
        exc.message,
        status_code=exc.status_code,
        severity=exc.severity,
        issue_code=exc.issue_code,
        headers=exc.headers
    )


def kick_off_accepted(location: str) -> JSONResponse:
    return outcome_response(
        f'Your request has been accepted. You can check its status at "{location}"',
        status_code=202,
        severity="information",
        issue_code="informational",
        headers={"Content-Location": location}
    )


def cancel_accepted() -> JSONResponse:
    return outcome_response(
        "The procedure was canceled",
        status_code=202,
        severity="information",
        issue_code="informational"
    )


def cancel_not_found() -> OutcomeError:
    return OutcomeError(
        "Unknown procedure. Perhaps it is already completed and thus, it cannot be canceled",
        status_code=404,
        issue_code="not-found"
    )


def file_expired() -> OutcomeError:
    return OutcomeError(
        "Access to the target resource is no longer available at the server "
        "and this condition is likely to be permanent because the file expired",
        status_code=410
    )
