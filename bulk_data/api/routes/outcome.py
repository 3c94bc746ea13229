from typing import Optional
from fastapi import APIRouter
from bulk_data.api.outcomes import outcome_response

router = APIRouter(tags=["outcome"])


@router.get("/outcome")
async def get_outcome(
    issueCode: str = "processing",
    severity: str = "error",
    message: Optional[str] = None
):
    """Render the OperationOutcome that manifest links point to."""
    return outcome_response(
        message or "No details available",
        status_code=200,
        severity=severity,
        issue_code=issueCode
    )
