from typing import Dict, Optional


class OutcomeError(Exception):
    """Error rendered to the client as a FHIR OperationOutcome."""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        severity: str = "error",
        issue_code: str = "processing",
        headers: Optional[Dict[str, str]] = None
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.severity = severity
        self.issue_code = issue_code
        self.headers = headers or {}


class DuplicateTaskError(Exception):
    """Raised when a task id is registered twice."""


class TaskCanceledError(Exception):
    """Recorded on tasks that were canceled by the client."""


class DownloadError(Exception):
    """Transport or content negotiation failure of a file download."""


class ResourceValidationError(ValueError):
    """A downloaded resource does not have the expected shape."""


class NDJSONError(ValueError):
    """Base class for NDJSON stream failures."""


class NDJSONSyntaxError(NDJSONError):
    """A line of the NDJSON input is not valid JSON."""


class BufferOverflowError(NDJSONError):
    """No EOL found within the allowed line length."""


class ExportRequestError(ValueError):
    """An export kick-off that can't be fulfilled with the available data."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.status_code = status_code
