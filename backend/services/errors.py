"""
DocSpace Flow Hub - Error Taxonomy

Exceptions raised by the flow services. Routes translate any FlowHubError
into an HTTP response using its status_code; the upstream status and body of
a failed DocSpace call are carried through unchanged in `details`.
"""

from typing import Any, Dict, Optional


class FlowHubError(Exception):
    """Base exception for flow hub service errors."""
    status_code = 500

    def __init__(self, message: str, status_code: int = None, details: Any = None):
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "details": self.details}


class ValidationError(FlowHubError):
    """Raised when a request is missing a required field."""
    status_code = 400


class NotFoundError(FlowHubError):
    """Raised for an unknown flow, project, room or file."""
    status_code = 404


class UpstreamError(FlowHubError):
    """
    Raised when DocSpace answers with a non-success status.
    status_code is the upstream status, details is the parsed upstream body.
    """
    status_code = 502


class SignatureError(FlowHubError):
    """Raised when a webhook signature is missing, malformed or wrong."""
    status_code = 401

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__("Invalid signature", details=reason)


class ReconciliationTimeout(FlowHubError):
    """Raised when the poller exhausts its attempts without seeing the new file."""
    status_code = 502

    def __init__(self, folder_id: str, attempts: int, expected_title: Optional[str] = None):
        self.folder_id = folder_id
        self.attempts = attempts
        self.expected_title = expected_title
        super().__init__(
            f"New file did not appear in folder {folder_id} after {attempts} attempts",
            details={"folderId": folder_id, "attempts": attempts, "expectedTitle": expected_title},
        )


class FlowVersionConflict(FlowHubError):
    """Raised when a transition is applied against a stale flow version."""
    status_code = 409

    def __init__(self, flow_id: str, expected_version: int, actual_version: int):
        self.flow_id = flow_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Flow {flow_id} changed concurrently (expected version {expected_version}, found {actual_version})",
            details={"flowId": flow_id, "expectedVersion": expected_version, "actualVersion": actual_version},
        )


class BulkUnitError(FlowHubError):
    """Raised when a bulk unit fails after its DocSpace copy already exists."""

    def __init__(self, cause: Exception, file_id: str, file_title: Optional[str] = None):
        self.file_id = file_id
        self.file_title = file_title
        super().__init__(
            getattr(cause, "message", None) or str(cause),
            status_code=getattr(cause, "status_code", None) if isinstance(cause, FlowHubError) else None,
            details=getattr(cause, "details", None),
        )
