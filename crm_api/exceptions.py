"""
Approval engine error taxonomy.

HTTP-facing errors subclass FastAPI's HTTPException so the global handler in
main.py renders them as {"error": {"code": ..., "message": ...}}. Each class
also carries ``code`` and ``message`` attributes so service callers can branch
on type instead of parsing strings.

    ApprovalError
    +-- ApprovalNotFoundError        404  request or policy absent
    +-- ApprovalAuthorizationError   403  not a resolved approver / not the requester
    +-- ApprovalStateConflictError   409  non-pending request, re-vote, lost update
    +-- ApprovalValidationError      422  malformed threshold context

    DependencyFailureError               task / notification subsystem failed;
                                         logged by the engine, never surfaced
"""

from typing import Any, Optional

from fastapi import HTTPException, status as http_status


class ApprovalError(HTTPException):
    status_code: int = http_status.HTTP_400_BAD_REQUEST
    code: str = "APPROVAL_ERROR"

    def __init__(self, message: str, code: Optional[str] = None, **details: Any):
        self.code = code or self.code
        self.message = message
        body: dict[str, Any] = {"code": self.code, "message": message}
        if details:
            body["details"] = details
        super().__init__(status_code=self.status_code, detail={"error": body})

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class ApprovalNotFoundError(ApprovalError):
    status_code = http_status.HTTP_404_NOT_FOUND
    code = "APPROVAL_NOT_FOUND"


class ApprovalAuthorizationError(ApprovalError):
    status_code = http_status.HTTP_403_FORBIDDEN
    code = "APPROVAL_NOT_AUTHORIZED"


class ApprovalStateConflictError(ApprovalError):
    status_code = http_status.HTTP_409_CONFLICT
    code = "APPROVAL_STATE_CONFLICT"


class ApprovalValidationError(ApprovalError):
    status_code = http_status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "APPROVAL_VALIDATION_ERROR"


class DependencyFailureError(Exception):
    """A best-effort collaborator (task tracker, notifier) failed."""

    def __init__(self, dependency: str, message: str):
        self.dependency = dependency
        self.message = message
        super().__init__(f"{dependency}: {message}")
