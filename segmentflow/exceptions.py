"""
Error taxonomy for the sync and analytics pipeline.

Exceptions raised from workers and services share one hierarchy so the
worker can decide what to retry, and the HTTP layer can render the same
errors as RFC 7807 problem details.

See: https://datatracker.ietf.org/doc/html/rfc7807
"""

from typing import Optional, Any, List
from enum import Enum
from pydantic import BaseModel, Field
from fastapi import Request
from fastapi.responses import JSONResponse
import logging
import uuid
from datetime import datetime, timezone

logger = logging.getLogger(__name__)


class ErrorCode(str, Enum):
    """Standardized error codes."""

    # Validation
    VALIDATION_ERROR = "VAL_001"
    INVALID_FILTER = "VAL_002"
    UNKNOWN_STATUS = "VAL_003"
    INVALID_PAYLOAD = "VAL_004"

    # Resource
    NOT_FOUND = "RES_001"
    ALREADY_EXISTS = "RES_002"

    # Business Logic
    TENANT_INACTIVE = "BIZ_001"

    # External Services
    EXTERNAL_SERVICE_ERROR = "EXT_001"
    COMMERCE_API_ERROR = "EXT_002"
    DATABASE_ERROR = "EXT_003"
    QUEUE_ERROR = "EXT_004"

    # Server
    INTERNAL_ERROR = "SRV_001"


class ProblemDetail(BaseModel):
    """RFC 7807 Problem Details response schema."""

    type: str = Field(default="about:blank")
    title: str
    status: int
    detail: str
    instance: Optional[str] = None
    code: str
    timestamp: str
    trace_id: str
    errors: Optional[List[Any]] = None


class SegmentFlowError(Exception):
    """
    Base exception for the pipeline.

    Carries an HTTP-ish status code and a machine-readable error code so the
    API layer can translate it; workers only care about the type.
    """

    status_code = 500
    code = ErrorCode.INTERNAL_ERROR
    title = "Internal Server Error"

    def __init__(
        self,
        detail: str,
        errors: Optional[List[Any]] = None,
    ):
        super().__init__(detail)
        self.detail = detail
        self.errors = errors
        self.trace_id = str(uuid.uuid4())[:12]
        self.timestamp = datetime.now(timezone.utc).isoformat()

    def to_problem_detail(self, instance: Optional[str] = None) -> ProblemDetail:
        """Convert to RFC 7807 ProblemDetail."""
        return ProblemDetail(
            type=f"https://segmentflow.dev/problems/{self.code.value.lower().replace('_', '-')}",
            title=self.title,
            status=self.status_code,
            detail=self.detail,
            instance=instance,
            code=self.code.value,
            timestamp=self.timestamp,
            trace_id=self.trace_id,
            errors=self.errors,
        )


class NotFoundError(SegmentFlowError):
    """Resource not found (404)."""

    status_code = 404
    code = ErrorCode.NOT_FOUND
    title = "Not Found"

    def __init__(self, resource: str, resource_id: str):
        super().__init__(f"{resource} with ID {resource_id} was not found")
        self.resource = resource
        self.resource_id = resource_id


class ValidationError(SegmentFlowError):
    """Validation error (422)."""

    status_code = 422
    code = ErrorCode.VALIDATION_ERROR
    title = "Validation Error"


class InvalidFilterError(ValidationError):
    """A segment filter expression failed validation."""

    code = ErrorCode.INVALID_FILTER

    def __init__(self, errors: List[str]):
        super().__init__(f"Invalid filters: {'; '.join(errors)}", errors=errors)


class UnknownStatusError(ValidationError):
    """An external status string has no internal mapping."""

    code = ErrorCode.UNKNOWN_STATUS

    def __init__(self, kind: str, value: Any):
        super().__init__(f"Unknown {kind}: {value!r}")
        self.kind = kind
        self.value = value


class TenantInactiveError(SegmentFlowError):
    """Tenant is suspended or churned (409)."""

    status_code = 409
    code = ErrorCode.TENANT_INACTIVE
    title = "Conflict"

    def __init__(self, tenant_id: str, status: str):
        super().__init__(f"Tenant {tenant_id} is {status}")


class ExternalServiceError(SegmentFlowError):
    """External service error (502)."""

    status_code = 502
    code = ErrorCode.EXTERNAL_SERVICE_ERROR
    title = "Bad Gateway"

    def __init__(self, service: str, detail: str):
        super().__init__(f"{service} service error: {detail}")
        self.service = service


class CommerceAPIError(ExternalServiceError):
    """Commerce platform API call failed."""

    code = ErrorCode.COMMERCE_API_ERROR

    def __init__(self, detail: str, status: Optional[int] = None, retryable: bool = False):
        super().__init__("Commerce API", detail)
        self.status = status
        self.retryable = retryable


# Exception handlers for FastAPI

async def segmentflow_exception_handler(request: Request, exc: SegmentFlowError) -> JSONResponse:
    """Handle SegmentFlowError with RFC 7807 response."""
    logger.warning(
        f"SegmentFlowError: {exc.code.value} - {exc.detail}",
        extra={
            "trace_id": exc.trace_id,
            "status_code": exc.status_code,
            "path": request.url.path,
        }
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_problem_detail(instance=str(request.url.path)).model_dump(exclude_none=True),
        media_type="application/problem+json",
    )
