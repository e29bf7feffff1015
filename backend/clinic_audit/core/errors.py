"""
Structured error taxonomy for the audit service.

Every application error has:
  - A stable error code (prefixed by domain)
  - An HTTP status code
  - A human-readable message
  - An optional detail dict for machine consumers

Errors are rendered in the uniform response envelope
``{"success": false, "error": "<message>", ...}``. Failures while capturing
audit records never reach this module; they are absorbed by the recorder.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class ErrorCode(StrEnum):
    """Stable, versioned error codes. Never reuse a retired code."""

    # Auth
    AUTH_REQUIRED = "AUTH_001"
    AUTH_TOKEN_INVALID = "AUTH_002"
    AUTH_INSUFFICIENT_PERMISSIONS = "AUTH_003"

    # Audit queries and reports
    AUDIT_INVALID_DATE_RANGE = "AUD_001"
    AUDIT_REPORT_FAILED = "AUD_002"

    # Generic
    VALIDATION_ERROR = "GEN_001"
    INTERNAL_ERROR = "GEN_002"
    NOT_FOUND = "GEN_003"
    RATE_LIMITED = "GEN_004"


class AppError(Exception):
    """Base class for all application errors."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        http_status: int = 500,
        detail: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.http_status = http_status
        self.detail = detail or {}

    def to_dict(self) -> dict[str, Any]:
        return envelope_error(self.message, code=self.code, detail=self.detail)


def envelope_error(
    message: str,
    code: ErrorCode = ErrorCode.INTERNAL_ERROR,
    detail: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Build the failure envelope shared by every error response."""
    return {
        "success": False,
        "error": message,
        "code": code.value,
        "detail": detail or {},
    }


# ── Typed convenience subclasses ──────────────────────────────────────── #


class NotFoundError(AppError):
    def __init__(self, entity: str, entity_id: str | None = None) -> None:
        detail = {"entity": entity}
        if entity_id:
            detail["id"] = entity_id
        super().__init__(
            code=ErrorCode.NOT_FOUND,
            message=f"{entity} not found",
            http_status=404,
            detail=detail,
        )


class AuthError(AppError):
    def __init__(self, code: ErrorCode, message: str) -> None:
        super().__init__(code=code, message=message, http_status=401)


class ForbiddenError(AppError):
    def __init__(self, message: str = "Insufficient permissions", role: str | None = None) -> None:
        super().__init__(
            code=ErrorCode.AUTH_INSUFFICIENT_PERMISSIONS,
            message=message,
            http_status=403,
            detail={"role": role} if role else None,
        )


class ValidationError(AppError):
    def __init__(
        self,
        message: str,
        detail: dict[str, Any] | None = None,
        code: ErrorCode = ErrorCode.VALIDATION_ERROR,
    ) -> None:
        super().__init__(code=code, message=message, http_status=422, detail=detail)


class ReportError(AppError):
    """A single-report endpoint could not produce its report."""

    def __init__(self, report: str) -> None:
        super().__init__(
            code=ErrorCode.AUDIT_REPORT_FAILED,
            message=f"Failed to generate {report}",
            http_status=500,
            detail={"report": report},
        )
