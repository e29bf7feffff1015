"""
FastAPI exception handlers and middleware.

Converts all AppError subclasses and unexpected exceptions into the uniform
response envelope. Injects correlation IDs, attaches the caller's identity
and captures every API exchange for the audit trail.
"""

from __future__ import annotations

import json
import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

import structlog
from fastapi import Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from clinic_audit.config.settings import Settings
from clinic_audit.core.background import PostResponseTasks
from clinic_audit.core.errors import AppError, ErrorCode, envelope_error
from clinic_audit.core.security import Identity, bearer_token, identity_from_token
from clinic_audit.services.audit.recorder import AuditRecorder, HttpExchange, RequestOutcome

_log = structlog.get_logger(__name__)

_BODY_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
_ERROR_BODY_LIMIT = 64 * 1024


def get_client_ip(request: Request) -> str | None:
    """Client address, honouring the first hop of X-Forwarded-For."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip() or None
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else None


def request_identity(request: Request) -> Identity | None:
    identity = getattr(request.state, "identity", None)
    return identity if isinstance(identity, Identity) else None


class CorrelationIDMiddleware(BaseHTTPMiddleware):
    """
    Injects a correlation ID into every request/response cycle.

    The ID is taken from the ``X-Correlation-ID`` request header if
    present; otherwise a new UUID4 is generated. The ID is bound to
    structlog context so that all log statements within the request
    automatically include it.
    """

    HEADER = "X-Correlation-ID"

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        correlation_id = request.headers.get(self.HEADER) or str(uuid.uuid4())
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            correlation_id=correlation_id,
            method=request.method,
            path=request.url.path,
        )
        request.state.correlation_id = correlation_id

        start = time.perf_counter()
        response = await call_next(request)
        duration_ms = int((time.perf_counter() - start) * 1000)

        response.headers[self.HEADER] = correlation_id
        _log.info(
            "request_completed",
            status_code=response.status_code,
            duration_ms=duration_ms,
        )
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds security-relevant HTTP response headers to every response."""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Cache-Control"] = "no-store"
        return response


class IdentityMiddleware(BaseHTTPMiddleware):
    """
    Attaches the bearer token's identity to ``request.state.identity``.

    Missing or invalid tokens leave the identity unset; authorization is
    decided by the route dependencies, not here.
    """

    def __init__(self, app: ASGIApp, settings: Settings) -> None:
        super().__init__(app)
        self._settings = settings

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        request.state.identity = None
        token = bearer_token(request.headers.get("Authorization"))
        if token:
            identity = identity_from_token(token, self._settings)
            if identity is None:
                _log.debug("identity_token_rejected")
            else:
                request.state.identity = identity
                structlog.contextvars.bind_contextvars(user_id=identity.id, role=identity.role)
        return await call_next(request)


class AuditMiddleware(BaseHTTPMiddleware):
    """
    Captures every non-exempt exchange for the audit trail.

    Runs inside :class:`IdentityMiddleware`. The audit write is scheduled on
    :class:`PostResponseTasks` once the response body has been streamed, so
    the client never waits on it and never sees its failures.
    """

    def __init__(
        self,
        app: ASGIApp,
        recorder: AuditRecorder,
        tasks: PostResponseTasks,
        settings: Settings,
    ) -> None:
        super().__init__(app)
        self._recorder = recorder
        self._tasks = tasks
        self._exempt = tuple(settings.audit_exempt_paths)

    def _is_exempt(self, path: str) -> bool:
        return any(path == p or path.startswith(p.rstrip("/") + "/") for p in self._exempt)

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        path = request.url.path
        if self._is_exempt(path):
            return await call_next(request)

        start = time.perf_counter()
        body = await _json_body(request)

        try:
            response = await call_next(request)
        except Exception:
            self._schedule(request, body, start, status_code=500, size=0, error="Internal server error")
            raise

        capture_error = response.status_code >= 400 and "json" in (
            response.headers.get("content-type") or ""
        )
        response.body_iterator = self._observe(
            response.body_iterator, request, body, start, response.status_code, capture_error
        )
        return response

    async def _observe(
        self,
        chunks: AsyncIterator[bytes],
        request: Request,
        body: Any,
        start: float,
        status_code: int,
        capture_error: bool,
    ) -> AsyncIterator[bytes]:
        size = 0
        error_buf = bytearray()
        try:
            async for chunk in chunks:
                size += len(chunk)
                if capture_error and len(error_buf) < _ERROR_BODY_LIMIT:
                    error_buf.extend(chunk)
                yield chunk
        finally:
            error = _error_message(bytes(error_buf)) if capture_error else None
            self._schedule(request, body, start, status_code=status_code, size=size, error=error)

    def _schedule(
        self,
        request: Request,
        body: Any,
        start: float,
        status_code: int,
        size: int,
        error: str | None,
    ) -> None:
        try:
            exchange = HttpExchange(
                method=request.method,
                path=request.url.path,
                outcome=RequestOutcome(
                    status_code=status_code,
                    duration_ms=int((time.perf_counter() - start) * 1000),
                    response_size=size,
                    source_ip=get_client_ip(request),
                    user_agent=request.headers.get("User-Agent"),
                    query=dict(request.query_params) or None,
                    body=body,
                    error_message=error,
                ),
                actor=request_identity(request),
                attempted_actor_id=getattr(request.state, "attempted_actor_id", None),
            )
            self._tasks.spawn(
                self._recorder.record_exchange(exchange),
                name=f"audit {request.method} {request.url.path}",
            )
        except Exception:
            _log.error("audit_capture_failed", path=request.url.path, exc_info=True)


async def _json_body(request: Request) -> Any:
    if request.method not in _BODY_METHODS:
        return None
    if "json" not in (request.headers.get("content-type") or ""):
        return None
    try:
        raw = await request.body()
        return json.loads(raw) if raw else None
    except (ValueError, UnicodeDecodeError):
        return None


def _error_message(raw: bytes) -> str | None:
    try:
        payload = json.loads(raw)
    except (ValueError, UnicodeDecodeError):
        return None
    if not isinstance(payload, dict):
        return None
    for key in ("error", "message", "detail"):
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value
    return None


# ── Exception handlers ────────────────────────────────────────────────── #


def _correlation_header(request: Request) -> dict[str, str]:
    return {"X-Correlation-ID": getattr(request.state, "correlation_id", "")}


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Convert a domain AppError to the failure envelope."""
    _log.warning(
        "application_error",
        error_code=exc.code.value,
        message=exc.message,
        http_status=exc.http_status,
    )
    return JSONResponse(
        status_code=exc.http_status,
        content=exc.to_dict(),
        headers=_correlation_header(request),
    )


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"field": ".".join(str(p) for p in err.get("loc", ())[1:]), "message": err.get("msg")}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=422,
        content=envelope_error(
            "Request validation failed",
            code=ErrorCode.VALIDATION_ERROR,
            detail={"errors": errors},
        ),
        headers=_correlation_header(request),
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code = ErrorCode.NOT_FOUND if exc.status_code == 404 else ErrorCode.INTERNAL_ERROR
    return JSONResponse(
        status_code=exc.status_code,
        content=envelope_error(str(exc.detail), code=code),
        headers={**_correlation_header(request), **(exc.headers or {})},
    )


async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content=envelope_error(f"Rate limit exceeded: {exc.detail}", code=ErrorCode.RATE_LIMITED),
        headers=_correlation_header(request),
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Catch-all handler for unexpected exceptions.

    Never leaks internal detail to the client.
    """
    _log.exception("unhandled_exception", exc_info=exc)
    return JSONResponse(
        status_code=500,
        content=envelope_error("An unexpected internal error occurred."),
        headers=_correlation_header(request),
    )
