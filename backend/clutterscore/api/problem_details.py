import uuid
from datetime import datetime
from http import HTTPStatus
from typing import Any

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from clutterscore.domain.connectors.errors import ConnectorError
from clutterscore.domain.errors import AuditQuotaExceeded, DomainError
from clutterscore.shared.clock import ensure_aware, utcnow

PROBLEM_TYPE_VALIDATION = "https://example.com/problems/validation-error"
PROBLEM_TYPE_DOMAIN = "https://example.com/problems/domain-error"
PROBLEM_TYPE_RATE_LIMIT = "https://example.com/problems/rate-limit"
PROBLEM_TYPE_UPSTREAM = "https://example.com/problems/upstream-error"
PROBLEM_TYPE_SERVER = "https://example.com/problems/server-error"

_LOCATION_PREFIXES = {"body", "query", "path", "header"}


def _resolve_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-ID")
    if not request_id:
        request_id = str(uuid.uuid4())
    request.state.request_id = request_id
    return request_id


def _resolve_title(status_code: int, fallback: str | None) -> str:
    if fallback:
        return fallback
    try:
        return HTTPStatus(status_code).phrase
    except ValueError:
        return "Error"


def _resolve_type(status_code: int, type_override: str | None) -> str:
    if type_override:
        return type_override
    if status_code == status.HTTP_422_UNPROCESSABLE_ENTITY:
        return PROBLEM_TYPE_VALIDATION
    if status_code == status.HTTP_429_TOO_MANY_REQUESTS:
        return PROBLEM_TYPE_RATE_LIMIT
    if status_code in {status.HTTP_502_BAD_GATEWAY, status.HTTP_504_GATEWAY_TIMEOUT}:
        return PROBLEM_TYPE_UPSTREAM
    if status_code >= 500:
        return PROBLEM_TYPE_SERVER
    return PROBLEM_TYPE_DOMAIN


def problem_details(
    request: Request,
    *,
    status: int,
    title: str | None,
    detail: str,
    errors: list[dict[str, Any]] | None = None,
    type_: str | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    request_id = _resolve_request_id(request)
    content = {
        "type": _resolve_type(status, type_),
        "title": _resolve_title(status, title),
        "status": status,
        "detail": detail,
        "request_id": request_id,
        "errors": errors or [],
    }
    response = JSONResponse(
        status_code=status,
        content=content,
        headers=headers,
        media_type="application/problem+json",
    )
    response.headers.setdefault("X-Request-ID", request_id)
    return response


def retry_after_seconds(reset_at: datetime, now: datetime | None = None) -> int:
    remaining = (ensure_aware(reset_at) - (now or utcnow())).total_seconds()
    return max(1, int(remaining))


def validation_problem(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = []
    for error in exc.errors():
        loc = error.get("loc", [])
        field = ".".join(str(part) for part in loc if part not in _LOCATION_PREFIXES) or "body"
        errors.append({"field": field, "message": error.get("msg", "Invalid value")})
    return problem_details(
        request=request,
        status=422,
        title="Validation Error",
        detail="Request validation failed",
        errors=errors,
        type_=PROBLEM_TYPE_VALIDATION,
    )


def domain_problem(request: Request, exc: DomainError) -> JSONResponse:
    """Render a domain error; quota errors carry `Retry-After` up to the quota reset."""

    headers = None
    if isinstance(exc, AuditQuotaExceeded) and exc.reset_at is not None:
        headers = {"Retry-After": str(retry_after_seconds(exc.reset_at))}
    return problem_details(
        request=request,
        status=exc.status_code,
        title=exc.title,
        detail=exc.detail,
        errors=exc.errors or [],
        type_=exc.type or PROBLEM_TYPE_DOMAIN,
        headers=headers,
    )


def connector_problem(request: Request, exc: ConnectorError) -> JSONResponse:
    return problem_details(
        request=request,
        status=status.HTTP_502_BAD_GATEWAY,
        title="Upstream Platform Error",
        detail=exc.message,
        errors=[{"code": exc.code, "retryable": exc.retryable}],
        type_=PROBLEM_TYPE_UPSTREAM,
    )
