"""``application/problem+json`` error bodies shared by every route and exception handler."""

import uuid
from http import HTTPStatus
from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse

PROBLEM_BASE = "https://billing-sync.dev/problems"
PROBLEM_TYPE_VALIDATION = f"{PROBLEM_BASE}/validation-error"
PROBLEM_TYPE_DOMAIN = f"{PROBLEM_BASE}/request-rejected"
PROBLEM_TYPE_UNAVAILABLE = f"{PROBLEM_BASE}/unavailable"
PROBLEM_TYPE_SERVER = f"{PROBLEM_BASE}/server-error"

_TYPE_BY_STATUS = {
    HTTPStatus.UNPROCESSABLE_ENTITY: PROBLEM_TYPE_VALIDATION,
    HTTPStatus.SERVICE_UNAVAILABLE: PROBLEM_TYPE_UNAVAILABLE,
}


def request_id_for(request: Request) -> str:
    """Request id assigned by the middleware, the caller's header, or a fresh one (stored back)."""
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id
    return request_id


def problem_type(status_code: int) -> str:
    if status_code in _TYPE_BY_STATUS:
        return _TYPE_BY_STATUS[status_code]
    return PROBLEM_TYPE_SERVER if status_code >= 500 else PROBLEM_TYPE_DOMAIN


def status_phrase(status_code: int) -> str:
    try:
        return HTTPStatus(status_code).phrase
    except ValueError:
        return "Error"


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
    request_id = request_id_for(request)
    response = JSONResponse(
        status_code=status,
        content={
            "type": type_ or problem_type(status),
            "title": title or status_phrase(status),
            "status": status,
            "detail": detail,
            "request_id": request_id,
            "errors": errors or [],
        },
        headers=headers,
        media_type="application/problem+json",
    )
    response.headers.setdefault("X-Request-ID", request_id)
    return response
