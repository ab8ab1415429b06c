"""Problem+JSON utilities and global exception handlers.

Every non-2xx response is an RFC 7807 ``application/problem+json`` document.
Domain errors from ``logic/errors.py`` carry a stable ``code`` which is
surfaced alongside ``detail``.
"""

from __future__ import annotations

from typing import Any, Dict
import logging
from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from hierarchy_service.logic.errors import (
    ConflictError,
    HierarchyError,
    IntegrityError,
    NotFoundError,
    ValidationError,
)

PROBLEM_MEDIA_TYPE = "application/problem+json"

logger = logging.getLogger(__name__)

# Most specific class first
_STATUS_BY_ERROR = (
    (NotFoundError, 404, "Not Found"),
    (ValidationError, 422, "Unprocessable Entity"),
    (ConflictError, 409, "Conflict"),
    (IntegrityError, 500, "Integrity Violation"),
)


def problem_for(exc: HierarchyError) -> tuple[int, Dict[str, Any]]:
    status, title = 500, "Internal Server Error"
    for cls, code, name in _STATUS_BY_ERROR:
        if isinstance(exc, cls):
            status, title = code, name
            break
    body: Dict[str, Any] = {"title": title, "status": status, "detail": exc.detail, "code": exc.code}
    if exc.context and status < 500:
        body["context"] = {k: v for k, v in exc.context.items() if isinstance(v, (str, int, float, bool, type(None)))}
    return status, body


async def handle_domain_error(request: Request, exc: HierarchyError) -> JSONResponse:  # noqa: D401
    status, body = problem_for(exc)
    if status >= 500:
        logger.error(
            "domain_error code=%s method=%s path=%s context=%s",
            exc.code,
            request.method,
            request.url.path,
            exc.context,
            exc_info=exc,
        )
    else:
        logger.info("domain_error code=%s status=%s path=%s", exc.code, status, request.url.path)
    return JSONResponse(body, status_code=status, media_type=PROBLEM_MEDIA_TYPE)


async def handle_http_exception(request: Request, exc: HTTPException) -> JSONResponse:  # noqa: D401
    status = int(getattr(exc, "status_code", 500) or 500)
    if isinstance(exc.detail, dict):
        detail = dict(exc.detail)
        detail.setdefault("status", status)
    else:
        detail = {"title": "Error", "status": status, "detail": str(exc.detail or "")}
    headers = {str(k): str(v) for k, v in (exc.headers or {}).items()}
    return JSONResponse(detail, status_code=status, media_type=PROBLEM_MEDIA_TYPE, headers=headers or None)


async def handle_request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:  # noqa: D401
    problem = {
        "title": "Invalid Request",
        "status": 422,
        "detail": "Request validation failed",
        "code": "request_invalid",
        "errors": [
            {"loc": list(e.get("loc", ())), "msg": str(e.get("msg", "")), "type": str(e.get("type", ""))}
            for e in exc.errors()
        ],
    }
    return JSONResponse(problem, status_code=422, media_type=PROBLEM_MEDIA_TYPE)


async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:  # noqa: D401
    logger.error("unexpected_error method=%s path=%s", request.method, request.url.path, exc_info=exc)
    return JSONResponse({"title": "Internal Server Error", "status": 500}, status_code=500, media_type=PROBLEM_MEDIA_TYPE)


__all__ = [
    "PROBLEM_MEDIA_TYPE",
    "problem_for",
    "handle_domain_error",
    "handle_http_exception",
    "handle_request_validation_error",
    "handle_unexpected_error",
]
