from __future__ import annotations

import logging
import traceback
import uuid
from typing import Any, Optional

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from collabcanvas.collab.errors import CanvasSyncError
from collabcanvas.logging_config import reset_request_id, set_request_id

_log = logging.getLogger("collabcanvas.errors")


def _request_id(request: Request) -> Optional[str]:
    state_rid = getattr(request.state, "request_id", None)
    return state_rid or request.headers.get("X-Request-ID") or None


def _activate_context(rid: Optional[str]):
    if not rid:
        return None
    return set_request_id(rid)


def _clear_context(token) -> None:
    if token is not None:
        reset_request_id(token)


def _error_response(
    request: Request,
    *,
    status: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    rid = _request_id(request)
    body = {"ok": False, "code": code, "message": message}
    if details is not None:
        body["details"] = details
    if rid:
        body["request_id"] = rid

    response = JSONResponse(body, status_code=status)
    if rid:
        response.headers["X-Request-ID"] = rid
    return response


def register_exception_handlers(app):
    @app.exception_handler(CanvasSyncError)
    async def _domain_exc(request: Request, exc: CanvasSyncError):
        token = _activate_context(_request_id(request))
        try:
            _log.info("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
            return _error_response(
                request,
                status=exc.status,
                code=exc.code,
                message=exc.message,
                details=exc.details or None,
            )
        finally:
            _clear_context(token)

    @app.exception_handler(StarletteHTTPException)
    async def _http_exc(request: Request, exc: StarletteHTTPException):
        token = _activate_context(_request_id(request))
        try:
            detail = exc.detail
            message = str(detail) if detail else "Request failed"
            details = detail if isinstance(detail, (dict, list)) else None
            code = detail if isinstance(detail, str) and detail.isidentifier() else f"http_{exc.status_code}"
            return _error_response(
                request,
                status=exc.status_code,
                code=code,
                message=message,
                details=details,
            )
        finally:
            _clear_context(token)

    @app.exception_handler(RequestValidationError)
    async def _val_exc(request: Request, exc: RequestValidationError):
        token = _activate_context(_request_id(request))
        try:
            _log.debug("validation error: %s", exc)
            return _error_response(
                request,
                status=422,
                code="validation_error",
                message="Request validation failed",
                details=[
                    {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
                    for err in exc.errors()
                ],
            )
        finally:
            _clear_context(token)

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception):
        token = _activate_context(_request_id(request))
        err_id = uuid.uuid4().hex
        try:
            tb = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
            _log.error("Unhandled exception [%s]: %s", err_id, tb)
            return _error_response(
                request,
                status=500,
                code="internal_error",
                message="Internal server error",
                details={"error_id": err_id},
            )
        finally:
            _clear_context(token)
