# app/core/errors.py
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class ApiError(Exception):
    """
    Erreur métier renvoyée au client sous la forme :
      {"ok": false, "error": {"code": ..., "message": ..., "context": ...}}
    """

    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.context = context


STATUS_CODES = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    410: "GONE",
    422: "UNPROCESSABLE",
    502: "BAD_GATEWAY",
}


def error_body(code: str, message: str, context: Optional[Dict[str, Any]] = None) -> dict:
    err: Dict[str, Any] = {"code": code, "message": message}
    if context is not None:
        err["context"] = context
    return {"ok": False, "error": err}


def error_response(status_code: int, code: str, message: str, context=None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=error_body(code, message, context))


# =========================
# Handlers globaux
# =========================
async def api_error_handler(request: Request, exc: ApiError):
    return error_response(exc.status_code, exc.code, exc.message, exc.context)


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    code = STATUS_CODES.get(exc.status_code, "ERROR")
    message = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
    return error_response(exc.status_code, code, message)


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    details = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        details.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    message = "Données invalides" + (f" ({'; '.join(details)})" if details else "")
    return error_response(400, "BAD_REQUEST", message)


async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Erreur interne sur %s %s", request.method, request.url.path)
    return error_response(500, "INTERNAL", f"Erreur interne: {exc}")


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ApiError, api_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
