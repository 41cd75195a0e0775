import logging
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .errors import BookingError, PaymentError
from .schemas import Envelope, Meta

logger = logging.getLogger(__name__)

HTTP_CODES = {
    400: "VALIDATION_ERROR",
    401: "UNAUTHENTICATED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    429: "RATE_LIMITED",
}


def meta(request_id: str | None) -> Meta:
    return Meta(timestamp=datetime.now(timezone.utc), request_id=request_id)


def ok(request: Request, data=None) -> Envelope:
    return Envelope(success=True, data=data, metadata=meta(getattr(request.state, "request_id", None)))


def error_body(status_code: int, code: str, message: str, request_id: str | None, **extra) -> JSONResponse:
    error = {"code": code, "message": message}
    error.update({k: v for k, v in extra.items() if v is not None})
    body = {
        "success": False,
        "error": error,
        "metadata": meta(request_id).model_dump(mode="json", by_alias=True),
    }
    headers = {"X-Request-Id": request_id} if request_id else None
    return JSONResponse(status_code=status_code, content=body, headers=headers)


def _request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


async def booking_error_handler(request: Request, exc: BookingError):
    log = logger.error if exc.status_code >= 500 else logger.warning
    log("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc.message)
    extra = {}
    if isinstance(exc, PaymentError):
        extra["processorCode"] = exc.processor_code
    return error_body(exc.status_code, exc.code, exc.message, _request_id(request), **extra)


async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if errors:
        first = errors[0]
        field = ".".join(str(p) for p in first.get("loc", ()) if p not in ("body", "query", "path"))
        message = f"{field}: {first.get('msg')}" if field else first.get("msg", "Invalid request")
    else:
        message = "Invalid request"
    logger.info("%s %s -> VALIDATION_ERROR: %s", request.method, request.url.path, message)
    return error_body(400, "VALIDATION_ERROR", message, _request_id(request))


async def http_error_handler(request: Request, exc: StarletteHTTPException):
    code = HTTP_CODES.get(exc.status_code, "HTTP_ERROR")
    return error_body(exc.status_code, code, str(exc.detail), _request_id(request))


async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("unhandled error on %s %s", request.method, request.url.path)
    return error_body(500, "INTERNAL_ERROR", "An unexpected error occurred", _request_id(request))


def install_exception_handlers(app: FastAPI):
    app.add_exception_handler(BookingError, booking_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
