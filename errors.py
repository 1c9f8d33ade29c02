from typing import Any, List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from logging_config import get_logger

logger = get_logger(__name__)


class SupportDeskError(Exception):
    """Base error for synchronous failures surfaced to the caller.

    Raised from store, identity and router code; the handlers registered by
    `register_exception_handlers` turn it into an `{"error", "details"}` body.
    """

    status_code: int = 500

    def __init__(self, message: str, details: Optional[List[Any]] = None, status_code: Optional[int] = None):
        self.message = message
        self.details = details
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)

    def to_payload(self) -> dict:
        payload = {"error": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class AuthFailure(SupportDeskError):
    status_code = 401


class Forbidden(SupportDeskError):
    status_code = 403


class ValidationFailure(SupportDeskError):
    status_code = 400


class NotFound(SupportDeskError):
    status_code = 404


class Conflict(SupportDeskError):
    status_code = 409


def error_from_response(status_code: int, body: Any) -> SupportDeskError:
    """Rebuild the matching error from an HTTP error response body."""
    message = "Server error"
    details = None
    if isinstance(body, dict):
        message = body.get("error") or body.get("detail") or message
        details = body.get("details")
    for cls in (AuthFailure, Forbidden, ValidationFailure, NotFound, Conflict):
        if cls.status_code == status_code:
            return cls(str(message), details)
    return SupportDeskError(str(message), details, status_code=status_code)


def register_exception_handlers(app: FastAPI) -> None:

    @app.exception_handler(SupportDeskError)
    async def _support_desk_error_handler(request: Request, exc: SupportDeskError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        else:
            logger.info(f"{request.method} {request.url.path} rejected ({exc.status_code}): {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())

    @app.exception_handler(RequestValidationError)
    async def _request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        details = []
        for err in exc.errors():
            field = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
            details.append(f"{field}: {err.get('msg')}" if field else err.get("msg"))
        logger.info(f"{request.method} {request.url.path} rejected (400): {details}")
        return JSONResponse(status_code=400, content={"error": "Validation error", "details": details})
