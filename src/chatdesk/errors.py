"""
Exception taxonomy and the FastAPI handlers that render it.
Every error leaves the API as {"message": ...}.
"""
from typing import Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

log = structlog.get_logger()


class ChatdeskError(Exception):
    """Base error carrying a user-facing message and an HTTP status."""

    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class BadRequestError(ChatdeskError):
    status_code = 400


class AuthenticationError(ChatdeskError):
    status_code = 401


class NotFoundError(ChatdeskError):
    status_code = 404


class ConflictError(ChatdeskError):
    status_code = 409


class ProviderError(ChatdeskError):
    """Upstream LLM provider failure; `message` is the provider's own text."""
    status_code = 502

    def __init__(self, message: str, upstream_status: Optional[int] = None):
        super().__init__(message)
        self.upstream_status = upstream_status

    @property
    def retryable(self) -> bool:
        return self.upstream_status is not None and (
            self.upstream_status == 429 or self.upstream_status >= 500
        )


class ProviderNotConfiguredError(ChatdeskError):
    status_code = 500


class ApiError(ChatdeskError):
    """Raised by the HTTP client when the backend answers with an error status."""


async def chatdesk_error_handler(request: Request, exc: ChatdeskError) -> JSONResponse:
    if exc.status_code >= 500:
        log.error("request_failed", path=request.url.path, status=exc.status_code, error=exc.message)
    else:
        log.info("request_rejected", path=request.url.path, status=exc.status_code, error=exc.message)
    return JSONResponse(status_code=exc.status_code, content={"message": exc.message})


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    if errors:
        first = errors[0]
        field_name = ".".join(str(p) for p in first.get("loc", []) if p != "body")
        message = f"{field_name}: {first.get('msg')}" if field_name else str(first.get("msg"))
    else:
        message = "Requisição inválida."
    return JSONResponse(status_code=400, content={"message": message})


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ChatdeskError, chatdesk_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
