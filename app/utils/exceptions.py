import logging
import re

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from app.utils.response import error_response

logger = logging.getLogger(__name__)

_SECRET_PATTERNS = (
    re.compile(r"(key=)[^&\s\"']+"),
    re.compile(r"(Key )[A-Za-z0-9:_-]+"),
    re.compile(r"(AIza)[A-Za-z0-9_-]+"),
)


def mask_secrets(text: str) -> str:
    """Strip API keys from error text before it is logged or persisted."""
    for pattern in _SECRET_PATTERNS:
        text = pattern.sub(r"\1***", text)
    return text


class AppException(Exception):
    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class NotFoundError(AppException):
    def __init__(self, message: str):
        super().__init__(message, status_code=404)


class PipelineError(AppException):
    """Base for every failure the transformation pipeline can surface."""

    default_status = 502

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message, status_code=status_code or self.default_status)


class MissingCredential(PipelineError):
    default_status = 503

    def __init__(self, key_name: str):
        super().__init__(f"Missing API key: {key_name}")
        self.key_name = key_name


class InvalidImage(PipelineError):
    default_status = 422

    def __init__(self, message: str = "Invalid image format"):
        super().__init__(message)


class UpstreamError(PipelineError):
    def __init__(self, message: str, upstream_status: int | None = None):
        super().__init__(mask_secrets(message))
        self.upstream_status = upstream_status

    @property
    def is_payload_too_large(self) -> bool:
        if self.upstream_status == 413:
            return True
        lowered = self.message.lower()
        return "413" in lowered or "too large" in lowered


class MalformedResponse(PipelineError):
    def __init__(self, message: str = "Invalid API response"):
        super().__init__(message)


class JobTimeoutError(PipelineError):
    default_status = 504


class NetworkError(PipelineError):
    def __init__(self, cause: Exception):
        super().__init__(mask_secrets(f"Network error: {cause}"))
        self.cause = cause


class InvalidStateTransition(PipelineError):
    default_status = 409


class EmptyResult(PipelineError):
    def __init__(self, message: str = "No usable suggestions were produced"):
        super().__init__(message)


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AppException)
    async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content=error_response(exc.message),
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content=error_response("Internal server error"),
        )
