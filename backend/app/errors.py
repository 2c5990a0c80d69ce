"""
Application error taxonomy.

Services raise these; the exception handler registered in main.py turns
them into JSON responses of the shape {"detail", "code", "details"}.

    ValidationError       400  malformed archive / parameters
    AuthorizationError    403  missing organization context, cross-tenant upload
    NotFoundError         404  unknown OR foreign-tenant entity (indistinguishable)
    ConflictError         409  analysis already running / snapshot not indexed
    PipelineError         500  phase failure (normally recorded on the run, not raised to HTTP)
    ExternalServiceError  502  AI provider failure
    CircuitOpenError      503  provider breaker is open
"""

from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
import logging

logger = logging.getLogger(__name__)


class AppError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, *, code: str | None = None, details: dict | None = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"detail": self.message, "code": self.code, "details": self.details}


class ValidationError(AppError):
    status_code = 400
    code = "VALIDATION_ERROR"


class AuthorizationError(AppError):
    status_code = 403
    code = "FORBIDDEN"


class NotFoundError(AppError):
    status_code = 404
    code = "NOT_FOUND"


class ConflictError(AppError):
    status_code = 409
    code = "CONFLICT"


class PipelineError(AppError):
    status_code = 500
    code = "PIPELINE_ERROR"


class ExternalServiceError(AppError):
    status_code = 502
    code = "EXTERNAL_SERVICE_ERROR"

    def __init__(self, message: str, *, provider: str, **kwargs):
        super().__init__(message, **kwargs)
        self.provider = provider


class CircuitOpenError(ExternalServiceError):
    status_code = 503
    code = "CIRCUIT_OPEN"


def setup_exception_handlers(app: FastAPI) -> None:
    """Register the AppError handler on the FastAPI app."""

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        if exc.status_code >= 500:
            logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message)
        else:
            logger.info("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())
