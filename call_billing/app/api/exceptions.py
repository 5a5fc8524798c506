from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ..core.errors import (
    AuthError,
    ExternalProviderError,
    NotFoundError,
    PaymentsUnavailableError,
    PermissionDeniedError,
    TransactionConflictError,
    WebhookSignatureError,
)


logger = logging.getLogger(__name__)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def _describe_validation(exc: RequestValidationError) -> str:
    messages = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        message = error.get("msg", "Invalid value")
        messages.append(f"{location}: {message}" if location else message)
    return "; ".join(messages) or "Invalid request"


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        return _error(400, _describe_validation(exc))

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
        return _error(404, str(exc))

    @app.exception_handler(PermissionDeniedError)
    async def permission_denied_handler(
        request: Request, exc: PermissionDeniedError
    ) -> JSONResponse:
        return _error(403, str(exc))

    @app.exception_handler(AuthError)
    async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
        return JSONResponse(
            status_code=401,
            content={"error": str(exc)},
            headers={"WWW-Authenticate": "Bearer"},
        )

    @app.exception_handler(TransactionConflictError)
    async def conflict_handler(
        request: Request, exc: TransactionConflictError
    ) -> JSONResponse:
        return _error(409, str(exc))

    @app.exception_handler(WebhookSignatureError)
    async def webhook_signature_handler(
        request: Request, exc: WebhookSignatureError
    ) -> JSONResponse:
        logger.warning("webhook.signature_rejected", extra={"path": request.url.path})
        return _error(403, str(exc))

    @app.exception_handler(PaymentsUnavailableError)
    async def payments_unavailable_handler(
        request: Request, exc: PaymentsUnavailableError
    ) -> JSONResponse:
        return _error(503, str(exc))

    @app.exception_handler(ExternalProviderError)
    async def external_provider_handler(
        request: Request, exc: ExternalProviderError
    ) -> JSONResponse:
        return _error(502, str(exc))

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        return _error(400, str(exc))
