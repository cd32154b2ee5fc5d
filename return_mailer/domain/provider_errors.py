from __future__ import annotations

from typing import Any

from return_mailer.domain.errors import (
    AuthError,
    ComposeError,
    ConfigError,
    LabelError,
    MailError,
    ReturnMailError,
    ValidationError,
)


def pipeline_error_http_status(exc: ReturnMailError) -> int:
    if isinstance(exc, ConfigError):
        return 500
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, AuthError) and exc.side == "caller":
        return 401
    if isinstance(exc, (LabelError, MailError)) and exc.kind in {
        LabelError.VALIDATION_REJECTED_BY_CARRIER,
        MailError.PROVIDER_REJECTED,
    }:
        return 503 if exc.retryable else 400
    if isinstance(exc, ComposeError):
        return 502
    return 503 if exc.retryable else 502


def provider_error_detail(*, provider: str, operation: str, exc: ReturnMailError) -> dict[str, Any]:
    return {
        "type": "provider_error",
        "provider": provider,
        "operation": operation,
        "kind": exc.kind,
        "category": exc.category,
        "retryable": exc.retryable,
        "http_status": exc.http_status,
        "message": str(exc),
        "response": exc.details,
    }
