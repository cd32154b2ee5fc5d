from __future__ import annotations

from typing import Any


class ReturnMailError(Exception):
    """Base for every failure the return-mail pipeline can report."""

    kind: str = "error"

    def __init__(
        self,
        message: str,
        *,
        kind: str | None = None,
        http_status: int | None = None,
        details: Any = None,
        tracking_number: str = "",
        label_id: str = "",
    ) -> None:
        super().__init__(message)
        if kind:
            self.kind = kind
        self.http_status = http_status
        self.details = details
        self.tracking_number = tracking_number
        self.label_id = label_id

    @property
    def category(self) -> str:
        if self.kind in {"unreachable", "token_endpoint_unreachable"}:
            return "transient"
        if self.http_status is not None and self.http_status in {429, 500, 502, 503, 504}:
            return "transient"
        if self.kind in {"malformed_response", "auth_failed", "invalid_credentials"}:
            return "terminal"
        return "unknown"

    @property
    def retryable(self) -> bool:
        return self.category == "transient"


class ConfigError(ReturnMailError):
    kind = "missing_configuration"

    def __init__(self, missing: list[str]) -> None:
        super().__init__(f"Missing configuration: {', '.join(missing)}")
        self.missing = list(missing)


class ValidationError(ReturnMailError):
    kind = "missing_fields"

    def __init__(self, missing: list[str], message: str | None = None) -> None:
        super().__init__(message or f"Missing required fields: {', '.join(missing)}")
        self.missing = list(missing)


class AuthError(ReturnMailError):
    """Rejected credential; ``side`` is ``caller`` for our own gate, ``carrier`` for token refresh."""

    TOKEN_ENDPOINT_UNREACHABLE = "token_endpoint_unreachable"
    INVALID_CREDENTIALS = "invalid_credentials"
    MALFORMED_RESPONSE = "malformed_response"

    def __init__(self, message: str, *, side: str = "carrier", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.side = side


class LabelError(ReturnMailError):
    VALIDATION_REJECTED_BY_CARRIER = "validation_rejected_by_carrier"
    AUTH_FAILED = "auth_failed"
    UNREACHABLE = "unreachable"
    MALFORMED_RESPONSE = "malformed_response"


class ComposeError(ReturnMailError):
    INVALID_LABEL_DOCUMENT = "invalid_label_document"
    INVALID_INSTRUCTIONS_DOCUMENT = "invalid_instructions_document"

    kind = INVALID_LABEL_DOCUMENT


class MailError(ReturnMailError):
    PROVIDER_REJECTED = "provider_rejected"
    UNREACHABLE = "unreachable"
    MALFORMED_RESPONSE = "malformed_response"
