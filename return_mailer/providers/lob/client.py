from __future__ import annotations

import logging
from typing import Any

import httpx

from return_mailer.domain.errors import MailError
from return_mailer.domain.models import Address, ComposedDocument, MailOptions, MailSubmissionResult
from return_mailer.observability import incr_metric, log_event


LOB_API_BASE = "https://api.lob.com"

_EP_LETTERS = "/v1/letters"
_LETTER_FILENAME = "return-label.pdf"


def _build_base_url(base_url: str | None) -> str:
    return (base_url or LOB_API_BASE).rstrip("/")


def _build_basic_auth(api_key: str) -> tuple[str, str]:
    return (api_key, "")


def build_address_fields(prefix: str, address: Address) -> dict[str, str]:
    """Flatten an address into Lob's bracketed multipart field names."""
    fields = {
        f"{prefix}[name]": address.name,
        f"{prefix}[address_line1]": address.line1,
        f"{prefix}[address_city]": address.city,
        f"{prefix}[address_state]": address.state,
        f"{prefix}[address_zip]": address.postal_code,
    }
    if address.line2:
        fields[f"{prefix}[address_line2]"] = address.line2
    if address.company:
        fields[f"{prefix}[company]"] = address.company
    return fields


def build_letter_form(
    to_address: Address,
    from_address: Address,
    options: MailOptions,
) -> dict[str, str]:
    form = build_address_fields("to", to_address)
    form.update(build_address_fields("from", from_address))
    form["color"] = "true" if options.color else "false"
    form["use_type"] = options.use_type
    if options.description:
        form["description"] = options.description
    return form


def _error_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text[:200]


class MailSubmitter:
    """Sends the composed packet to Lob as a printed, mailed letter."""

    def __init__(
        self,
        *,
        api_key: str,
        default_from: Address,
        default_options: MailOptions | None = None,
        base_url: str | None = None,
        timeout_seconds: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = api_key
        self._default_from = default_from
        self._default_options = default_options or MailOptions()
        self._base_url = _build_base_url(base_url)
        self._timeout_seconds = timeout_seconds
        self._transport = transport

    @property
    def default_options(self) -> MailOptions:
        return self._default_options

    async def submit(
        self,
        document: ComposedDocument,
        to_address: Address,
        *,
        from_address: Address | None = None,
        options: MailOptions | None = None,
    ) -> MailSubmissionResult:
        if not self._api_key:
            raise MailError("Missing Lob API key", kind=MailError.PROVIDER_REJECTED)

        options = options or self._default_options
        form = build_letter_form(to_address, from_address or self._default_from, options)
        headers = {"Accept": "application/json"}
        if options.idempotency_key:
            headers["Idempotency-Key"] = options.idempotency_key

        try:
            async with httpx.AsyncClient(timeout=self._timeout_seconds, transport=self._transport) as client:
                response = await client.post(
                    f"{self._base_url}{_EP_LETTERS}",
                    auth=_build_basic_auth(self._api_key),
                    headers=headers,
                    data=form,
                    files={"file": (_LETTER_FILENAME, document.content, "application/pdf")},
                )
        except httpx.HTTPError as exc:
            incr_metric("lob.letters.failed", kind=MailError.UNREACHABLE)
            raise MailError(
                f"Lob connectivity error: {exc.__class__.__name__}",
                kind=MailError.UNREACHABLE,
            ) from exc

        body = _error_body(response)
        if response.status_code >= 400:
            incr_metric("lob.letters.failed", kind=MailError.PROVIDER_REJECTED, status_code=response.status_code)
            log_event(
                "lob_letter_rejected",
                level=logging.WARNING,
                status_code=response.status_code,
            )
            raise MailError(
                f"Lob letter creation failed. HTTP {response.status_code}",
                kind=MailError.PROVIDER_REJECTED,
                http_status=response.status_code,
                details=body,
            )

        if not isinstance(body, dict) or not body.get("id"):
            raise MailError(
                f"Lob letter creation failed. HTTP {response.status_code}: response has no letter id",
                kind=MailError.MALFORMED_RESPONSE,
                http_status=response.status_code,
                details=body,
            )

        incr_metric("lob.letters.created")
        log_event("lob_letter_created", letter_id=body["id"], status=body.get("status"))
        return MailSubmissionResult(letter_id=str(body["id"]), status=body.get("status"))
