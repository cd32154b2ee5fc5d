from __future__ import annotations

import base64
import binascii
import hashlib
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any

import httpx

from return_mailer.domain.errors import AuthError, LabelError
from return_mailer.domain.models import Address, LabelResult, ReturnRequest
from return_mailer.observability import incr_metric, log_event
from return_mailer.providers.sera.token import TokenBroker


_EP_LABELS = "/v1/labels"
_LABEL_NAMESPACE = uuid.UUID("6f1d3c1e-3b0e-4d55-9a53-2a4d2f3f6a10")


def _address_payload(address: Address) -> dict[str, str]:
    return {
        "name": address.name,
        "company_name": address.company,
        "address_line1": address.line1,
        "address_line2": address.line2,
        "city": address.city,
        "state_province": address.state,
        "postal_code": address.postal_code,
        "country_code": address.country_code,
        "phone": address.phone,
        "email": address.email,
    }


def _today() -> str:
    return datetime.now(timezone.utc).date().isoformat()


def _parse_postage(data: dict[str, Any]) -> float | None:
    cost = data.get("shipment_cost")
    if not isinstance(cost, dict):
        return None
    amount = cost.get("total_amount")
    try:
        return float(amount) if amount is not None else None
    except (TypeError, ValueError):
        return None


def _error_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text[:200]


class LabelService:
    """Issues pay-on-use USPS return labels through the carrier label API."""

    def __init__(
        self,
        *,
        token_broker: TokenBroker,
        api_base: str,
        return_to: Address,
        service_type: str = "usps_ground_advantage",
        idempotency_mode: str = "per_call",
        is_test_label: bool = False,
        timeout_seconds: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._token_broker = token_broker
        self._api_base = api_base.rstrip("/")
        self._return_to = return_to
        self._service_type = service_type
        self._idempotency_mode = idempotency_mode
        self._is_test_label = is_test_label
        self._timeout_seconds = timeout_seconds
        self._transport = transport

    @property
    def token_broker(self) -> TokenBroker:
        return self._token_broker

    def build_payload(self, request: ReturnRequest, weight_oz: int, *, ship_date: str | None = None) -> dict[str, Any]:
        sender = _address_payload(request.address)
        return_to = _address_payload(self._return_to)
        return {
            "from_address": sender,
            "ship_from_address": sender,
            "sender_address": sender,
            "to_address": return_to,
            "return_address": return_to,
            "service_type": self._service_type,
            "ship_date": ship_date or _today(),
            "is_return_label": True,
            "package": {
                "packaging_type": "package",
                "weight": weight_oz,
                "weight_unit": "ounce",
            },
            "advanced_options": {"is_pay_on_use": True},
            "label_options": {
                "label_size": "4x6",
                "label_format": "pdf",
                "label_output_type": "base64",
            },
            "references": {
                "reference1": request.device_serial,
                "reference2": request.return_reason,
            },
            "is_test_label": self._is_test_label,
        }

    def idempotency_key(self, payload: dict[str, Any]) -> str:
        if self._idempotency_mode == "content":
            digest = hashlib.sha256(json.dumps(payload, sort_keys=True).encode("utf-8")).hexdigest()
            return str(uuid.uuid5(_LABEL_NAMESPACE, digest))
        return str(uuid.uuid4())

    async def create_label(self, request: ReturnRequest, weight_oz: int) -> LabelResult:
        try:
            access_token = await self._token_broker.get_access_token()
        except AuthError as exc:
            raise LabelError(
                str(exc),
                kind=LabelError.UNREACHABLE
                if exc.kind == AuthError.TOKEN_ENDPOINT_UNREACHABLE
                else LabelError.AUTH_FAILED,
                http_status=exc.http_status,
                details=exc.details,
            ) from exc

        payload = self.build_payload(request, weight_oz)
        idempotency_key = self.idempotency_key(payload)
        headers = {
            "Accept": "application/json",
            "Authorization": f"Bearer {access_token}",
            "Idempotency-Key": idempotency_key,
        }

        async with httpx.AsyncClient(timeout=self._timeout_seconds, transport=self._transport) as client:
            try:
                response = await client.post(f"{self._api_base}{_EP_LABELS}", json=payload, headers=headers)
            except httpx.HTTPError as exc:
                incr_metric("sera.labels.failed", kind=LabelError.UNREACHABLE)
                raise LabelError(
                    f"Carrier label API unreachable: {exc.__class__.__name__}",
                    kind=LabelError.UNREACHABLE,
                ) from exc

            if response.status_code >= 400:
                self._raise_for_status(response)

            try:
                data = response.json()
            except ValueError as exc:
                raise LabelError(
                    "Carrier label API returned non-JSON response",
                    kind=LabelError.MALFORMED_RESPONSE,
                    http_status=response.status_code,
                ) from exc
            if not isinstance(data, dict):
                raise LabelError(
                    "Unexpected carrier label response type",
                    kind=LabelError.MALFORMED_RESPONSE,
                    http_status=response.status_code,
                )

            tracking_number = str(data.get("tracking_number") or "")
            label_id = str(data.get("label_id") or "")
            label_bytes = await self._label_bytes(client, data, access_token, tracking_number, label_id)

        log_event(
            "sera_label_created",
            tracking_number=tracking_number,
            label_id=label_id,
            weight_oz=weight_oz,
        )
        incr_metric("sera.labels.created")
        return LabelResult(
            tracking_number=tracking_number,
            label_bytes=label_bytes,
            service_type=str(data.get("service_type") or self._service_type),
            label_id=label_id or None,
            postage_total_usd=_parse_postage(data),
            idempotency_key=idempotency_key,
        )

    def _raise_for_status(self, response: httpx.Response) -> None:
        status_code = response.status_code
        if status_code in {401, 403}:
            kind = LabelError.AUTH_FAILED
            self._token_broker.invalidate()
        elif status_code >= 500:
            kind = LabelError.UNREACHABLE
        else:
            kind = LabelError.VALIDATION_REJECTED_BY_CARRIER
        incr_metric("sera.labels.failed", kind=kind, status_code=status_code)
        log_event(
            "sera_label_rejected",
            level=logging.WARNING,
            status_code=status_code,
            kind=kind,
        )
        raise LabelError(
            f"Label creation failed. HTTP {status_code}",
            kind=kind,
            http_status=status_code,
            details=_error_body(response),
        )

    async def _label_bytes(
        self,
        client: httpx.AsyncClient,
        data: dict[str, Any],
        access_token: str,
        tracking_number: str,
        label_id: str,
    ) -> bytes:
        labels = data.get("labels")
        first = labels[0] if isinstance(labels, list) and labels and isinstance(labels[0], dict) else {}

        inline = first.get("label_data") or data.get("label_data")
        if inline:
            try:
                return base64.b64decode("".join(str(inline).split()), validate=True)
            except (binascii.Error, ValueError) as exc:
                raise LabelError(
                    "Inline label data is not valid base64",
                    kind=LabelError.MALFORMED_RESPONSE,
                    tracking_number=tracking_number,
                    label_id=label_id,
                ) from exc

        href = first.get("href")
        if not href:
            raise LabelError(
                "Label created but no label data returned (unexpected response shape).",
                kind=LabelError.MALFORMED_RESPONSE,
                details=data,
                tracking_number=tracking_number,
                label_id=label_id,
            )

        try:
            file_response = await client.get(href, headers={"Authorization": f"Bearer {access_token}"})
        except httpx.HTTPError as exc:
            raise LabelError(
                f"Label document fetch failed: {exc.__class__.__name__}",
                kind=LabelError.UNREACHABLE,
                tracking_number=tracking_number,
                label_id=label_id,
            ) from exc
        if file_response.status_code >= 400 or not file_response.content:
            raise LabelError(
                f"Label document fetch failed. HTTP {file_response.status_code}",
                kind=LabelError.MALFORMED_RESPONSE,
                http_status=file_response.status_code,
                tracking_number=tracking_number,
                label_id=label_id,
            )
        return file_response.content
