from __future__ import annotations

import logging
from typing import Protocol

import httpx

from return_mailer.domain.models import AuditRecord, DeliveryOutcome
from return_mailer.observability import incr_metric, log_event


class AuditSink(Protocol):
    async def record(self, record: AuditRecord) -> DeliveryOutcome: ...


class NullAuditSink:
    async def record(self, record: AuditRecord) -> DeliveryOutcome:
        return DeliveryOutcome(status="skipped", error="audit sink disabled")


class WebhookAuditSink:
    """Posts audit rows to a spreadsheet automation webhook.

    Delivery is best effort: ``record`` never raises, every problem is
    returned in the DeliveryOutcome instead.
    """

    def __init__(
        self,
        webhook_url: str | None,
        *,
        timeout_seconds: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._webhook_url = webhook_url
        self._timeout_seconds = timeout_seconds
        self._transport = transport

    async def record(self, record: AuditRecord) -> DeliveryOutcome:
        if not self._webhook_url:
            incr_metric("audit.records", outcome="skipped")
            return DeliveryOutcome(status="skipped", error="audit webhook url not configured")

        try:
            async with httpx.AsyncClient(timeout=self._timeout_seconds, transport=self._transport) as client:
                response = await client.post(
                    self._webhook_url,
                    json=record.model_dump(mode="json"),
                    headers={"Content-Type": "application/json"},
                )
        except httpx.HTTPError as exc:
            incr_metric("audit.records", outcome="failed")
            log_event(
                "audit_record_failed",
                level=logging.WARNING,
                request_id=record.request_id,
                error=exc.__class__.__name__,
            )
            return DeliveryOutcome(status="failed", error=f"{exc.__class__.__name__}: {exc}")

        if response.status_code >= 400:
            incr_metric("audit.records", outcome="failed")
            log_event(
                "audit_record_failed",
                level=logging.WARNING,
                request_id=record.request_id,
                status_code=response.status_code,
            )
            return DeliveryOutcome(
                status="failed",
                http_status=response.status_code,
                body=response.text[:200],
            )

        incr_metric("audit.records", outcome="ok")
        log_event(
            "audit_record_delivered",
            request_id=record.request_id,
            status_code=response.status_code,
            audit_status=record.status,
        )
        return DeliveryOutcome(status="ok", http_status=response.status_code, body=response.text[:200] or None)
