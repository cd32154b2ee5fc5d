from __future__ import annotations

import json

import httpx
import pytest

from return_mailer.domain.models import AuditRecord
from return_mailer.providers.audit.webhook import NullAuditSink, WebhookAuditSink


def _record() -> AuditRecord:
    return AuditRecord(
        request_id="req-1",
        source="return-mail",
        created_at_iso="2026-01-01T00:00:00+00:00",
        customer_name="Jane Doe",
        weight_oz=16,
        tracking_number="9400",
        status="Created",
        status_last_checked="2026-01-01T00:00:00+00:00",
        latest_event="Return label created; physical packet mailed.",
    )


@pytest.mark.asyncio
async def test_posts_flat_record_with_every_key():
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(202)

    outcome = await WebhookAuditSink("https://audit.example/hook", transport=httpx.MockTransport(handler)).record(_record())

    assert outcome.status == "ok"
    assert outcome.http_status == 202
    row = seen[0]
    assert row["request_id"] == "req-1"
    assert row["delivered_at"] is None
    assert row["postage_total_usd"] is None
    assert row["lob_letter_id"] == ""
    assert set(row) == set(AuditRecord.model_fields)


@pytest.mark.asyncio
async def test_skipped_without_webhook_url():
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no network call expected")

    outcome = await WebhookAuditSink(None, transport=httpx.MockTransport(handler)).record(_record())

    assert outcome.status == "skipped"


@pytest.mark.asyncio
async def test_rejection_is_captured_not_raised():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="flow failed")

    outcome = await WebhookAuditSink("https://audit.example/hook", transport=httpx.MockTransport(handler)).record(_record())

    assert outcome.status == "failed"
    assert outcome.http_status == 500
    assert outcome.body == "flow failed"


@pytest.mark.asyncio
async def test_transport_error_is_captured_not_raised():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    outcome = await WebhookAuditSink("https://audit.example/hook", transport=httpx.MockTransport(handler)).record(_record())

    assert outcome.status == "failed"
    assert outcome.error.startswith("ConnectError")


@pytest.mark.asyncio
async def test_null_sink_skips():
    outcome = await NullAuditSink().record(_record())
    assert outcome.status == "skipped"
