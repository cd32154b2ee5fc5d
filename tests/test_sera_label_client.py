from __future__ import annotations

import base64
import json

import httpx
import pydantic
import pytest

from return_mailer.domain.errors import LabelError
from return_mailer.domain.models import Address, ReturnRequest
from return_mailer.providers.sera.client import LabelService
from return_mailer.providers.sera.token import TokenBroker


API_BASE = "https://carrier.example/sera"
TOKEN_URL = "https://signin.example/oauth/token"
WAREHOUSE = Address(
    name="Return Warehouse",
    company="Connect America",
    line1="816 Parkway Drive",
    city="Broomall",
    state="PA",
    postal_code="19008",
    phone="8002862622",
)


def _request(**overrides) -> ReturnRequest:
    address = Address(
        name="Jane Doe",
        line1="1 Main St",
        city="Springfield",
        state="IL",
        postal_code="62704",
        phone="2175551234",
    )
    values = {
        "address": address,
        "phone": "2175551234",
        "device_type": "base-unit",
        "device_serial": "SN-1",
        "return_reason": "upgrade",
        "weight_oz": 16,
    }
    values.update(overrides)
    return ReturnRequest(**values)


class _Carrier:
    def __init__(self, label_response: httpx.Response | None = None, file_response: httpx.Response | None = None):
        self.label_response = label_response or httpx.Response(
            200,
            json={
                "tracking_number": "9400100000000000000001",
                "label_id": "se-1",
                "service_type": "usps_ground_advantage",
                "shipment_cost": {"total_amount": 7.25},
                "labels": [{"label_data": base64.b64encode(b"%PDF-label").decode()}],
            },
        )
        self.file_response = file_response
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if str(request.url) == TOKEN_URL:
            return httpx.Response(200, json={"access_token": "tok", "expires_in": 3600})
        if request.url.path.endswith("/v1/labels"):
            return self.label_response
        if self.file_response is not None:
            return self.file_response
        return httpx.Response(404)

    def label_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith("/v1/labels")]


def _service(carrier: _Carrier, **kwargs) -> LabelService:
    transport = httpx.MockTransport(carrier)
    broker = TokenBroker(
        token_url=TOKEN_URL,
        client_id="cid",
        client_secret="csecret",
        refresh_token="rt",
        transport=transport,
    )
    return LabelService(
        token_broker=broker,
        api_base=API_BASE,
        return_to=WAREHOUSE,
        transport=transport,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_create_label_with_inline_label_data():
    carrier = _Carrier()

    result = await _service(carrier).create_label(_request(), 16)

    assert result.tracking_number == "9400100000000000000001"
    assert result.label_bytes == b"%PDF-label"
    assert result.label_id == "se-1"
    assert result.postage_total_usd == 7.25
    assert result.service_type == "usps_ground_advantage"

    sent = carrier.label_requests()[0]
    assert sent.headers["Authorization"] == "Bearer tok"
    assert sent.headers["Idempotency-Key"] == result.idempotency_key
    payload = json.loads(sent.content)
    assert payload["from_address"]["name"] == "Jane Doe"
    assert payload["to_address"]["address_line1"] == "816 Parkway Drive"
    assert payload["is_return_label"] is True
    assert payload["service_type"] == "usps_ground_advantage"
    assert payload["package"] == {"packaging_type": "package", "weight": 16, "weight_unit": "ounce"}
    assert payload["advanced_options"] == {"is_pay_on_use": True}
    assert payload["references"] == {"reference1": "SN-1", "reference2": "upgrade"}


@pytest.mark.asyncio
async def test_create_label_fetches_document_href_with_bearer():
    carrier = _Carrier(
        label_response=httpx.Response(
            200,
            json={"tracking_number": "9400", "labels": [{"href": "https://files.example/label.pdf"}]},
        ),
        file_response=httpx.Response(200, content=b"%PDF-fetched"),
    )

    result = await _service(carrier).create_label(_request(), 32)

    assert result.label_bytes == b"%PDF-fetched"
    fetch = carrier.requests[-1]
    assert str(fetch.url) == "https://files.example/label.pdf"
    assert fetch.headers["Authorization"] == "Bearer tok"
    assert result.label_id is None
    assert result.postage_total_usd is None


@pytest.mark.asyncio
async def test_tracking_number_may_be_empty():
    carrier = _Carrier(
        label_response=httpx.Response(
            200, json={"labels": [{"label_data": base64.b64encode(b"%PDF").decode()}]}
        )
    )

    result = await _service(carrier).create_label(_request(), 16)

    assert result.tracking_number == ""


@pytest.mark.asyncio
async def test_line_wrapped_inline_label_data_is_decoded():
    document = b"%PDF-1.7 wrapped label " * 10
    carrier = _Carrier(
        label_response=httpx.Response(
            200,
            json={"tracking_number": "9400", "labels": [{"label_data": base64.encodebytes(document).decode()}]},
        )
    )

    result = await _service(carrier).create_label(_request(), 16)

    assert result.label_bytes == document


@pytest.mark.asyncio
async def test_invalid_inline_label_data_is_malformed_response():
    carrier = _Carrier(
        label_response=httpx.Response(200, json={"tracking_number": "9400", "labels": [{"label_data": "%%not base64%%"}]})
    )

    with pytest.raises(LabelError) as excinfo:
        await _service(carrier).create_label(_request(), 16)

    assert excinfo.value.kind == LabelError.MALFORMED_RESPONSE
    assert excinfo.value.tracking_number == "9400"


@pytest.mark.asyncio
async def test_missing_label_data_keeps_tracking_number_on_error():
    carrier = _Carrier(label_response=httpx.Response(200, json={"tracking_number": "9400", "label_id": "se-9"}))

    with pytest.raises(LabelError) as excinfo:
        await _service(carrier).create_label(_request(), 16)

    assert excinfo.value.kind == LabelError.MALFORMED_RESPONSE
    assert excinfo.value.tracking_number == "9400"
    assert excinfo.value.label_id == "se-9"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("status_code", "kind"),
    [
        (400, LabelError.VALIDATION_REJECTED_BY_CARRIER),
        (422, LabelError.VALIDATION_REJECTED_BY_CARRIER),
        (401, LabelError.AUTH_FAILED),
        (503, LabelError.UNREACHABLE),
    ],
)
async def test_carrier_error_statuses(status_code, kind):
    carrier = _Carrier(label_response=httpx.Response(status_code, json={"message": "nope"}))

    with pytest.raises(LabelError) as excinfo:
        await _service(carrier).create_label(_request(), 16)

    assert excinfo.value.kind == kind
    assert excinfo.value.http_status == status_code
    assert excinfo.value.details == {"message": "nope"}
    assert f"HTTP {status_code}" in str(excinfo.value)


@pytest.mark.asyncio
async def test_timeout_is_unreachable():
    def handler(request: httpx.Request) -> httpx.Response:
        if str(request.url) == TOKEN_URL:
            return httpx.Response(200, json={"access_token": "tok", "expires_in": 3600})
        raise httpx.ReadTimeout("slow", request=request)

    transport = httpx.MockTransport(handler)
    broker = TokenBroker(token_url=TOKEN_URL, client_id="c", client_secret="s", refresh_token="r", transport=transport)
    service = LabelService(token_broker=broker, api_base=API_BASE, return_to=WAREHOUSE, transport=transport)

    with pytest.raises(LabelError) as excinfo:
        await service.create_label(_request(), 16)

    assert excinfo.value.kind == LabelError.UNREACHABLE


@pytest.mark.asyncio
async def test_token_failure_surfaces_as_label_auth_failure():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": "invalid_grant"})

    transport = httpx.MockTransport(handler)
    broker = TokenBroker(token_url=TOKEN_URL, client_id="c", client_secret="s", refresh_token="r", transport=transport)
    service = LabelService(token_broker=broker, api_base=API_BASE, return_to=WAREHOUSE, transport=transport)

    with pytest.raises(LabelError) as excinfo:
        await service.create_label(_request(), 16)

    assert excinfo.value.kind == LabelError.AUTH_FAILED
    assert excinfo.value.http_status == 400


@pytest.mark.asyncio
async def test_identical_requests_get_distinct_idempotency_keys():
    carrier = _Carrier()
    service = _service(carrier)

    first = await service.create_label(_request(), 16)
    second = await service.create_label(_request(), 16)

    keys = [r.headers["Idempotency-Key"] for r in carrier.label_requests()]
    assert len(keys) == 2
    assert keys[0] != keys[1]
    assert first.idempotency_key != second.idempotency_key


@pytest.mark.asyncio
async def test_content_idempotency_mode_reuses_key_for_identical_requests():
    carrier = _Carrier()
    service = _service(carrier, idempotency_mode="content")

    await service.create_label(_request(), 16)
    await service.create_label(_request(), 16)
    await service.create_label(_request(), 32)

    keys = [r.headers["Idempotency-Key"] for r in carrier.label_requests()]
    assert keys[0] == keys[1]
    assert keys[2] != keys[0]


def test_return_request_requires_a_resolved_weight():
    with pytest.raises(pydantic.ValidationError):
        _request(weight_oz=None)
