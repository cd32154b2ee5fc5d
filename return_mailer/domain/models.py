from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class Address(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    company: str = ""
    line1: str
    line2: str = ""
    city: str
    state: str
    postal_code: str
    country_code: str = "US"
    phone: str = ""
    email: str = ""

    def missing_required(self) -> list[str]:
        """Names of the fields that must be non-empty for a label or letter."""
        required = {
            "name": self.name,
            "line1": self.line1,
            "city": self.city,
            "state": self.state,
            "postal_code": self.postal_code,
        }
        return [field for field, value in required.items() if not value.strip()]


class ReturnRequest(BaseModel):
    """Customer-supplied return envelope, accepted once per inbound call."""

    model_config = ConfigDict(frozen=True)

    address: Address
    phone: str
    device_type: str
    device_serial: str = ""
    return_reason: str = ""
    weight_oz: int
    email: str = ""


class LabelResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    tracking_number: str = ""
    label_bytes: bytes
    service_type: str
    label_id: str | None = None
    postage_total_usd: float | None = None
    idempotency_key: str


class LabelPlacement(BaseModel):
    model_config = ConfigDict(frozen=True)

    scale: float
    draw_width: float
    draw_height: float
    x: float
    y: float


class ComposedDocument(BaseModel):
    model_config = ConfigDict(frozen=True)

    content: bytes
    page_count: int
    placement: LabelPlacement


class MailOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    color: bool = True
    use_type: str = "operational"
    description: str | None = None
    idempotency_key: str | None = None


class MailSubmissionResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    letter_id: str
    status: str | None = None


class AuditRecord(BaseModel):
    """Flat row posted to the audit webhook; every key is always present."""

    request_id: str
    lob_letter_id: str = ""
    source: str
    created_at_iso: str
    customer_name: str = ""
    customer_email: str = ""
    customer_phone: str = ""
    from_address1: str = ""
    from_address2: str = ""
    from_city: str = ""
    from_state: str = ""
    from_zip: str = ""
    device_type: str = ""
    device_serial: str = ""
    return_reason: str = ""
    weight_oz: int | None = None
    service_type: str = ""
    tracking_number: str = ""
    label_id: str = ""
    postage_total_usd: float | None = None
    status: Literal["Created", "Exception"]
    status_last_checked: str
    delivered_at: str | None = None
    latest_event: str


class DeliveryOutcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: Literal["ok", "failed", "skipped"]
    http_status: int | None = None
    error: str | None = None
    body: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == "ok"


class PipelineState(str, Enum):
    VALIDATING = "validating"
    AUTHENTICATING = "authenticating"
    REQUESTING_LABEL = "requesting_label"
    COMPOSING_DOCUMENT = "composing_document"
    SUBMITTING_MAIL = "submitting_mail"
    AUDITING = "auditing"
    DONE = "done"
    FAILED = "failed"


class PipelineOutcome(BaseModel):
    ok: bool
    http_status: int
    state: PipelineState
    failed_state: PipelineState | None = None
    request_id: str
    tracking_number: str = ""
    letter_id: str | None = None
    letter_status: str | None = None
    weight_oz: int | None = None
    label: LabelResult | None = None
    document: ComposedDocument | None = None
    audit: DeliveryOutcome | None = None
    audit_record: AuditRecord | None = None
    error: str | None = None
    details: Any = None
    challenge: str | None = None
    trace: list[PipelineState] = Field(default_factory=list)
