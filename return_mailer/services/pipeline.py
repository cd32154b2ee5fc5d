from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping

import httpx

from return_mailer.auth import Authenticator, InboundCredentials, build_authenticator
from return_mailer.config import Settings
from return_mailer.documents.composer import DocumentComposer, read_instructions
from return_mailer.domain.errors import (
    AuthError,
    ComposeError,
    ConfigError,
    LabelError,
    MailError,
    ReturnMailError,
    ValidationError,
)
from return_mailer.domain.models import (
    Address,
    AuditRecord,
    ComposedDocument,
    DeliveryOutcome,
    LabelResult,
    MailOptions,
    MailSubmissionResult,
    PipelineOutcome,
    PipelineState,
    ReturnRequest,
)
from return_mailer.domain.provider_errors import pipeline_error_http_status
from return_mailer.domain.weight import resolve_weight_oz
from return_mailer.observability import incr_metric, log_event
from return_mailer.providers.audit.webhook import AuditSink, NullAuditSink, WebhookAuditSink
from return_mailer.providers.lob.client import MailSubmitter
from return_mailer.providers.sera.client import LabelService
from return_mailer.providers.sera.token import TokenBroker


REQUIRED_FIELDS = ("name", "address1", "city", "state", "zip", "phone", "deviceType")

_MAILED_EVENT = "Return label created; physical packet mailed."
_LABEL_EVENT = "Return label created."


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _text(body: Mapping[str, Any], key: str) -> str:
    value = body.get(key)
    if value is None:
        return ""
    return str(value).strip()


@dataclass
class _Attempt:
    """Mutable bookkeeping for one request attempt; never shared between requests."""
    request_id: str
    source: str
    body: Mapping[str, Any]
    state: PipelineState = PipelineState.VALIDATING
    trace: list[PipelineState] = field(default_factory=list)
    weight_oz: int | None = None
    label: LabelResult | None = None
    document: ComposedDocument | None = None
    mail: MailSubmissionResult | None = None

    def enter(self, state: PipelineState) -> None:
        self.state = state
        self.trace.append(state)
        log_event("return_mail_state", request_id=self.request_id, source=self.source, state=state.value)


class ReturnMailPipeline:
    """Runs one return request through label, composition, mailing and audit."""

    def __init__(
        self,
        *,
        settings: Settings,
        authenticator: Authenticator,
        label_service: LabelService,
        composer: DocumentComposer,
        mail_submitter: MailSubmitter,
        audit_sink: AuditSink | None = None,
    ) -> None:
        self._settings = settings
        self._authenticator = authenticator
        self._label_service = label_service
        self._composer = composer
        self._mail_submitter = mail_submitter
        self._audit_sink = audit_sink or NullAuditSink()

    @property
    def authenticator(self) -> Authenticator:
        return self._authenticator

    @property
    def token_broker(self) -> TokenBroker:
        return self._label_service.token_broker

    async def mail_packet(
        self,
        body: Mapping[str, Any],
        credentials: InboundCredentials,
        *,
        request_id: str | None = None,
    ) -> PipelineOutcome:
        attempt = _Attempt(
            request_id=request_id or str(uuid.uuid4()),
            source=self._settings.audit_source_mail,
            body=body,
        )
        try:
            self._gate(attempt, credentials)
            request = self._validate(attempt, needs_mail=True)
            label = await self._request_label(attempt, request)
            document = await self._compose(attempt, label)
            mail = await self._submit(attempt, request, document)
        except ReturnMailError as exc:
            return await self._fail(attempt, exc, self._audit_sink)
        except Exception as exc:
            return await self._fail_unhandled(attempt, exc, self._audit_sink)

        attempt.enter(PipelineState.AUDITING)
        record = self._audit_record(attempt, status="Created", latest_event=_MAILED_EVENT)
        audit = await self._record(record, self._audit_sink)
        attempt.enter(PipelineState.DONE)
        incr_metric("return_mail.requests", source=attempt.source, outcome="created", state="done")
        log_event(
            "return_mail_completed",
            request_id=attempt.request_id,
            tracking_number=label.tracking_number,
            letter_id=mail.letter_id,
            audit=audit.status,
        )
        return PipelineOutcome(
            ok=True,
            http_status=200,
            state=PipelineState.DONE,
            request_id=attempt.request_id,
            tracking_number=label.tracking_number,
            letter_id=mail.letter_id,
            letter_status=mail.status,
            weight_oz=attempt.weight_oz,
            label=label,
            document=document,
            audit=audit,
            audit_record=record,
            trace=attempt.trace,
        )

    async def issue_label(
        self,
        body: Mapping[str, Any],
        credentials: InboundCredentials,
        *,
        request_id: str | None = None,
    ) -> PipelineOutcome:
        """Label-only variant: no composition or mailing, optional audit."""
        attempt = _Attempt(
            request_id=request_id or str(uuid.uuid4()),
            source=self._settings.audit_source_label,
            body=body,
        )
        sink = NullAuditSink() if body.get("skipLogging") is True else self._audit_sink
        try:
            self._gate(attempt, credentials)
            request = self._validate(attempt, needs_mail=False)
            label = await self._request_label(attempt, request)
        except ReturnMailError as exc:
            return await self._fail(attempt, exc, sink)
        except Exception as exc:
            return await self._fail_unhandled(attempt, exc, sink)

        attempt.enter(PipelineState.AUDITING)
        record = self._audit_record(attempt, status="Created", latest_event=_LABEL_EVENT)
        audit = await self._record(record, sink)
        attempt.enter(PipelineState.DONE)
        incr_metric("return_mail.requests", source=attempt.source, outcome="created", state="done")
        return PipelineOutcome(
            ok=True,
            http_status=200,
            state=PipelineState.DONE,
            request_id=attempt.request_id,
            tracking_number=label.tracking_number,
            weight_oz=attempt.weight_oz,
            label=label,
            audit=audit,
            audit_record=record,
            trace=attempt.trace,
        )

    def _gate(self, attempt: _Attempt, credentials: InboundCredentials) -> None:
        attempt.enter(PipelineState.VALIDATING)
        missing = self._authenticator.missing_settings()
        if missing:
            raise ConfigError(missing)

        attempt.enter(PipelineState.AUTHENTICATING)
        self._authenticator.authenticate(credentials)

    def _validate(self, attempt: _Attempt, *, needs_mail: bool) -> ReturnRequest:
        attempt.enter(PipelineState.VALIDATING)
        settings = self._settings
        missing_settings = settings.missing_carrier_settings()
        if needs_mail:
            missing_settings.extend(settings.missing_mail_settings())
        if missing_settings:
            raise ConfigError(missing_settings)

        body = attempt.body
        attempt.weight_oz = resolve_weight_oz(
            body.get("weightOz"),
            body.get("weightLbs"),
            accepted_oz=settings.label_accepted_weights_oz,
            default_oz=settings.label_default_weight_oz,
        )

        missing = [key for key in REQUIRED_FIELDS if not _text(body, key)]
        if attempt.weight_oz is None:
            missing.append("weightOz")
        if missing:
            raise ValidationError(missing)

        address = Address(
            name=_text(body, "name"),
            line1=_text(body, "address1"),
            line2=_text(body, "address2"),
            city=_text(body, "city"),
            state=_text(body, "state"),
            postal_code=_text(body, "zip"),
            phone=_text(body, "phone"),
            email=_text(body, "email"),
        )
        return ReturnRequest(
            address=address,
            phone=address.phone,
            device_type=_text(body, "deviceType"),
            device_serial=_text(body, "deviceSerial"),
            return_reason=_text(body, "returnReason"),
            weight_oz=attempt.weight_oz,
            email=address.email,
        )

    async def _request_label(self, attempt: _Attempt, request: ReturnRequest) -> LabelResult:
        attempt.enter(PipelineState.REQUESTING_LABEL)
        attempt.label = await self._label_service.create_label(request, request.weight_oz)
        return attempt.label

    async def _compose(self, attempt: _Attempt, label: LabelResult) -> ComposedDocument:
        attempt.enter(PipelineState.COMPOSING_DOCUMENT)
        attempt.document = await asyncio.to_thread(self._compose_sync, label.label_bytes)
        return attempt.document

    def _compose_sync(self, label_bytes: bytes) -> ComposedDocument:
        instructions = read_instructions(self._settings.instructions_pdf_path)
        return self._composer.compose(label_bytes, instructions)

    async def _submit(self, attempt: _Attempt, request: ReturnRequest, document: ComposedDocument) -> MailSubmissionResult:
        attempt.enter(PipelineState.SUBMITTING_MAIL)
        options = self._mail_submitter.default_options.model_copy(update={"idempotency_key": attempt.request_id})
        attempt.mail = await self._mail_submitter.submit(document, request.address, options=options)
        return attempt.mail

    def _audit_record(self, attempt: _Attempt, *, status: str, latest_event: str, exc: ReturnMailError | None = None) -> AuditRecord:
        body = attempt.body
        label = attempt.label
        now = _now_iso()
        tracking_number = label.tracking_number if label else (exc.tracking_number if exc else "")
        label_id = (label.label_id or "") if label else (exc.label_id if exc else "")
        return AuditRecord(
            request_id=attempt.request_id,
            lob_letter_id=attempt.mail.letter_id if attempt.mail else "",
            source=attempt.source,
            created_at_iso=now,
            customer_name=_text(body, "name"),
            customer_email=_text(body, "email"),
            customer_phone=_text(body, "phone"),
            from_address1=_text(body, "address1"),
            from_address2=_text(body, "address2"),
            from_city=_text(body, "city"),
            from_state=_text(body, "state"),
            from_zip=_text(body, "zip"),
            device_type=_text(body, "deviceType"),
            device_serial=_text(body, "deviceSerial"),
            return_reason=_text(body, "returnReason"),
            weight_oz=attempt.weight_oz,
            service_type=label.service_type if label else self._settings.label_service_type,
            tracking_number=tracking_number,
            label_id=label_id,
            postage_total_usd=label.postage_total_usd if label else None,
            status=status,
            status_last_checked=now,
            delivered_at=None,
            latest_event=latest_event,
        )

    async def _record(self, record: AuditRecord, sink: AuditSink) -> DeliveryOutcome:
        try:
            return await sink.record(record)
        except Exception as exc:
            log_event(
                "audit_sink_raised",
                level=logging.WARNING,
                request_id=record.request_id,
                error=exc.__class__.__name__,
            )
            return DeliveryOutcome(status="failed", error=f"{exc.__class__.__name__}: {exc}")

    async def _fail(self, attempt: _Attempt, exc: ReturnMailError, sink: AuditSink) -> PipelineOutcome:
        failed_state = attempt.state
        attempt.enter(PipelineState.FAILED)
        incr_metric(
            "return_mail.requests",
            source=attempt.source,
            outcome="exception",
            state=failed_state.value,
            kind=exc.kind,
        )
        log_event(
            "return_mail_failed",
            level=logging.WARNING,
            request_id=attempt.request_id,
            state=failed_state.value,
            kind=exc.kind,
            http_status=exc.http_status,
            error=str(exc),
        )

        audit = None
        record = None
        gate_rejection = isinstance(exc, ConfigError) or (isinstance(exc, AuthError) and exc.side == "caller")
        if not gate_rejection:
            record = self._audit_record(attempt, status="Exception", latest_event=_latest_event(exc), exc=exc)
            audit = await self._record(record, sink)

        details: Any = exc.details
        if isinstance(exc, (ConfigError, ValidationError)):
            details = {"missing": exc.missing}
        return PipelineOutcome(
            ok=False,
            http_status=pipeline_error_http_status(exc),
            state=PipelineState.FAILED,
            failed_state=failed_state,
            request_id=attempt.request_id,
            tracking_number=record.tracking_number if record else "",
            weight_oz=attempt.weight_oz,
            label=attempt.label,
            document=attempt.document,
            audit=audit,
            audit_record=record,
            error=_error_message(exc),
            details=details,
            challenge=self._authenticator.challenge if isinstance(exc, AuthError) else None,
            trace=attempt.trace,
        )

    async def _fail_unhandled(self, attempt: _Attempt, exc: Exception, sink: AuditSink) -> PipelineOutcome:
        failed_state = attempt.state
        attempt.enter(PipelineState.FAILED)
        summary = f"{exc.__class__.__name__}: {exc}"
        incr_metric("return_mail.requests", source=attempt.source, outcome="unhandled", state=failed_state.value)
        log_event(
            "return_mail_unhandled_error",
            level=logging.ERROR,
            request_id=attempt.request_id,
            state=failed_state.value,
            error=summary,
        )
        record = self._audit_record(attempt, status="Exception", latest_event=f"Unhandled error: {summary}")
        audit = await self._record(record, sink)
        return PipelineOutcome(
            ok=False,
            http_status=500,
            state=PipelineState.FAILED,
            failed_state=failed_state,
            request_id=attempt.request_id,
            tracking_number=record.tracking_number,
            weight_oz=attempt.weight_oz,
            label=attempt.label,
            audit=audit,
            audit_record=record,
            error=summary,
            trace=attempt.trace,
        )


def _latest_event(exc: ReturnMailError) -> str:
    if isinstance(exc, LabelError):
        if exc.http_status is not None:
            return f"Label creation failed (carrier). HTTP {exc.http_status}"
        return f"Label creation failed (carrier): {exc}"
    if isinstance(exc, ComposeError):
        return f"Document composition failed: {exc}"
    if isinstance(exc, MailError):
        if exc.http_status is not None:
            return f"Lob letter creation failed. HTTP {exc.http_status}"
        return f"Lob letter creation failed: {exc}"
    return str(exc)


def _error_message(exc: ReturnMailError) -> str:
    if isinstance(exc, LabelError):
        return "Label creation failed"
    if isinstance(exc, ComposeError):
        return "Document composition failed"
    if isinstance(exc, MailError):
        return "Lob letter creation failed"
    return str(exc)


def build_pipeline(
    settings: Settings,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ReturnMailPipeline:
    token_broker = TokenBroker(
        token_url=settings.sera_token_url,
        client_id=settings.sera_client_id or "",
        client_secret=settings.sera_client_secret or "",
        refresh_token=settings.sera_refresh_token or "",
        body_encoding=settings.sera_token_body_encoding,
        timeout_seconds=settings.http_timeout_seconds,
        refresh_margin_seconds=settings.sera_token_refresh_margin_seconds,
        transport=transport,
    )
    label_service = LabelService(
        token_broker=token_broker,
        api_base=settings.sera_api_base,
        return_to=settings.return_to_address(),
        service_type=settings.label_service_type,
        idempotency_mode=settings.label_idempotency_mode,
        is_test_label=settings.label_is_test,
        timeout_seconds=settings.http_timeout_seconds,
        transport=transport,
    )
    mail_submitter = MailSubmitter(
        api_key=settings.lob_api_key or "",
        default_from=settings.default_sender_address(),
        default_options=MailOptions(color=settings.lob_color, use_type=settings.lob_use_type),
        base_url=settings.lob_api_base,
        timeout_seconds=settings.http_timeout_seconds,
        transport=transport,
    )
    audit_sink = WebhookAuditSink(
        settings.audit_webhook_url,
        timeout_seconds=settings.audit_timeout_seconds,
        transport=transport,
    )
    authenticator = build_authenticator(
        settings.inbound_auth_mode,
        username=settings.mail_user,
        password=settings.mail_pass,
        access_code=settings.access_code,
    )
    return ReturnMailPipeline(
        settings=settings,
        authenticator=authenticator,
        label_service=label_service,
        composer=DocumentComposer(),
        mail_submitter=mail_submitter,
        audit_sink=audit_sink,
    )
