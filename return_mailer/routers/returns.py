from __future__ import annotations

import base64
import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from return_mailer.auth import InboundCredentials
from return_mailer.dependencies import get_pipeline
from return_mailer.domain.models import PipelineOutcome
from return_mailer.observability import log_event
from return_mailer.services.pipeline import ReturnMailPipeline


router = APIRouter(prefix="/api", tags=["returns"])

LABEL_FILENAME = "usps-pay-on-use-return-label.pdf"


def _request_id(request: Request | None) -> str | None:
    if not request:
        return None
    return getattr(getattr(request, "state", None), "request_id", None)


async def _read_json_body(request: Request) -> dict[str, Any]:
    raw = await request.body()
    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except ValueError:
        log_event("return_mail_body_unparseable", level=logging.WARNING, request_id=_request_id(request))
        return {}
    if not isinstance(data, dict):
        log_event("return_mail_body_not_object", level=logging.WARNING, request_id=_request_id(request))
        return {}
    return data


def _credentials(request: Request, body: dict[str, Any]) -> InboundCredentials:
    access_code = body.get("accessCode") or request.headers.get("X-Access-Code")
    return InboundCredentials(
        authorization=request.headers.get("Authorization"),
        access_code=str(access_code) if access_code is not None else None,
    )


def _audit_payload(outcome: PipelineOutcome) -> dict[str, Any] | None:
    return outcome.audit.model_dump(mode="json") if outcome.audit else None


def _failure_response(outcome: PipelineOutcome) -> JSONResponse:
    headers = {}
    if outcome.http_status == 401 and outcome.challenge:
        headers["WWW-Authenticate"] = outcome.challenge
    return JSONResponse(
        status_code=outcome.http_status,
        headers=headers,
        content={
            "ok": False,
            "error": outcome.error,
            "state": outcome.failed_state.value if outcome.failed_state else None,
            "requestId": outcome.request_id,
            "trackingNumber": outcome.tracking_number or None,
            "details": outcome.details,
            "audit": _audit_payload(outcome),
        },
    )


@router.post("/mail-label")
async def mail_label(request: Request, pipeline: ReturnMailPipeline = Depends(get_pipeline)):
    body = await _read_json_body(request)
    outcome = await pipeline.mail_packet(body, _credentials(request, body), request_id=_request_id(request))
    if not outcome.ok:
        return _failure_response(outcome)
    return JSONResponse(
        status_code=200,
        content={
            "ok": True,
            "requestId": outcome.request_id,
            "trackingNumber": outcome.tracking_number or None,
            "letterId": outcome.letter_id,
            "letterStatus": outcome.letter_status,
            "weightOz": outcome.weight_oz,
            "audit": _audit_payload(outcome),
        },
    )


@router.post("/create-label")
async def create_label(request: Request, pipeline: ReturnMailPipeline = Depends(get_pipeline)):
    body = await _read_json_body(request)
    outcome = await pipeline.issue_label(body, _credentials(request, body), request_id=_request_id(request))
    if not outcome.ok:
        return _failure_response(outcome)
    label = outcome.label
    if label is None:
        raise RuntimeError("Label flow finished without a label")
    return JSONResponse(
        status_code=200,
        content={
            "ok": True,
            "requestId": outcome.request_id,
            "trackingNumber": outcome.tracking_number or None,
            "labelId": label.label_id,
            "weightOz": outcome.weight_oz,
            "filename": LABEL_FILENAME,
            "mimeType": "application/pdf",
            "labelData": base64.b64encode(label.label_bytes).decode("ascii"),
            "audit": _audit_payload(outcome),
        },
    )
