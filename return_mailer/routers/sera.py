from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse

from return_mailer.config import Settings, get_settings
from return_mailer.dependencies import config_error_response, get_pipeline, reject_unauthenticated
from return_mailer.domain.errors import AuthError
from return_mailer.domain.provider_errors import pipeline_error_http_status, provider_error_detail
from return_mailer.observability import log_event
from return_mailer.providers.sera.token import build_authorize_url, exchange_authorization_code
from return_mailer.services.pipeline import ReturnMailPipeline


router = APIRouter(prefix="/api/sera", tags=["sera-provisioning"])


def _missing(settings: Settings, *names: str) -> list[str]:
    return [name.upper() for name in names if not getattr(settings, name)]


@router.get("/login")
async def sera_login(
    request: Request,
    access_code: str | None = Query(None),
    settings: Settings = Depends(get_settings),
    pipeline: ReturnMailPipeline = Depends(get_pipeline),
):
    rejected = reject_unauthenticated(pipeline, request, access_code)
    if rejected:
        return rejected
    missing = _missing(settings, "sera_client_id", "sera_redirect_uri")
    if missing:
        return config_error_response(missing)
    url = build_authorize_url(
        signin_url=settings.sera_signin_url,
        client_id=settings.sera_client_id or "",
        redirect_uri=settings.sera_redirect_uri or "",
    )
    return RedirectResponse(url, status_code=302)


@router.get("/callback")
async def sera_callback(
    request: Request,
    code: str | None = Query(None),
    access_code: str | None = Query(None),
    settings: Settings = Depends(get_settings),
    pipeline: ReturnMailPipeline = Depends(get_pipeline),
):
    rejected = reject_unauthenticated(pipeline, request, access_code)
    if rejected:
        return rejected
    missing = _missing(settings, "sera_client_id", "sera_client_secret", "sera_redirect_uri")
    if missing:
        return config_error_response(missing)
    if not code:
        return JSONResponse(status_code=400, content={"ok": False, "error": "Missing ?code= in callback URL."})

    try:
        data = await exchange_authorization_code(
            token_url=settings.sera_token_url,
            client_id=settings.sera_client_id or "",
            client_secret=settings.sera_client_secret or "",
            code=code,
            redirect_uri=settings.sera_redirect_uri or "",
            timeout_seconds=settings.http_timeout_seconds,
        )
    except AuthError as exc:
        log_event("sera_code_exchange_failed", level=logging.WARNING, kind=exc.kind, http_status=exc.http_status)
        return JSONResponse(
            status_code=pipeline_error_http_status(exc),
            content={
                "ok": False,
                "error": str(exc),
                "details": provider_error_detail(provider="sera", operation="exchange_authorization_code", exc=exc),
            },
        )

    log_event("sera_code_exchanged")
    return PlainTextResponse(
        "SUCCESS\n\nStore this value as SERA_REFRESH_TOKEN:\n\n" + str(data["refresh_token"]) + "\n"
    )


@router.get("/test-token")
async def sera_test_token(
    request: Request,
    access_code: str | None = Query(None),
    settings: Settings = Depends(get_settings),
    pipeline: ReturnMailPipeline = Depends(get_pipeline),
):
    rejected = reject_unauthenticated(pipeline, request, access_code)
    if rejected:
        return rejected
    missing = _missing(settings, "sera_client_id", "sera_client_secret", "sera_refresh_token")
    if missing:
        return config_error_response(missing)

    try:
        token = await pipeline.token_broker.refresh()
    except AuthError as exc:
        return JSONResponse(
            status_code=pipeline_error_http_status(exc),
            content={
                "ok": False,
                "error": "Failed to refresh access token",
                "details": provider_error_detail(provider="sera", operation="refresh_token", exc=exc),
            },
        )
    return {
        "ok": True,
        "message": "Access token refresh worked",
        "expires_in": token.expires_in,
        "token_type": token.token_type,
    }
