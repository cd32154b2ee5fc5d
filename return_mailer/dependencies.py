from functools import lru_cache

from fastapi import Request
from fastapi.responses import JSONResponse

from return_mailer.auth import InboundCredentials
from return_mailer.config import get_settings
from return_mailer.domain.errors import AuthError
from return_mailer.services.pipeline import ReturnMailPipeline, build_pipeline


@lru_cache
def get_pipeline() -> ReturnMailPipeline:
    """Process-wide pipeline so the carrier token cache is shared across requests."""
    return build_pipeline(get_settings())


def config_error_response(missing: list[str]) -> JSONResponse:
    return JSONResponse(
        status_code=500,
        content={"ok": False, "error": f"Missing configuration: {', '.join(missing)}"},
    )


def reject_unauthenticated(pipeline: ReturnMailPipeline, request: Request, access_code: str | None) -> JSONResponse | None:
    """Run the inbound authenticator for operator routes; returns the rejection response, if any."""
    authenticator = pipeline.authenticator
    missing = authenticator.missing_settings()
    if missing:
        return config_error_response(missing)
    try:
        authenticator.authenticate(
            InboundCredentials(
                authorization=request.headers.get("Authorization"),
                access_code=access_code or request.headers.get("X-Access-Code"),
            )
        )
    except AuthError as exc:
        headers = {"WWW-Authenticate": authenticator.challenge} if authenticator.challenge else {}
        return JSONResponse(status_code=401, headers=headers, content={"ok": False, "error": str(exc)})
    return None
