import base64

import pytest

from return_mailer.auth import (
    BasicCredentialAuthenticator,
    InboundCredentials,
    StaticAccessCodeAuthenticator,
    build_authenticator,
)
from return_mailer.domain.errors import AuthError


def _basic(user: str, password: str) -> str:
    return "Basic " + base64.b64encode(f"{user}:{password}".encode()).decode()


def test_basic_authenticator_accepts_matching_credential():
    auth = BasicCredentialAuthenticator("ops", "s3cret:with:colons")
    auth.authenticate(InboundCredentials(authorization=_basic("ops", "s3cret:with:colons")))


@pytest.mark.parametrize(
    "header",
    [
        None,
        "",
        "Bearer abc",
        "Basic not-base64!!",
        "Basic " + base64.b64encode(b"no-colon").decode(),
        _basic("ops", "wrong"),
        _basic("other", "pw"),
    ],
)
def test_basic_authenticator_rejects(header):
    auth = BasicCredentialAuthenticator("ops", "pw")
    with pytest.raises(AuthError) as excinfo:
        auth.authenticate(InboundCredentials(authorization=header))
    assert excinfo.value.side == "caller"


def test_basic_authenticator_reports_missing_settings():
    assert BasicCredentialAuthenticator(None, "").missing_settings() == ["MAIL_USER", "MAIL_PASS"]
    assert BasicCredentialAuthenticator("u", "p").missing_settings() == []


def test_access_code_authenticator():
    auth = StaticAccessCodeAuthenticator("letmein")
    auth.authenticate(InboundCredentials(access_code=" letmein "))
    with pytest.raises(AuthError):
        auth.authenticate(InboundCredentials(access_code="nope"))
    with pytest.raises(AuthError):
        auth.authenticate(InboundCredentials(authorization=_basic("letmein", "letmein")))
    assert auth.challenge is None
    assert StaticAccessCodeAuthenticator(None).missing_settings() == ["ACCESS_CODE"]


def test_build_authenticator_selects_variant():
    assert isinstance(build_authenticator("basic", username="u", password="p"), BasicCredentialAuthenticator)
    assert isinstance(build_authenticator("access_code", access_code="c"), StaticAccessCodeAuthenticator)
