from __future__ import annotations

import base64
import binascii
import secrets
from dataclasses import dataclass
from typing import Protocol

from return_mailer.domain.errors import AuthError


@dataclass(frozen=True)
class InboundCredentials:
    """Credential material presented by a caller, from headers, body or query."""
    authorization: str | None = None
    access_code: str | None = None


class Authenticator(Protocol):
    challenge: str | None

    def missing_settings(self) -> list[str]: ...

    def authenticate(self, credentials: InboundCredentials) -> None: ...


def _parse_basic_auth(authorization: str | None) -> tuple[str, str] | None:
    """Decode 'Basic <b64(user:pass)>' into its two halves."""
    if not authorization:
        return None
    parts = authorization.split(None, 1)
    if len(parts) != 2 or parts[0].lower() != "basic":
        return None
    try:
        decoded = base64.b64decode(parts[1].strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    user, sep, password = decoded.partition(":")
    if not sep:
        return None
    return user, password


def _matches(presented: str, expected: str) -> bool:
    return secrets.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))


class BasicCredentialAuthenticator:
    challenge = 'Basic realm="Return Label Mailer"'

    def __init__(self, username: str | None, password: str | None) -> None:
        self._username = username or ""
        self._password = password or ""

    def missing_settings(self) -> list[str]:
        missing = []
        if not self._username:
            missing.append("MAIL_USER")
        if not self._password:
            missing.append("MAIL_PASS")
        return missing

    def authenticate(self, credentials: InboundCredentials) -> None:
        parsed = _parse_basic_auth(credentials.authorization)
        if parsed is None:
            raise AuthError("Unauthorized", side="caller", kind=AuthError.INVALID_CREDENTIALS)
        user, password = parsed
        user_ok = _matches(user, self._username)
        password_ok = _matches(password, self._password)
        if not (user_ok and password_ok):
            raise AuthError("Unauthorized", side="caller", kind=AuthError.INVALID_CREDENTIALS)


class StaticAccessCodeAuthenticator:
    challenge = None

    def __init__(self, access_code: str | None) -> None:
        self._access_code = access_code or ""

    def missing_settings(self) -> list[str]:
        return [] if self._access_code else ["ACCESS_CODE"]

    def authenticate(self, credentials: InboundCredentials) -> None:
        presented = (credentials.access_code or "").strip()
        if not presented or not _matches(presented, self._access_code):
            raise AuthError("Invalid access code", side="caller", kind=AuthError.INVALID_CREDENTIALS)


def build_authenticator(
    mode: str,
    *,
    username: str | None = None,
    password: str | None = None,
    access_code: str | None = None,
) -> Authenticator:
    if mode == "access_code":
        return StaticAccessCodeAuthenticator(access_code)
    return BasicCredentialAuthenticator(username, password)
