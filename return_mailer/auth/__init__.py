from return_mailer.auth.authenticators import (
    Authenticator,
    BasicCredentialAuthenticator,
    InboundCredentials,
    StaticAccessCodeAuthenticator,
    build_authenticator,
)

__all__ = [
    "Authenticator",
    "BasicCredentialAuthenticator",
    "InboundCredentials",
    "StaticAccessCodeAuthenticator",
    "build_authenticator",
]
