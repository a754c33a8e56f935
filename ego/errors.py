"""
Error kinds raised by the token core. Services raise these at the point of detection;
main.py maps each kind to an HTTP status, the SSO flow maps some of them to error redirects.
"""
import enum


class ErrorKind(str, enum.Enum):
    NOT_FOUND = "not_found"
    INVALID_SCOPE = "invalid_scope"
    INVALID_TOKEN = "invalid_token"
    FORBIDDEN = "forbidden"
    NO_PRIMARY_EMAIL = "no_primary_email"
    USER_DENIED_AUTHORIZATION = "access_denied"
    INTERNAL = "server_error"


class EgoError(Exception):
    """Base error. `kind` decides how the request boundary reports it."""

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(EgoError):
    kind = ErrorKind.NOT_FOUND


class InvalidScopeError(EgoError):
    """Requested scopes exceed the caller's entitlement, or a scope name does not parse."""

    kind = ErrorKind.INVALID_SCOPE

    def __init__(self, message: str, missing_scopes: list[str] | None = None):
        super().__init__(message)
        self.missing_scopes = sorted(missing_scopes or [])


class InvalidTokenError(EgoError):
    """
    Token not found, revoked, malformed or expired. `reason` is for logs only;
    callers treat every reason as unauthenticated.
    """

    kind = ErrorKind.INVALID_TOKEN

    NOT_FOUND = "not_found"
    REVOKED = "revoked"
    MALFORMED = "malformed"
    EXPIRED = "expired"

    def __init__(self, message: str, reason: str = MALFORMED):
        super().__init__(message)
        self.reason = reason


class ForbiddenError(EgoError):
    kind = ErrorKind.FORBIDDEN


class NoPrimaryEmailError(EgoError):
    kind = ErrorKind.NO_PRIMARY_EMAIL

    def __init__(self, provider: str, message: str = "No primary email found"):
        super().__init__(message)
        self.provider = provider


class UserDeniedAuthorizationError(EgoError):
    kind = ErrorKind.USER_DENIED_AUTHORIZATION

    def __init__(self, provider: str, provider_error: str | None = None):
        super().__init__("User denied authorization")
        self.provider = provider
        self.provider_error = provider_error


class InternalServerError(EgoError):
    kind = ErrorKind.INTERNAL


class ProviderTimeoutError(InternalServerError):
    """An identity provider call exceeded its timeout. The SSO flow reports it by redirect."""

    def __init__(self, provider: str):
        super().__init__(f"Identity provider {provider} timed out")
        self.provider = provider
