"""
Session tokens: issuing signed tokens for users and applications, and validating them back
into a principal. Tokens are never stored; everything needed is in their claims.
"""
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Iterable

from ego import token_codec
from ego.audit import fingerprint
from ego.config import ISSUER_NAME, JWT_DURATION_SECONDS
from ego.errors import InvalidTokenError, NotFoundError
from ego.keys import SigningKeyProvider
from ego.models import Application, User
from ego.principals import PrincipalDirectory
from ego.scopes import explicit_scopes, scope_names, user_scopes

logger = logging.getLogger(__name__)

CONTEXT_USER = "user"
CONTEXT_APPLICATION = "application"


def _epoch(value: datetime | None) -> int | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp())


def current_scope_names(user: User) -> list[str]:
    """Scope strings a user's session token carries: current grants, DENY excluded."""
    return scope_names(explicit_scopes(user_scopes(user)))


def user_context(user: User, scopes: Iterable[str]) -> dict:
    return {
        "scope": sorted(scopes),
        CONTEXT_USER: {
            "name": user.name,
            "email": user.email,
            "status": user.status.value,
            "firstName": user.first_name,
            "lastName": user.last_name,
            "type": user.type.value,
            "createdAt": _epoch(user.created_at),
            "lastLogin": _epoch(user.last_login),
            "groups": sorted(g.name for g in user.groups),
        },
    }


def application_context(application: Application) -> dict:
    return {
        CONTEXT_APPLICATION: {
            "name": application.name,
            "clientId": application.client_id,
            "redirectUris": application.get_redirect_uris_list(),
            "status": application.status.value,
            "type": application.type.value,
        },
    }


class TokenIssuer:
    """Builds claims for a principal and signs them with the provider's current key."""

    def __init__(self, keys: SigningKeyProvider, duration_seconds: int = JWT_DURATION_SECONDS):
        self.keys = keys
        self.duration_seconds = duration_seconds

    def _sign(self, sub: str, context: dict, expires_at: datetime) -> str:
        private_key, kid = self.keys.signing_key()
        now = datetime.now(timezone.utc)
        claims = {
            "iss": ISSUER_NAME,
            "sub": sub,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            "jti": str(uuid.uuid4()),
            "context": context,
        }
        return token_codec.encode(claims, private_key, kid)

    def _expiry(self, duration: int | None, expires_at: datetime | None) -> datetime:
        if expires_at is not None:
            return expires_at
        seconds = self.duration_seconds if duration is None else duration
        return datetime.now(timezone.utc) + timedelta(seconds=seconds)

    def issue_session_token(
        self,
        principal: User | Application,
        scopes: Iterable[str] = (),
        duration: int | None = None,
        *,
        expires_at: datetime | None = None,
    ) -> str:
        """
        Sign a token for a user (context carries `scopes`) or an application (identity only).
        Lifetime is `duration` seconds from now unless an absolute `expires_at` is given.
        """
        expiry = self._expiry(duration, expires_at)
        if isinstance(principal, User):
            return self._sign(principal.id, user_context(principal, scopes), expiry)
        return self._sign(principal.id, application_context(principal), expiry)

    def issue_user_token(self, user: User, *, expires_at: datetime | None = None) -> str:
        """Token carrying the user's current scopes."""
        return self.issue_session_token(user, current_scope_names(user), expires_at=expires_at)

    def issue_app_token(self, application: Application, *, expires_at: datetime | None = None) -> str:
        return self.issue_session_token(application, expires_at=expires_at)

    def refresh_session_token(self, old_token: str, validator: "TokenValidator") -> str:
        """
        Re-sign for the same principal with its current scopes, keeping the old expiry.
        Refresh renews what the token grants, never how long it lives.
        """
        claims = validator.decode(old_token)
        principal = validator.principal_for_claims(claims)
        expires_at = datetime.fromtimestamp(claims["exp"], tz=timezone.utc)
        logger.info("Refreshing token %s for sub=%s", fingerprint(old_token), principal.id)
        if isinstance(principal, User):
            return self.issue_user_token(principal, expires_at=expires_at)
        return self.issue_app_token(principal, expires_at=expires_at)


class TokenValidator:
    """Verifies signed tokens and recovers the principal they were issued to."""

    def __init__(self, keys: SigningKeyProvider, directory: PrincipalDirectory):
        self.keys = keys
        self.directory = directory

    def decode(self, token: str) -> dict:
        if not token or not token.strip():
            raise InvalidTokenError("No token provided", InvalidTokenError.MALFORMED)
        return token_codec.decode(token.strip(), self.keys, ISSUER_NAME)

    def is_valid(self, token: str) -> bool:
        try:
            self.decode(token)
        except InvalidTokenError as e:
            logger.info("Token %s rejected: %s", fingerprint(token), e.reason)
            return False
        return True

    def principal_for_claims(self, claims: dict) -> User | Application:
        context = claims.get("context")
        if not isinstance(context, dict):
            raise InvalidTokenError("Token context is missing", InvalidTokenError.MALFORMED)
        try:
            if CONTEXT_USER in context:
                return self.directory.get_user(claims["sub"])
            if CONTEXT_APPLICATION in context:
                return self.directory.get_application(claims["sub"])
        except NotFoundError as e:
            # Principal deleted after issuance
            raise InvalidTokenError(e.message, InvalidTokenError.NOT_FOUND) from e
        raise InvalidTokenError("Token context names no principal", InvalidTokenError.MALFORMED)

    def principal_for_token(self, token: str) -> User | Application:
        return self.principal_for_claims(self.decode(token))

    def user_for_token(self, token: str) -> User:
        principal = self.principal_for_token(token)
        if not isinstance(principal, User):
            raise InvalidTokenError("Not a user token", InvalidTokenError.MALFORMED)
        return principal

    def application_for_token(self, token: str) -> Application:
        principal = self.principal_for_token(token)
        if not isinstance(principal, Application):
            raise InvalidTokenError("Not an application token", InvalidTokenError.MALFORMED)
        return principal
