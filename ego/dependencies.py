"""
FastAPI dependencies: caller token extraction, the authenticated principal, per-request services
built over the process-wide key provider / flow store / bridge held on app.state, and rate limits.
"""
from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from ego.api_key_service import ApiKeyService
from ego.audit import get_client_ip
from ego.database import get_db
from ego.errors import InvalidTokenError, NotFoundError
from ego.keys import SigningKeyProvider
from ego.models import Application, ProviderType, User
from ego.principals import PrincipalDirectory
from ego.revocation_store import SqlRevocationStore
from ego.sso import SsoOrchestrator
from ego.token_service import TokenIssuer, TokenValidator


def _strip_bearer(value: str | None) -> str | None:
    if not value or not value.strip():
        return None
    value = value.strip()
    if value.lower().startswith("bearer "):
        value = value[7:].strip()
    return value or None


def get_caller_token(
    authorization: Annotated[str | None, Header()] = None,
    token: Annotated[str | None, Header()] = None,
) -> str | None:
    """Session token from `Authorization: Bearer <jwt>`, else from the legacy `token` header."""
    if authorization and authorization.strip().lower().startswith("bearer "):
        return _strip_bearer(authorization)
    return _strip_bearer(token)


def get_provider(provider: str) -> ProviderType:
    """Path segment such as `github` -> ProviderType.GITHUB; unknown providers are 404."""
    try:
        return ProviderType.resolve(provider)
    except ValueError:
        raise NotFoundError(f"Unknown identity provider '{provider}'")


def get_keys(request: Request) -> SigningKeyProvider:
    return request.app.state.keys


def get_directory(db: Annotated[Session, Depends(get_db)]) -> PrincipalDirectory:
    return PrincipalDirectory(db)


def get_issuer(keys: Annotated[SigningKeyProvider, Depends(get_keys)]) -> TokenIssuer:
    return TokenIssuer(keys)


def get_validator(
    keys: Annotated[SigningKeyProvider, Depends(get_keys)],
    directory: Annotated[PrincipalDirectory, Depends(get_directory)],
) -> TokenValidator:
    return TokenValidator(keys, directory)


def get_api_key_service(
    db: Annotated[Session, Depends(get_db)],
    directory: Annotated[PrincipalDirectory, Depends(get_directory)],
) -> ApiKeyService:
    return ApiKeyService(directory, SqlRevocationStore(db))


def get_sso(
    request: Request,
    directory: Annotated[PrincipalDirectory, Depends(get_directory)],
    issuer: Annotated[TokenIssuer, Depends(get_issuer)],
) -> SsoOrchestrator:
    return SsoOrchestrator(request.app.state.bridge, directory, issuer, request.app.state.flows)


def get_caller(
    token: Annotated[str | None, Depends(get_caller_token)],
    validator: Annotated[TokenValidator, Depends(get_validator)],
) -> User | Application:
    """The user or application the caller's session token was issued to."""
    if not token:
        raise InvalidTokenError("Authorization header missing", InvalidTokenError.MALFORMED)
    return validator.principal_for_token(token)


def rate_limited(limiter_name: str):
    """Dependency factory: apply the named limiter on app.state to the client IP."""

    def _check(request: Request) -> None:
        limiter = getattr(request.app.state, limiter_name)
        allowed, retry_after = limiter.check_and_consume(get_client_ip(request) or "unknown")
        if not allowed:
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail={"error": "rate_limited", "error_description": "Too many requests"},
                headers={"Retry-After": str(retry_after)},
            )

    return Depends(_check)
