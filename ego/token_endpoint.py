"""
Session token endpoints: issue/refresh (GET /oauth/token), application tokens
(POST /oauth/token, client_credentials), legacy provider exchange, verify, and the
verification key material (PEM and JWKS).
"""
import logging
from typing import Annotated

from fastapi import APIRouter, Cookie, Depends, Form, Header, HTTPException, Request
from fastapi.responses import PlainTextResponse, Response

from ego.audit import (
    EVENT_APP_TOKEN_ISSUED,
    EVENT_TOKEN_ISSUED,
    EVENT_TOKEN_REFRESHED,
    OUTCOME_FAIL,
    fingerprint,
    get_client_ip,
    log_audit,
)
from ego.client_auth import authenticate_application
from ego.config import JWT_DURATION_SECONDS, SESSION_COOKIE_NAME
from ego.dependencies import (
    get_caller_token,
    get_directory,
    get_issuer,
    get_keys,
    get_provider,
    get_sso,
    get_validator,
    rate_limited,
)
from ego.errors import EgoError, ForbiddenError, InvalidTokenError
from ego.keys import SigningKeyProvider
from ego.models import ProviderType
from ego.principals import PrincipalDirectory
from ego.sso import SsoOrchestrator
from ego.token_service import TokenIssuer, TokenValidator

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/oauth/token", response_class=PlainTextResponse, dependencies=[rate_limited("token_limiter")])
def get_token(
    request: Request,
    token: Annotated[str | None, Depends(get_caller_token)],
    issuer: Annotated[TokenIssuer, Depends(get_issuer)],
    validator: Annotated[TokenValidator, Depends(get_validator)],
    session_id: Annotated[str | None, Cookie(alias=SESSION_COOKIE_NAME)] = None,
):
    """
    With a session token: refresh it (current scopes, same expiry).
    Without one: hand over the token issued by the SSO callback that set the session cookie, once.
    """
    db = validator.directory.db
    if token:
        try:
            refreshed = issuer.refresh_session_token(token, validator)
        except InvalidTokenError:
            log_audit(db, EVENT_TOKEN_REFRESHED, ip=get_client_ip(request), outcome=OUTCOME_FAIL)
            raise
        log_audit(
            db,
            EVENT_TOKEN_REFRESHED,
            principal_id=validator.decode(refreshed)["sub"],
            ip=get_client_ip(request),
        )
        return PlainTextResponse(refreshed)

    picked_up = request.app.state.flows.take_session_token(session_id) if session_id else None
    if picked_up is None:
        raise InvalidTokenError("No session token or login session presented", InvalidTokenError.NOT_FOUND)
    logger.debug("Login session picked up, token %s", fingerprint(picked_up))
    response = PlainTextResponse(picked_up)
    response.delete_cookie(SESSION_COOKIE_NAME)
    return response


@router.post("/oauth/token", dependencies=[rate_limited("token_limiter")])
def post_token(
    request: Request,
    directory: Annotated[PrincipalDirectory, Depends(get_directory)],
    issuer: Annotated[TokenIssuer, Depends(get_issuer)],
    grant_type: str = Form(...),
    authorization: Annotated[str | None, Header()] = None,
):
    """client_credentials: an approved confidential application authenticates with Basic credentials."""
    if grant_type != "client_credentials":
        raise HTTPException(
            status_code=400,
            detail={"error": "unsupported_grant_type", "error_description": "Only client_credentials is supported"},
        )
    try:
        application = authenticate_application(directory, authorization)
        if not application.is_confidential:
            logger.info("client_credentials refused: client_id=%s has no secret", application.client_id)
            raise ForbiddenError("client_credentials requires a confidential application")
    except EgoError:
        log_audit(directory.db, EVENT_APP_TOKEN_ISSUED, ip=get_client_ip(request), outcome=OUTCOME_FAIL)
        raise
    access_token = issuer.issue_app_token(application)
    log_audit(
        directory.db,
        EVENT_APP_TOKEN_ISSUED,
        client_id=application.client_id,
        principal_id=application.id,
        ip=get_client_ip(request),
    )
    logger.info("client_credentials grant: token issued for client_id=%s", application.client_id)
    return {"access_token": access_token, "token_type": "Bearer", "expires_in": JWT_DURATION_SECONDS}


@router.get("/oauth/token/verify")
def verify_token(
    token: Annotated[str | None, Depends(get_caller_token)],
    validator: Annotated[TokenValidator, Depends(get_validator)],
):
    """200 with an empty body if the token verifies; 401 otherwise."""
    validator.decode(token or "")
    return Response(status_code=200)


@router.get("/oauth/token/public_key", response_class=PlainTextResponse)
def public_key(keys: Annotated[SigningKeyProvider, Depends(get_keys)]):
    return PlainTextResponse(keys.public_key_pem())


@router.get("/oauth/token/jwks")
def jwks(keys: Annotated[SigningKeyProvider, Depends(get_keys)]):
    """All verification keys (current and, during rotation, previous) as a JWK set."""
    return keys.jwks()


@router.get("/oauth/{provider}/token", response_class=PlainTextResponse)
def provider_token(
    request: Request,
    provider: Annotated[ProviderType, Depends(get_provider)],
    sso: Annotated[SsoOrchestrator, Depends(get_sso)],
    token: Annotated[str | None, Header()] = None,
):
    """Legacy exchange: the `token` header carries an access token already obtained from the provider."""
    user, session_token = sso.token_for_provider_access_token(provider, token)
    log_audit(sso.directory.db, EVENT_TOKEN_ISSUED, principal_id=user.id, ip=get_client_ip(request))
    return PlainTextResponse(session_token)
