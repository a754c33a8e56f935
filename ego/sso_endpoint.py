"""
GET /oauth/login/{provider}: starts the provider handshake and receives its callback.
A request carrying `state`, `code` or `error` is a callback; anything else starts a flow.
"""
import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Request
from fastapi.responses import RedirectResponse

from ego.audit import EVENT_SSO_LOGIN_FAIL, EVENT_SSO_LOGIN_OK, OUTCOME_FAIL, get_client_ip, log_audit
from ego.config import SESSION_COOKIE_NAME, SSO_FLOW_TTL_SECONDS
from ego.dependencies import get_provider, get_sso
from ego.models import ProviderType
from ego.sso import SsoOrchestrator

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/oauth/login/{provider}")
def login(
    request: Request,
    provider: Annotated[ProviderType, Depends(get_provider)],
    sso: Annotated[SsoOrchestrator, Depends(get_sso)],
    client_id: str | None = None,
    redirect_uri: str | None = None,
    error_redirect_uri: str | None = None,
    state: str | None = None,
    code: str | None = None,
    error: str | None = None,
):
    if state is None and code is None and error is None:
        url = sso.start(provider, client_id, redirect_uri, error_redirect_uri)
        return RedirectResponse(url=url, status_code=302)

    result = sso.complete(provider, state, code=code, error=error)
    db = sso.directory.db
    if not result.succeeded:
        log_audit(
            db,
            EVENT_SSO_LOGIN_FAIL,
            client_id=result.client_id,
            ip=get_client_ip(request),
            outcome=OUTCOME_FAIL,
        )
        return RedirectResponse(url=result.redirect_url, status_code=302)

    log_audit(
        db,
        EVENT_SSO_LOGIN_OK,
        client_id=result.client_id,
        principal_id=result.user.id,
        ip=get_client_ip(request),
    )
    response = RedirectResponse(url=result.redirect_url, status_code=302)
    response.set_cookie(
        SESSION_COOKIE_NAME,
        result.session_id,
        max_age=SSO_FLOW_TTL_SECONDS,
        httponly=True,
        samesite="lax",
    )
    return response
