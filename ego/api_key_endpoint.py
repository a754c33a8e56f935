"""
API key endpoints: issue, check (for resource servers, with Basic client credentials),
revoke, list a user's active keys, and a user's current scopes.
"""
import logging
from typing import Annotated

from fastapi import APIRouter, Body, Depends, Form, Header, Query, Request

from ego.api_key_service import ApiKeyService, frozen_scopes
from ego.audit import (
    EVENT_API_KEY_CHECKED,
    EVENT_API_KEY_ISSUED,
    EVENT_API_KEY_REVOKED,
    OUTCOME_FAIL,
    get_client_ip,
    log_audit,
)
from ego.client_auth import authenticate_application
from ego.dependencies import get_api_key_service, get_caller, rate_limited
from ego.errors import EgoError
from ego.models import ApiKey, Application, User
from ego.scopes import scope_names

logger = logging.getLogger(__name__)
router = APIRouter()


def _api_key_response(api_key: ApiKey) -> dict:
    return {
        "name": api_key.token,
        "scope": scope_names(frozen_scopes(api_key)),
        "issueDate": api_key.issue_date.isoformat(),
        "expiryDate": api_key.expiry_date.isoformat(),
        "isRevoked": api_key.revoked,
        "description": api_key.description,
    }


@router.post("/o/api_key")
def issue_api_key(
    request: Request,
    caller: Annotated[User | Application, Depends(get_caller)],
    service: Annotated[ApiKeyService, Depends(get_api_key_service)],
    user_id: Annotated[str, Body(alias="userId")],
    scope_names_requested: Annotated[list[str], Body(alias="scopeNames")],
    description: Annotated[str | None, Body()] = None,
):
    service.require_owner_access(caller, user_id)
    api_key = service.issue_api_key(user_id, scope_names_requested, description)
    log_audit(service.directory.db, EVENT_API_KEY_ISSUED, principal_id=user_id, ip=get_client_ip(request))
    return _api_key_response(api_key)


@router.post("/o/api_key/check", dependencies=[rate_limited("check_limiter")])
def check_api_key(
    request: Request,
    service: Annotated[ApiKeyService, Depends(get_api_key_service)],
    token: str | None = Form(None),
    authorization: Annotated[str | None, Header()] = None,
):
    """Key validity and its scopes, narrowed by what the owner holds now."""
    try:
        result = service.check_api_key(authorization, token)
    except EgoError:
        log_audit(service.directory.db, EVENT_API_KEY_CHECKED, ip=get_client_ip(request), outcome=OUTCOME_FAIL)
        raise
    log_audit(service.directory.db, EVENT_API_KEY_CHECKED, client_id=result.client_id, ip=get_client_ip(request))
    return {
        "user_name": result.user_name,
        "client_id": result.client_id,
        "exp": result.exp,
        "scope": result.scopes,
    }


@router.post("/o/api_key/revoke")
def revoke_api_key(
    request: Request,
    caller: Annotated[User | Application, Depends(get_caller)],
    service: Annotated[ApiKeyService, Depends(get_api_key_service)],
    token: str = Form(...),
):
    service.revoke_as(caller, token)
    log_audit(service.directory.db, EVENT_API_KEY_REVOKED, principal_id=caller.id, ip=get_client_ip(request))
    return {}


@router.get("/o/api_key")
def list_api_keys(
    caller: Annotated[User | Application, Depends(get_caller)],
    service: Annotated[ApiKeyService, Depends(get_api_key_service)],
    user_id: str = Query(...),
):
    service.require_owner_access(caller, user_id)
    keys = service.list_active_api_keys(user_id)
    return {
        "count": len(keys),
        "resultSet": [
            {"apiKey": k.api_key, "scope": k.scopes, "exp": k.exp, "description": k.description} for k in keys
        ],
    }


@router.get("/o/scopes")
def user_scopes(
    service: Annotated[ApiKeyService, Depends(get_api_key_service)],
    userName: str = Query(...),
    authorization: Annotated[str | None, Header()] = None,
):
    authenticate_application(service.directory, authorization)
    return {"scopes": service.user_scope_names(userName)}
