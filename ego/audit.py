"""
Audit logging. Security-relevant events only; no tokens, secrets, emails or request bodies.
Log lines that must point at a token use `fingerprint`, never the token itself.
"""
import hashlib

from fastapi import Request
from sqlalchemy.orm import Session

from ego.models import AuditLog

EVENT_TOKEN_ISSUED = "token_issued"
EVENT_TOKEN_REFRESHED = "token_refreshed"
EVENT_APP_TOKEN_ISSUED = "app_token_issued"
EVENT_API_KEY_ISSUED = "api_key_issued"
EVENT_API_KEY_CHECKED = "api_key_checked"
EVENT_API_KEY_REVOKED = "api_key_revoked"
EVENT_SSO_LOGIN_OK = "sso_login_ok"
EVENT_SSO_LOGIN_FAIL = "sso_login_fail"

OUTCOME_SUCCESS = "success"
OUTCOME_FAIL = "fail"


def fingerprint(token: str | None) -> str:
    """Short SHA-256 prefix identifying a token in logs without revealing it."""
    if not token:
        return "<none>"
    return hashlib.sha256(token.encode("utf-8")).hexdigest()[:12]


def get_client_ip(request: Request | None) -> str | None:
    """Client IP if available (request.client.host). Forwarding headers are not trusted."""
    if request is None or request.client is None:
        return None
    return getattr(request.client, "host", None)


def log_audit(
    db: Session,
    event_type: str,
    *,
    client_id: str | None = None,
    principal_id: str | None = None,
    ip: str | None = None,
    outcome: str = OUTCOME_SUCCESS,
) -> None:
    """Append one audit record. Never log tokens or secrets."""
    db.add(
        AuditLog(
            event_type=event_type,
            client_id=client_id,
            principal_id=principal_id,
            ip=ip,
            outcome=outcome,
        )
    )
    db.commit()
