"""
Application authentication with Basic credentials: Authorization: Basic base64(client_id:client_secret).
Used by the API key check, user scopes and client_credentials endpoints.
"""
import base64
import binascii
import logging

from ego.errors import ForbiddenError, NotFoundError
from ego.models import Application, StatusType
from ego.principals import PrincipalDirectory
from ego.seed import verify_password

logger = logging.getLogger(__name__)


def parse_basic(header_value: str | None) -> tuple[str, str] | None:
    """Parse 'Basic <base64(client_id:client_secret)>'. Returns (client_id, client_secret) or None."""
    if not header_value or not header_value.strip().lower().startswith("basic "):
        return None
    try:
        encoded = header_value.strip()[6:].strip()
        decoded = base64.b64decode(encoded, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    if ":" not in decoded:
        return None
    client_id, _, client_secret = decoded.partition(":")
    return (client_id.strip(), client_secret)


def authenticate_application(directory: PrincipalDirectory, authorization: str | None) -> Application:
    """
    Resolve the calling application from Basic credentials and verify its secret.
    Unknown clients, wrong secrets and unapproved applications are all rejected the same way.
    """
    credentials = parse_basic(authorization)
    if credentials is None:
        raise ForbiddenError("Basic client credentials are required")
    client_id, client_secret = credentials
    try:
        application = directory.get_application_by_client_id(client_id)
    except NotFoundError:
        logger.info("Client authentication failed: unknown client_id=%s", client_id)
        raise ForbiddenError("Invalid client credentials")
    if application.is_confidential and not verify_password(client_secret, application.client_secret_hash):
        logger.info("Client authentication failed: bad secret for client_id=%s", client_id)
        raise ForbiddenError("Invalid client credentials")
    if application.status != StatusType.APPROVED:
        logger.info("Client authentication failed: client_id=%s is %s", client_id, application.status.value)
        raise ForbiddenError("Application is not approved")
    return application
