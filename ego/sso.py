"""
Single sign-on through external identity providers.

Per request the flow moves INITIATED -> PROVIDER_REDIRECT -> CALLBACK_RECEIVED, then either
IDENTITY_RESOLVED -> PRINCIPAL_MATCHED -> TOKEN_ISSUED -> SUCCESS_REDIRECT
or IDENTITY_FAILED -> ERROR_REDIRECT.

Redirect targets are pinned to the client application when the flow starts and must be registered
for it. Failures the browser can act on (no primary email, consent denied, provider timeout) become
error redirects; anything else is raised.
"""
import enum
import logging
from dataclasses import dataclass, field
from urllib.parse import urlencode

from ego.errors import (
    ForbiddenError,
    InternalServerError,
    NoPrimaryEmailError,
    ProviderTimeoutError,
    UserDeniedAuthorizationError,
)
from ego.flow_store import FlowStore, PendingFlow
from ego.models import Application, ProviderType, User
from ego.principals import PrincipalDirectory
from ego.providers import OAuthIdentityBridge
from ego.token_service import TokenIssuer

logger = logging.getLogger(__name__)

# Providers word user-cancelled consent differently (LinkedIn uses user_cancelled_*)
DENIAL_ERRORS = {"access_denied", "user_cancelled_login", "user_cancelled_authorize"}

ERROR_TYPE_ACCESS_DENIED = "access_denied"
ERROR_TYPE_PROVIDER_TIMEOUT = "provider_timeout"


class SsoState(str, enum.Enum):
    INITIATED = "INITIATED"
    PROVIDER_REDIRECT = "PROVIDER_REDIRECT"
    CALLBACK_RECEIVED = "CALLBACK_RECEIVED"
    IDENTITY_RESOLVED = "IDENTITY_RESOLVED"
    PRINCIPAL_MATCHED = "PRINCIPAL_MATCHED"
    TOKEN_ISSUED = "TOKEN_ISSUED"
    SUCCESS_REDIRECT = "SUCCESS_REDIRECT"
    IDENTITY_FAILED = "IDENTITY_FAILED"
    ERROR_REDIRECT = "ERROR_REDIRECT"


@dataclass
class SsoResult:
    redirect_url: str
    client_id: str
    trail: list[SsoState] = field(default_factory=list)
    token: str | None = None
    # One-time handle the browser trades for `token` at GET /oauth/token
    session_id: str | None = None
    user: User | None = None
    error_type: str | None = None

    @property
    def state(self) -> SsoState:
        return self.trail[-1]

    @property
    def succeeded(self) -> bool:
        return self.state == SsoState.SUCCESS_REDIRECT


def with_query(url: str, params: dict) -> str:
    """Append query parameters to a URL that may already have some."""
    if not params:
        return url
    return f"{url}{'&' if '?' in url else '?'}{urlencode(params)}"


def pinned_redirect_uri(application: Application, redirect_uri: str | None) -> str:
    """The success target must be one of the application's registered redirect URIs."""
    if not redirect_uri or not application.redirect_uri_allowed(redirect_uri):
        raise ForbiddenError("Incorrect redirect uri for ego client")
    return redirect_uri


def pinned_error_redirect_uri(application: Application, error_redirect_uri: str | None) -> str:
    """Errors go to the application's registered error redirect URI; a different request is refused."""
    registered = application.error_redirect_uri
    if not registered:
        raise ForbiddenError("Application has no registered error redirect uri")
    if error_redirect_uri and error_redirect_uri != registered:
        raise ForbiddenError("Incorrect error redirect uri for ego client")
    return registered


class SsoOrchestrator:
    def __init__(
        self,
        bridge: OAuthIdentityBridge,
        directory: PrincipalDirectory,
        issuer: TokenIssuer,
        flows: FlowStore,
    ):
        self.bridge = bridge
        self.directory = directory
        self.issuer = issuer
        self.flows = flows

    def start(
        self,
        provider: ProviderType,
        client_id: str | None,
        redirect_uri: str | None,
        error_redirect_uri: str | None = None,
    ) -> str:
        """Validate and pin the client's redirect targets, then return the provider's authorize URL."""
        if not client_id:
            raise ForbiddenError("client_id is required")
        application = self.directory.get_application_by_client_id(client_id)
        flow = PendingFlow(
            provider=provider,
            client_id=application.client_id,
            redirect_uri=pinned_redirect_uri(application, redirect_uri),
            error_redirect_uri=pinned_error_redirect_uri(application, error_redirect_uri),
        )
        state = self.flows.start_flow(flow)
        logger.debug("SSO %s: %s -> %s for client_id=%s", provider.value, SsoState.INITIATED.value,
                     SsoState.PROVIDER_REDIRECT.value, application.client_id)
        return self.bridge.authorization_url(provider, state)

    def complete(
        self,
        provider: ProviderType,
        state: str | None,
        code: str | None = None,
        error: str | None = None,
    ) -> SsoResult:
        """Handle the provider callback and decide where the browser goes next."""
        flow = self.flows.take_flow(state) if state else None
        if flow is None or flow.provider != provider:
            raise ForbiddenError("Unknown or expired SSO state")
        trail = [SsoState.INITIATED, SsoState.PROVIDER_REDIRECT, SsoState.CALLBACK_RECEIVED]

        try:
            if error:
                if error in DENIAL_ERRORS:
                    raise UserDeniedAuthorizationError(provider.value, error)
                raise InternalServerError(f"Invalid error from {provider.value}: {error}")
            if not code:
                raise InternalServerError(f"{provider.value} callback carried no code")
            identity = self.bridge.identity_for_code(provider, code)
        except NoPrimaryEmailError as e:
            return self._error(flow, trail, {"error_code": "403", "error_type": e.message,
                                             "provider_type": provider.value})
        except UserDeniedAuthorizationError:
            # Fixed error type whatever the provider called it
            return self._error(flow, trail, {"error_code": "403", "error_type": ERROR_TYPE_ACCESS_DENIED})
        except ProviderTimeoutError:
            return self._error(flow, trail, {"error_code": "504", "error_type": ERROR_TYPE_PROVIDER_TIMEOUT,
                                             "provider_type": provider.value})
        trail.append(SsoState.IDENTITY_RESOLVED)

        user = self.directory.user_for_identity(identity)
        trail.append(SsoState.PRINCIPAL_MATCHED)

        token = self.issuer.issue_user_token(user)
        session_id = self.flows.open_session(token)
        trail.append(SsoState.TOKEN_ISSUED)

        trail.append(SsoState.SUCCESS_REDIRECT)
        logger.info("SSO %s login for user id=%s via client_id=%s", provider.value, user.id, flow.client_id)
        return SsoResult(
            redirect_url=flow.redirect_uri,
            client_id=flow.client_id,
            trail=trail,
            token=token,
            session_id=session_id,
            user=user,
        )

    def _error(self, flow: PendingFlow, trail: list[SsoState], params: dict) -> SsoResult:
        trail.extend([SsoState.IDENTITY_FAILED, SsoState.ERROR_REDIRECT])
        logger.info("SSO %s failed for client_id=%s: %s", flow.provider.value, flow.client_id, params["error_type"])
        return SsoResult(
            redirect_url=with_query(flow.error_redirect_uri, params),
            client_id=flow.client_id,
            trail=trail,
            error_type=params["error_type"],
        )

    def token_for_provider_access_token(self, provider: ProviderType, access_token: str | None) -> tuple[User, str]:
        """
        Legacy exchange: the caller already holds a provider access token.
        Identity failures are raised rather than redirected.
        """
        if not access_token:
            raise ForbiddenError("Provider token is required")
        identity = self.bridge.fetch_identity(provider, access_token)
        user = self.directory.user_for_identity(identity)
        return user, self.issuer.issue_user_token(user)
