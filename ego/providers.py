"""
Identity provider bridge: exchange an authorization code for a provider access token, fetch
user info, and normalize it into one ExternalIdentity.

The handshake (authorize URL, code exchange, user-info call) is shared. Providers differ only in
how the verified email and names are extracted, which is one strategy function per provider:
Google and Facebook carry the email in user info; GitHub, LinkedIn and ORCID need a second call.
"""
import logging
from dataclasses import dataclass
from typing import Callable
from urllib.parse import urlencode

import httpx

from ego.config import PROVIDER_RETRIES, PROVIDER_TIMEOUT_SECONDS, PUBLIC_URL, provider_credentials
from ego.errors import InternalServerError, NoPrimaryEmailError, NotFoundError, ProviderTimeoutError
from ego.models import ProviderType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExternalIdentity:
    """Result of a completed provider handshake. `email` is always verified."""
    email: str
    provider: ProviderType
    subject: str | None = None
    given_name: str | None = None
    family_name: str | None = None


@dataclass(frozen=True)
class ProviderSettings:
    provider: ProviderType
    authorize_url: str
    token_url: str
    user_info_url: str
    scope: str
    client_id: str | None = None
    client_secret: str | None = None

    @property
    def enabled(self) -> bool:
        return bool(self.client_id)

    @property
    def callback_url(self) -> str:
        return f"{PUBLIC_URL}/oauth/login/{self.provider.value.lower()}"


_ENDPOINTS = {
    ProviderType.GOOGLE: (
        "https://accounts.google.com/o/oauth2/v2/auth",
        "https://oauth2.googleapis.com/token",
        "https://openidconnect.googleapis.com/v1/userinfo",
        "openid email profile",
    ),
    ProviderType.FACEBOOK: (
        "https://www.facebook.com/v18.0/dialog/oauth",
        "https://graph.facebook.com/v18.0/oauth/access_token",
        "https://graph.facebook.com/me?fields=id,email,first_name,last_name",
        "email public_profile",
    ),
    ProviderType.GITHUB: (
        "https://github.com/login/oauth/authorize",
        "https://github.com/login/oauth/access_token",
        "https://api.github.com/user",
        "read:user user:email",
    ),
    ProviderType.LINKEDIN: (
        "https://www.linkedin.com/oauth/v2/authorization",
        "https://www.linkedin.com/oauth/v2/accessToken",
        "https://api.linkedin.com/v2/me",
        "r_liteprofile r_emailaddress",
    ),
    ProviderType.ORCID: (
        "https://orcid.org/oauth/authorize",
        "https://orcid.org/oauth/token",
        "https://orcid.org/oauth/userinfo",
        "openid",
    ),
}

GITHUB_EMAILS_URL = "https://api.github.com/user/emails"
LINKEDIN_EMAIL_URL = "https://api.linkedin.com/v2/emailAddress?q=members&projection=(elements*(handle~))"
ORCID_EMAIL_URL = "https://pub.orcid.org/v3.0/{orcid}/email"


def default_provider_settings() -> dict[ProviderType, ProviderSettings]:
    """Settings for every provider, with credentials from the environment."""
    settings = {}
    for provider, (authorize_url, token_url, user_info_url, scope) in _ENDPOINTS.items():
        client_id, client_secret = provider_credentials(provider.value)
        settings[provider] = ProviderSettings(
            provider=provider,
            authorize_url=authorize_url,
            token_url=token_url,
            user_info_url=user_info_url,
            scope=scope,
            client_id=client_id,
            client_secret=client_secret,
        )
    return settings


def _bearer(access_token: str) -> dict:
    return {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}


def _split_name(name: str | None) -> tuple[str | None, str | None]:
    """'Ada Lovelace' -> ('Ada', 'Lovelace'); a single word is a given name only."""
    if not name or not name.strip():
        return None, None
    given, _, family = name.strip().partition(" ")
    return given, (family.strip() or None)


# Strategies: (http, access_token, user_info) -> ExternalIdentity

def standard_identity(provider: ProviderType) -> Callable[[httpx.Client, str, dict], ExternalIdentity]:
    """Email present in user info (Google: given_name/family_name; Facebook: first_name/last_name)."""

    def extract(http: httpx.Client, access_token: str, info: dict) -> ExternalIdentity:
        email = info.get("email")
        if not email or info.get("email_verified") is False:
            raise NoPrimaryEmailError(provider.value)
        return ExternalIdentity(
            email=email,
            provider=provider,
            subject=str(info.get("sub") or info.get("id") or "") or None,
            given_name=info.get("given_name") or info.get("first_name"),
            family_name=info.get("family_name") or info.get("last_name"),
        )

    return extract


def github_identity(http: httpx.Client, access_token: str, info: dict) -> ExternalIdentity:
    """GitHub keeps email out of /user; take the verified primary entry of /user/emails."""
    emails = _get_json(http, ProviderType.GITHUB, GITHUB_EMAILS_URL, access_token)
    if not isinstance(emails, list):
        raise InternalServerError("Unexpected GitHub emails response")
    primary = next(
        (e.get("email") for e in emails if isinstance(e, dict) and e.get("verified") and e.get("primary")),
        None,
    )
    if not primary:
        raise NoPrimaryEmailError(ProviderType.GITHUB.value)
    # GitHub allows the name field to be null
    given, family = _split_name(info.get("name"))
    return ExternalIdentity(
        email=primary,
        provider=ProviderType.GITHUB,
        subject=str(info["id"]) if info.get("id") is not None else None,
        given_name=given,
        family_name=family,
    )


def linkedin_identity(http: httpx.Client, access_token: str, info: dict) -> ExternalIdentity:
    """LinkedIn serves the primary email from a separate endpoint keyed by the access token."""
    payload = _get_json(http, ProviderType.LINKEDIN, LINKEDIN_EMAIL_URL, access_token)
    elements = payload.get("elements") if isinstance(payload, dict) else None
    if not isinstance(elements, list):
        raise InternalServerError("Unexpected LinkedIn email response")
    email = next(
        (
            e["handle~"].get("emailAddress")
            for e in elements
            if isinstance(e, dict) and isinstance(e.get("handle~"), dict)
        ),
        None,
    )
    if not email:
        raise NoPrimaryEmailError(ProviderType.LINKEDIN.value)
    return ExternalIdentity(
        email=email,
        provider=ProviderType.LINKEDIN,
        subject=info.get("id"),
        given_name=info.get("localizedFirstName"),
        family_name=info.get("localizedLastName"),
    )


def orcid_identity(http: httpx.Client, access_token: str, info: dict) -> ExternalIdentity:
    """ORCID email lookup is keyed by the ORCID iD found in user info (`sub`)."""
    orcid = info.get("sub")
    if not orcid:
        raise InternalServerError("ORCID user info has no subject")
    payload = _get_json(http, ProviderType.ORCID, ORCID_EMAIL_URL.format(orcid=orcid), access_token)
    entries = payload.get("email") if isinstance(payload, dict) else None
    if not isinstance(entries, list):
        raise InternalServerError("Unexpected ORCID email response")
    email = next(
        (
            e.get("email")
            for e in entries
            if isinstance(e, dict) and e.get("primary") and e.get("verified") is not False
        ),
        None,
    )
    if not email:
        raise NoPrimaryEmailError(ProviderType.ORCID.value)
    return ExternalIdentity(
        email=email,
        provider=ProviderType.ORCID,
        subject=orcid,
        given_name=info.get("given_name"),
        family_name=info.get("family_name"),
    )


IDENTITY_STRATEGIES: dict[ProviderType, Callable[[httpx.Client, str, dict], ExternalIdentity]] = {
    ProviderType.GOOGLE: standard_identity(ProviderType.GOOGLE),
    ProviderType.FACEBOOK: standard_identity(ProviderType.FACEBOOK),
    ProviderType.GITHUB: github_identity,
    ProviderType.LINKEDIN: linkedin_identity,
    ProviderType.ORCID: orcid_identity,
}


def _get_json(http: httpx.Client, provider: ProviderType, url: str, access_token: str):
    try:
        r = http.get(url, headers=_bearer(access_token))
        r.raise_for_status()
        return r.json()
    except httpx.TimeoutException as e:
        logger.warning("%s call to %s timed out", provider.value, url.split("?")[0])
        raise ProviderTimeoutError(provider.value) from e
    except (httpx.HTTPError, ValueError) as e:
        logger.error("%s call to %s failed: %s", provider.value, url.split("?")[0], e)
        raise InternalServerError(f"Could not fetch user details from {provider.value}") from e


def build_http_client() -> httpx.Client:
    """Client with a bounded timeout; connection failures are retried by the transport."""
    return httpx.Client(
        timeout=PROVIDER_TIMEOUT_SECONDS,
        transport=httpx.HTTPTransport(retries=PROVIDER_RETRIES),
    )


class OAuthIdentityBridge:
    """Runs the provider handshake and applies the provider's identity strategy."""

    def __init__(
        self,
        settings: dict[ProviderType, ProviderSettings] | None = None,
        http: httpx.Client | None = None,
    ):
        self.settings = settings if settings is not None else default_provider_settings()
        self.http = http or build_http_client()

    def provider_settings(self, provider: ProviderType) -> ProviderSettings:
        settings = self.settings.get(provider)
        if settings is None or not settings.enabled:
            raise NotFoundError(f"Provider {provider.value} is not configured")
        return settings

    def authorization_url(self, provider: ProviderType, state: str) -> str:
        settings = self.provider_settings(provider)
        params = {
            "response_type": "code",
            "client_id": settings.client_id,
            "redirect_uri": settings.callback_url,
            "scope": settings.scope,
            "state": state,
        }
        return f"{settings.authorize_url}?{urlencode(params)}"

    def exchange_code(self, provider: ProviderType, code: str) -> str:
        """Trade the authorization code for a provider access token."""
        settings = self.provider_settings(provider)
        try:
            r = self.http.post(
                settings.token_url,
                data={
                    "grant_type": "authorization_code",
                    "code": code,
                    "redirect_uri": settings.callback_url,
                    "client_id": settings.client_id,
                    "client_secret": settings.client_secret or "",
                },
                headers={"Accept": "application/json"},
            )
            r.raise_for_status()
            data = r.json()
        except httpx.TimeoutException as e:
            logger.warning("%s token exchange timed out", provider.value)
            raise ProviderTimeoutError(provider.value) from e
        except (httpx.HTTPError, ValueError) as e:
            logger.error("%s token exchange failed: %s", provider.value, e)
            raise InternalServerError(f"Token exchange with {provider.value} failed") from e
        access_token = data.get("access_token") if isinstance(data, dict) else None
        if not access_token:
            raise InternalServerError(f"{provider.value} token response has no access_token")
        return access_token

    def fetch_identity(self, provider: ProviderType, access_token: str) -> ExternalIdentity:
        """User info for an access token already obtained from the provider."""
        settings = self.provider_settings(provider)
        info = _get_json(self.http, provider, settings.user_info_url, access_token)
        if not isinstance(info, dict) or "error" in info:
            raise InternalServerError(f"Unexpected user info response from {provider.value}")
        identity = IDENTITY_STRATEGIES[provider](self.http, access_token, info)
        logger.debug("%s identity resolved for subject=%s", provider.value, identity.subject)
        return identity

    def identity_for_code(self, provider: ProviderType, code: str) -> ExternalIdentity:
        return self.fetch_identity(provider, self.exchange_code(provider, code))
