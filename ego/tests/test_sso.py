"""
Tests for the SSO orchestrator: redirect pinning, success path, and error redirects.
"""
from urllib.parse import parse_qs, urlparse

import pytest

from ego.errors import ForbiddenError, InternalServerError, NotFoundError
from ego.models import ProviderType
from ego.providers import GITHUB_EMAILS_URL
from ego.sso import SsoOrchestrator, SsoState, with_query
from ego.token_service import TokenIssuer, TokenValidator

# Registered on every application the conftest factory creates
APP_REDIRECT_URI = "https://app.example/callback"
APP_ERROR_REDIRECT_URI = "https://app.example/login-error"


@pytest.fixture
def sso(bridge, directory, keys, flows):
    return SsoOrchestrator(bridge, directory, TokenIssuer(keys), flows)


@pytest.fixture
def application(make):
    application = make.application()
    assert application.get_redirect_uris_list() == [APP_REDIRECT_URI]
    assert application.error_redirect_uri == APP_ERROR_REDIRECT_URI
    return application


def state_of(url: str) -> str:
    return parse_qs(urlparse(url).query)["state"][0]


def github_ok(bridge, fake_provider, email="octo@example.org"):
    github = bridge.provider_settings(ProviderType.GITHUB)
    fake_provider.reply(github.token_url, {"access_token": "gh-at"})
    fake_provider.reply(github.user_info_url, {"id": 1, "name": "Octo Cat"})
    fake_provider.reply(GITHUB_EMAILS_URL, [{"email": email, "verified": True, "primary": True}])


def test_with_query():
    assert with_query("https://a/b", {"x": "1"}) == "https://a/b?x=1"
    assert with_query("https://a/b?y=2", {"x": "1 2"}) == "https://a/b?y=2&x=1+2"


def test_start_returns_provider_url(sso, application):
    url = sso.start(ProviderType.GITHUB, application.client_id, APP_REDIRECT_URI)
    assert url.startswith("https://github.com/login/oauth/authorize?")
    assert state_of(url)


@pytest.mark.parametrize("redirect_uri", [None, "", "https://evil.example/cb"])
def test_start_rejects_unregistered_redirect(sso, application, redirect_uri):
    with pytest.raises(ForbiddenError):
        sso.start(ProviderType.GITHUB, application.client_id, redirect_uri)


def test_start_rejects_mismatched_error_redirect(sso, application):
    with pytest.raises(ForbiddenError):
        sso.start(ProviderType.GITHUB, application.client_id, APP_REDIRECT_URI, "https://evil.example/err")


def test_start_unknown_client(sso):
    with pytest.raises(NotFoundError):
        sso.start(ProviderType.GITHUB, "no-such-client", APP_REDIRECT_URI)


def test_success_provisions_user_and_issues_token(sso, application, bridge, fake_provider, keys, directory, flows):
    github_ok(bridge, fake_provider, "new-octo@example.org")
    state = state_of(sso.start(ProviderType.GITHUB, application.client_id, APP_REDIRECT_URI))

    result = sso.complete(ProviderType.GITHUB, state, code="code-1")

    assert result.succeeded
    assert result.redirect_url == APP_REDIRECT_URI
    assert result.trail == [
        SsoState.INITIATED,
        SsoState.PROVIDER_REDIRECT,
        SsoState.CALLBACK_RECEIVED,
        SsoState.IDENTITY_RESOLVED,
        SsoState.PRINCIPAL_MATCHED,
        SsoState.TOKEN_ISSUED,
        SsoState.SUCCESS_REDIRECT,
    ]
    user = directory.get_user_by_name("new-octo@example.org")
    assert user.provider_type == ProviderType.GITHUB
    assert user.last_login is not None
    assert (user.first_name, user.last_name) == ("Octo", "Cat")
    assert TokenValidator(keys, directory).user_for_token(result.token).id == user.id
    assert flows.take_session_token(result.session_id) == result.token
    assert flows.take_session_token(result.session_id) is None


def test_existing_user_is_matched_not_duplicated(sso, application, bridge, fake_provider, make):
    existing = make.user()
    github_ok(bridge, fake_provider, existing.name)
    state = state_of(sso.start(ProviderType.GITHUB, application.client_id, APP_REDIRECT_URI))
    result = sso.complete(ProviderType.GITHUB, state, code="code")
    assert result.user.id == existing.id


def test_github_without_primary_email_redirects_with_error(sso, application, bridge, fake_provider):
    github = bridge.provider_settings(ProviderType.GITHUB)
    fake_provider.reply(github.token_url, {"access_token": "gh-at"})
    fake_provider.reply(github.user_info_url, {"id": 2, "name": None})
    fake_provider.reply(GITHUB_EMAILS_URL, [{"email": "x@example.org", "verified": True, "primary": False}])
    state = state_of(sso.start(ProviderType.GITHUB, application.client_id, APP_REDIRECT_URI))

    result = sso.complete(ProviderType.GITHUB, state, code="code")

    assert not result.succeeded
    assert result.trail[-2:] == [SsoState.IDENTITY_FAILED, SsoState.ERROR_REDIRECT]
    assert result.token is None
    parsed = urlparse(result.redirect_url)
    assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == APP_ERROR_REDIRECT_URI
    assert parse_qs(parsed.query) == {
        "error_code": ["403"],
        "error_type": ["No primary email found"],
        "provider_type": ["GITHUB"],
    }


@pytest.mark.parametrize("provider_error", ["access_denied", "user_cancelled_login", "user_cancelled_authorize"])
def test_denied_consent_redirects_with_access_denied(sso, application, provider_error):
    state = state_of(sso.start(ProviderType.LINKEDIN, application.client_id, APP_REDIRECT_URI))
    result = sso.complete(ProviderType.LINKEDIN, state, error=provider_error)
    query = parse_qs(urlparse(result.redirect_url).query)
    assert query["error_type"] == ["access_denied"]
    assert query["error_code"] == ["403"]
    assert result.redirect_url.startswith(APP_ERROR_REDIRECT_URI)


def test_provider_timeout_redirects(sso, application, bridge, fake_provider):
    fake_provider.time_out(bridge.provider_settings(ProviderType.GOOGLE).token_url)
    state = state_of(sso.start(ProviderType.GOOGLE, application.client_id, APP_REDIRECT_URI))
    result = sso.complete(ProviderType.GOOGLE, state, code="code")
    assert not result.succeeded
    assert parse_qs(urlparse(result.redirect_url).query)["error_type"] == ["provider_timeout"]


def test_other_provider_error_is_not_redirected(sso, application):
    state = state_of(sso.start(ProviderType.GOOGLE, application.client_id, APP_REDIRECT_URI))
    with pytest.raises(InternalServerError):
        sso.complete(ProviderType.GOOGLE, state, error="server_error")


def test_provider_failure_is_not_redirected(sso, application, bridge, fake_provider):
    fake_provider.reply(bridge.provider_settings(ProviderType.GOOGLE).token_url, {"error": "bad"}, status=500)
    state = state_of(sso.start(ProviderType.GOOGLE, application.client_id, APP_REDIRECT_URI))
    with pytest.raises(InternalServerError):
        sso.complete(ProviderType.GOOGLE, state, code="code")


def test_unknown_or_reused_state(sso, application, bridge, fake_provider):
    github_ok(bridge, fake_provider)
    with pytest.raises(ForbiddenError):
        sso.complete(ProviderType.GITHUB, "never-issued", code="code")
    state = state_of(sso.start(ProviderType.GITHUB, application.client_id, APP_REDIRECT_URI))
    sso.complete(ProviderType.GITHUB, state, code="code")
    with pytest.raises(ForbiddenError):
        sso.complete(ProviderType.GITHUB, state, code="code")


def test_state_bound_to_provider(sso, application):
    state = state_of(sso.start(ProviderType.GITHUB, application.client_id, APP_REDIRECT_URI))
    with pytest.raises(ForbiddenError):
        sso.complete(ProviderType.GOOGLE, state, code="code")


def test_legacy_exchange(sso, bridge, fake_provider):
    github_ok(bridge, fake_provider, "legacy@example.org")
    user, token = sso.token_for_provider_access_token(ProviderType.GITHUB, "gh-at")
    assert user.name == "legacy@example.org"
    assert token
    with pytest.raises(ForbiddenError):
        sso.token_for_provider_access_token(ProviderType.GITHUB, None)
