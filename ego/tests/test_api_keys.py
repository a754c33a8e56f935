"""
Tests for API key issuance, check, revoke and listing (service level).
"""
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from ego.api_key_service import ApiKeyService
from ego.errors import ForbiddenError, InvalidScopeError, InvalidTokenError, NotFoundError
from ego.models import AccessLevel, ApiKey, ApplicationType, StatusType, UserType
from ego.revocation_store import SqlRevocationStore


@pytest.fixture
def service(db, directory):
    return ApiKeyService(directory, SqlRevocationStore(db))


@pytest.fixture
def study(make):
    """A user holding READ on one policy and WRITE on another."""
    user = make.user()
    study_a = make.policy()
    study_b = make.policy()
    make.grant(user, study_a, AccessLevel.READ)
    make.grant(user, study_b, AccessLevel.WRITE)
    return user, study_a, study_b


def test_issue_within_entitlement(service, study):
    user, study_a, study_b = study
    api_key = service.issue_api_key(user.id, [f"{study_a.name}.READ", f"{study_b.name}.READ"], "ci key")
    assert api_key.owner_id == user.id
    assert api_key.revoked is False
    assert api_key.description == "ci key"
    assert len(api_key.token) == 36
    assert {(s.policy_id, s.access_level) for s in api_key.scopes} == {
        (study_a.id, AccessLevel.READ),
        (study_b.id, AccessLevel.READ),
    }


def test_issue_collapses_scopes_on_same_policy(service, study):
    user, _, study_b = study
    api_key = service.issue_api_key(user.id, [f"{study_b.name}.READ", f"{study_b.name}.WRITE"])
    assert [(s.policy_id, s.access_level) for s in api_key.scopes] == [(study_b.id, AccessLevel.WRITE)]


def test_issue_beyond_entitlement_persists_nothing(db, service, study):
    user, study_a, _ = study
    before = db.scalar(select(func.count()).select_from(ApiKey))
    with pytest.raises(InvalidScopeError) as exc:
        service.issue_api_key(user.id, [f"{study_a.name}.WRITE"])
    assert exc.value.missing_scopes == [f"{study_a.name}.WRITE"]
    assert db.scalar(select(func.count()).select_from(ApiKey)) == before


def test_issue_for_unknown_user(service):
    with pytest.raises(NotFoundError):
        service.issue_api_key("no-such-user", ["x.READ"])


def test_issue_with_unknown_policy(service, study):
    user, _, _ = study
    with pytest.raises(NotFoundError):
        service.issue_api_key(user.id, ["NoSuchPolicy.READ"])


def test_issue_with_no_scopes(service, study):
    user, _, _ = study
    with pytest.raises(InvalidScopeError):
        service.issue_api_key(user.id, [])


def test_check_returns_key_scopes(service, study, make, basic_auth):
    user, study_a, study_b = study
    application = make.application()
    api_key = service.issue_api_key(user.id, [f"{study_a.name}.READ", f"{study_b.name}.WRITE"])

    result = service.check_api_key(basic_auth(application.client_id)["Authorization"], api_key.token)
    assert result.user_name == user.name
    assert result.client_id == application.client_id
    assert result.scopes == sorted([f"{study_a.name}.READ", f"{study_b.name}.WRITE"])
    assert 0 < result.exp <= 365 * 24 * 3600


def test_check_masks_scopes_denied_after_issuance(service, study, make, basic_auth):
    user, study_a, study_b = study
    application = make.application()
    api_key = service.issue_api_key(user.id, [f"{study_a.name}.READ", f"{study_b.name}.WRITE"])

    group = make.group()
    make.join(user, group)
    make.grant(group, study_b, AccessLevel.DENY)

    result = service.check_api_key(basic_auth(application.client_id)["Authorization"], api_key.token)
    assert result.scopes == [f"{study_a.name}.READ"]


def test_check_requires_valid_client_credentials(service, study, make, basic_auth):
    user, study_a, _ = study
    application = make.application()
    api_key = service.issue_api_key(user.id, [f"{study_a.name}.READ"])
    with pytest.raises(ForbiddenError):
        service.check_api_key(basic_auth(application.client_id, "wrong")["Authorization"], api_key.token)
    with pytest.raises(ForbiddenError):
        service.check_api_key(None, api_key.token)


def test_check_rejects_unapproved_application(service, study, make, basic_auth):
    user, study_a, _ = study
    application = make.application(status=StatusType.DISABLED)
    api_key = service.issue_api_key(user.id, [f"{study_a.name}.READ"])
    with pytest.raises(ForbiddenError):
        service.check_api_key(basic_auth(application.client_id)["Authorization"], api_key.token)


def test_check_unknown_revoked_and_expired(db, service, study, make, basic_auth):
    user, study_a, _ = study
    auth = basic_auth(make.application().client_id)["Authorization"]

    with pytest.raises(InvalidTokenError) as exc:
        service.check_api_key(auth, "00000000-0000-0000-0000-000000000000")
    assert exc.value.reason == InvalidTokenError.NOT_FOUND

    revoked = service.issue_api_key(user.id, [f"{study_a.name}.READ"])
    service.revoke(revoked.token)
    with pytest.raises(InvalidTokenError) as exc:
        service.check_api_key(auth, revoked.token)
    assert exc.value.reason == InvalidTokenError.REVOKED

    expired = service.issue_api_key(user.id, [f"{study_a.name}.READ"])
    expired.expiry_date = datetime.now(timezone.utc) - timedelta(seconds=1)
    db.commit()
    with pytest.raises(InvalidTokenError) as exc:
        service.check_api_key(auth, expired.token)
    assert exc.value.reason == InvalidTokenError.EXPIRED


def test_revoke_is_one_way_and_happens_once(service, study):
    user, study_a, _ = study
    api_key = service.issue_api_key(user.id, [f"{study_a.name}.READ"])
    service.revoke(api_key.token)
    with pytest.raises(InvalidTokenError) as exc:
        service.revoke(api_key.token)
    assert exc.value.reason == InvalidTokenError.REVOKED


@pytest.mark.parametrize("token", ["", "   ", "x" * 2049])
def test_revoke_rejects_malformed_input(service, token):
    with pytest.raises(InvalidTokenError) as exc:
        service.revoke(token)
    assert exc.value.reason == InvalidTokenError.MALFORMED


def test_revoke_unknown_key(service):
    with pytest.raises(InvalidTokenError) as exc:
        service.revoke("not-a-key")
    assert exc.value.reason == InvalidTokenError.NOT_FOUND


def test_revoke_as_owner_admin_and_stranger(service, study, make):
    user, study_a, _ = study
    stranger = make.user()
    admin = make.user(type=UserType.ADMIN)

    first = service.issue_api_key(user.id, [f"{study_a.name}.READ"])
    with pytest.raises(ForbiddenError):
        service.revoke_as(stranger, first.token)
    service.revoke_as(user, first.token)

    second = service.issue_api_key(user.id, [f"{study_a.name}.READ"])
    service.revoke_as(admin, second.token)


def test_revoke_as_application(service, study, make):
    user, study_a, _ = study
    api_key = service.issue_api_key(user.id, [f"{study_a.name}.READ"])
    with pytest.raises(ForbiddenError):
        service.revoke_as(make.application(), api_key.token)
    service.revoke_as(make.application(type=ApplicationType.ADMIN), api_key.token)


def test_inactive_admin_cannot_revoke_others_keys(service, study, make):
    user, study_a, _ = study
    admin = make.user(type=UserType.ADMIN, status=StatusType.DISABLED)
    api_key = service.issue_api_key(user.id, [f"{study_a.name}.READ"])
    with pytest.raises(ForbiddenError):
        service.revoke_as(admin, api_key.token)


def test_owner_access(service, make):
    user = make.user()
    service.require_owner_access(user, user.id)
    service.require_owner_access(make.user(type=UserType.ADMIN), user.id)
    service.require_owner_access(make.application(type=ApplicationType.ADMIN), user.id)
    with pytest.raises(ForbiddenError):
        service.require_owner_access(make.user(), user.id)
    with pytest.raises(ForbiddenError):
        service.require_owner_access(make.application(), user.id)


def test_list_active_keys(service, study):
    user, study_a, study_b = study
    kept = service.issue_api_key(user.id, [f"{study_b.name}.WRITE"], "kept")
    gone = service.issue_api_key(user.id, [f"{study_a.name}.READ"])
    service.revoke(gone.token)

    keys = service.list_active_api_keys(user.id)
    assert [k.api_key for k in keys] == [kept.token]
    assert keys[0].scopes == [f"{study_b.name}.WRITE"]
    assert keys[0].description == "kept"


def test_list_for_user_without_keys_is_not_found(service, make):
    with pytest.raises(NotFoundError):
        service.list_active_api_keys(make.user().id)


def test_list_when_all_keys_revoked_is_empty(service, study):
    user, study_a, _ = study
    api_key = service.issue_api_key(user.id, [f"{study_a.name}.READ"])
    service.revoke(api_key.token)
    assert service.list_active_api_keys(user.id) == []


def test_keys_deleted_with_owner(db, service, study):
    user, study_a, _ = study
    api_key = service.issue_api_key(user.id, [f"{study_a.name}.READ"])
    token = api_key.token
    db.delete(user)
    db.commit()
    assert service.store.find_by_token(token) is None


def test_user_scope_names(service, study, make):
    user, study_a, study_b = study
    denied = make.policy()
    make.grant(user, denied, AccessLevel.DENY)
    assert service.user_scope_names(user.name) == sorted([f"{study_a.name}.READ", f"{study_b.name}.WRITE"])
    with pytest.raises(NotFoundError):
        service.user_scope_names("nobody@example.org")
