"""
API keys: long-lived, store-backed bearer secrets carrying the scopes requested at issuance.

Checking a key re-narrows its frozen scopes by the owner's entitlements at check time, so a key
never outlives a permission that was taken away. Revocation is one-way and happens once.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from ego.audit import fingerprint
from ego.client_auth import authenticate_application
from ego.config import API_KEY_DURATION_DAYS, MAX_TOKEN_LENGTH
from ego.errors import ForbiddenError, InvalidScopeError, InvalidTokenError, NotFoundError
from ego.models import ApiKey, ApiKeyScope, Application, ApplicationType, User
from ego.principals import PrincipalDirectory
from ego.revocation_store import RevocationStore
from ego.scopes import (
    Scope,
    ScopeName,
    effective_scopes,
    explicit_scopes,
    missing_scopes,
    scope_names,
    user_scopes,
)

logger = logging.getLogger(__name__)


@dataclass
class ApiKeyCheck:
    user_name: str
    client_id: str
    exp: int
    scopes: list[str]


@dataclass
class ApiKeySummary:
    api_key: str
    scopes: list[str]
    exp: int
    description: str | None


def frozen_scopes(api_key: ApiKey) -> set[Scope]:
    return {Scope.of(s.policy, s.access_level) for s in api_key.scopes}


class ApiKeyService:
    def __init__(
        self,
        directory: PrincipalDirectory,
        store: RevocationStore,
        duration_days: int = API_KEY_DURATION_DAYS,
    ):
        self.directory = directory
        self.store = store
        self.duration_days = duration_days

    def issue_api_key(self, user_id: str, requested: list[str], description: str | None = None) -> ApiKey:
        """
        Mint a key for `user_id` with the requested scope names. Every requested scope must be
        covered by the user's current scopes; otherwise nothing is persisted. Several names on
        the same policy are kept as the one with the highest precedence.
        """
        user = self.directory.get_user(user_id)
        granted = user_scopes(user)
        if not requested:
            raise InvalidScopeError("At least one scope is required")
        requested_scopes = self.directory.resolve_scopes([ScopeName.parse(name) for name in requested])
        # One scope per policy: P.READ and P.WRITE together collapse to P.WRITE
        requested_scopes = effective_scopes(requested_scopes, ())

        missing = missing_scopes(granted, requested_scopes)
        if missing:
            names = scope_names(missing)
            logger.info("User %s has no access to scopes %s", user.id, names)
            raise InvalidScopeError(f"User {user.id} has no access to scopes [{', '.join(names)}]", names)

        now = datetime.now(timezone.utc)
        api_key = ApiKey(
            token=str(uuid.uuid4()),
            owner_id=user.id,
            issue_date=now,
            expiry_date=now + timedelta(days=self.duration_days),
            revoked=False,
            description=description,
            scopes=[ApiKeyScope(policy_id=s.policy_id, access_level=s.access_level) for s in requested_scopes],
        )
        self.store.create(api_key)
        logger.info("Issued API key %s for user %s", fingerprint(api_key.token), user.id)
        return api_key

    def check_api_key(self, client_credential: str | None, token: str | None) -> ApiKeyCheck:
        """
        Validate a key on behalf of an application authenticated by Basic credentials.
        Returned scopes are the key's scopes narrowed by what the owner holds right now.
        """
        application = authenticate_application(self.directory, client_credential)
        if not token or not token.strip():
            raise InvalidTokenError("No token field found in request", InvalidTokenError.MALFORMED)

        api_key = self.store.find_by_token(token.strip())
        if api_key is None:
            raise InvalidTokenError("Token not found", InvalidTokenError.NOT_FOUND)
        if api_key.revoked:
            raise InvalidTokenError("Token is no longer valid", InvalidTokenError.REVOKED)
        exp = api_key.seconds_until_expiry()
        if exp <= 0:
            raise InvalidTokenError("Token has expired", InvalidTokenError.EXPIRED)

        owner = api_key.owner
        scopes = explicit_scopes(effective_scopes(user_scopes(owner), frozen_scopes(api_key)))
        logger.debug("API key %s checked by client_id=%s", fingerprint(api_key.token), application.client_id)
        return ApiKeyCheck(
            user_name=owner.name,
            client_id=application.client_id,
            exp=exp,
            scopes=scope_names(scopes),
        )

    def _validate_token_string(self, token: str | None) -> str:
        if not token or not token.strip():
            raise InvalidTokenError("Token cannot be empty", InvalidTokenError.MALFORMED)
        if len(token) > MAX_TOKEN_LENGTH:
            raise InvalidTokenError(
                f"Invalid token, the maximum length for a token is {MAX_TOKEN_LENGTH}",
                InvalidTokenError.MALFORMED,
            )
        return token.strip()

    def revoke(self, token: str) -> None:
        """Revoke a key. Unknown and already-revoked keys are both errors."""
        token = self._validate_token_string(token)
        if self.store.mark_revoked(token):
            logger.info("Revoked API key %s", fingerprint(token))
            return
        if self.store.find_by_token(token) is None:
            raise InvalidTokenError("Token not found", InvalidTokenError.NOT_FOUND)
        raise InvalidTokenError(f"Token {fingerprint(token)} is already revoked", InvalidTokenError.REVOKED)

    def require_owner_access(self, caller: User | Application, user_id: str) -> None:
        """Issue and list are open to the user themselves, active admin users and ADMIN applications."""
        if isinstance(caller, User):
            if caller.id == user_id or (caller.is_admin and caller.is_active):
                return
            raise ForbiddenError("Users can only manage their own API keys")
        if isinstance(caller, Application) and caller.type == ApplicationType.ADMIN:
            return
        raise ForbiddenError("The application does not have permission to manage API keys")

    def revoke_as(self, caller: User | Application, token: str) -> None:
        """
        Revoke on behalf of `caller`: users revoke their own keys, active admin users any key;
        applications only when they are ADMIN applications.
        """
        token = self._validate_token_string(token)
        if isinstance(caller, User):
            if not (caller.is_admin and caller.is_active):
                api_key = self.store.find_by_token(token)
                if api_key is None:
                    raise InvalidTokenError("Token not found", InvalidTokenError.NOT_FOUND)
                if api_key.owner_id != caller.id:
                    raise ForbiddenError("Users can only revoke tokens that belong to them")
        elif isinstance(caller, Application):
            if caller.type != ApplicationType.ADMIN:
                raise ForbiddenError("The application does not have permission to revoke tokens")
        else:
            raise ForbiddenError("Unknown type of authentication")
        self.revoke(token)

    def list_active_api_keys(self, user_id: str) -> list[ApiKeySummary]:
        """
        Non-revoked keys of the user. A user who never had a key is an error;
        a user whose keys are all revoked gets an empty list.
        """
        user = self.directory.get_user(user_id)
        if self.store.count_for_owner(user.id) == 0:
            raise NotFoundError("User is not associated with any token")
        return [
            ApiKeySummary(
                api_key=k.token,
                scopes=scope_names(frozen_scopes(k)),
                exp=k.seconds_until_expiry(),
                description=k.description,
            )
            for k in self.store.list_for_owner(user.id)
            if not k.revoked
        ]

    def user_scope_names(self, user_name: str) -> list[str]:
        """Current explicit scopes of a user, by user name."""
        user = self.directory.get_user_by_name(user_name)
        return scope_names(explicit_scopes(user_scopes(user)))
