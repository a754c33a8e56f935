"""
Read access to the entities owned by administration (users, applications, policies),
plus the one write the SSO flow needs: provisioning a user on first login and stamping last login.
"""
import logging
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from ego.config import DEFAULT_USER_STATUS
from ego.errors import NotFoundError
from ego.models import Application, Policy, StatusType, User, UserType
from ego.providers import ExternalIdentity
from ego.scopes import Scope, ScopeName

logger = logging.getLogger(__name__)


class PrincipalDirectory:
    """Narrow interface onto principal and policy data, backed by a SQLAlchemy session."""

    def __init__(self, db: Session):
        self.db = db

    def find_user(self, user_id: str) -> User | None:
        return self.db.get(User, user_id)

    def get_user(self, user_id: str) -> User:
        user = self.find_user(user_id)
        if user is None:
            raise NotFoundError(f"Can't find user '{user_id}'")
        return user

    def find_user_by_name(self, name: str) -> User | None:
        return self.db.scalars(select(User).where(User.name == name)).first()

    def get_user_by_name(self, name: str) -> User:
        user = self.find_user_by_name(name)
        if user is None:
            raise NotFoundError(f"Can't find user '{name}'")
        return user

    def get_application(self, application_id: str) -> Application:
        application = self.db.get(Application, application_id)
        if application is None:
            raise NotFoundError(f"Can't find application '{application_id}'")
        return application

    def get_application_by_client_id(self, client_id: str) -> Application:
        application = self.db.scalars(select(Application).where(Application.client_id == client_id)).first()
        if application is None:
            raise NotFoundError(f"Can't find application with client id '{client_id}'")
        return application

    def get_policy_by_name(self, name: str) -> Policy:
        policy = self.db.scalars(select(Policy).where(Policy.name == name)).first()
        if policy is None:
            raise NotFoundError(f"Can't find policy '{name}'")
        return policy

    def resolve_scopes(self, names: list[ScopeName]) -> set[Scope]:
        """Look up each requested policy; an unknown policy name is fatal."""
        return {Scope.of(self.get_policy_by_name(n.policy_name), n.access_level) for n in names}

    def user_for_identity(self, identity: ExternalIdentity) -> User:
        """
        Find the user whose name is the verified email, creating it on first login.
        Stamps last_login either way.
        """
        user = self.find_user_by_name(identity.email)
        if user is None:
            user = User(
                name=identity.email,
                email=identity.email,
                first_name=identity.given_name,
                last_name=identity.family_name,
                status=StatusType(DEFAULT_USER_STATUS),
                type=UserType.USER,
                provider_type=identity.provider,
                provider_subject_id=identity.subject,
            )
            self.db.add(user)
            self.touch_last_login(user)
            logger.info("Created user id=%s on first %s login", user.id, identity.provider.value)
            return user
        self.touch_last_login(user)
        return user

    def touch_last_login(self, user: User) -> None:
        user.last_login = datetime.now(timezone.utc)
        self.db.commit()
