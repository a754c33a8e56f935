"""
SQLAlchemy models for ego: principals (users, applications), groups, policies, permissions,
API keys with their frozen scopes, and the audit log.
Administration owns users/groups/applications/policies; the token core only reads them,
except for SSO provisioning and last-login stamps.
"""
import enum
import json
import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Enum, ForeignKey, String, Table, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


def as_utc(value: datetime) -> datetime:
    """SQLite drops tzinfo; treat naive datetimes read back from the DB as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class AccessLevel(str, enum.Enum):
    READ = "READ"
    WRITE = "WRITE"
    DENY = "DENY"


class StatusType(str, enum.Enum):
    APPROVED = "APPROVED"
    PENDING = "PENDING"
    DISABLED = "DISABLED"
    REJECTED = "REJECTED"


class UserType(str, enum.Enum):
    ADMIN = "ADMIN"
    USER = "USER"


class ApplicationType(str, enum.Enum):
    ADMIN = "ADMIN"
    CLIENT = "CLIENT"


class ProviderType(str, enum.Enum):
    GOOGLE = "GOOGLE"
    FACEBOOK = "FACEBOOK"
    GITHUB = "GITHUB"
    LINKEDIN = "LINKEDIN"
    ORCID = "ORCID"

    @classmethod
    def resolve(cls, value: str) -> "ProviderType":
        """Case-insensitive lookup by tag; raises ValueError for unknown providers."""
        return cls(value.strip().upper())


def _enum(enum_cls):
    return Enum(enum_cls, native_enum=False, length=16)


class Base(DeclarativeBase):
    pass


user_groups = Table(
    "user_groups",
    Base.metadata,
    Column("user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("group_id", String(36), ForeignKey("groups.id", ondelete="CASCADE"), primary_key=True),
)


class Policy(Base):
    __tablename__ = "policies"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    # Rename keeps the id; scopes compare by id
    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    # Ego user names are the verified email address
    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    first_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[StatusType] = mapped_column(_enum(StatusType), default=StatusType.PENDING, nullable=False)
    type: Mapped[UserType] = mapped_column(_enum(UserType), default=UserType.USER, nullable=False)
    provider_type: Mapped[ProviderType | None] = mapped_column(_enum(ProviderType), nullable=True)
    provider_subject_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    last_login: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    groups: Mapped[list["Group"]] = relationship(secondary=user_groups, back_populates="users")
    permissions: Mapped[list["UserPermission"]] = relationship(
        back_populates="owner", cascade="all, delete-orphan"
    )
    api_keys: Mapped[list["ApiKey"]] = relationship(
        back_populates="owner", cascade="all, delete-orphan", passive_deletes=True
    )

    @property
    def is_admin(self) -> bool:
        return self.type == UserType.ADMIN

    @property
    def is_active(self) -> bool:
        return self.status == StatusType.APPROVED


class Group(Base):
    __tablename__ = "groups"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    status: Mapped[StatusType] = mapped_column(_enum(StatusType), default=StatusType.APPROVED, nullable=False)

    users: Mapped[list[User]] = relationship(secondary=user_groups, back_populates="groups")
    permissions: Mapped[list["GroupPermission"]] = relationship(
        back_populates="owner", cascade="all, delete-orphan"
    )


class Application(Base):
    __tablename__ = "applications"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    client_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    # bcrypt hash of client_secret; None = public client
    client_secret_hash: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # JSON array of registered redirect URIs; exact match required
    redirect_uris: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    error_redirect_uri: Mapped[str | None] = mapped_column(Text, nullable=True)
    type: Mapped[ApplicationType] = mapped_column(
        _enum(ApplicationType), default=ApplicationType.CLIENT, nullable=False
    )
    status: Mapped[StatusType] = mapped_column(_enum(StatusType), default=StatusType.APPROVED, nullable=False)

    def get_redirect_uris_list(self) -> list[str]:
        return json.loads(self.redirect_uris)

    def redirect_uri_allowed(self, uri: str) -> bool:
        return uri in self.get_redirect_uris_list()

    @property
    def is_confidential(self) -> bool:
        return self.client_secret_hash is not None and len(self.client_secret_hash) > 0


class UserPermission(Base):
    __tablename__ = "user_permissions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    policy_id: Mapped[str] = mapped_column(ForeignKey("policies.id", ondelete="CASCADE"), nullable=False)
    access_level: Mapped[AccessLevel] = mapped_column(_enum(AccessLevel), nullable=False)

    owner: Mapped[User] = relationship(back_populates="permissions")
    policy: Mapped[Policy] = relationship(lazy="joined")


class GroupPermission(Base):
    __tablename__ = "group_permissions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    group_id: Mapped[str] = mapped_column(ForeignKey("groups.id", ondelete="CASCADE"), nullable=False, index=True)
    policy_id: Mapped[str] = mapped_column(ForeignKey("policies.id", ondelete="CASCADE"), nullable=False)
    access_level: Mapped[AccessLevel] = mapped_column(_enum(AccessLevel), nullable=False)

    owner: Mapped[Group] = relationship(back_populates="permissions")
    policy: Mapped[Policy] = relationship(lazy="joined")


class ApiKey(Base):
    """Long-lived, revocable API key. `token` is the opaque secret used as lookup key."""
    __tablename__ = "api_keys"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    token: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    owner_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    issue_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utc_now)
    expiry_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    revoked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    owner: Mapped[User] = relationship(back_populates="api_keys")
    scopes: Mapped[list["ApiKeyScope"]] = relationship(
        back_populates="api_key", cascade="all, delete-orphan", lazy="selectin"
    )

    def seconds_until_expiry(self, now: datetime | None = None) -> int:
        now = now or _utc_now()
        remaining = (as_utc(self.expiry_date) - now).total_seconds()
        return max(0, int(remaining))


class ApiKeyScope(Base):
    """Scope frozen onto an API key at issuance."""
    __tablename__ = "api_key_scopes"

    api_key_id: Mapped[str] = mapped_column(ForeignKey("api_keys.id", ondelete="CASCADE"), primary_key=True)
    policy_id: Mapped[str] = mapped_column(ForeignKey("policies.id", ondelete="CASCADE"), primary_key=True)
    access_level: Mapped[AccessLevel] = mapped_column(_enum(AccessLevel), nullable=False)

    api_key: Mapped[ApiKey] = relationship(back_populates="scopes")
    policy: Mapped[Policy] = relationship(lazy="joined")


class AuditLog(Base):
    """Audit log for security-relevant events. No tokens, secrets or emails stored."""
    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    client_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    principal_id: Mapped[str | None] = mapped_column(String(36), nullable=True)  # None = anonymous
    ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    outcome: Mapped[str] = mapped_column(String(16), nullable=False)  # success | fail
