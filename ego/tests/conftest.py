"""
Pytest configuration for ego. In-memory SQLite so tests don't touch the filesystem;
provider calls go to an httpx.MockTransport instead of the network.
"""
import base64
import json
import os
import uuid

# In-memory SQLite; database.py uses StaticPool so all connections share the same DB
os.environ["EGO_DATABASE_URL"] = "sqlite:///:memory:"
# Seeding from the developer's environment would leak into tests
for _name in ("EGO_SEED_ADMIN_EMAIL", "EGO_SEED_CLIENT_ID", "EGO_SEED_CLIENT_SECRET", "EGO_SEED_REDIRECT_URIS"):
    os.environ.pop(_name, None)
# Every provider enabled with dummy app credentials
for _provider in ("GOOGLE", "FACEBOOK", "GITHUB", "LINKEDIN", "ORCID"):
    os.environ[f"EGO_{_provider}_CLIENT_ID"] = f"{_provider.lower()}-client"
    os.environ[f"EGO_{_provider}_CLIENT_SECRET"] = f"{_provider.lower()}-secret"

import httpx
import pytest
from cryptography.hazmat.primitives.asymmetric.rsa import generate_private_key
from fastapi.testclient import TestClient

from ego.database import SessionLocal, init_db
from ego.flow_store import FlowStore
from ego.keys import SigningKeyProvider
from ego.main import app
from ego.models import (
    AccessLevel,
    Application,
    ApplicationType,
    Group,
    GroupPermission,
    Policy,
    StatusType,
    User,
    UserPermission,
    UserType,
)
from ego.principals import PrincipalDirectory
from ego.providers import OAuthIdentityBridge
from ego.rate_limit import RateLimiter
from ego.seed import hash_password

APP_REDIRECT_URI = "https://app.example/callback"
APP_ERROR_REDIRECT_URI = "https://app.example/login-error"
APP_SECRET = "app-secret"


class Factory:
    """Creates rows with unique names; the in-memory DB is shared by the whole session."""

    def __init__(self, db):
        self.db = db

    @staticmethod
    def unique(prefix: str) -> str:
        return f"{prefix}-{uuid.uuid4().hex[:8]}"

    def _save(self, row):
        self.db.add(row)
        self.db.commit()
        self.db.refresh(row)
        return row

    def policy(self, name: str | None = None) -> Policy:
        return self._save(Policy(name=name or self.unique("Study")))

    def user(self, *, status=StatusType.APPROVED, type=UserType.USER) -> User:
        email = f"{self.unique('user')}@example.org"
        return self._save(User(name=email, email=email, first_name="Ada", last_name="Lovelace",
                               status=status, type=type))

    def group(self) -> Group:
        return self._save(Group(name=self.unique("group")))

    def join(self, user: User, group: Group) -> None:
        group.users.append(user)
        self.db.commit()

    def grant(self, owner, policy: Policy, level: AccessLevel) -> None:
        if isinstance(owner, User):
            self.db.add(UserPermission(user_id=owner.id, policy_id=policy.id, access_level=level))
        else:
            self.db.add(GroupPermission(group_id=owner.id, policy_id=policy.id, access_level=level))
        self.db.commit()

    def application(self, *, type=ApplicationType.CLIENT, status=StatusType.APPROVED, secret=APP_SECRET) -> Application:
        client_id = self.unique("client")
        return self._save(
            Application(
                name=client_id,
                client_id=client_id,
                client_secret_hash=hash_password(secret) if secret else None,
                redirect_uris=json.dumps([APP_REDIRECT_URI]),
                error_redirect_uri=APP_ERROR_REDIRECT_URI,
                type=type,
                status=status,
            )
        )


class FakeProvider:
    """Canned provider responses keyed by URL without its query string."""

    TIMEOUT = object()

    def __init__(self):
        self.responses = {}
        self.requests: list[httpx.Request] = []

    def reply(self, url: str, body, status: int = 200) -> None:
        self.responses[url.split("?")[0]] = (status, body)

    def time_out(self, url: str) -> None:
        self.responses[url.split("?")[0]] = self.TIMEOUT

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.get(str(request.url).split("?")[0])
        if response is None:
            return httpx.Response(404, json={"error": "not found"})
        if response is self.TIMEOUT:
            raise httpx.ReadTimeout("timed out", request=request)
        status, body = response
        return httpx.Response(status, json=body)


@pytest.fixture(scope="session")
def private_key():
    return generate_private_key(65537, 2048)


@pytest.fixture
def keys(private_key):
    return SigningKeyProvider(private_key=private_key)


@pytest.fixture
def db():
    init_db()
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make(db):
    return Factory(db)


@pytest.fixture
def directory(db):
    return PrincipalDirectory(db)


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def bridge(fake_provider):
    return OAuthIdentityBridge(http=httpx.Client(transport=httpx.MockTransport(fake_provider.handle)))


@pytest.fixture
def flows():
    return FlowStore()


@pytest.fixture
def client(keys, bridge, flows):
    init_db()
    app.state.keys = keys
    app.state.flows = flows
    app.state.bridge = bridge
    app.state.token_limiter = RateLimiter(1000)
    app.state.check_limiter = RateLimiter(1000)
    return TestClient(app)


@pytest.fixture
def basic_auth():
    def _header(client_id: str, secret: str = APP_SECRET) -> dict:
        encoded = base64.b64encode(f"{client_id}:{secret}".encode("utf-8")).decode("ascii")
        return {"Authorization": f"Basic {encoded}"}

    return _header
