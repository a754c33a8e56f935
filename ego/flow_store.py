"""
In-memory store for pending SSO flows (state -> client application and pinned redirect targets)
and for one-time login sessions (session id -> token issued by a successful callback).
Entries expire after a TTL; both are consumed on first read.
"""
import secrets
import threading
import time
from dataclasses import dataclass, field

from ego.config import SSO_FLOW_TTL_SECONDS
from ego.models import ProviderType


@dataclass
class PendingFlow:
    provider: ProviderType
    client_id: str
    redirect_uri: str
    error_redirect_uri: str
    created_at: float = field(default_factory=time.monotonic)


@dataclass
class LoginSession:
    token: str
    created_at: float = field(default_factory=time.monotonic)


class FlowStore:
    def __init__(self, ttl_seconds: int = SSO_FLOW_TTL_SECONDS):
        self.ttl_seconds = ttl_seconds
        self._pending: dict[str, PendingFlow] = {}
        self._sessions: dict[str, LoginSession] = {}
        self._lock = threading.Lock()

    def _expired(self, created_at: float) -> bool:
        return (time.monotonic() - created_at) > self.ttl_seconds

    def start_flow(self, flow: PendingFlow) -> str:
        """Remember a flow; returns the opaque state value sent to the provider."""
        state = secrets.token_urlsafe(32)
        with self._lock:
            self._clean_expired()
            self._pending[state] = flow
        return state

    def take_flow(self, state: str) -> PendingFlow | None:
        with self._lock:
            flow = self._pending.pop(state, None)
        if flow is None or self._expired(flow.created_at):
            return None
        return flow

    def open_session(self, token: str) -> str:
        session_id = secrets.token_urlsafe(32)
        with self._lock:
            self._sessions[session_id] = LoginSession(token=token)
        return session_id

    def take_session_token(self, session_id: str) -> str | None:
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None or self._expired(session.created_at):
            return None
        return session.token

    def _clean_expired(self) -> None:
        for s in [s for s, f in self._pending.items() if self._expired(f.created_at)]:
            del self._pending[s]
        for s in [s for s, v in self._sessions.items() if self._expired(v.created_at)]:
            del self._sessions[s]
