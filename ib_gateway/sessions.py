"""
Authentication sessions and the store that holds them.

Sessions are created and mutated by the OAuth session manager, which lives
outside this package. The gateway only reads them: AuthGate scans the store
for the session whose access token matches an inbound bearer token and uses
its IntelligenceBank credentials (sid, client id, API URL) for upstream calls.

The store is an explicit object passed to the components that need it, so
each server (and each test) owns an isolated instance.
"""

import secrets
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator


class SessionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    ERROR = "error"
    BROWSER_PENDING = "browser_pending"


@dataclass
class SessionTokens:
    access_token: str
    refresh_token: str = ""
    token_type: str = "Bearer"
    expires_in: int = 3600


@dataclass
class IBSession:
    """
    IntelligenceBank credentials bound to a session.

    Attributes:
        sid: Session identifier presented to the upstream API in the `sid` header
        client_id: IntelligenceBank tenant identifier (e.g. "BnK4JV")
        api_v3_url: Base URL of the tenant's API (e.g. "https://auprod2auv3.intelligencebank.com")
        sid_expiry: Epoch seconds after which the sid is no longer valid,
                    or None if the upstream did not report an expiry
    """

    sid: str
    client_id: str
    api_v3_url: str
    sid_expiry: float | None = None


@dataclass
class AuthSession:
    session_id: str
    status: SessionStatus = SessionStatus.PENDING
    tokens: SessionTokens | None = None
    ib_session: IBSession | None = None
    created_at: float = field(default_factory=time.time)
    expires_at: float | None = None

    def is_usable(self, now: float | None = None) -> bool:
        """A session is usable iff it completed, has a sid, and the sid has not expired."""
        if self.status != SessionStatus.COMPLETED:
            return False
        if self.ib_session is None or not self.ib_session.sid:
            return False
        if self.ib_session.sid_expiry is None:
            return True
        if now is None:
            now = time.time()
        return self.ib_session.sid_expiry > now


class SessionStore:
    """In-memory session registry keyed by session id."""

    def __init__(self) -> None:
        self._sessions: dict[str, AuthSession] = {}

    @staticmethod
    def generate_session_id() -> str:
        return secrets.token_urlsafe(16)

    def add(self, session: AuthSession) -> AuthSession:
        self._sessions[session.session_id] = session
        return session

    def get(self, session_id: str) -> AuthSession | None:
        return self._sessions.get(session_id)

    def update(self, session_id: str, **changes) -> AuthSession | None:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        for name, value in changes.items():
            setattr(session, name, value)
        return session

    def remove(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)

    def values(self) -> list[AuthSession]:
        # Snapshot so callers can iterate while the session manager mutates the store
        return list(self._sessions.values())

    def __iter__(self) -> Iterator[AuthSession]:
        return iter(self.values())

    def __len__(self) -> int:
        return len(self._sessions)
