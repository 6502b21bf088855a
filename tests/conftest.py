import os
import time
from typing import Any, Dict, List, Optional

import pytest


# List of environment variables that may be modified by tests
_ENV_VARS_TO_ISOLATE = [
    "ADMIN_TOKEN",
    "JWT_SECRET",
    "JWT_ALGORITHM",
    "MEMBERSHIP_BACKEND",
    "ACTIVITY_BACKEND",
    "HEARTBEAT_INTERVAL_SECONDS",
    "HEARTBEAT_TIMEOUT_SECONDS",
    "TYPING_TTL_SECONDS",
    "MAX_SESSIONS_PER_USER",
]

TEST_SECRET = "test-secret"


@pytest.fixture(autouse=True)
def env_isolation():
    """Isolate environment variables and cached settings between tests."""
    from roomhub.core.config import reset_settings

    backup = {k: os.environ.get(k) for k in _ENV_VARS_TO_ISOLATE}
    reset_settings()
    try:
        yield
    finally:
        for k, v in backup.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v
        reset_settings()


@pytest.fixture
def make_token():
    """Mint HS256 tokens the way the auth service does (``sub`` = user id)."""
    from jose import jwt

    def _make(user_id: str, expires_in: Optional[float] = 3600, secret: str = TEST_SECRET) -> str:
        claims: Dict[str, Any] = {"sub": user_id, "iat": int(time.time())}
        if expires_in is not None:
            claims["exp"] = int(time.time() + expires_in)
        return jwt.encode(claims, secret, algorithm="HS256")

    return _make


class FakeSubscriber:
    """Stands in for a server session inside router and presence tests."""

    def __init__(self, session_id: str, user_id: str, is_open: bool = True, accept: bool = True):
        self.session_id = session_id
        self.user_id = user_id
        self.is_open = is_open
        self.accept = accept
        self.frames: List[Dict[str, Any]] = []

    def enqueue(self, frame: Dict[str, Any]) -> bool:
        if not self.accept:
            return False
        self.frames.append(frame)
        return True

    def events(self, kind: Optional[str] = None) -> List[Dict[str, Any]]:
        return [
            f for f in self.frames
            if f.get("type") == "event" and (kind is None or f.get("kind") == kind)
        ]


@pytest.fixture
def subscriber():
    return FakeSubscriber


@pytest.fixture
def authority():
    """In-memory authority with room R1 (admin A, member B) and R2 (admin C)."""
    from roomhub.core.realtime.membership import InMemoryMembershipAuthority

    auth = InMemoryMembershipAuthority()
    auth.create_room("R1", admin_id="A", members=["B"])
    auth.create_room("R2", admin_id="C")
    return auth


@pytest.fixture
def jwt_secret():
    return TEST_SECRET
