"""
Shared pytest configuration.

Environment is pinned before any project module is imported so that the
service module builds an in-memory database and never starts the reaper.
"""

import os
import sys
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

os.environ["PG_DATABASE_URL"] = "sqlite://"
os.environ["REAPER_ENABLED"] = "false"
os.environ.setdefault("OPENAI_API_KEY", "sk-test")

# Ensure project root is importable for test modules.
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

import pytest  # noqa: E402
from fastapi import Header  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402
from sqlmodel import SQLModel, create_engine  # noqa: E402

from agentchat import models  # noqa: E402,F401
from agentchat.assistant import Completion, LLMAssistant  # noqa: E402
from agentchat.config import ProviderConfig  # noqa: E402
from agentchat.identity import AuthInfo, AuthenticatedIdentity, AnonymousIdentity  # noqa: E402
from agentchat.sessions import Caller, SessionManager  # noqa: E402
from agentchat.store import SessionStore  # noqa: E402


class FakeMetrics:
    """Records statsd calls instead of sending them."""

    def __init__(self) -> None:
        self.counters: dict[str, int] = {}
        self.timings: list[tuple[str, float]] = []

    def incr(self, stat: str, count: int = 1, rate: float = 1) -> None:
        self.counters[stat] = self.counters.get(stat, 0) + count

    def timing(self, stat: str, delta: float, rate: float = 1) -> None:
        self.timings.append((stat, delta))


class FixedClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class ScriptedAssistant(LLMAssistant):
    """Completion provider double that records every outbound request."""

    def __init__(self, metrics) -> None:
        super().__init__(metrics=metrics, config=ProviderConfig(api_key="sk-test", model="gpt-test"))
        self.requests: list[list[dict]] = []
        self.error: Optional[Exception] = None

    def get_completion(self, messages):
        self.requests.append(messages)
        if self.error is not None:
            raise self.error
        return Completion(
            text=f"reply {len(self.requests)}",
            prompt_tokens=10,
            completion_tokens=5,
            total_tokens=15,
            model=self.model_version,
        )


USERS = {
    "Bearer free-token": {"id": "user-free", "subscriptionTier": "FREE"},
    "Bearer premium-token": {"id": "user-premium", "subscriptionTier": "PREMIUM"},
}


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine) -> SessionStore:
    return SessionStore(engine)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2026, 3, 10, 12, 0, 0))


@pytest.fixture
def metrics() -> FakeMetrics:
    return FakeMetrics()


@pytest.fixture
def assistant(metrics) -> ScriptedAssistant:
    return ScriptedAssistant(metrics)


@pytest.fixture
def manager(store, assistant, metrics, clock) -> SessionManager:
    return SessionManager(store=store, assistant=assistant, metrics=metrics, clock=clock)


@pytest.fixture
def anonymous_caller(store):
    """Returns a factory for anonymous callers backed by a fresh usage record."""

    def make() -> Caller:
        usage = store.get_or_create_anonymous_session()
        return Caller(identity=AnonymousIdentity(session_id=usage.id), usage=usage)

    return make


@pytest.fixture
def free_user() -> Caller:
    return Caller(identity=AuthenticatedIdentity(user_id="user-free", subscription_tier="FREE"))


def fake_auth_info(authorization: Optional[str] = Header(default=None)) -> AuthInfo:
    user = USERS.get(authorization)
    if user is None:
        return AuthInfo(is_authenticated=False)
    return AuthInfo(is_authenticated=True, user=user)


@pytest.fixture
def client(engine, assistant, metrics, clock):
    import main

    main.app.dependency_overrides[main.get_engine] = lambda: engine
    main.app.dependency_overrides[main.get_assistant] = lambda: assistant
    main.app.dependency_overrides[main.get_metrics] = lambda: metrics
    main.app.dependency_overrides[main.get_clock] = lambda: clock
    main.app.dependency_overrides[main.get_auth_info] = fake_auth_info
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()
