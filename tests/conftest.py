"""Pytest configuration and fixtures.

Provides test doubles for the upstream gateway, a fixed clock, an in-memory
credential store, and a ready-to-use FastAPI test client.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import pytest
import pytz
from fastapi.testclient import TestClient

from gateway_bridge.app import create_app
from gateway_bridge.config import Config
from gateway_bridge.credential_manager import CredentialManager
from gateway_bridge.credential_store import InMemoryCredentialStore
from gateway_bridge.exceptions import UpstreamError
from gateway_bridge.models import Finish, UpstreamCompletion, UpstreamUsage

# =============================================================================
# Test Doubles
# =============================================================================


class FixedClock:
    """Controllable UTC clock for month/day dependent behavior."""

    def __init__(self, moment: datetime):
        self.moment = moment

    def __call__(self) -> datetime:
        return self.moment

    def set(self, year: int, month: int, day: int, hour: int = 12) -> None:
        self.moment = pytz.utc.localize(datetime(year, month, day, hour))


class FailingStore:
    """Credential store whose every operation raises."""

    async def get_record(self, key: str):
        raise ConnectionError("store unavailable")

    async def set_record(self, key: str, record: dict, ttl_seconds: int) -> None:
        raise ConnectionError("store unavailable")

    async def delete_record(self, key: str) -> None:
        raise ConnectionError("store unavailable")


@dataclass
class FakeGateway:
    """Scripted upstream gateway shared by every per-credential client.

    ``outcomes`` maps a credential to either an exception to raise or an
    ``UpstreamCompletion`` to return. ``stream_events`` maps a credential to
    the event list its stream yields.
    """

    outcomes: Dict[str, Any] = field(default_factory=dict)
    stream_events: Dict[str, List[Any]] = field(default_factory=dict)
    calls: List[str] = field(default_factory=list)
    payloads: List[Dict[str, Any]] = field(default_factory=list)

    def client_for(self, credential: str) -> "FakeGatewayClient":
        return FakeGatewayClient(self, credential)


class FakeGatewayClient:
    def __init__(self, gateway: FakeGateway, credential: str):
        self.gateway = gateway
        self.credential = credential

    def _record(self, payload: Dict[str, Any]) -> Any:
        self.gateway.calls.append(self.credential)
        self.gateway.payloads.append(payload)
        outcome = self.gateway.outcomes.get(self.credential)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def complete(self, payload: Dict[str, Any]) -> UpstreamCompletion:
        outcome = self._record(payload)
        return outcome or UpstreamCompletion(text="ok", finish_reason="stop")

    async def stream(self, payload: Dict[str, Any]):
        self._record(payload)
        for event in self.gateway.stream_events.get(self.credential, [Finish(finish_reason="stop")]):
            if isinstance(event, Exception):
                raise event
            yield event


def quota_error(message: str = "insufficient credit on this account") -> UpstreamError:
    return UpstreamError(message, status_code=402)


def completion(text: str = "hello", prompt_tokens: int = 12, completion_tokens: int = 7, **kwargs) -> UpstreamCompletion:
    return UpstreamCompletion(
        text=text,
        finish_reason=kwargs.pop("finish_reason", "stop"),
        usage=UpstreamUsage(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens),
        **kwargs,
    )


class SettingsForTests(Config):
    """Config with deterministic values independent of the environment."""

    PROXY_API_KEY = ""
    GATEWAY_BASE_URL = "https://gateway.test/v1"
    GATEWAY_API_KEYS = "key-alpha-0001,key-bravo-0002"
    GATEWAY_API_KEY = ""
    REDIS_URL = ""
    CORS_ORIGINS = ["*"]
    DEBUG_LOGGING = False
    REQUEST_TIMEOUT = 5.0
    CONNECT_TIMEOUT = 1.0
    _credential_manager = None


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(pytz.utc.localize(datetime(2025, 1, 20, 12)))


@pytest.fixture
def store() -> InMemoryCredentialStore:
    return InMemoryCredentialStore()


@pytest.fixture
def make_manager(store, clock) -> Callable[..., CredentialManager]:
    def _make(credentials: Optional[List[str]] = None, **kwargs) -> CredentialManager:
        kwargs.setdefault("store", store)
        kwargs.setdefault("clock", clock)
        return CredentialManager(
            credentials if credentials is not None else ["key-alpha-0001", "key-bravo-0002"],
            **kwargs,
        )

    return _make


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def settings():
    return SettingsForTests


@pytest.fixture
def manager(make_manager) -> CredentialManager:
    return make_manager()


@pytest.fixture
def client(settings, manager, gateway) -> TestClient:
    app = create_app(settings, credential_manager=manager, client_factory=gateway.client_for)
    with TestClient(app) as test_client:
        yield test_client
