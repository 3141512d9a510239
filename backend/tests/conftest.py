"""Shared test fixtures and configuration for backend tests."""
from typing import List, Optional

import pytest
from fastapi.testclient import TestClient

from messaging.auth import TokenAuthenticator
from messaging.chat.connections import Connection
from messaging.chat.hub import MessagingHub
from messaging.config import AppConfig, JWTSecrets, MessagingSettings, Secrets, StoreSettings
from messaging.main import create_app
from messaging.store import MessageStore, StoreGateway

TEST_SECRET = "test-secret"


class FakeSocket:
    """Stands in for a WebSocket: records every frame sent to it."""

    def __init__(self, fail: bool = False) -> None:
        self.sent: List[dict] = []
        self.fail = fail

    async def send_json(self, payload: dict) -> None:
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(payload)

    def types(self) -> List[str]:
        return [f["type"] for f in self.sent]

    def of_type(self, event: str) -> List[dict]:
        return [f for f in self.sent if f["type"] == event]

    def clear(self) -> None:
        self.sent.clear()


def open_connection(user_id: str, fail: bool = False) -> Connection:
    return Connection(user_id=user_id, socket=FakeSocket(fail=fail))


async def connect(hub: MessagingHub, user_id: str) -> Connection:
    """Register a fake connection through the hub (presence + replay)."""
    connection = open_connection(user_id)
    await hub.connect(connection)
    return connection


@pytest.fixture
def store():
    store = MessageStore(":memory:")
    yield store
    store.close()


@pytest.fixture
def gateway(store):
    return StoreGateway(store, timeout_seconds=5.0)


@pytest.fixture
def authenticator():
    return TokenAuthenticator(TEST_SECRET)


@pytest.fixture
def hub(gateway, authenticator):
    return MessagingHub(
        gateway,
        authenticator,
        settings=MessagingSettings(typing_timeout_seconds=0.2),
    )


@pytest.fixture
def app_config() -> AppConfig:
    return AppConfig(
        store=StoreSettings(db_path=":memory:"),
        messaging=MessagingSettings(typing_timeout_seconds=0.5),
        secrets=Secrets(jwt=JWTSecrets(secret_key=TEST_SECRET)),
    )


@pytest.fixture
def api_client(app_config):
    """Provide a TestClient with the lifespan running.

    All WebSockets opened from one client share the app's event loop, so
    events fanned out to one socket can be received on another.
    """
    with TestClient(create_app(app_config)) as client:
        yield client


@pytest.fixture
def token_for(authenticator):
    def _token(user_id: str, **claims) -> str:
        return authenticator.issue(user_id, **claims)
    return _token


def auth_headers(token: str, extra: Optional[dict] = None) -> dict:
    return {"Authorization": f"Bearer {token}", **(extra or {})}
