import time
from typing import Callable

import pytest
from fastapi.testclient import TestClient

from app import create_app
from backend import MemoryBackend
from identity import ROLE_MENTOR, ROLE_SUPPORT, IdentityService

TEST_SECRET = "test-secret"


class RecordingBus:
    """Stands in for the event bus; keeps every envelope published by the routers."""

    name = "recording"

    def __init__(self, fanout=None):
        self.fanout = fanout
        self.envelopes = []

    async def publish(self, envelope):
        self.envelopes.append(envelope)
        if self.fanout is not None:
            await self.fanout.publish(envelope)

    async def start(self):
        return None

    async def stop(self):
        return None

    @property
    def types(self):
        return [e.event.type for e in self.envelopes]


def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        time.sleep(0.01)


@pytest.fixture
def backend():
    return MemoryBackend()


@pytest.fixture
def identity_service():
    return IdentityService(secret=TEST_SECRET)


@pytest.fixture
def app(backend, identity_service):
    return create_app(backend=backend, identity_service=identity_service, event_bus="local", seed=True)


@pytest.fixture
def client(app):
    with TestClient(app) as client:
        yield client


@pytest.fixture
def bus(app):
    """Swap the hub's bus for a recorder that still fans out locally."""
    hub = app.state.hub
    recorder = RecordingBus(hub.fanout)
    hub.bus = recorder
    return recorder


def auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def support_token(identity_service):
    return identity_service.issue_token("user-sarah", ROLE_SUPPORT)[0]


@pytest.fixture
def other_support_token(identity_service):
    return identity_service.issue_token("user-mike", ROLE_SUPPORT)[0]


@pytest.fixture
def mentor_token(identity_service):
    return identity_service.issue_token("user-emma", ROLE_MENTOR)[0]


@pytest.fixture
def guest(client):
    res = client.post("/api/auth/guest", json={"name": "Alice"})
    assert res.status_code == 200
    return res.json()


@pytest.fixture
def guest_token(guest):
    return guest["token"]


def create_request(client, token, **overrides):
    body = {
        "email": "alice@example.com",
        "issue": "Cannot log in",
        "description": "The login page keeps spinning",
        "category": "account",
    }
    body.update(overrides)
    res = client.post("/api/requests", json=body, headers=auth(token))
    assert res.status_code == 201, res.text
    return res.json()["request"]
