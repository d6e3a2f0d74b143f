"""Shared test fixtures: memory store, virtual clock and recording capabilities."""
import asyncio

import pytest

from roomsync.auth import StaticAuthProvider
from roomsync.clock import ManualClock
from roomsync.config import Settings
from roomsync.models import AuthUser
from roomsync.notifications import Navigator, NotificationSink
from roomsync.store import MemoryDocumentStore

ROOMS = "musicRooms"


class RecordingNotificationSink(NotificationSink):
    def __init__(self):
        self.notifications = []

    def emit(self, notification):
        self.notifications.append(notification)

    @property
    def titles(self):
        return [n.title for n in self.notifications]


class RecordingNavigator(Navigator):
    def __init__(self):
        self.redirects = []

    def redirect(self, path, replace=False):
        self.redirects.append((path, replace))


async def drain(rounds: int = 10):
    """Let spawned heartbeat/cleanup tasks run to completion"""
    for _ in range(rounds):
        await asyncio.sleep(0)


def participant(user_id, now_ms, **overrides):
    entry = {
        "id": user_id,
        "name": user_id.capitalize(),
        "instrument": "piano",
        "avatar": "",
        "isHost": False,
        "status": "active",
        "isInRoom": True,
        "heartbeatTimestamp": now_ms,
    }
    entry.update(overrides)
    return entry


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def store():
    return MemoryDocumentStore()


@pytest.fixture
def notifier():
    return RecordingNotificationSink()


@pytest.fixture
def navigator():
    return RecordingNavigator()


@pytest.fixture
def settings():
    return Settings(store_backend="memory")


@pytest.fixture
def alice():
    return AuthUser(id="alice", display_name="Alice")


@pytest.fixture
def auth(alice):
    return StaticAuthProvider(alice)
