"""Shared pytest fixtures for SPARK tests."""
import os

# The API tests build the app, whose lifespan resolves the store from settings.
os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("ADMIN_TOKEN", "test-admin-token")

from datetime import datetime, timedelta, timezone

import pytest

from spark.config import Settings
from spark.schemas.room import Room
from spark.services.notification_service import NotificationGateway, NotificationService
from spark.services.room_service import room_id_for_match
from spark.store.base import PREFERENCES, ROOMS, USERS
from spark.store.memory import MemoryDocumentStore


class FakeClock:
    """Callable clock that tests move forward explicitly."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class RecordingGateway(NotificationGateway):
    """Keeps every notification instead of delivering it."""

    def __init__(self, fail: bool = False) -> None:
        self.sent: list[dict] = []
        self.fail = fail

    async def send(self, recipient_user_id, title, body, data) -> None:
        if self.fail:
            raise RuntimeError("push transport down")
        self.sent.append(
            {"recipient": recipient_user_id, "title": title, "body": body, "data": data}
        )

    def of_type(self, kind: str) -> list[dict]:
        return [n for n in self.sent if n["data"].get("type") == kind]


def user_doc(user_id: str, **overrides) -> dict:
    """A complete, active user document in stored (camelCase) form."""
    doc = {
        "id": user_id,
        "name": user_id.title(),
        "age": 28,
        "gender": "female",
        "city": "Pune",
        "interests": ["coffee", "hiking"],
        "questionnaireAnswers": [3, 3, 3],
        "profileCompleteness": 100,
        "isActive": True,
        "isVerified": False,
        "isPremium": False,
    }
    doc.update(overrides)
    return doc


def prefs_doc(user_id: str, **overrides) -> dict:
    doc = {"userId": user_id, "lookingFor": "both", "ageRange": {"min": 18, "max": 50}}
    doc.update(overrides)
    return doc


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        STORE_BACKEND="memory",
        MATCH_GENERATION_CONCURRENCY=4,
    )


@pytest.fixture
def store():
    return MemoryDocumentStore()


@pytest.fixture
def clock():
    # A Wednesday morning in Asia/Kolkata.
    return FakeClock(datetime(2026, 3, 4, 4, 30, tzinfo=timezone.utc))


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
def notifications(gateway):
    return NotificationService(gateway, timeout=1.0)


@pytest.fixture
def add_user(store):
    """Seed a user and, unless ``with_prefs=False``, their preferences."""

    def _add(user_id: str, with_prefs: bool = True, prefs: dict | None = None, **overrides) -> dict:
        doc = user_doc(user_id, **overrides)
        store.load(USERS, {user_id: doc})
        if with_prefs:
            store.load(PREFERENCES, {user_id: prefs_doc(user_id, **(prefs or {}))})
        return doc

    return _add


@pytest.fixture
def failing_notifications():
    """A notification service whose transport always raises."""
    return NotificationService(RecordingGateway(fail=True), timeout=1.0)


@pytest.fixture
def room(store, add_user, clock):
    """An active day-1 room between premium Alice and free Bob."""
    add_user("alice", isPremium=True)
    add_user("bob")
    now = clock()
    room = Room(
        id=room_id_for_match("match-1"),
        match_id="match-1",
        participants=["alice", "bob"],
        started_at=now,
        expires_at=now + timedelta(days=7),
        last_message_at=now,
        created_at=now,
    )
    store.load(ROOMS, {room.id: room.to_document()})
    return room
