"""Shared test fixtures and configuration for backend tests."""
import inspect
from collections import defaultdict
from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient

from schoolchat.config import reset_config
from schoolchat.groups.service import GroupService
from schoolchat.identity import UserIdentity, UserRole
from schoolchat.main import app
from schoolchat.messages.schemas import Message
from schoolchat.messages.service import MessageService
from schoolchat.realtime.hub import hub

BASE_TIME = datetime(2024, 1, 1, 9, 0, 0)


@pytest.fixture(autouse=True)
def in_memory_services(monkeypatch, tmp_path):
    """Fresh in-memory stores, empty hub and default config for every test.

    The settings file is looked up in an empty temp dir so a developer's
    local schoolchat.settings.yaml never leaks into tests.
    """
    monkeypatch.setattr("schoolchat.config.SETTINGS_FILE", tmp_path / "schoolchat.settings.yaml")
    reset_config()
    GroupService.reset_instance()
    MessageService.reset_instance()
    GroupService.get_instance(db_path=":memory:")
    MessageService.get_instance(db_path=":memory:")
    hub.clear()
    yield
    hub.clear()
    GroupService.reset_instance()
    MessageService.reset_instance()
    reset_config()


@pytest.fixture
def api_client():
    """Provide a TestClient for the main FastAPI app."""
    return TestClient(app)


def headers(user_id: str, role: str = "student") -> dict:
    """Identity headers as set by the auth gateway."""
    return {"X-User-Id": user_id, "X-User-Role": role}


def make_identity(user_id: str = "u1", role: UserRole = UserRole.STUDENT, **kwargs) -> UserIdentity:
    return UserIdentity(userId=user_id, role=role, **kwargs)


def make_message(msg_id: str, group: str = "g1", sender: str = "v1", minute: int = 0,
                 content: str = "") -> Message:
    """Message stamped ``minute`` minutes after BASE_TIME."""
    return Message(
        id=msg_id,
        group=group,
        sender=sender,
        content=content or f"message {msg_id}",
        createdAt=BASE_TIME + timedelta(minutes=minute),
    )


class FakeConnection:
    """In-process stand-in for RealtimeConnection.

    Records outbound events in ``sent`` and lets tests push inbound events
    through :meth:`emit`.
    """

    def __init__(self, connected: bool = True):
        self.is_connected = connected
        self.sent = []
        self.handlers = defaultdict(list)
        self.user_id = None

    def on(self, event, handler):
        self.handlers[event].append(handler)
        return handler

    def off(self, event, handler):
        if handler in self.handlers[event]:
            self.handlers[event].remove(handler)

    async def connect(self, user_id):
        self.user_id = user_id
        self.is_connected = True
        await self.emit("connect", None)

    async def disconnect(self):
        if self.is_connected:
            self.is_connected = False
            await self.emit("disconnect", None)

    def send(self, event, payload):
        if self.is_connected:
            self.sent.append((event, payload))

    def sent_events(self, event):
        return [payload for name, payload in self.sent if name == event]

    async def emit(self, event, data):
        for handler in list(self.handlers[event]):
            result = handler(data)
            if inspect.isawaitable(result):
                await result
