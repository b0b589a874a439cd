"""Shared fixtures: virtual clock, message factory and in-memory stores."""

from datetime import datetime
from typing import Any

import pytest

from chatgate.bus.events import InboundMessage
from chatgate.session.store import MemorySessionStore
from chatgate.utils.scheduler import VirtualScheduler

START = datetime(2026, 3, 2, 12, 0, 0)


class CountingStore(MemorySessionStore):
    """In-memory store that records every call."""

    def __init__(self):
        super().__init__()
        self.calls: list[tuple[str, str]] = []

    async def get(self, key: str) -> dict[str, Any] | None:
        self.calls.append(("get", key))
        return await super().get(key)

    async def create(self, record: dict[str, Any]) -> None:
        self.calls.append(("create", record["key"]))
        await super().create(record)

    async def update(self, record: dict[str, Any]) -> None:
        self.calls.append(("update", record["key"]))
        await super().update(record)

    async def delete(self, key: str) -> bool:
        self.calls.append(("delete", key))
        return await super().delete(key)

    def count(self, op: str) -> int:
        return sum(1 for name, _ in self.calls if name == op)


class FailingStore(MemorySessionStore):
    """Store whose every operation raises, simulating a persistence outage."""

    async def get(self, key):
        raise OSError("store offline")

    async def create(self, record):
        raise OSError("store offline")

    async def update(self, record):
        raise OSError("store offline")

    async def delete(self, key):
        raise OSError("store offline")


@pytest.fixture
def clock():
    return VirtualScheduler(start=START)


@pytest.fixture
def store():
    return CountingStore()


@pytest.fixture
def make_message():
    def _make(
        content: str = "hello",
        channel: str = "telegram",
        chat_id: str = "c1",
        sender_id: str = "u1",
        chat_type: str = "dm",
        **kwargs,
    ) -> InboundMessage:
        return InboundMessage(
            channel=channel,
            sender_id=sender_id,
            chat_id=chat_id,
            content=content,
            chat_type=chat_type,
            **kwargs,
        )

    return _make


@pytest.fixture
def failing_store():
    return FailingStore()
