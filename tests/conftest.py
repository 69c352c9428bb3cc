"""Shared test fixtures."""
from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
import pytest_asyncio

from chat_delivery.application.dto.query import MessageQuery
from chat_delivery.application.exceptions import NotFoundError
from chat_delivery.application.ports.realtime import SubscriptionHandle, SubscriptionHandlers
from chat_delivery.domain.entities.message import Message
from chat_delivery.infrastructure.db.models.message import MessageModel
from chat_delivery.services.delivery_coordinator import MessageDeliveryCoordinator

ME = 42
ALICE = 7
BOB = 8

BASE_TS = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def ts(seconds: int) -> datetime:
    return BASE_TS + timedelta(seconds=seconds)


def make_message(
    *,
    sender_id: int = ALICE,
    recipient_id: int = ME,
    text: str = "hello",
    created_at: datetime | None = None,
) -> Message:
    return Message(
        id=uuid.uuid4(),
        sender_id=sender_id,
        recipient_id=recipient_id,
        text=text,
        created_at=created_at or datetime.now(timezone.utc),
    )


@dataclass
class FakeMessageStore:
    """In-memory store that assigns ids and increasing timestamps."""

    messages: list[Message] = field(default_factory=list)
    created: list[Message] = field(default_factory=list)
    queries: list[MessageQuery] = field(default_factory=list)
    fail_create: bool = False
    fail_query: bool = False
    fail_write: bool = False
    _tick: int = 1000
    _gates: list[asyncio.Event] = field(default_factory=list)

    def seed(
        self,
        sender_id: int,
        recipient_id: int,
        text: str = "hello",
        created_at: datetime | None = None,
    ) -> Message:
        msg = make_message(
            sender_id=sender_id,
            recipient_id=recipient_id,
            text=text,
            created_at=created_at or self._next_ts(),
        )
        self.messages.append(msg)
        return msg

    def hold_next_query(self) -> asyncio.Event:
        """The next query blocks until the returned event is set."""
        gate = asyncio.Event()
        self._gates.append(gate)
        return gate

    def _next_ts(self) -> datetime:
        self._tick += 1
        return ts(self._tick)

    async def create_message(self, sender_id: int, recipient_id: int, text: str) -> Message:
        if self.fail_create:
            raise ConnectionError("store unavailable")
        msg = self.seed(sender_id, recipient_id, text)
        self.created.append(msg)
        return msg

    async def query_messages(self, query: MessageQuery) -> list[Message]:
        self.queries.append(query)
        if self._gates:
            await self._gates.pop(0).wait()
        if self.fail_query:
            raise ConnectionError("store unavailable")
        found = sorted((m for m in self.messages if query.matches(m)), key=lambda m: m.created_at)
        if query.limit is not None:
            found = found[: query.limit]
        return found

    def _owned(self, message_id: uuid.UUID, sender_id: int) -> Message:
        for msg in self.messages:
            if msg.id == message_id and msg.sender_id == sender_id:
                return msg
        raise NotFoundError(f"message {message_id} not found")

    async def update_text(self, message_id: uuid.UUID, text: str, *, sender_id: int) -> Message:
        if self.fail_write:
            raise ConnectionError("store unavailable")
        old = self._owned(message_id, sender_id)
        new = replace(old, text=text)
        self.messages[self.messages.index(old)] = new
        return new

    async def delete(self, message_id: uuid.UUID, *, sender_id: int) -> Message:
        if self.fail_write:
            raise ConnectionError("store unavailable")
        msg = self._owned(message_id, sender_id)
        self.messages.remove(msg)
        return msg


@dataclass
class FakeRealtimeChannel:
    active: dict[SubscriptionHandle, SubscriptionHandlers] = field(default_factory=dict)
    unsubscribed: list[SubscriptionHandle] = field(default_factory=list)
    fail_subscribe: bool = False
    fail_unsubscribe: bool = False

    async def subscribe(self, query: MessageQuery, handlers: SubscriptionHandlers) -> SubscriptionHandle:
        if self.fail_subscribe:
            raise ConnectionError("realtime unavailable")
        handle = SubscriptionHandle(query=query)
        self.active[handle] = handlers
        return handle

    async def unsubscribe(self, handle: SubscriptionHandle) -> None:
        if self.fail_unsubscribe:
            raise ConnectionError("realtime unavailable")
        self.active.pop(handle, None)
        self.unsubscribed.append(handle)

    @property
    def handlers(self) -> SubscriptionHandlers:
        assert len(self.active) == 1
        return next(iter(self.active.values()))


@dataclass
class FakeUserDirectory:
    user_id: int = ME

    def current_user(self) -> int:
        return self.user_id


@dataclass
class RecordingHandlers:
    calls: list[tuple[str, Any]] = field(default_factory=list)

    async def on_create(self, message):
        self.calls.append(("create", message.id))

    async def on_update(self, message):
        self.calls.append(("update", message.id))

    async def on_delete(self, message_id):
        self.calls.append(("delete", message_id))

    def as_handlers(self) -> SubscriptionHandlers:
        return SubscriptionHandlers(self.on_create, self.on_update, self.on_delete)


@dataclass
class FakeResult:
    rows: list[Any]

    def scalar_one(self) -> Any:
        assert len(self.rows) == 1
        return self.rows[0]

    def scalar_one_or_none(self) -> Any:
        return self.rows[0] if self.rows else None

    def scalars(self) -> FakeResult:
        return self

    def all(self) -> list[Any]:
        return list(self.rows)


@dataclass
class FakeSession:
    """Stands in for both ``async_sessionmaker`` and the session it yields.

    Each ``execute`` pops the next entry of ``results`` (rows of MessageModel).
    """

    results: list[list[Any]] = field(default_factory=list)
    statements: list[Any] = field(default_factory=list)
    commits: int = 0

    def __call__(self) -> FakeSession:
        return self

    async def __aenter__(self) -> FakeSession:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        return None

    async def execute(self, stmt: Any) -> FakeResult:
        self.statements.append(stmt)
        return FakeResult(self.results.pop(0) if self.results else [])

    async def commit(self) -> None:
        self.commits += 1


def make_row(
    sender_id: int = ME,
    recipient_id: int = ALICE,
    text: str = "hello",
    created_at: datetime | None = None,
    id: uuid.UUID | None = None,
) -> MessageModel:
    return MessageModel(
        id=id or uuid.uuid4(),
        sender_id=sender_id,
        recipient_id=recipient_id,
        text=text,
        created_at=created_at or ts(1),
    )


@dataclass
class FakePubSub:
    broker: FakeRedis = field(repr=False)
    channels: set[str] = field(default_factory=set)
    closed: bool = False
    inbox: asyncio.Queue[dict[str, Any]] = field(default_factory=asyncio.Queue)

    async def subscribe(self, *channels: str) -> None:
        if self.broker.fail_subscribe:
            raise ConnectionError("redis unavailable")
        self.channels.update(channels)
        for name in channels:
            self.inbox.put_nowait({"type": "subscribe", "channel": name, "data": 1})

    async def unsubscribe(self, *channels: str) -> None:
        if self.broker.fail_unsubscribe:
            raise ConnectionError("redis unavailable")
        self.channels.difference_update(channels)

    async def aclose(self) -> None:
        self.closed = True

    async def listen(self):
        while True:
            yield await self.inbox.get()


@dataclass
class FakeRedis:
    pubsubs: list[FakePubSub] = field(default_factory=list)
    fail_subscribe: bool = False
    fail_unsubscribe: bool = False

    def pubsub(self) -> FakePubSub:
        pubsub = FakePubSub(self)
        self.pubsubs.append(pubsub)
        return pubsub

    async def publish(self, channel: str, data: str) -> int:
        receivers = [p for p in self.pubsubs if channel in p.channels and not p.closed]
        for pubsub in receivers:
            pubsub.inbox.put_nowait({"type": "message", "channel": channel, "data": data})
        return len(receivers)


async def eventually(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def store() -> FakeMessageStore:
    return FakeMessageStore()


@pytest.fixture
def channel() -> FakeRealtimeChannel:
    return FakeRealtimeChannel()


@pytest.fixture
def directory() -> FakeUserDirectory:
    return FakeUserDirectory()


@pytest_asyncio.fixture
async def coordinator(store, channel, directory):
    coord = MessageDeliveryCoordinator(
        store, channel, directory, poll_interval=60, fetch_limit=1000,
    )
    yield coord
    await coord.close()
