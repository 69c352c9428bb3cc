"""Message delivery for one two-party conversation.

Three sources feed the same :class:`ConversationState`: the initial bulk
fetch, realtime create/update/delete events and a periodic poll. Each source
completes asynchronously and is checked against the state generation before
it touches anything, so replies for a conversation that has since been closed
or switched are dropped.

Everything runs on one event loop. Reconciliation steps never ``await`` and
therefore cannot interleave; open/close transitions additionally hold
``_lifecycle`` so teardown and re-establishment never overlap.
"""
from __future__ import annotations

import asyncio
import functools
import logging
from datetime import datetime
from types import TracebackType
from typing import Self
from uuid import UUID

from chat_delivery.application.dto.query import MessageQuery
from chat_delivery.application.exceptions import NotFoundError, ValidationError
from chat_delivery.application.ports.auth import UserDirectory
from chat_delivery.application.ports.realtime import (
    RealtimeChannel,
    SubscriptionHandle,
    SubscriptionHandlers,
)
from chat_delivery.application.ports.store import MessageStore
from chat_delivery.application.stream import MessageStream
from chat_delivery.config import settings
from chat_delivery.domain.entities.message import Message
from chat_delivery.domain.value_objects.conversation_key import ConversationKey
from chat_delivery.domain.value_objects.enums import DeliveryState
from chat_delivery.services.conversation_state import ConversationState

logger = logging.getLogger(__name__)


class MessageDeliveryCoordinator:
    """Owns the merged realtime + poll view of the active conversation."""

    def __init__(
        self,
        store: MessageStore,
        channel: RealtimeChannel,
        directory: UserDirectory,
        *,
        poll_interval: float | None = None,
        fetch_limit: int | None = None,
        resurrect_on_update: bool | None = None,
    ) -> None:
        self._store = store
        self._channel = channel
        self._directory = directory
        self._poll_interval = (
            settings.POLL_INTERVAL_SECONDS if poll_interval is None else poll_interval
        )
        self._fetch_limit = settings.INITIAL_FETCH_LIMIT if fetch_limit is None else fetch_limit
        self._resurrect_on_update = (
            settings.RESURRECT_ON_UPDATE if resurrect_on_update is None else resurrect_on_update
        )

        self._state = ConversationState()
        self._stream = MessageStream()
        self._key: ConversationKey | None = None
        self._delivery_state = DeliveryState.IDLE
        self._subscription: SubscriptionHandle | None = None
        self._poll_task: asyncio.Task[None] | None = None
        self._paused = False
        self._lifecycle = asyncio.Lock()

    # -- read-only views ---------------------------------------------------

    @property
    def state(self) -> DeliveryState:
        return self._delivery_state

    @property
    def stream(self) -> MessageStream:
        return self._stream

    @property
    def other_user(self) -> int | None:
        return self._state.other_user

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._state.messages)

    @property
    def seen_ids(self) -> frozenset[UUID]:
        return frozenset(self._state.seen_ids)

    @property
    def high_watermark(self) -> datetime | None:
        return self._state.high_watermark

    @property
    def subscribed(self) -> bool:
        return self._subscription is not None

    @property
    def poll_active(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    # -- lifecycle ---------------------------------------------------------

    async def open_conversation(self, other_user: int) -> MessageStream:
        """Switch to the conversation with ``other_user`` and start delivery.

        Returns once the initial fetch has been applied (or has failed). The
        returned stream is the same object for the coordinator's lifetime.
        The switch itself (new counterpart, empty Loading snapshot) happens
        before the first suspension point, so a caller running this in a task
        can rely on it after a single yield to the loop.
        """
        async with self._lifecycle:
            handle, task = self._detach()
            key = ConversationKey.of(self._directory.current_user(), other_user)
            generation = self._state.reset(other_user)
            self._key = key
            self._delivery_state = DeliveryState.LOADING
            self._publish()
            await self._release(handle, task)

        logger.info("Opening conversation with user %s (generation=%d)", other_user, generation)

        try:
            history = await self._store.query_messages(
                MessageQuery(key, limit=self._fetch_limit),
            )
        except Exception:
            logger.exception("Initial fetch failed for conversation with user %s", other_user)
            history = []

        if not self._state.is_current(generation):
            logger.debug("Discarding initial fetch for stale generation %d", generation)
            return self._stream

        if self._state.merge(history):
            self._publish()
        self._delivery_state = DeliveryState.LIVE
        logger.debug(
            "Loaded %d messages, watermark=%s",
            len(self._state.messages), self._state.high_watermark,
        )

        await self._subscribe(generation, key)
        if self._state.is_current(generation) and not self._paused:
            self.start_polling()
        return self._stream

    async def close(self) -> None:
        """Cancel the subscription, stop polling and forget the conversation.

        Safe to call repeatedly.
        """
        async with self._lifecycle:
            handle, task = self._detach()
            if self._state.other_user is not None:
                logger.info("Closed conversation with user %s", self._state.other_user)
            self._state.reset(None)
            self._key = None
            self._delivery_state = DeliveryState.IDLE
            self._publish()
            await self._release(handle, task)

    cleanup = close

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    def _detach(self) -> tuple[SubscriptionHandle | None, asyncio.Task[None] | None]:
        handle, self._subscription = self._subscription, None
        task = self._poll_task
        self.stop_polling()
        return handle, task

    async def _release(
        self,
        handle: SubscriptionHandle | None,
        task: asyncio.Task[None] | None,
    ) -> None:
        if handle is not None:
            await self._unsubscribe(handle)
        if task is not None:
            # wait() does not re-raise the task's own cancellation, only ours.
            await asyncio.wait([task])

    # -- sending -----------------------------------------------------------

    async def send(self, text: str, recipient_id: int | None = None) -> Message | None:
        """Persist a message and surface it without waiting for the timer.

        Returns the stored message, or ``None`` when nothing was sent (blank
        text or a store failure). Failed sends are not retried.
        """
        if not text or not text.strip():
            logger.warning("Refusing to send an empty message")
            return None

        recipient = self._state.other_user if recipient_id is None else recipient_id
        if recipient is None:
            raise ValidationError("No active conversation and no recipient given")

        generation = self._state.generation
        try:
            message = await self._store.create_message(
                self._directory.current_user(), recipient, text,
            )
        except Exception:
            logger.exception("Failed to send message to user %s", recipient)
            return None

        logger.info("Message %s sent to user %s", message.id, recipient)

        if not self._owns(generation, message):
            return message

        previous = self._state.high_watermark
        if self._state.apply_create(message):
            self._publish()
        # Catch up on anything the counterpart sent before our message.
        await self._poll_since(previous)
        return message

    async def edit_message(self, message_id: UUID, text: str) -> Message | None:
        """Change the text of one of the current user's messages.

        Returns the updated message, or ``None`` for blank text or a store
        failure. Raises NotFoundError when the message does not exist or was
        written by someone else.
        """
        if not text or not text.strip():
            logger.warning("Refusing to blank out message %s", message_id)
            return None

        generation = self._state.generation
        try:
            message = await self._store.update_text(
                message_id, text, sender_id=self._directory.current_user(),
            )
        except NotFoundError:
            raise
        except Exception:
            logger.exception("Failed to edit message %s", message_id)
            return None

        if self._owns(generation, message) and self._state.apply_update(
            message, insert_missing=False,
        ):
            self._publish()
        return message

    async def delete_message(self, message_id: UUID) -> bool:
        """Delete one of the current user's messages.

        Returns ``False`` on a store failure. Raises NotFoundError when the
        message does not exist or was written by someone else.
        """
        generation = self._state.generation
        try:
            message = await self._store.delete(
                message_id, sender_id=self._directory.current_user(),
            )
        except NotFoundError:
            raise
        except Exception:
            logger.exception("Failed to delete message %s", message_id)
            return False

        if self._owns(generation, message) and self._state.apply_delete(message.id):
            self._publish()
        return True

    def _owns(self, generation: int, message: Message) -> bool:
        return (
            self._state.is_current(generation)
            and self._key is not None
            and self._key.contains(message)
        )

    # -- polling -----------------------------------------------------------

    async def poll(self) -> int:
        """Fetch messages newer than the watermark and merge them.

        Returns the number of messages added. Never raises on store errors.
        """
        return await self._poll_since(self._state.high_watermark)

    refresh = poll

    async def _poll_since(self, after: datetime | None) -> int:
        if self._state.other_user is None or self._key is None:
            logger.debug("No active conversation to poll")
            return 0

        generation = self._state.generation
        try:
            found = await self._store.query_messages(MessageQuery(self._key, after=after))
        except Exception:
            logger.exception("Polling for new messages failed")
            return 0

        if not self._state.is_current(generation):
            logger.debug("Discarding poll result for stale generation %d", generation)
            return 0

        before = len(self._state.seen_ids)
        if not self._state.merge(found):
            return 0
        added = len(self._state.seen_ids) - before
        logger.debug("Poll added %d messages, watermark=%s", added, self._state.high_watermark)
        self._publish()
        return added

    def start_polling(self) -> None:
        if self.poll_active:
            logger.debug("Polling already active")
            return
        if self._state.other_user is None:
            logger.debug("No active conversation, polling not started")
            return
        self._poll_task = asyncio.create_task(
            self._poll_loop(self._state.generation),
            name=f"chat-poll-{self._state.other_user}",
        )
        logger.debug("Polling started (interval=%.1fs)", self._poll_interval)

    def stop_polling(self) -> None:
        task, self._poll_task = self._poll_task, None
        if task is not None and not task.done():
            task.cancel()
            logger.debug("Polling stopped")

    def pause_polling(self) -> None:
        """Stop the timer until :meth:`resume_polling`, across conversation switches."""
        self._paused = True
        self.stop_polling()

    def resume_polling(self) -> None:
        self._paused = False
        self.start_polling()

    async def _poll_loop(self, generation: int) -> None:
        while self._state.is_current(generation):
            await self.poll()
            await asyncio.sleep(self._poll_interval)

    # -- realtime ----------------------------------------------------------

    async def _subscribe(self, generation: int, key: ConversationKey) -> None:
        handlers = SubscriptionHandlers(
            on_create=functools.partial(self._on_create, generation),
            on_update=functools.partial(self._on_update, generation),
            on_delete=functools.partial(self._on_delete, generation),
        )
        try:
            handle = await self._channel.subscribe(MessageQuery(key), handlers)
        except Exception:
            logger.exception("Realtime subscription failed, delivering by polling only")
            return

        if not self._state.is_current(generation):
            await self._unsubscribe(handle)
            return
        self._subscription = handle
        logger.debug("Realtime subscription %s established", handle.id)

    async def _unsubscribe(self, handle: SubscriptionHandle) -> None:
        try:
            await self._channel.unsubscribe(handle)
        except Exception:
            logger.exception("Failed to cancel realtime subscription %s", handle.id)

    def _accepts(self, generation: int, message: Message) -> bool:
        if not self._state.is_current(generation):
            return False
        if self._key is None or not self._key.contains(message):
            logger.debug("Event for message %s outside the conversation ignored", message.id)
            return False
        return True

    async def _on_create(self, generation: int, message: Message) -> None:
        if self._accepts(generation, message) and self._state.apply_create(message):
            self._publish()

    async def _on_update(self, generation: int, message: Message) -> None:
        if not self._accepts(generation, message):
            return
        if self._state.apply_update(message, insert_missing=self._resurrect_on_update):
            self._publish()

    async def _on_delete(self, generation: int, message_id: UUID | None) -> None:
        if not self._state.is_current(generation):
            return
        if self._state.apply_delete(message_id):
            logger.debug("Message %s removed", message_id)
            self._publish()

    def _publish(self) -> None:
        self._stream.publish(self._state.other_user, self._state.messages)
