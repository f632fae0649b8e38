"""
SyncEngine — merges push, poll and local sends into one ChatStore.

    push   channel events ──┐
    poll   timer ticks    ──┴─► inbound queue ─► processed one at a time
    local  send_local()   ───► optimistic insert ─► append ─► reconcile

Merging is idempotent: a record is inserted only if its id is new, and a
committed message that matches a local pending record on
(conversation, sender, timestamp) replaces that record instead of sitting
next to it. Records already in the store are never overwritten by pulled
copies, so local delivered/read flags survive stale server rows.

All store mutations happen between awaits, which is what keeps interleaved
polls, pushes and sends from losing updates on a single event loop.
"""

import asyncio
import dataclasses
import functools
import logging
from contextlib import suppress
from datetime import datetime
from typing import Optional, Union

from DonationChat.chat_shared import config
from DonationChat.chat_shared.crypto_engine import Cipher, validate_conversation_id
from DonationChat.chat_shared.errors import (
    CacheUnavailableError,
    ChannelUnavailableError,
    ChatError,
    DecryptionFailureError,
    InvalidArgumentError,
    NetworkFailureError,
)
from DonationChat.chat_shared.types import Message
from DonationChat.chat_db.session_cache import SessionStores
from DonationChat.chat.protocol import (
    EVENT_DELIVERED,
    EVENT_NEW_MESSAGE,
    EVENT_PRESENCE_SNAPSHOT,
    EVENT_READ,
    EVENT_USER_CONNECTED,
    EVENT_USER_DISCONNECTED,
    INBOUND_EVENTS,
    POLL_TICK,
    InboundEvent,
    delivery_receipt,
    message_from_wire,
    message_to_wire,
    new_temp_id,
    parse_timestamp,
    read_receipt,
)
from DonationChat.chat.store import ChatStore, PresenceSet

logger = logging.getLogger(__name__)


class SyncEngine:
    def __init__(
        self,
        user_id: str,
        store: ChatStore,
        backend,
        channel,
        stores: SessionStores,
        presence: Optional[PresenceSet] = None,
        *,
        cipher: Optional[Cipher] = None,
        poll_interval: float = config.POLL_INTERVAL_SECONDS,
    ):
        self.user_id = user_id
        self._store = store
        self._backend = backend
        self._channel = channel
        self._stores = stores
        self._presence = presence if presence is not None else PresenceSet()
        self._cipher = cipher or Cipher()
        self._poll_interval = poll_interval

        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self._ticker: Optional[asyncio.Task] = None
        self._subscriptions: list = []
        self.last_poll_ok: Optional[bool] = None
        self._poll_queued = False
        # bumped on stop(); results of awaits begun in an older epoch are dropped
        self._epoch = 0

    @property
    def running(self) -> bool:
        return self._worker is not None

    @property
    def presence(self) -> PresenceSet:
        return self._presence

    # ─── Lifecycle ───

    def attach(self) -> None:
        """Register one queueing handler per inbound channel event."""
        if self._subscriptions:
            return
        for event in INBOUND_EVENTS:
            handler = functools.partial(self._enqueue_push, event)
            self._channel.on(event, handler)
            self._subscriptions.append((event, handler))

    def detach(self) -> None:
        for event, handler in self._subscriptions:
            self._channel.off(event, handler)
        self._subscriptions.clear()

    async def start(self) -> None:
        self.attach()
        if self._worker is None:
            self._worker = asyncio.create_task(self._run())
        if self._ticker is None and self._poll_interval > 0:
            self._ticker = asyncio.create_task(self._tick())

    async def stop(self) -> None:
        """Unregister handlers, cancel the timer and worker, drop queued events."""
        self.detach()
        self._epoch += 1

        for task in (self._ticker, self._worker):
            if task is None:
                continue
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        self._ticker = None
        self._worker = None

        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()
        self._poll_queued = False

    def submit(self, event: InboundEvent) -> None:
        if event.kind == POLL_TICK:
            if self._poll_queued:
                return
            self._poll_queued = True
        self._queue.put_nowait(event)

    async def drain(self) -> None:
        """Wait until every queued event has been processed."""
        await self._queue.join()

    def _enqueue_push(self, event: str, payload: dict) -> None:
        self.submit(InboundEvent(event, payload or {}))

    async def reconnect(self) -> bool:
        """Reopen the channel if it dropped. Handlers stay attached throughout."""
        if self._channel.connected:
            return True
        try:
            await self._channel.connect(self.user_id)
        except ChannelUnavailableError as e:
            logger.debug("channel still down: %s", e)
            return False
        logger.info("channel reconnected for user %s", self.user_id)
        return True

    async def _tick(self) -> None:
        while True:
            self.submit(InboundEvent(POLL_TICK))
            await asyncio.sleep(self._poll_interval)

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self.process(event)
            except ChatError as e:
                logger.error("sync event %s failed: %s", event.kind, e)
            except Exception:
                logger.exception("unexpected failure processing %s", event.kind)
            finally:
                self._queue.task_done()

    # ─── Inbound events ───

    async def process(self, event: InboundEvent) -> None:
        kind, payload = event.kind, event.payload

        if kind == POLL_TICK:
            self._poll_queued = False
            await self.reconnect()
            await self.poll_once()
        elif kind == EVENT_NEW_MESSAGE:
            self.receive_push(payload)
        elif kind == EVENT_DELIVERED:
            self.apply_delivered(payload)
        elif kind == EVENT_READ:
            self.apply_read(payload)
        elif kind == EVENT_PRESENCE_SNAPSHOT:
            self._presence.replace_all(payload.get("onlineUserIds", []))
        elif kind == EVENT_USER_CONNECTED:
            if payload.get("userId") is not None:
                self._presence.add(payload["userId"])
        elif kind == EVENT_USER_DISCONNECTED:
            if payload.get("userId") is not None:
                self._presence.discard(payload["userId"])
        else:
            logger.debug("ignoring event %s", kind)

    def receive_push(self, payload: dict) -> Optional[Message]:
        try:
            incoming = message_from_wire(payload)
        except InvalidArgumentError as e:
            logger.warning("dropping malformed pushed message: %s", e)
            return None

        if (
            incoming.sender_id != self.user_id
            and not self._store.has_conversation(incoming.conversation_id)
        ):
            # not a conversation this session has seen; the poll only
            # returns conversations the user belongs to
            logger.debug("push for unknown conversation %s left to poll", incoming.conversation_id)
            return None

        return self.merge(incoming)

    async def poll_once(self) -> list[Message]:
        """Pull the user's messages, merge what is new, then retry failed sends."""
        epoch = self._epoch
        try:
            fetched = await self._backend.fetch_conversations(self.user_id)
        except NetworkFailureError as e:
            logger.error("poll failed, retrying next cycle: %s", e)
            self.last_poll_ok = False
            return []

        self.last_poll_ok = True
        if epoch != self._epoch:
            return []

        added = []
        for incoming in fetched:
            merged = self.merge(incoming)
            if merged is not None:
                added.append(merged)
        if added:
            logger.debug("poll merged %d new message(s)", len(added))

        await self.retry_failed()
        return added

    def merge(self, incoming: Message) -> Optional[Message]:
        """Decrypt and insert one committed message. None if already present."""
        if incoming.id in self._store:
            return None

        pending = self._store.find_pending(
            incoming.conversation_id, incoming.sender_id, incoming.timestamp,
        )
        if pending is not None and not incoming.nonce:
            incoming = dataclasses.replace(incoming, nonce=pending.nonce)

        msg = self.decrypt(incoming)
        if pending is not None:
            self._remember_nonce(msg.id, msg.nonce)
            return self._store.reconcile(pending.id, msg)

        self._store.add(msg)
        return msg

    def apply_delivered(self, payload: dict) -> int:
        conversation_id = payload.get("conversationId")
        if not conversation_id:
            return 0
        recipient = payload.get("userId")
        if recipient is not None:
            return self._store.update_flags(
                conversation_id, lambda m: m.sender_id != str(recipient), delivered=True,
            )
        return self._store.update_flags(
            conversation_id, lambda m: m.sender_id == self.user_id, delivered=True,
        )

    def apply_read(self, payload: dict) -> int:
        conversation_id = payload.get("conversationId")
        reader = payload.get("senderId")
        if not conversation_id or reader is None:
            return 0
        return self._store.update_flags(
            conversation_id, lambda m: m.sender_id != str(reader), read=True,
        )

    # ─── Local sends ───

    async def send_local(
        self,
        sender_id: str,
        text: str,
        conversation_id: str,
        timestamp: Union[str, datetime, None] = None,
    ) -> Message:
        validate_conversation_id(conversation_id)
        if not text or not text.strip():
            raise InvalidArgumentError("text", text)

        key = self._stores.keys.get_key(conversation_id)
        sealed = self._cipher.encrypt(key, text)

        local = Message(
            id=new_temp_id(),
            conversation_id=conversation_id,
            sender_id=sender_id,
            ciphertext=sealed.ciphertext,
            nonce=sealed.nonce,
            timestamp=parse_timestamp(timestamp),
            plaintext=text,
            status=config.STATUS_PENDING,
        )
        self._remember_nonce(local.id, local.nonce)
        self._store.add(local)

        return await self._commit(local)

    async def _commit(self, local: Message) -> Message:
        epoch = self._epoch
        try:
            saved = await self._backend.append_message(
                local.conversation_id,
                local.sender_id,
                local.ciphertext,
                local.nonce,
                local.timestamp,
            )
        except NetworkFailureError as e:
            logger.error("append of %s failed, kept as failed: %s", local.id, e)
            if epoch != self._epoch:
                return local
            return self._store.set_status(local.id, config.STATUS_FAILED) or local

        # the store may not echo the nonce back
        nonce = saved.nonce or local.nonce
        committed = self.decrypt(dataclasses.replace(saved, nonce=nonce))
        if epoch != self._epoch:
            return committed

        self._remember_nonce(committed.id, nonce)
        result = self._store.reconcile(local.id, committed)

        try:
            await self._channel.emit(EVENT_NEW_MESSAGE, message_to_wire(committed))
        except ChannelUnavailableError as e:
            logger.warning("committed %s but could not push it: %s", committed.id, e)
        return result

    async def retry_failed(self) -> list[Message]:
        retried = []
        for record in self._store.failed():
            self._store.set_status(record.id, config.STATUS_PENDING)
            retried.append(await self._commit(record))
        return retried

    # ─── Receipts ───

    async def mark_read(self, conversation_id: str) -> bool:
        """Flag counterpart messages read locally, then in the store, then on the channel.

        Returns False without any I/O when nothing is unread or the
        conversation is debounced.
        """
        counterpart = [
            m for m in self._store.conversation(conversation_id)
            if m.sender_id != self.user_id
        ]
        if not any(not m.read for m in counterpart):
            return False
        try:
            if self._stores.reads.is_debounced(conversation_id, len(counterpart)):
                return False
            self._stores.reads.advance(conversation_id, len(counterpart))
        except CacheUnavailableError as e:
            logger.warning("read debounce for %s unavailable, marking anyway: %s", conversation_id, e)

        self._store.update_flags(
            conversation_id, lambda m: m.sender_id != self.user_id, read=True,
        )

        await self._backend.mark_conversation_read(conversation_id, self.user_id)
        try:
            await self._channel.emit(EVENT_READ, read_receipt(conversation_id, self.user_id))
        except ChannelUnavailableError as e:
            logger.warning("read receipt for %s not pushed: %s", conversation_id, e)
        return True

    async def mark_delivered(self, conversation_id: str) -> bool:
        undelivered = any(
            m.sender_id != self.user_id and not m.delivered
            for m in self._store.conversation(conversation_id)
        )
        if not undelivered:
            return False

        self._store.update_flags(
            conversation_id, lambda m: m.sender_id != self.user_id, delivered=True,
        )

        await self._backend.mark_conversation_delivered(conversation_id, self.user_id)
        try:
            await self._channel.emit(EVENT_DELIVERED, delivery_receipt(conversation_id, self.user_id))
        except ChannelUnavailableError as e:
            logger.warning("delivery receipt for %s not pushed: %s", conversation_id, e)
        return True

    # ─── Crypto helpers ───

    def decrypt(self, msg: Message) -> Message:
        """Return msg with plaintext filled in, or the decryption-error placeholder."""
        if not msg.ciphertext:
            return dataclasses.replace(msg, plaintext="")

        nonce = msg.nonce or self._recall_nonce(msg.id)
        try:
            if not nonce:
                raise DecryptionFailureError(msg.id, "nonce missing")
            key = self._stores.keys.get_key(msg.conversation_id)
            text = self._cipher.decrypt(key, msg.ciphertext, nonce, message_id=msg.id)
        except (DecryptionFailureError, InvalidArgumentError) as e:
            logger.warning("%s", e)
            return dataclasses.replace(
                msg, nonce=nonce, plaintext=config.DECRYPTION_ERROR_TEXT, undecryptable=True,
            )
        return dataclasses.replace(msg, nonce=nonce, plaintext=text)

    def _remember_nonce(self, message_id: str, nonce: Optional[str]) -> None:
        if not nonce:
            return
        try:
            self._stores.nonces.remember(message_id, nonce)
        except CacheUnavailableError as e:
            logger.warning("nonce for %s not cached: %s", message_id, e)

    def _recall_nonce(self, message_id: str) -> Optional[str]:
        try:
            return self._stores.nonces.recall(message_id)
        except CacheUnavailableError as e:
            logger.warning("nonce lookup for %s failed: %s", message_id, e)
            return None
