"""
SessionManager — one signed-in user's chat session.

Start → resolve user id from login email → fresh caches + store
      → register channel handlers → connect channel (soft-fails to poll-only,
        each poll tick retries the connect)
      → start sync worker + poll timer
Use   → send_message / mark_read / mark_delivered / unread_count
End   → stop timer + worker, unregister handlers, disconnect channel,
        clear store, tear down key/nonce/read caches

No public method raises into the caller; failures are logged and surface as
a None/False/0 return.
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional, Union

from DonationChat.chat_shared import config
from DonationChat.chat_shared.errors import (
    CacheUnavailableError,
    ChannelUnavailableError,
    ChatError,
)
from DonationChat.chat_shared.types import ConversationSummary, HealthStatus, Message
from DonationChat.chat_db.connection import cache_alive
from DonationChat.chat_db.session_cache import SessionStores
from DonationChat.chat.store import ChatStore, PresenceSet
from DonationChat.chat.sync import SyncEngine

logger = logging.getLogger(__name__)


class SessionManager:
    """Public chat contract for the UI layer."""

    def __init__(
        self,
        email: Optional[str] = None,
        *,
        backend,
        channel,
        cache_client,
        user_id: Optional[str] = None,
        poll_interval: float = config.POLL_INTERVAL_SECONDS,
        on_message: Optional[Callable[[Message], None]] = None,
    ):
        self.email = email
        self.user_id = user_id
        self._backend = backend
        self._channel = channel
        self._cache_client = cache_client
        self._poll_interval = poll_interval
        self._on_message = on_message

        self.store = ChatStore(on_insert=self._notify)
        self.presence = PresenceSet()
        self.stores: Optional[SessionStores] = None
        self.engine: Optional[SyncEngine] = None
        self._sends: set[asyncio.Task] = set()

    @property
    def active(self) -> bool:
        return self.engine is not None

    @property
    def channel_live(self) -> bool:
        return bool(self._channel.connected)

    async def __aenter__(self) -> "SessionManager":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.end()

    # ─── Lifecycle ───

    async def start(self) -> bool:
        """Open the session. Returns False if the user id cannot be resolved."""
        if self.active:
            return True

        if self.user_id is None:
            if not self.email:
                logger.error("cannot start a chat session without an email or user id")
                return False
            try:
                self.user_id = await self._backend.resolve_user_id(self.email)
            except ChatError as e:
                logger.error("could not resolve user id for %s: %s", self.email, e)
                return False

        self.store.clear()
        self.presence.clear()
        self.stores = SessionStores(self._cache_client)
        self.engine = SyncEngine(
            self.user_id,
            self.store,
            self._backend,
            self._channel,
            self.stores,
            self.presence,
            poll_interval=self._poll_interval,
        )
        # handlers first, so the presence snapshot sent during connect is queued
        self.engine.attach()

        try:
            await self._channel.connect(self.user_id)
        except ChannelUnavailableError as e:
            logger.warning("channel unavailable, polling until it reconnects: %s", e)

        await self.engine.start()
        logger.info("chat session %s started for user %s", self.stores.session_id, self.user_id)
        return True

    async def end(self) -> None:
        if not self.active:
            return

        engine, self.engine = self.engine, None
        for task in list(self._sends):
            task.cancel()
        if self._sends:
            await asyncio.gather(*self._sends, return_exceptions=True)
        self._sends.clear()

        await engine.stop()
        await self._channel.disconnect()

        self.store.clear()
        self.presence.clear()
        if self.stores is not None:
            try:
                self.stores.teardown()
            except CacheUnavailableError as e:
                logger.warning("session caches not cleared (they expire on their own): %s", e)
            logger.info("chat session %s ended", self.stores.session_id)
            self.stores = None

    async def switch_user(self, email: str) -> bool:
        await self.end()
        self.email = email
        self.user_id = None
        return await self.start()

    # ─── Operations ───

    async def send_message(
        self,
        sender_id: str,
        text: str,
        conversation_id: str,
        timestamp: Union[str, datetime, None] = None,
    ) -> Optional[Message]:
        if not text or not text.strip():
            return None
        if not self.active:
            logger.warning("send_message called with no active session")
            return None
        try:
            return await self.engine.send_local(sender_id, text, conversation_id, timestamp)
        except ChatError as e:
            logger.error("send to %s failed: %s", conversation_id, e)
            return None

    def send_message_nowait(
        self,
        sender_id: str,
        text: str,
        conversation_id: str,
        timestamp: Union[str, datetime, None] = None,
    ) -> asyncio.Task:
        """Fire-and-forget variant; the task is cancelled if the session ends first."""
        task = asyncio.create_task(
            self.send_message(sender_id, text, conversation_id, timestamp)
        )
        self._sends.add(task)
        task.add_done_callback(self._sends.discard)
        return task

    async def mark_read(self, conversation_id: str) -> bool:
        if not conversation_id or not self.active:
            return False
        try:
            return await self.engine.mark_read(conversation_id)
        except ChatError as e:
            logger.error("mark_read for %s failed: %s", conversation_id, e)
            return False

    async def mark_delivered(self, conversation_id: str) -> bool:
        if not conversation_id or not self.active:
            return False
        try:
            return await self.engine.mark_delivered(conversation_id)
        except ChatError as e:
            logger.error("mark_delivered for %s failed: %s", conversation_id, e)
            return False

    def unread_count(self, conversation_id: str) -> int:
        """Delivered counterpart messages not yet read (the badge number)."""
        if self.user_id is None:
            return 0
        return sum(
            1 for m in self.store.conversation(conversation_id)
            if m.sender_id != self.user_id and not m.read and m.delivered
        )

    def total_unread(self) -> int:
        return sum(self.unread_count(cid) for cid in self.store.conversation_ids())

    # ─── Read model ───

    def messages(self, conversation_id: str) -> list[Message]:
        return self.store.conversation(conversation_id)

    def thread(self, conversation_id: str) -> list[Message]:
        return [
            m for m in self.store.conversation(conversation_id)
            if m.plaintext and m.plaintext.strip()
        ]

    def conversations(self) -> list[ConversationSummary]:
        """One entry per conversation, most recent activity first."""
        summaries = []
        for cid in self.store.conversation_ids():
            msgs = self.store.conversation(cid)
            summaries.append(ConversationSummary(
                conversation_id=cid,
                last_message=msgs[-1],
                message_count=len(msgs),
                unread=self.unread_count(cid),
            ))
        summaries.sort(key=lambda s: s.last_message.timestamp, reverse=True)
        return summaries

    @property
    def online_users(self) -> frozenset[str]:
        return self.presence.snapshot()

    def is_online(self, user_id: str) -> bool:
        return user_id in self.presence

    def health(self) -> HealthStatus:
        cached = 0
        if self.stores is not None:
            try:
                cached = self.stores.nonces.count()
            except CacheUnavailableError:
                cached = 0
        return HealthStatus(
            cache_connected=cache_alive(self._cache_client),
            channel_connected=bool(self._channel.connected),
            store_connected=bool(self.engine and self.engine.last_poll_ok),
            cached_nonces=cached,
            online_users=sorted(self.presence.snapshot()),
        )

    def _notify(self, msg: Message) -> None:
        if self._on_message is None:
            return
        try:
            self._on_message(msg)
        except Exception:
            logger.exception("on_message callback failed for %s", msg.id)
