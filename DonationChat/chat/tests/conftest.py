import dataclasses
from collections import defaultdict
from typing import Optional

import pytest

from DonationChat.chat_shared.crypto_engine import Cipher, KeyManager
from DonationChat.chat_shared.errors import (
    AppendError,
    ChannelUnavailableError,
    FetchError,
    UserNotFoundError,
)
from DonationChat.chat_shared.types import Message


class InMemoryBackend:
    """Backing store double: rows in a list, every call recorded."""

    def __init__(self, users: Optional[dict] = None):
        self.users = dict(users or {})
        self.members: dict[str, set] = defaultdict(set)
        self.rows: list[Message] = []
        self.calls: list[tuple] = []
        self.fail_append = False
        self.fail_fetch = False
        self.strip_nonces = False
        # fetch answers with read/delivered as they were before any receipt
        self.stale_flags = False
        self._next_id = 100
        self._keys = KeyManager()
        self._cipher = Cipher()

    def calls_to(self, operation: str) -> list[tuple]:
        return [c for c in self.calls if c[0] == operation]

    def seed(self, conversation_id, sender_id, text, timestamp, *,
             delivered=False, read=False, nonce=True, members=()) -> Message:
        """Store a message as if another client had appended it."""
        sealed = self._cipher.encrypt(self._keys.get_key(conversation_id), text)
        row = Message(
            id=str(self._take_id()),
            conversation_id=conversation_id,
            sender_id=sender_id,
            ciphertext=sealed.ciphertext,
            nonce=sealed.nonce if nonce else None,
            timestamp=timestamp,
            delivered=delivered,
            read=read,
        )
        self.rows.append(row)
        self.members[conversation_id].update({sender_id, *members})
        return row

    def _take_id(self) -> int:
        self._next_id += 1
        return self._next_id

    def _out(self, row: Message) -> Message:
        if self.strip_nonces:
            row = dataclasses.replace(row, nonce=None)
        if self.stale_flags:
            row = dataclasses.replace(row, read=False, delivered=False)
        return row

    async def resolve_user_id(self, email):
        self.calls.append(("resolve_user_id", email))
        if email not in self.users:
            raise UserNotFoundError(email)
        return self.users[email]

    async def fetch_conversations(self, user_id, since=None):
        self.calls.append(("fetch_conversations", user_id))
        if self.fail_fetch:
            raise FetchError("connection refused")
        return [
            self._out(r) for r in self.rows
            if user_id in self.members[r.conversation_id]
        ]

    async def append_message(self, conversation_id, sender_id, ciphertext, nonce, timestamp):
        self.calls.append(("append_message", conversation_id, sender_id))
        if self.fail_append:
            raise AppendError("connection refused")
        row = Message(
            id=str(self._take_id()),
            conversation_id=conversation_id,
            sender_id=sender_id,
            ciphertext=ciphertext,
            nonce=nonce,
            timestamp=timestamp,
        )
        self.rows.append(row)
        self.members[conversation_id].add(sender_id)
        return self._out(row)

    def _flag(self, conversation_id, user_id, **changes) -> int:
        updated = 0
        for i, row in enumerate(self.rows):
            if row.conversation_id == conversation_id and row.sender_id != user_id:
                self.rows[i] = dataclasses.replace(row, **changes)
                updated += 1
        return updated

    async def mark_conversation_read(self, conversation_id, user_id):
        self.calls.append(("mark_conversation_read", conversation_id, user_id))
        return self._flag(conversation_id, user_id, read=True)

    async def mark_conversation_delivered(self, conversation_id, user_id):
        self.calls.append(("mark_conversation_delivered", conversation_id, user_id))
        return self._flag(conversation_id, user_id, delivered=True)


class FakeChannel:
    """Event channel double; fire() plays an event arriving from the server."""

    def __init__(self, fail_connect: bool = False):
        self.handlers = defaultdict(list)
        self.emitted: list[tuple[str, dict]] = []
        self.user_id = None
        self.connected = False
        self.fail_connect = fail_connect
        self.connects = 0
        self.disconnects = 0

    def on(self, event, handler):
        self.handlers[event].append(handler)

    def off(self, event, handler=None):
        if handler is None:
            self.handlers.pop(event, None)
        elif handler in self.handlers.get(event, []):
            self.handlers[event].remove(handler)

    def handler_count(self, event=None):
        if event is not None:
            return len(self.handlers.get(event, []))
        return sum(len(h) for h in self.handlers.values())

    async def connect(self, user_id):
        self.connects += 1
        if self.fail_connect:
            raise ChannelUnavailableError("connection refused")
        self.user_id = user_id
        self.connected = True

    async def disconnect(self):
        self.disconnects += 1
        self.connected = False
        self.user_id = None

    def drop(self):
        """The live connection dies underneath; handlers stay registered."""
        self.connected = False
        self.user_id = None

    async def emit(self, event, payload):
        if not self.connected:
            raise ChannelUnavailableError("not connected")
        self.emitted.append((event, payload))

    def fire(self, event, payload):
        for handler in list(self.handlers.get(event, [])):
            handler(payload)

    def emitted_events(self, event) -> list[dict]:
        return [p for e, p in self.emitted if e == event]


@pytest.fixture
def backend():
    return InMemoryBackend(users={"donor@example.org": "1", "ngo@example.org": "2"})


@pytest.fixture
def channel():
    return FakeChannel()
