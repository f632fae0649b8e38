import dataclasses

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from DonationChat.chat_server.api import app, get_history
from DonationChat.chat_shared import errors
from DonationChat.chat_shared.crypto_engine import validate_conversation_id
from DonationChat.chat_shared.types import Message


class FakeHistory:
    def __init__(self):
        self.users = {"donor@example.org": "1"}
        self.members: set[tuple[str, str]] = set()
        self.rows: list[Message] = []
        self.broken = False

    def _check(self, operation):
        if self.broken:
            raise errors.ServerDatabaseError(operation, "connection reset")

    async def register_stakeholder(self, email):
        if not email.strip():
            raise errors.InvalidArgumentError("email", email)
        return self.users.setdefault(email.lower(), str(len(self.users) + 1))

    async def resolve_user_id(self, email):
        self._check("resolve_user_id")
        if email.lower() not in self.users:
            raise errors.UserNotFoundError(email)
        return self.users[email.lower()]

    async def add_participant(self, conversation_id, user_id):
        validate_conversation_id(conversation_id)
        if (conversation_id, user_id) in self.members:
            return False
        self.members.add((conversation_id, user_id))
        return True

    async def fetch_conversations(self, user_id, since=None):
        self._check("fetch_conversations")
        return [
            r for r in self.rows
            if (r.conversation_id, user_id) in self.members
            and (since is None or r.timestamp > since)
        ]

    async def append_message(self, conversation_id, sender_id, ciphertext, nonce, timestamp):
        self._check("append_message")
        validate_conversation_id(conversation_id)
        self.members.add((conversation_id, sender_id))
        row = Message(
            id=str(len(self.rows) + 1),
            conversation_id=conversation_id,
            sender_id=sender_id,
            ciphertext=ciphertext,
            nonce=nonce,
            timestamp=timestamp,
        )
        self.rows.append(row)
        return row

    async def mark_conversation_read(self, conversation_id, user_id):
        return self._flag(conversation_id, user_id, "read")

    async def mark_conversation_delivered(self, conversation_id, user_id):
        return self._flag(conversation_id, user_id, "delivered")

    def _flag(self, conversation_id, user_id, field):
        validate_conversation_id(conversation_id)
        updated = 0
        for i, row in enumerate(self.rows):
            if row.conversation_id == conversation_id and row.sender_id != user_id and not getattr(row, field):
                self.rows[i] = dataclasses.replace(row, **{field: True})
                updated += 1
        return updated


@pytest.fixture
def history():
    fake = FakeHistory()
    app.dependency_overrides[get_history] = lambda: fake
    yield fake
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(history):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
