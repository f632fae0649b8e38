"""
Backing-store seam between a chat session and the history server.

    ChatBackend       the five operations a session needs (typing.Protocol);
                      ChatHistoryServer satisfies it directly over asyncpg
    HttpChatBackend   the same operations over the FastAPI endpoints

Every failure surfaces as a NetworkFailureError subclass so the sync engine
can log it and leave recovery to the next poll cycle.
"""

import logging
from datetime import datetime
from typing import Optional, Protocol

import httpx

from DonationChat.chat_server import config as srv_config
from DonationChat.chat_shared import errors
from DonationChat.chat_shared.types import Message
from DonationChat.chat.protocol import format_timestamp, message_from_wire

logger = logging.getLogger(__name__)


class ChatBackend(Protocol):
    async def resolve_user_id(self, email: str) -> str: ...

    async def fetch_conversations(
        self, user_id: str, since: Optional[datetime] = None,
    ) -> list[Message]: ...

    async def append_message(
        self,
        conversation_id: str,
        sender_id: str,
        ciphertext: str,
        nonce: Optional[str],
        timestamp: datetime,
    ) -> Message: ...

    async def mark_conversation_read(self, conversation_id: str, user_id: str) -> int: ...

    async def mark_conversation_delivered(self, conversation_id: str, user_id: str) -> int: ...


class HttpChatBackend:
    """ChatBackend over HTTP."""

    def __init__(
        self,
        base_url: str = srv_config.API_BASE_URL,
        *,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = srv_config.HTTP_TIMEOUT_SECONDS,
    ):
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def _post(self, operation: str, path: str, body: dict) -> dict:
        try:
            resp = await self._client.post(path, json=body)
        except httpx.HTTPError as e:
            raise errors.NetworkFailureError(operation, str(e))

        if resp.status_code == 404 and operation == "resolve_user_id":
            raise errors.UserNotFoundError(body.get("email"))
        if resp.status_code >= 400:
            raise errors.NetworkFailureError(operation, f"{resp.status_code} {resp.text}")
        return resp.json()

    async def resolve_user_id(self, email: str) -> str:
        data = await self._post("resolve_user_id", "/v1/users/resolve", {"email": email})
        return str(data["userId"])

    async def fetch_conversations(
        self, user_id: str, since: Optional[datetime] = None,
    ) -> list[Message]:
        body = {"userId": user_id, "since": format_timestamp(since) if since else None}
        data = await self._post("fetch_conversations", "/v1/chats/fetch", body)
        return [message_from_wire(m) for m in data.get("messages", [])]

    async def append_message(
        self,
        conversation_id: str,
        sender_id: str,
        ciphertext: str,
        nonce: Optional[str],
        timestamp: datetime,
    ) -> Message:
        body = {
            "conversationId": conversation_id,
            "senderId": sender_id,
            "ciphertext": ciphertext,
            "nonce": nonce,
            "timestamp": format_timestamp(timestamp),
        }
        logger.debug("appending message to %s", conversation_id)
        data = await self._post("append_message", "/v1/chats/append", body)
        return message_from_wire(data)

    async def mark_conversation_read(self, conversation_id: str, user_id: str) -> int:
        body = {"conversationId": conversation_id, "userId": user_id}
        data = await self._post("mark_conversation_read", "/v1/chats/read", body)
        return data["updated"]

    async def mark_conversation_delivered(self, conversation_id: str, user_id: str) -> int:
        body = {"conversationId": conversation_id, "userId": user_id}
        data = await self._post("mark_conversation_delivered", "/v1/chats/delivered", body)
        return data["updated"]

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
