from datetime import datetime
from typing import Optional

import asyncpg

from DonationChat.chat_shared import errors
from DonationChat.chat_shared.crypto_engine import validate_conversation_id
from DonationChat.chat_shared.types import Message


class ChatHistoryServer:
    pool: asyncpg.Pool

    def __init__(self, p: asyncpg.Pool):
        self.pool = p

    @staticmethod
    def _row_to_message(row) -> Message:
        return Message(
            id=str(row["chatid"]),
            conversation_id=row["donationid"],
            sender_id=row["senderid"],
            ciphertext=row["chathistory"],
            nonce=row["iv"],
            timestamp=row["message_timestamp"],
            delivered=row["delivered"],
            read=row["readreceipts"],
        )

    async def register_stakeholder(self, email: str) -> str:
        if not email or not email.strip():
            raise errors.InvalidArgumentError("email", email)
        try:
            async with self.pool.acquire() as conn:
                stakeholder_id = await conn.fetchval("""
                                                      INSERT INTO stakeholders (email)
                                                      VALUES ($1)
                                                      ON CONFLICT (email) DO UPDATE SET email = EXCLUDED.email
                                                      RETURNING stakeholderid
                                                      """, email.strip().lower())
                return str(stakeholder_id)
        except asyncpg.PostgresError as e:
            raise errors.ServerDatabaseError("register_stakeholder", str(e))

    async def resolve_user_id(self, email: str) -> str:
        if not email or not email.strip():
            raise errors.InvalidArgumentError("email", email)
        try:
            async with self.pool.acquire() as conn:
                stakeholder_id = await conn.fetchval(
                    "SELECT stakeholderid FROM stakeholders WHERE email = $1",
                    email.strip().lower(),
                )
        except asyncpg.PostgresError as e:
            raise errors.ServerDatabaseError("resolve_user_id", str(e))

        if stakeholder_id is None:
            raise errors.UserNotFoundError(email)
        return str(stakeholder_id)

    async def add_participant(self, conversation_id: str, user_id: str) -> bool:
        validate_conversation_id(conversation_id)
        try:
            async with self.pool.acquire() as conn:
                result = await conn.fetchrow("""
                                             INSERT INTO chat_members (donationid, stakeholderid)
                                             VALUES ($1, $2)
                                             ON CONFLICT DO NOTHING
                                             RETURNING donationid
                                             """, conversation_id, user_id)
                return result is not None
        except asyncpg.PostgresError as e:
            raise errors.ServerDatabaseError("add_participant", str(e))

    async def fetch_conversations(
        self,
        user_id: str,
        since: Optional[datetime] = None,
    ) -> list[Message]:
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch("""
                                        SELECT c.chatid, c.donationid, c.senderid, c.chathistory, c.iv,
                                               c.message_timestamp, c.readreceipts, c.delivered
                                        FROM chats c
                                        JOIN chat_members m ON m.donationid = c.donationid
                                        WHERE m.stakeholderid = $1
                                          AND ($2::timestamptz IS NULL OR c.message_timestamp > $2)
                                        ORDER BY c.message_timestamp ASC, c.chatid ASC
                                        """, user_id, since)
                return [self._row_to_message(row) for row in rows]
        except asyncpg.PostgresError as e:
            raise errors.FetchError(str(e))

    async def append_message(
        self,
        conversation_id: str,
        sender_id: str,
        ciphertext: str,
        nonce: Optional[str],
        timestamp: datetime,
    ) -> Message:
        validate_conversation_id(conversation_id)
        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute("""
                                       INSERT INTO chat_members (donationid, stakeholderid)
                                       VALUES ($1, $2)
                                       ON CONFLICT DO NOTHING
                                       """, conversation_id, sender_id)
                    row = await conn.fetchrow("""
                                              INSERT INTO chats
                                                  (donationid, senderid, chathistory, iv, message_timestamp)
                                              VALUES ($1, $2, $3, $4, $5)
                                              RETURNING chatid, donationid, senderid, chathistory, iv,
                                                        message_timestamp, readreceipts, delivered
                                              """,
                                              conversation_id,
                                              sender_id,
                                              ciphertext,
                                              nonce,
                                              timestamp,
                                              )
                    return self._row_to_message(row)
        except asyncpg.PostgresError as e:
            raise errors.AppendError(str(e))

    async def mark_conversation_read(self, conversation_id: str, user_id: str) -> int:
        """Flag every counterpart message in the conversation as read."""
        validate_conversation_id(conversation_id)
        try:
            async with self.pool.acquire() as conn:
                result = await conn.execute("""
                                            UPDATE chats SET readreceipts = TRUE
                                            WHERE donationid = $1 AND senderid <> $2 AND NOT readreceipts
                                            """, conversation_id, user_id)
                return int(result.split()[-1])
        except asyncpg.PostgresError as e:
            raise errors.ReceiptError("mark_conversation_read", str(e))

    async def mark_conversation_delivered(self, conversation_id: str, user_id: str) -> int:
        validate_conversation_id(conversation_id)
        try:
            async with self.pool.acquire() as conn:
                result = await conn.execute("""
                                            UPDATE chats SET delivered = TRUE
                                            WHERE donationid = $1 AND senderid <> $2 AND NOT delivered
                                            """, conversation_id, user_id)
                return int(result.split()[-1])
        except asyncpg.PostgresError as e:
            raise errors.ReceiptError("mark_conversation_delivered", str(e))

    async def health_check(self) -> bool:
        try:
            async with self.pool.acquire() as conn:
                return await conn.fetchval("SELECT 1") == 1
        except (asyncpg.PostgresError, OSError):
            return False
