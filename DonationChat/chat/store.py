"""
In-memory read model for one chat session.

ChatStore keeps records in arrival order, deduplicated by message id, and
hands out timestamp-ordered views per conversation. Records are frozen
Message dataclasses; every mutation swaps in a new instance, so a snapshot
handed to the UI never changes underneath it.
"""

import dataclasses
from datetime import datetime
from typing import Callable, Iterable, Optional

from DonationChat.chat_shared import config
from DonationChat.chat_shared.types import Message


class ChatStore:
    def __init__(self, on_insert: Optional[Callable[[Message], None]] = None):
        self._records: dict[str, Message] = {}
        self._on_insert = on_insert

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, message_id: str) -> bool:
        return message_id in self._records

    def get(self, message_id: str) -> Optional[Message]:
        return self._records.get(message_id)

    def add(self, msg: Message) -> bool:
        """Append unless a record with the same id exists. Returns True if added."""
        if msg.id in self._records:
            return False
        self._records[msg.id] = msg
        self._notify(msg)
        return True

    def replace(self, old_id: str, msg: Message) -> None:
        """Swap a record for another, keeping its arrival position."""
        rebuilt: dict[str, Message] = {}
        for message_id, record in self._records.items():
            if message_id == old_id:
                rebuilt[msg.id] = msg
            elif message_id != msg.id:
                rebuilt[message_id] = record
        self._records = rebuilt
        self._notify(msg)

    def find_pending(self, conversation_id: str, sender_id: str, timestamp: datetime) -> Optional[Message]:
        """Locate the local tentative record a committed message stands for."""
        for record in self._records.values():
            if (
                record.pending
                and record.conversation_id == conversation_id
                and record.sender_id == sender_id
                and record.timestamp == timestamp
            ):
                return record
        return None

    def reconcile(self, temp_id: str, committed: Message) -> Message:
        """Replace a pending record with its committed version, exactly once.

        If the committed id already arrived through push or poll, the pending
        record is dropped and the existing committed record kept.
        """
        existing = self._records.get(committed.id)
        if existing is not None:
            self._records.pop(temp_id, None)
            return existing
        if temp_id in self._records:
            self.replace(temp_id, committed)
        else:
            self.add(committed)
        return committed

    def set_status(self, message_id: str, status: str) -> Optional[Message]:
        record = self._records.get(message_id)
        if record is None:
            return None
        updated = dataclasses.replace(record, status=status)
        self._records[message_id] = updated
        return updated

    def update_flags(
        self,
        conversation_id: str,
        predicate: Callable[[Message], bool],
        *,
        delivered: Optional[bool] = None,
        read: Optional[bool] = None,
    ) -> int:
        """Set delivered/read on matching records. Returns how many changed."""
        changed = 0
        for message_id, record in self._records.items():
            if record.conversation_id != conversation_id or not predicate(record):
                continue
            changes = {}
            if delivered is not None and record.delivered != delivered:
                changes["delivered"] = delivered
            if read is not None and record.read != read:
                changes["read"] = read
            if changes:
                self._records[message_id] = dataclasses.replace(record, **changes)
                changed += 1
        return changed

    def has_conversation(self, conversation_id: str) -> bool:
        return any(r.conversation_id == conversation_id for r in self._records.values())

    def conversation(self, conversation_id: str) -> list[Message]:
        """Messages of one conversation, oldest first (arrival order breaks ties)."""
        return sorted(
            (r for r in self._records.values() if r.conversation_id == conversation_id),
            key=lambda r: r.timestamp,
        )

    def conversation_ids(self) -> list[str]:
        seen: dict[str, None] = {}
        for record in self._records.values():
            seen.setdefault(record.conversation_id, None)
        return list(seen)

    def failed(self) -> list[Message]:
        return [r for r in self._records.values() if r.status == config.STATUS_FAILED]

    def snapshot(self) -> list[Message]:
        return list(self._records.values())

    def clear(self) -> None:
        self._records.clear()

    def _notify(self, msg: Message) -> None:
        if self._on_insert is not None:
            self._on_insert(msg)


class PresenceSet:
    """Online user ids: replaced by snapshots, patched by connect/disconnect."""

    def __init__(self):
        self._online: set[str] = set()

    def replace_all(self, user_ids: Iterable[str]) -> None:
        self._online = {str(u) for u in user_ids}

    def add(self, user_id: str) -> None:
        self._online.add(str(user_id))

    def discard(self, user_id: str) -> None:
        self._online.discard(str(user_id))

    def __contains__(self, user_id: str) -> bool:
        return str(user_id) in self._online

    def __len__(self) -> int:
        return len(self._online)

    def snapshot(self) -> frozenset[str]:
        return frozenset(self._online)

    def clear(self) -> None:
        self._online.clear()
