"""
Chat protocol — event names, wire payloads, channel envelopes.

Wire message (channel and HTTP):
    {id, conversationId, senderId, ciphertext, nonce, timestamp}
plus {delivered, read} when the backing store returns it.  ciphertext and
nonce are base64, timestamp is ISO-8601 UTC.

Channel envelope (Redis pub/sub):
    {event, origin, sender, payload}
origin is the publishing connection id, so a client can drop its own echoes.
"""

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Union

from DonationChat.chat_shared import config
from DonationChat.chat_shared.errors import InvalidArgumentError
from DonationChat.chat_shared.types import Message


EVENT_JOIN              = "join"
EVENT_NEW_MESSAGE       = "newMessage"
EVENT_DELIVERED         = "messageDelivered"
EVENT_READ              = "messageRead"
EVENT_PRESENCE_SNAPSHOT = "presence-snapshot"
EVENT_USER_CONNECTED    = "user-connected"
EVENT_USER_DISCONNECTED = "user-disconnected"

# Events the sync engine subscribes to on the channel
INBOUND_EVENTS = (
    EVENT_NEW_MESSAGE,
    EVENT_DELIVERED,
    EVENT_READ,
    EVENT_PRESENCE_SNAPSHOT,
    EVENT_USER_CONNECTED,
    EVENT_USER_DISCONNECTED,
)

# Local timer tick, never sent over the channel
POLL_TICK = "poll-tick"


@dataclass
class InboundEvent:
    kind: str
    payload: dict = field(default_factory=dict)


@dataclass
class Envelope:
    event: str
    origin: str
    sender: Optional[str]
    payload: dict


def new_temp_id() -> str:
    return f"{config.TEMP_ID_PREFIX}{uuid.uuid4()}"


def is_temp_id(message_id: str) -> bool:
    return message_id.startswith(config.TEMP_ID_PREFIX)


# ─── Timestamps ───

def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Union[str, datetime, None]) -> datetime:
    """Parse an origin timestamp into an aware UTC datetime.

    Accepts ISO-8601 with either "T" or a space between date and time, and a
    trailing "Z". Naive values are taken to be UTC. None means "now".
    """
    if value is None or value == "":
        return utc_now()

    if isinstance(value, datetime):
        dt = value
    else:
        text = value.strip().replace(" ", "T", 1)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            raise InvalidArgumentError("timestamp", value)

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(dt: datetime) -> str:
    return parse_timestamp(dt).isoformat()


# ─── Wire messages ───

def message_to_wire(msg: Message, include_flags: bool = False) -> dict:
    payload = {
        "id": msg.id,
        "conversationId": msg.conversation_id,
        "senderId": msg.sender_id,
        "ciphertext": msg.ciphertext,
        "nonce": msg.nonce,
        "timestamp": format_timestamp(msg.timestamp),
    }
    if include_flags:
        payload["delivered"] = msg.delivered
        payload["read"] = msg.read
    return payload


def message_from_wire(payload: dict) -> Message:
    """Build an (undecrypted) Message from a wire payload.

    The nonce may be absent; the sync engine tries to recover it from the
    session's nonce cache.
    """
    msg_id = payload.get("id")
    conversation_id = payload.get("conversationId")
    if msg_id is None or msg_id == "":
        raise InvalidArgumentError("id", msg_id)
    if not conversation_id:
        raise InvalidArgumentError("conversationId", conversation_id)

    return Message(
        id=str(msg_id),
        conversation_id=str(conversation_id),
        sender_id=str(payload.get("senderId", "")),
        ciphertext=payload.get("ciphertext") or "",
        nonce=payload.get("nonce") or None,
        timestamp=parse_timestamp(payload.get("timestamp")),
        delivered=bool(payload.get("delivered", False)),
        read=bool(payload.get("read", False)),
    )


def read_receipt(conversation_id: str, reader_id: str) -> dict:
    return {"conversationId": conversation_id, "senderId": reader_id}


def delivery_receipt(conversation_id: str, recipient_id: str) -> dict:
    return {"conversationId": conversation_id, "userId": recipient_id}


# ─── Channel envelopes ───

def user_channel(user_id: str) -> str:
    """Return the pub/sub channel carrying events addressed to one user."""
    return f"{config.USER_CHANNEL_PREFIX}:{user_id}"


def serialize_envelope(event: str, payload: dict, origin: str, sender: Optional[str]) -> str:
    return json.dumps({
        "event": event,
        "origin": origin,
        "sender": sender,
        "payload": payload,
    })


def deserialize_envelope(data: Union[str, bytes]) -> Envelope:
    d = json.loads(data)
    return Envelope(
        event=d["event"],
        origin=d.get("origin", ""),
        sender=d.get("sender"),
        payload=d.get("payload") or {},
    )
