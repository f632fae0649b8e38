from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from DonationChat.chat_shared import config


@dataclass(frozen=True)
class Message:
    id:              str
    conversation_id: str
    sender_id:       str
    ciphertext:      str
    nonce:           Optional[str]
    timestamp:       datetime
    plaintext:       Optional[str] = None
    delivered:       bool = False
    read:            bool = False
    status:          str = config.STATUS_COMMITTED
    undecryptable:   bool = False

    @property
    def pending(self) -> bool:
        return self.status != config.STATUS_COMMITTED

    @property
    def failed(self) -> bool:
        return self.status == config.STATUS_FAILED


@dataclass(frozen=True)
class EncryptedPayload:
    ciphertext: str     # base64
    nonce:      str     # base64, 12 bytes decoded


@dataclass
class ConversationSummary:
    conversation_id: str
    last_message:    Message
    message_count:   int
    unread:          int


@dataclass
class HealthStatus:
    cache_connected:   bool
    channel_connected: bool
    store_connected:   bool
    cached_nonces:     int = 0
    online_users:      list[str] = field(default_factory=list)
