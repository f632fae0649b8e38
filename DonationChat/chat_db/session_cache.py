"""
Session-scoped memo tables.

NonceCache       msg_id  -> nonce        (Redis hash, lets a pulled message that
                                          lost its nonce be decrypted locally)
ReadDebounce     conv_id -> count        (Redis hash, the read-debounce set)
KeyManager       conv_id -> key          (process memory only, keys are never
                                          written anywhere)

SessionStores bundles the three under one session id and clears all of them
in teardown(), so nothing leaks from one login into the next.
"""

import uuid
from typing import Optional

import redis

from DonationChat.chat_shared import config, errors
from DonationChat.chat_shared.crypto_engine import KeyManager

_REDIS_ERRORS = (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError)


def _text(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bytes):
        return value.decode()
    return value


class NonceCache:
    def __init__(self, client: redis.Redis, session_id: str):
        self.db: redis.Redis = client
        self.session_id = session_id

    def _hash_key(self) -> str:
        return f"{config.NONCE_KEY_PREFIX}:{self.session_id}"

    def remember(self, message_id: str, nonce: str) -> None:
        try:
            pipe = self.db.pipeline(transaction=True)
            pipe.hset(self._hash_key(), message_id, nonce)
            pipe.expire(self._hash_key(), config.SESSION_CACHE_TTL_SECONDS)
            pipe.execute()
        except _REDIS_ERRORS:
            raise errors.CacheUnavailableError("remember_nonce")

    def recall(self, message_id: str) -> Optional[str]:
        try:
            return _text(self.db.hget(self._hash_key(), message_id))
        except _REDIS_ERRORS:
            raise errors.CacheUnavailableError("recall_nonce")

    def count(self) -> int:
        try:
            return self.db.hlen(self._hash_key())
        except _REDIS_ERRORS:
            raise errors.CacheUnavailableError("count_nonces")

    def clear(self) -> None:
        try:
            self.db.delete(self._hash_key())
        except _REDIS_ERRORS:
            raise errors.CacheUnavailableError("clear_nonces")


class ReadDebounce:
    """Per conversation, how many counterpart messages were already marked read.

    markRead is suppressed while that count has not grown. Entries only ever
    rise and are never removed until the session ends.
    """

    def __init__(self, client: redis.Redis, session_id: str):
        self.db: redis.Redis = client
        self.session_id = session_id

    def _hash_key(self) -> str:
        return f"{config.READ_KEY_PREFIX}:{self.session_id}"

    def marked(self, conversation_id: str) -> int:
        try:
            raw = _text(self.db.hget(self._hash_key(), conversation_id))
        except _REDIS_ERRORS:
            raise errors.CacheUnavailableError("get_read_mark")
        return int(raw) if raw else 0

    def is_debounced(self, conversation_id: str, counterpart_count: int) -> bool:
        return self.contains(conversation_id) and counterpart_count <= self.marked(conversation_id)

    def contains(self, conversation_id: str) -> bool:
        try:
            return bool(self.db.hexists(self._hash_key(), conversation_id))
        except _REDIS_ERRORS:
            raise errors.CacheUnavailableError("check_read_mark")

    def advance(self, conversation_id: str, counterpart_count: int) -> None:
        if self.contains(conversation_id) and counterpart_count <= self.marked(conversation_id):
            return
        try:
            pipe = self.db.pipeline(transaction=True)
            pipe.hset(self._hash_key(), conversation_id, str(counterpart_count))
            pipe.expire(self._hash_key(), config.SESSION_CACHE_TTL_SECONDS)
            pipe.execute()
        except _REDIS_ERRORS:
            raise errors.CacheUnavailableError("advance_read_mark")

    def conversations(self) -> set[str]:
        try:
            return {_text(k) for k in self.db.hkeys(self._hash_key())}
        except _REDIS_ERRORS:
            raise errors.CacheUnavailableError("list_read_marks")

    def clear(self) -> None:
        try:
            self.db.delete(self._hash_key())
        except _REDIS_ERRORS:
            raise errors.CacheUnavailableError("clear_read_marks")


class SessionStores:
    """The three session caches, torn down together."""

    def __init__(
        self,
        client: redis.Redis,
        session_id: Optional[str] = None,
        keys: Optional[KeyManager] = None,
    ):
        self.session_id = session_id or str(uuid.uuid4())
        self.keys = keys if keys is not None else KeyManager()
        self.nonces = NonceCache(client, self.session_id)
        self.reads = ReadDebounce(client, self.session_id)

    def teardown(self) -> None:
        self.keys.clear()
        self.nonces.clear()
        self.reads.clear()
