"""
Per-conversation end-to-end encryption.

KeyManager derives one AES-256 key per conversation id with PBKDF2-HMAC-SHA256
over an application-wide salt, and caches it for the lifetime of the session.
Cipher wraps AES-256-GCM; every encrypt call draws its own 12-byte nonce so a
nonce can never be reused under the same key.

Wire format: ciphertext (with the 16-byte GCM tag appended) and nonce travel
as standard base64 strings.
"""

import base64
import binascii
import os
import threading

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from DonationChat.chat_shared import config
from DonationChat.chat_shared.errors import DecryptionFailureError, InvalidArgumentError
from DonationChat.chat_shared.types import EncryptedPayload


def validate_conversation_id(conversation_id) -> str:
    if not isinstance(conversation_id, str) or not conversation_id.strip():
        raise InvalidArgumentError("conversation_id", conversation_id)
    return conversation_id


class KeyManager:
    """Derives and caches one symmetric key per conversation."""

    def __init__(
        self,
        salt: bytes = config.KDF_SALT,
        iterations: int = config.KDF_ITERATIONS,
    ):
        self._salt = salt
        self._iterations = iterations
        self._keys: dict[str, bytes] = {}
        self._lock = threading.Lock()
        self.derivations = 0

    def get_key(self, conversation_id: str) -> bytes:
        validate_conversation_id(conversation_id)

        # read-then-insert must be atomic if a caller ever shares this across threads
        with self._lock:
            key = self._keys.get(conversation_id)
            if key is None:
                key = self._derive(conversation_id)
                self._keys[conversation_id] = key
            return key

    def _derive(self, conversation_id: str) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=config.KDF_KEY_LENGTH,
            salt=self._salt,
            iterations=self._iterations,
        )
        self.derivations += 1
        return kdf.derive(conversation_id.encode("utf-8"))

    def __len__(self) -> int:
        return len(self._keys)

    def clear(self) -> None:
        with self._lock:
            self._keys.clear()


class Cipher:
    """AES-256-GCM over base64 wire strings."""

    def encrypt(self, key: bytes, plaintext: str) -> EncryptedPayload:
        nonce = os.urandom(config.NONCE_SIZE_BYTES)
        sealed = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), None)
        return EncryptedPayload(
            ciphertext=base64.b64encode(sealed).decode("ascii"),
            nonce=base64.b64encode(nonce).decode("ascii"),
        )

    def decrypt(self, key: bytes, ciphertext: str, nonce: str, message_id: str = "?") -> str:
        """Return the plaintext, or raise DecryptionFailureError.

        Tampered or truncated ciphertext, a wrong key and a malformed nonce
        all surface as the same error kind.
        """
        if not nonce:
            raise DecryptionFailureError(message_id, "nonce missing")

        try:
            raw_nonce = base64.b64decode(nonce, validate=True)
            sealed = base64.b64decode(ciphertext, validate=True)
        except (binascii.Error, ValueError) as e:
            raise DecryptionFailureError(message_id, f"bad base64: {e}")

        if len(raw_nonce) != config.NONCE_SIZE_BYTES:
            raise DecryptionFailureError(message_id, f"nonce is {len(raw_nonce)} bytes")

        try:
            pt_bytes = AESGCM(key).decrypt(raw_nonce, sealed, None)
        except (InvalidTag, ValueError):
            raise DecryptionFailureError(message_id, "authentication failed")

        try:
            return pt_bytes.decode("utf-8")
        except UnicodeDecodeError:
            raise DecryptionFailureError(message_id, "plaintext is not utf-8")
