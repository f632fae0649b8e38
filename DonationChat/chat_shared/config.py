import os

# Redis Connection (session caches + event channel)

REDIS_HOST              = os.environ.get("CHAT_REDIS_HOST", "localhost")
REDIS_PORT              = int(os.environ.get("CHAT_REDIS_PORT", "6379"))
REDIS_CACHE_DB          = 0          # Logical DB for session caches
REDIS_CHANNEL_DB        = 0          # pub/sub ignores the db index, presence hash does not
REDIS_SOCKET_TIMEOUT    = 5          # seconds

# Key Namespace Prefixes

NONCE_KEY_PREFIX        = "chat:v1:nonce"        # chat:v1:nonce:{session_id}  hash msg_id -> nonce
READ_KEY_PREFIX         = "chat:v1:read"         # chat:v1:read:{session_id}   hash conv_id -> marked count
PRESENCE_KEY            = "chat:v1:online"       # hash user_id -> open connections
EVENTS_CHANNEL          = "chat:v1:events"       # shared broadcast channel
USER_CHANNEL_PREFIX     = "chat:v1:user"         # chat:v1:user:{user_id}

SESSION_CACHE_TTL_SECONDS = 86_400  # 24h, in case a session dies without teardown

# Key Derivation (PBKDF2-HMAC-SHA256)

KDF_SALT                = b"chat-e2ee"
KDF_ITERATIONS          = 100_000
KDF_KEY_LENGTH          = 32         # AES-256

# Cipher (AES-256-GCM)

NONCE_SIZE_BYTES        = 12

# Sync

POLL_INTERVAL_SECONDS   = 5.0
TEMP_ID_PREFIX          = "temp-"
DECRYPTION_ERROR_TEXT   = "[decryption error]"

# Message Status

STATUS_PENDING          = "pending"
STATUS_COMMITTED        = "committed"
STATUS_FAILED           = "failed"
