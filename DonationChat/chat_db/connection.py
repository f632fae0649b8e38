import redis

from DonationChat.chat_shared import errors, config


def create_cache_client() -> redis.Redis:
    r = redis.Redis(
        host=config.REDIS_HOST,
        port=config.REDIS_PORT,
        db=config.REDIS_CACHE_DB,
        decode_responses=True,
        socket_connect_timeout=config.REDIS_SOCKET_TIMEOUT,
        socket_timeout=config.REDIS_SOCKET_TIMEOUT,
    )
    try:
        r.ping()
    except (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError):
        raise errors.CacheUnavailableError(f"connect {config.REDIS_HOST}:{config.REDIS_PORT}")
    return r


def cache_alive(cache_client) -> bool:
    try:
        return bool(cache_client.ping())
    except (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError):
        return False


def close_cache_client(cache_client) -> None:
    cache_client.close()
