"""Process-wide asyncpg pool for the chat history server, plus schema bootstrap."""

import asyncio

import asyncpg

from DonationChat.chat_server import config
from DonationChat.chat_shared.errors import ConnectionPoolError

pool: asyncpg.Pool = None


async def create_pool(
    dsn: str = config.PG_DSN,
    min_size: int = config.PG_POOL_MIN_SIZE,
    max_size: int = config.PG_POOL_MAX_SIZE,
) -> asyncpg.Pool:
    """Open the shared pool once and make sure the chat tables exist."""
    global pool
    if pool is not None:
        return pool

    try:
        opened = await asyncpg.create_pool(dsn=dsn, min_size=min_size, max_size=max_size)
    except (asyncpg.PostgresError, OSError) as e:
        raise ConnectionPoolError(f"Failed to create pool: {e}")

    try:
        await ensure_schema(opened)
    except ConnectionPoolError:
        opened.terminate()
        raise

    pool = opened
    return pool


async def ensure_schema(p: asyncpg.Pool) -> None:
    """Create stakeholders, chat_members and chats if missing. Idempotent."""
    try:
        async with p.acquire() as conn:
            await conn.execute(config.SCHEMA_SQL)
    except (asyncpg.PostgresError, OSError) as e:
        raise ConnectionPoolError(f"Failed to create chat schema: {e}")


async def get_pool() -> asyncpg.Pool:
    if pool is None:
        raise ConnectionPoolError("Pool not initialized. Call create_pool() first.")
    return pool


async def close_pool() -> None:
    """Close gracefully, terminating whatever is still busy after the timeout."""
    global pool
    if pool is None:
        return
    closing, pool = pool, None
    try:
        await asyncio.wait_for(closing.close(), timeout=config.PG_POOL_CLOSE_TIMEOUT)
    except asyncio.TimeoutError:
        closing.terminate()


async def health_check() -> bool:
    """True when the pool answers and the chats table is in place."""
    if pool is None:
        return False
    try:
        async with pool.acquire() as conn:
            table = await conn.fetchval("SELECT to_regclass('chats')")
    except (asyncpg.PostgresError, OSError):
        return False
    return table is not None
