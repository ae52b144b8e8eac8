import logging
import uuid
from contextlib import asynccontextmanager
from typing import Optional
from redis.asyncio import Redis
from order_placement.core.config import settings
from order_placement.core.exceptions import CredentialBusy

logger = logging.getLogger(__name__)

redis: Optional[Redis] = None

# Delete only if the caller still owns the lock
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


async def init_redis() -> Redis:
    global redis
    try:
        redis = Redis.from_url(settings.REDIS_URL, decode_responses=False)
        await redis.ping()
        logger.info("Connected to Redis")
        return redis
    except Exception as e:
        logger.error(f"Failed to connect to Redis: {e}")
        raise


async def close_redis():
    global redis
    if redis:
        await redis.close()
        redis = None


def get_redis() -> Redis:
    global redis
    if redis is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return redis


def credential_lock_key(credential_id: int) -> str:
    return f"credential:{credential_id}"


async def acquire_credential_lock(client: Redis, credential_id: int, ttl: Optional[int] = None) -> Optional[str]:
    """Take the per-credential lock. Returns the owner token, or None if busy."""
    owner = uuid.uuid4().hex
    ttl = ttl or settings.CREDENTIAL_LOCK_TIMEOUT
    acquired = await client.set(credential_lock_key(credential_id), owner, nx=True, ex=ttl)
    if not acquired:
        logger.info(f"Credential {credential_id} is locked by another job")
        return None
    return owner


async def release_credential_lock(client: Redis, credential_id: int, owner: str) -> bool:
    released = await client.eval(_RELEASE_SCRIPT, 1, credential_lock_key(credential_id), owner)
    return bool(released)


@asynccontextmanager
async def credential_lock(client: Optional[Redis], credential_id: Optional[int]):
    """Hold the credential lock for the block, or raise ``CredentialBusy``.

    Without a client or a credential there is nothing to serialize against.
    """
    if client is None or credential_id is None:
        yield
        return
    owner = await acquire_credential_lock(client, credential_id)
    if owner is None:
        raise CredentialBusy(f"Credential {credential_id} is busy")
    try:
        yield
    finally:
        await release_credential_lock(client, credential_id, owner)
