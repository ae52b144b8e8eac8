import json
from order_placement.core.redis import get_redis
from order_placement.core.config import settings


def _key(user_id: int, key: str) -> str:
    return f"idemp:{user_id}:{key}"


async def get_idempotent(user_id: int, key: str):
    if not key:
        return None
    redis = get_redis()
    v = await redis.get(_key(user_id, key))
    return json.loads(v) if v else None


async def set_idempotent(user_id: int, key: str, value: dict):
    if not key:
        return
    redis = get_redis()
    await redis.set(_key(user_id, key), json.dumps(value, default=str), ex=settings.IDEMPOTENCY_TTL)
