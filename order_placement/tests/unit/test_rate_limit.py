import pytest
from fastapi import HTTPException

from order_placement.core.config import settings
from order_placement.core.rate_limit import check_rate_limit


def test_rate_limit_config():
    assert settings.RATE_LIMIT == 100
    assert settings.RATE_LIMIT_WINDOW == 600  # 10 minutes


async def test_first_request_opens_window(fake_redis):
    await check_rate_limit(1)

    assert fake_redis.store["rl:1"] == b"1"
    assert fake_redis.expiry["rl:1"] == settings.RATE_LIMIT_WINDOW


async def test_limit_is_per_user(fake_redis, monkeypatch):
    monkeypatch.setattr(settings, "RATE_LIMIT", 3)
    for _ in range(3):
        await check_rate_limit(1)

    with pytest.raises(HTTPException) as exc:
        await check_rate_limit(1)
    assert exc.value.status_code == 429

    await check_rate_limit(2)
