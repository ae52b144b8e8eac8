import pytest
from fastapi import HTTPException

from order_placement.core.enums import UserRole
from order_placement.core.security import create_access_token, decode_user_id, user_from_token


def test_token_round_trip():
    token = create_access_token(42, UserRole.MEMBER)

    assert decode_user_id(token) == 42


def test_expired_or_forged_tokens_are_rejected():
    expired = create_access_token(42, UserRole.MEMBER, expires_minutes=-1)

    for token in (expired, "not-a-jwt"):
        with pytest.raises(HTTPException) as exc:
            decode_user_id(token)
        assert exc.value.status_code == 401


async def test_user_from_token(db, world):
    assert await user_from_token(create_access_token(world.user.id, UserRole.MEMBER), db) is world.user

    with pytest.raises(HTTPException):
        await user_from_token(create_access_token(world.user.id + 1, UserRole.MEMBER), db)
