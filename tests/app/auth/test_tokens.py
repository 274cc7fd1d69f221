"""Tests for socket bearer tokens."""

from datetime import timedelta

import pytest
from jose import jwt

from app.auth.tokens import InvalidToken, create_access_token, decode_user_id
from app.config import Settings


def test_round_trip_user_id():
    token = create_access_token(42)
    assert decode_user_id(token) == 42
    assert decode_user_id(f"Bearer {token}") == 42


def test_sub_claim_is_used_without_user_id():
    settings = Settings()
    token = jwt.encode({"sub": "17"}, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)
    assert decode_user_id(token, settings) == 17


@pytest.mark.parametrize("token", [None, "", "garbage"])
def test_invalid_tokens_are_rejected(token):
    with pytest.raises(InvalidToken):
        decode_user_id(token)


def test_expired_token_is_rejected():
    token = create_access_token(42, expires_delta=timedelta(seconds=-1))
    with pytest.raises(InvalidToken):
        decode_user_id(token)


def test_wrong_secret_is_rejected():
    token = create_access_token(42, settings=Settings(jwt_secret_key="other-secret"))
    with pytest.raises(InvalidToken):
        decode_user_id(token)


def test_token_without_user_is_rejected():
    settings = Settings()
    token = jwt.encode({"role": "patient"}, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)
    with pytest.raises(InvalidToken):
        decode_user_id(token, settings)
