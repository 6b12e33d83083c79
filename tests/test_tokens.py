"""Tests for bearer tokens."""
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import jwt
import pytest

from expense_tracker.auth.errors import Unauthenticated
from expense_tracker.auth.tokens import create_access_token, decode_access_token


def test_round_trip_carries_user_id(settings):
    token = create_access_token("user-123", settings)
    assert decode_access_token(token, settings) == "user-123"


def test_expires_after_one_hour(settings):
    issued = datetime.now(timezone.utc)
    payload = jwt.decode(
        create_access_token("user-123", settings, now=issued),
        settings.jwt_secret,
        algorithms=["HS256"],
    )
    assert payload["exp"] - payload["iat"] == 3600


def test_expired_token_rejected(settings):
    token = create_access_token("user-123", settings, now=datetime.now(timezone.utc) - timedelta(hours=2))
    with pytest.raises(Unauthenticated):
        decode_access_token(token, settings)


def test_other_key_rejected(settings):
    token = create_access_token("user-123", replace(settings, jwt_secret="another-signing-key-0123456789abcdef"))
    with pytest.raises(Unauthenticated):
        decode_access_token(token, settings)


def test_token_without_subject_rejected(settings):
    token = jwt.encode(
        {"exp": datetime.now(timezone.utc) + timedelta(hours=1)}, settings.jwt_secret, algorithm="HS256"
    )
    with pytest.raises(Unauthenticated):
        decode_access_token(token, settings)


@pytest.mark.parametrize("token", ["", "not.a.jwt", "Bearer x"])
def test_malformed_tokens(settings, token):
    with pytest.raises(Unauthenticated):
        decode_access_token(token, settings)
