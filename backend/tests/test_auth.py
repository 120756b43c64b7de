"""Tests for bearer token handling."""
from datetime import datetime, timedelta, timezone

import jwt
import pytest

from chatline.auth.dependencies import bearer_token
from chatline.auth.tokens import issue_token, verify_token
from chatline.errors import AuthenticationError


def test_round_trip():
    assert verify_token(issue_token("alice")) == "alice"


def test_missing_token():
    with pytest.raises(AuthenticationError, match="No token"):
        verify_token(None)


def test_expired_token():
    token = issue_token("alice", expires_minutes=-1)
    with pytest.raises(AuthenticationError, match="expired"):
        verify_token(token)


def test_wrong_signature():
    forged = jwt.encode(
        {"id": "alice", "exp": datetime.now(timezone.utc) + timedelta(minutes=5)},
        "another-secret",
        algorithm="HS256",
    )
    with pytest.raises(AuthenticationError) as exc_info:
        verify_token(forged)
    assert exc_info.value.status_code == 401
    assert exc_info.value.message == "Token is not valid"


def test_token_without_id_claim(app_config):
    token = jwt.encode({"sub": "alice"}, app_config.secrets.jwt.secret_key, algorithm="HS256")
    with pytest.raises(AuthenticationError):
        verify_token(token)


@pytest.mark.parametrize("header, expected", [
    ("Bearer abc", "abc"),
    ("Bearer   ", None),
    ("Basic abc", None),
    ("", None),
])
def test_bearer_header_parsing(header, expected):
    assert bearer_token(header) == expected
