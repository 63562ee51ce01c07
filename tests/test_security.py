"""JWT principal and OAuth state tests."""

from __future__ import annotations

from datetime import timedelta

import pytest
from fastapi import HTTPException

from src.dealpulse.core.security import (
    create_access_token,
    decode_oauth_state,
    encode_oauth_state,
    verify_token,
)
from src.dealpulse.errors import InvalidStateError


# ── Access Tokens ────────────────────────────────────────────────────────────


def test_access_token_roundtrip():
    token = create_access_token({"sub": "user-1"})
    payload = verify_token(token)
    assert payload["sub"] == "user-1"
    assert payload["type"] == "access"


def test_expired_access_token_rejected():
    token = create_access_token({"sub": "user-1"}, expires_delta=timedelta(seconds=-5))
    with pytest.raises(HTTPException) as exc_info:
        verify_token(token)
    assert exc_info.value.status_code == 401


def test_state_token_is_not_an_access_token():
    """An OAuth state value must not authenticate API calls."""
    with pytest.raises(HTTPException):
        verify_token(encode_oauth_state("user-1"))


# ── OAuth State ──────────────────────────────────────────────────────────────


def test_state_roundtrip():
    assert decode_oauth_state(encode_oauth_state("user-1")) == "user-1"


def test_state_values_are_unique():
    assert encode_oauth_state("user-1") != encode_oauth_state("user-1")


@pytest.mark.parametrize("state", [None, "", "not-a-jwt"])
def test_malformed_state_rejected(state):
    with pytest.raises(InvalidStateError):
        decode_oauth_state(state)


def test_expired_state_rejected():
    state = encode_oauth_state("user-1", ttl=timedelta(seconds=-5))
    with pytest.raises(InvalidStateError):
        decode_oauth_state(state)


def test_access_token_is_not_a_state():
    with pytest.raises(InvalidStateError):
        decode_oauth_state(create_access_token({"sub": "user-1"}))


def test_tampered_state_rejected():
    state = encode_oauth_state("user-1")
    head, body, signature = state.split(".")
    tampered = ".".join([head, body, signature[::-1]])
    with pytest.raises(InvalidStateError):
        decode_oauth_state(tampered)
