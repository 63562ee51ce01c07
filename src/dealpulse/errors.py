"""Typed exception hierarchy for the CRM sync and risk engine.

Failure modes fall into two families:
- NonRetryableError subclasses: authorization, state and 4xx failures.
  The backoff controller never retries them; callers surface them directly.
- TransientRemoteError: network errors, timeouts, HTTP 429 and 5xx from the
  CRM. Retried locally and only surfaced after the retry budget is spent.

Per-record failures (a single deal upsert, a single entity read) are not
raised at all -- they are collected into the tagged outcome types in
src.dealpulse.deals.schemas and aggregated into the SyncReport.
"""

from __future__ import annotations

from typing import Any


class DealPulseError(Exception):
    """Base exception for all dealpulse errors."""

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            return f"{self.message} | context={self.context}"
        return self.message


class ConfigurationError(DealPulseError):
    """Required CRM settings are missing."""


# ── Non-retryable ──────────────────────────────────────────────────────────


class NonRetryableError(DealPulseError):
    """Marker base: the backoff controller must not retry these."""


class InvalidStateError(NonRetryableError):
    """OAuth callback state could not be decoded or belongs to another user."""


class AuthorizationError(NonRetryableError):
    """The CRM rejected the authorization-code exchange."""


class RemoteRequestError(NonRetryableError):
    """The CRM answered with a non-transient client error (4xx)."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, context)
        self.status_code = status_code


# ── Transient ──────────────────────────────────────────────────────────────


class TransientRemoteError(DealPulseError):
    """Network failure, timeout, rate limit or 5xx from the CRM."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, context)
        self.status_code = status_code
