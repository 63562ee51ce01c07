"""OAuth credential lifecycle for the HubSpot connection.

TokenLifecycleManager owns every transition of a user's Credential:
- start_authorization: build the consent URL with a signed ``state``
- complete_authorization: verify ``state`` against the caller, exchange the
  code, persist the credential
- ensure_valid_token: return the stored token, refresh it when it is about
  to expire, or delete the credential when HubSpot rejects the refresh
- disconnect: best-effort remote revoke, then local delete
- status: connected / expired / last sync / scope

Refresh results are persisted with a compare-and-swap on the old refresh
token so a concurrent refresh never overwrites a newer token with a stale one.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import TYPE_CHECKING
from urllib.parse import urlencode

import structlog

from src.dealpulse.core.security import decode_oauth_state, encode_oauth_state
from src.dealpulse.deals.crm.retry import (
    DEFAULT_BASE_DELAY_SECONDS,
    DEFAULT_MAX_RETRIES,
    with_retry,
)
from src.dealpulse.deals.schemas import (
    ConnectionStatus,
    Credential,
    TokenResult,
    TokenStatus,
)
from src.dealpulse.errors import (
    AuthorizationError,
    ConfigurationError,
    DealPulseError,
    InvalidStateError,
)

if TYPE_CHECKING:
    from src.dealpulse.deals.crm.hubspot import HubSpotClient
    from src.dealpulse.deals.repository import CredentialRepository

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenLifecycleManager:
    """Acquire, validate, refresh and revoke one user's CRM credential.

    Args:
        credentials: Credential store.
        hubspot: HubSpot API client.
        client_id: OAuth app client id (empty means not configured).
        redirect_uri: Redirect URI registered with the OAuth app.
        scopes: Space-separated scopes requested at authorization.
        authorize_url: HubSpot consent page URL.
        skew_seconds: Tokens expiring within this margin are refreshed early.
        max_retries: Retry budget for transient refresh failures.
        base_delay: First backoff delay in seconds.
        sleep: Async sleep used between retries.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        credentials: CredentialRepository,
        hubspot: HubSpotClient,
        *,
        client_id: str,
        redirect_uri: str,
        scopes: str,
        authorize_url: str = "https://app.hubspot.com/oauth/authorize",
        skew_seconds: int = 60,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_delay: float = DEFAULT_BASE_DELAY_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._credentials = credentials
        self._hubspot = hubspot
        self._client_id = client_id
        self._redirect_uri = redirect_uri
        self._scopes = scopes
        self._authorize_url = authorize_url
        self._skew_seconds = skew_seconds
        self._max_retries = max_retries
        self._base_delay = base_delay
        self._sleep = sleep
        self._clock = clock

    # ── Authorization ───────────────────────────────────────────────────────

    def start_authorization(self, user_id: str) -> str:
        """Build the HubSpot consent URL for ``user_id``.

        Raises:
            ConfigurationError: The OAuth client id is not configured.
        """
        if not self._client_id:
            raise ConfigurationError("HubSpot OAuth client is not configured")

        query = urlencode(
            {
                "client_id": self._client_id,
                "redirect_uri": self._redirect_uri,
                "scope": " ".join(self._scopes.split()),
                "state": encode_oauth_state(user_id),
            }
        )
        logger.info("crm.authorization_started", user_id=user_id)
        return f"{self._authorize_url}?{query}"

    async def complete_authorization(
        self, code: str, state: str | None, principal_user_id: str
    ) -> Credential:
        """Exchange an authorization code after verifying the callback state.

        The code is single-use, so the exchange is attempted once.

        Args:
            code: Authorization code from the callback.
            state: Opaque state from the callback.
            principal_user_id: The authenticated caller.

        Returns:
            The persisted Credential.

        Raises:
            InvalidStateError: State undecodable, expired or for another user.
            AuthorizationError: HubSpot rejected the code.
            TransientRemoteError: The exchange failed transiently.
        """
        state_user_id = decode_oauth_state(state)
        if state_user_id != principal_user_id:
            logger.warning(
                "crm.authorization_state_mismatch",
                user_id=principal_user_id,
            )
            raise InvalidStateError(
                "OAuth state does not belong to the current user",
                context={"user_id": principal_user_id},
            )
        if not code:
            raise AuthorizationError("Missing authorization code")

        now = self._clock()
        grant = await self._hubspot.exchange_code(code, self._redirect_uri)
        credential = Credential(
            user_id=principal_user_id,
            access_token=grant.access_token,
            refresh_token=grant.refresh_token,
            expires_at=grant.expires_at(now),
            scope=grant.scope or self._scopes,
        )
        saved = await self._credentials.save(credential)
        logger.info("crm.authorization_completed", user_id=principal_user_id)
        return saved

    # ── Token Validation ────────────────────────────────────────────────────

    async def ensure_valid_token(self, credential: Credential) -> TokenResult:
        """Return a usable access token for ``credential``.

        - Not expiring within the skew: VALID with the stored token.
        - Expiring: refresh (transient failures retried), persist via CAS,
          REFRESHED with the new token.
        - Refresh rejected: credential deleted, INVALIDATED. Never retried.

        Raises:
            TransientRemoteError: Refresh kept failing transiently.
        """
        user_id = credential.user_id
        now = self._clock()
        if not credential.is_expired(now, self._skew_seconds):
            return TokenResult(
                status=TokenStatus.VALID,
                access_token=credential.access_token,
                credential=credential,
            )

        try:
            grant = await with_retry(
                lambda: self._hubspot.refresh_access_token(credential.refresh_token),
                self._max_retries,
                self._base_delay,
                sleep=self._sleep,
            )
        except AuthorizationError as exc:
            return await self._handle_rejected_refresh(credential, exc)

        expires_at = grant.expires_at(now)
        refresh_token = grant.refresh_token or credential.refresh_token
        won = await self._credentials.update_tokens_cas(
            user_id,
            credential.refresh_token,
            access_token=grant.access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            scope=grant.scope,
        )
        if won:
            logger.info("crm.token_refreshed", user_id=user_id, expires_at=expires_at.isoformat())
            updated = credential.model_copy(
                update={
                    "access_token": grant.access_token,
                    "refresh_token": refresh_token,
                    "expires_at": expires_at,
                    "scope": grant.scope or credential.scope,
                    "updated_at": now,
                }
            )
            return TokenResult(
                status=TokenStatus.REFRESHED,
                access_token=updated.access_token,
                credential=updated,
            )

        # Another writer refreshed or removed the credential first
        current = await self._credentials.get(user_id)
        logger.info("crm.token_refresh_lost_race", user_id=user_id, still_connected=current is not None)
        if current is None:
            return TokenResult.invalidated()
        if not current.is_expired(now):
            return TokenResult(
                status=TokenStatus.VALID,
                access_token=current.access_token,
                credential=current,
            )
        return TokenResult(
            status=TokenStatus.REFRESHED,
            access_token=grant.access_token,
            credential=current,
        )

    async def _handle_rejected_refresh(
        self, credential: Credential, exc: AuthorizationError
    ) -> TokenResult:
        user_id = credential.user_id
        current = await self._credentials.get(user_id)
        if current is not None and current.refresh_token != credential.refresh_token:
            # Rejected because a concurrent refresh already rotated the token
            logger.info("crm.token_rotated_concurrently", user_id=user_id)
            return await self.ensure_valid_token(current)

        await self._credentials.delete(user_id)
        logger.warning(
            "crm.token_invalidated",
            user_id=user_id,
            error=exc.context.get("error"),
        )
        return TokenResult.invalidated()

    # ── Disconnect & Status ─────────────────────────────────────────────────

    async def disconnect(self, user_id: str) -> bool:
        """Revoke remotely (best effort) and delete the local credential.

        Returns:
            True if a credential existed.
        """
        credential = await self._credentials.get(user_id)
        if credential is None:
            return False

        try:
            await self._hubspot.revoke_refresh_token(credential.refresh_token)
        except DealPulseError as exc:
            logger.warning("crm.revoke_failed", user_id=user_id, error=exc.message)

        await self._credentials.delete(user_id)
        logger.info("crm.disconnected", user_id=user_id)
        return True

    async def status(self, user_id: str) -> ConnectionStatus:
        credential = await self._credentials.get(user_id)
        if credential is None:
            return ConnectionStatus(connected=False)
        return ConnectionStatus(
            connected=True,
            expired=credential.is_expired(self._clock()),
            last_sync=credential.last_synced_at,
            scope=credential.scope,
        )
