"""Async HTTP client for the HubSpot OAuth and CRM REST APIs.

HubSpotClient covers the outbound surface the sync engine needs:
- OAuth: authorization-code grant, refresh-token grant, refresh-token revoke
- CRM v3: deals list with association expansion, batch read, single read
- CRM v4: per-deal associations with type labels

The client does not retry. Every failure is mapped onto the error taxonomy
so the caller's backoff wrapper can decide:
- transport errors, timeouts, 429 and 5xx -> TransientRemoteError
- other 4xx on the token endpoint -> AuthorizationError
- other 4xx on CRM endpoints -> RemoteRequestError
- a 2xx whose body is not a JSON object -> TransientRemoteError

Token values are never logged.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog
from pydantic import ValidationError

from src.dealpulse.deals.schemas import AssociationCandidate, TokenGrant
from src.dealpulse.errors import (
    AuthorizationError,
    RemoteRequestError,
    TransientRemoteError,
)

logger = structlog.get_logger(__name__)

# HubSpot rejects batch reads with more than 100 inputs
MAX_BATCH_READ_IDS = 100

PRIMARY_ASSOCIATION_LABEL = "primary"


def _is_transient_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


class HubSpotClient:
    """Async client for HubSpot OAuth and CRM endpoints.

    Args:
        client_id: OAuth app client id.
        client_secret: OAuth app client secret.
        base_url: API base (default https://api.hubapi.com).
        timeout: Per-request timeout in seconds.
        batch_limit: Ids per batch-read call (capped at 100).
        transport: Optional httpx transport (tests pass httpx.MockTransport).
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        *,
        base_url: str = "https://api.hubapi.com",
        timeout: float = 30.0,
        batch_limit: int = MAX_BATCH_READ_IDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._batch_limit = max(1, min(batch_limit, MAX_BATCH_READ_IDS))
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        """Create a new httpx client bound to the API base URL."""
        return httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            transport=self._transport,
        )

    async def _request(
        self,
        method: str,
        path: str,
        *,
        access_token: str | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send one request and map transport failures to TransientRemoteError."""
        headers = kwargs.pop("headers", {})
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        try:
            async with self._client() as client:
                return await client.request(method, path, headers=headers, **kwargs)
        except httpx.TimeoutException as exc:
            raise TransientRemoteError(
                "HubSpot request timed out", context={"path": path}
            ) from exc
        except httpx.TransportError as exc:
            raise TransientRemoteError(
                f"HubSpot transport error: {exc}", context={"path": path}
            ) from exc

    @staticmethod
    def _raise_for_crm_status(response: httpx.Response, path: str) -> None:
        status_code = response.status_code
        if status_code < 400:
            return
        if _is_transient_status(status_code):
            raise TransientRemoteError(
                f"HubSpot returned {status_code}",
                status_code=status_code,
                context={"path": path},
            )
        raise RemoteRequestError(
            f"HubSpot returned {status_code}",
            status_code=status_code,
            context={"path": path, "body": response.text[:500]},
        )

    @staticmethod
    def _json(response: httpx.Response, path: str) -> dict[str, Any]:
        """Decode a 2xx JSON object body; anything else is a transient fault."""
        try:
            body = response.json()
        except ValueError as exc:
            raise TransientRemoteError(
                "HubSpot returned a non-JSON body",
                status_code=response.status_code,
                context={"path": path},
            ) from exc
        if not isinstance(body, dict):
            raise TransientRemoteError(
                "HubSpot returned an unexpected JSON body",
                status_code=response.status_code,
                context={"path": path},
            )
        return body

    # ── OAuth ───────────────────────────────────────────────────────────────

    async def _token_request(self, form: dict[str, str]) -> TokenGrant:
        path = "/oauth/v1/token"
        response = await self._request(
            "POST",
            path,
            data={
                **form,
                "client_id": self._client_id,
                "client_secret": self._client_secret,
            },
        )
        if _is_transient_status(response.status_code):
            raise TransientRemoteError(
                f"HubSpot token endpoint returned {response.status_code}",
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = None
            error_code = body.get("status") if isinstance(body, dict) else None
            raise AuthorizationError(
                "HubSpot rejected the token request",
                context={
                    "status_code": response.status_code,
                    "grant_type": form.get("grant_type"),
                    "error": error_code,
                },
            )
        body = self._json(response, path)
        try:
            return TokenGrant.model_validate(body)
        except ValidationError as exc:
            raise TransientRemoteError(
                "HubSpot token response is missing fields",
                status_code=response.status_code,
                context={"path": path, "grant_type": form.get("grant_type")},
            ) from exc

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenGrant:
        """Exchange an authorization code for an access/refresh token pair.

        POST /oauth/v1/token (form-encoded, grant_type=authorization_code).

        Raises:
            AuthorizationError: HubSpot rejected the code.
            TransientRemoteError: Network failure, 429 or 5xx.
        """
        grant = await self._token_request(
            {
                "grant_type": "authorization_code",
                "redirect_uri": redirect_uri,
                "code": code,
            }
        )
        logger.info("hubspot.code_exchanged", expires_in=grant.expires_in)
        return grant

    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        """Obtain a new token pair with a refresh token.

        POST /oauth/v1/token (form-encoded, grant_type=refresh_token).

        Raises:
            AuthorizationError: The refresh token is revoked, expired or invalid.
            TransientRemoteError: Network failure, 429 or 5xx.
        """
        grant = await self._token_request(
            {"grant_type": "refresh_token", "refresh_token": refresh_token}
        )
        logger.info("hubspot.token_refreshed", expires_in=grant.expires_in)
        return grant

    async def revoke_refresh_token(self, refresh_token: str) -> None:
        """Revoke a refresh token. A 404 (already gone) counts as success."""
        path = f"/oauth/v1/refresh-tokens/{refresh_token}"
        response = await self._request("DELETE", path)
        if response.status_code == 404:
            return
        self._raise_for_crm_status(response, "/oauth/v1/refresh-tokens")

    # ── CRM Objects ─────────────────────────────────────────────────────────

    async def list_deals(
        self,
        access_token: str,
        properties: list[str],
        associations: list[str],
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        """Fetch one page of deals with properties and association stubs.

        GET /crm/v3/objects/deals?limit=&properties=&associations=

        Returns:
            The ``results`` array of the response.
        """
        path = "/crm/v3/objects/deals"
        response = await self._request(
            "GET",
            path,
            access_token=access_token,
            params={
                "limit": limit,
                "properties": ",".join(properties),
                "associations": ",".join(associations),
                "archived": "false",
            },
        )
        self._raise_for_crm_status(response, path)
        results = self._json(response, path).get("results", [])
        logger.debug("hubspot.deals_listed", count=len(results))
        return results

    async def batch_read(
        self,
        access_token: str,
        kind: str,
        ids: list[str],
        properties: list[str],
    ) -> list[dict[str, Any]]:
        """Read objects of one kind by id, in chunks of at most 100 ids.

        POST /crm/v3/objects/{kind}/batch/read

        Returns:
            Concatenated ``results`` across all chunks.
        """
        path = f"/crm/v3/objects/{kind}/batch/read"
        results: list[dict[str, Any]] = []
        for start in range(0, len(ids), self._batch_limit):
            chunk = ids[start:start + self._batch_limit]
            response = await self._request(
                "POST",
                path,
                access_token=access_token,
                json={
                    "inputs": [{"id": entity_id} for entity_id in chunk],
                    "properties": properties,
                },
            )
            self._raise_for_crm_status(response, path)
            results.extend(self._json(response, path).get("results", []))
        return results

    async def read_object(
        self,
        access_token: str,
        kind: str,
        object_id: str,
        properties: list[str],
    ) -> dict[str, Any] | None:
        """Read a single object. Returns None if HubSpot answers 404."""
        path = f"/crm/v3/objects/{kind}/{object_id}"
        response = await self._request(
            "GET",
            path,
            access_token=access_token,
            params={"properties": ",".join(properties)},
        )
        if response.status_code == 404:
            return None
        self._raise_for_crm_status(response, path)
        return self._json(response, path)

    async def get_associations(
        self, access_token: str, deal_id: str, kind: str
    ) -> list[AssociationCandidate]:
        """List a deal's associations of one kind with their type labels.

        GET /crm/v4/objects/deals/{deal_id}/associations/{kind}

        Returns:
            Candidates in response order; ``is_primary`` is set when any of
            the association's type labels equals "primary" (case-insensitive).
        """
        path = f"/crm/v4/objects/deals/{deal_id}/associations/{kind}"
        response = await self._request("GET", path, access_token=access_token)
        self._raise_for_crm_status(response, path)

        candidates: list[AssociationCandidate] = []
        for item in self._json(response, path).get("results", []):
            object_id = item.get("toObjectId")
            if object_id is None:
                continue
            labels = [
                (assoc_type.get("label") or "").strip().lower()
                for assoc_type in item.get("associationTypes", [])
            ]
            candidates.append(
                AssociationCandidate(
                    entity_id=str(object_id),
                    is_primary=PRIMARY_ASSOCIATION_LABEL in labels,
                )
            )
        return candidates
