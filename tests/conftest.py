"""Shared fixtures and in-memory test doubles.

Provides:
- InMemoryCredentialRepository / InMemoryDealRepository /
  InMemoryRiskPolicyRepository: same method surface and unique keys as the
  PostgreSQL repositories (user_id; (user_id, remote_id); user_id)
- FakeHubSpot: scripted HubSpot client with per-method call counters
- SleepRecorder: async sleep replacement that records requested delays
- A fixed clock and helpers to build HubSpot deal records
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from src.dealpulse.deals.repository import compute_content_hash
from src.dealpulse.deals.schemas import (
    AssociationCandidate,
    Credential,
    DealMetadata,
    LocalDeal,
    RiskPolicy,
    TokenGrant,
)
from src.dealpulse.errors import AuthorizationError, TransientRemoteError

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
USER_ID = "user-123"


# ── Repositories ────────────────────────────────────────────────────────────


class InMemoryCredentialRepository:
    """Credential store keyed by user_id with compare-and-swap refresh."""

    def __init__(self) -> None:
        self.rows: dict[str, Credential] = {}
        self.deleted: list[str] = []

    async def get(self, user_id: str) -> Credential | None:
        row = self.rows.get(user_id)
        return row.model_copy() if row else None

    async def save(self, credential: Credential) -> Credential:
        self.rows[credential.user_id] = credential.model_copy()
        return credential

    async def update_tokens_cas(
        self,
        user_id: str,
        expected_refresh_token: str,
        *,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
        scope: str | None = None,
    ) -> bool:
        row = self.rows.get(user_id)
        if row is None or row.refresh_token != expected_refresh_token:
            return False
        update: dict[str, Any] = {
            "access_token": access_token,
            "refresh_token": refresh_token,
            "expires_at": expires_at,
        }
        if scope is not None:
            update["scope"] = scope
        self.rows[user_id] = row.model_copy(update=update)
        return True

    async def mark_synced(self, user_id: str, synced_at: datetime) -> None:
        row = self.rows.get(user_id)
        if row is not None:
            self.rows[user_id] = row.model_copy(update={"last_synced_at": synced_at})

    async def delete(self, user_id: str) -> bool:
        self.deleted.append(user_id)
        return self.rows.pop(user_id, None) is not None


class InMemoryDealRepository:
    """Deal store keyed by (user_id, remote_id), mirroring the SQL upsert.

    ``fail_remote_ids`` makes upserts for those deals raise, to exercise
    partial failures.
    """

    def __init__(self) -> None:
        self.rows: dict[tuple[str, str], LocalDeal] = {}
        self.hashes: dict[tuple[str, str], str] = {}
        self.upsert_calls = 0
        self.fail_remote_ids: set[str] = set()

    async def upsert_deal(self, deal: LocalDeal, synced_at: datetime) -> str:
        self.upsert_calls += 1
        if deal.remote_id in self.fail_remote_ids:
            raise RuntimeError(f"constraint violation for {deal.remote_id}")

        key = (deal.user_id, deal.remote_id)
        content_hash = compute_content_hash(deal)
        existing = self.rows.get(key)
        if existing is None:
            self.rows[key] = deal.model_copy(
                update={
                    "id": f"local-{len(self.rows) + 1}",
                    "synced_at": synced_at,
                    "created_at": synced_at,
                    "updated_at": synced_at,
                }
            )
        else:
            changed = self.hashes[key] != content_hash
            self.rows[key] = deal.model_copy(
                update={
                    "id": existing.id,
                    "synced_at": synced_at,
                    "created_at": existing.created_at,
                    "updated_at": synced_at if changed else existing.updated_at,
                }
            )
        self.hashes[key] = content_hash
        return self.rows[key].id

    async def get_deal(self, user_id: str, remote_id: str) -> LocalDeal | None:
        return self.rows.get((user_id, remote_id))

    async def list_deals(self, user_id: str) -> list[LocalDeal]:
        return [deal for (owner, _), deal in self.rows.items() if owner == user_id]

    async def update_metadata(
        self, user_id: str, remote_id: str, metadata: DealMetadata
    ) -> bool:
        key = (user_id, remote_id)
        deal = self.rows.get(key)
        if deal is None:
            return False
        self.rows[key] = deal.model_copy(update={"metadata": metadata})
        self.hashes[key] = compute_content_hash(self.rows[key])
        return True


class InMemoryRiskPolicyRepository:
    def __init__(self) -> None:
        self.rows: dict[str, RiskPolicy] = {}

    async def get_or_create(self, user_id: str) -> RiskPolicy:
        if user_id not in self.rows:
            self.rows[user_id] = RiskPolicy()
        return self.rows[user_id].model_copy(deep=True)

    async def save(self, user_id: str, policy: RiskPolicy) -> RiskPolicy:
        self.rows[user_id] = policy.model_copy(deep=True)
        return policy


# ── HubSpot ─────────────────────────────────────────────────────────────────


class FakeHubSpot:
    """Scripted stand-in for HubSpotClient.

    Configure ``deals``, ``companies``/``contacts`` (id -> properties),
    ``associations`` ((deal_id, kind) -> candidates) and the failure
    switches, then inspect ``calls`` afterwards.
    """

    def __init__(self) -> None:
        self.deals: list[dict[str, Any]] = []
        self.entities: dict[str, dict[str, dict[str, Any]]] = {
            "companies": {},
            "contacts": {},
        }
        self.associations: dict[tuple[str, str], list[AssociationCandidate]] = {}
        self.calls: dict[str, int] = {}
        self.batch_read_error: Exception | None = None
        self.association_error: Exception | None = None
        self.list_deals_errors: list[Exception] = []
        self.refresh_results: list[TokenGrant | Exception] = []
        self.exchange_result: TokenGrant | Exception | None = None
        self.revoke_error: Exception | None = None
        self.access_tokens_seen: list[str] = []

    def _count(self, name: str) -> None:
        self.calls[name] = self.calls.get(name, 0) + 1

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenGrant:
        self._count("exchange_code")
        result = self.exchange_result
        if isinstance(result, Exception):
            raise result
        return result or TokenGrant(
            access_token="access-initial",
            refresh_token="refresh-initial",
            expires_in=1800,
            scope="crm.objects.deals.read",
        )

    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        self._count("refresh_access_token")
        if not self.refresh_results:
            raise AuthorizationError("refresh token revoked", context={"error": "BAD_REFRESH_TOKEN"})
        result = self.refresh_results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    async def revoke_refresh_token(self, refresh_token: str) -> None:
        self._count("revoke_refresh_token")
        if self.revoke_error is not None:
            raise self.revoke_error

    async def list_deals(
        self,
        access_token: str,
        properties: list[str],
        associations: list[str],
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        self._count("list_deals")
        self.access_tokens_seen.append(access_token)
        if self.list_deals_errors:
            raise self.list_deals_errors.pop(0)
        return [dict(d) for d in self.deals[:limit]]

    async def batch_read(
        self, access_token: str, kind: str, ids: list[str], properties: list[str]
    ) -> list[dict[str, Any]]:
        self._count(f"batch_read:{kind}")
        if self.batch_read_error is not None:
            raise self.batch_read_error
        store = self.entities[kind]
        return [
            {"id": entity_id, "properties": store[entity_id]}
            for entity_id in ids
            if entity_id in store
        ]

    async def read_object(
        self, access_token: str, kind: str, object_id: str, properties: list[str]
    ) -> dict[str, Any] | None:
        self._count(f"read_object:{kind}")
        props = self.entities[kind].get(object_id)
        if props is None:
            return None
        return {"id": object_id, "properties": props}

    async def get_associations(
        self, access_token: str, deal_id: str, kind: str
    ) -> list[AssociationCandidate]:
        self._count("get_associations")
        if self.association_error is not None:
            raise self.association_error
        return self.associations.get((deal_id, kind), [])


class SleepRecorder:
    """Async sleep replacement that records delays instead of waiting."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


# ── Builders ────────────────────────────────────────────────────────────────


def make_credential(**overrides: Any) -> Credential:
    defaults: dict[str, Any] = {
        "user_id": USER_ID,
        "access_token": "access-old",
        "refresh_token": "refresh-old",
        "expires_at": NOW + timedelta(hours=1),
        "scope": "crm.objects.deals.read",
    }
    defaults.update(overrides)
    return Credential(**defaults)


def make_hubspot_deal(
    deal_id: str,
    *,
    company_ids: list[str] | None = None,
    contact_ids: list[str] | None = None,
    **properties: Any,
) -> dict[str, Any]:
    """Build a deals-list record the way HubSpot returns it."""
    props: dict[str, Any] = {
        "dealname": f"Deal {deal_id} name",
        "amount": "50000",
        "dealstage": "qualifiedtobuy",
        "createdate": (NOW - timedelta(days=30)).isoformat(),
        "hs_lastmodifieddate": (NOW - timedelta(days=2)).isoformat(),
        "hs_object_id": deal_id,
    }
    props.update(properties)
    associations: dict[str, Any] = {}
    if company_ids:
        associations["companies"] = {
            "results": [{"id": cid, "type": "deal_to_company"} for cid in company_ids]
        }
    if contact_ids:
        associations["contacts"] = {
            "results": [{"id": cid, "type": "deal_to_contact"} for cid in contact_ids]
        }
    record: dict[str, Any] = {"id": deal_id, "properties": props}
    if associations:
        record["associations"] = associations
    return record


def transient(message: str = "HubSpot returned 503") -> TransientRemoteError:
    return TransientRemoteError(message, status_code=503)


# ── Fixtures ────────────────────────────────────────────────────────────────


@pytest.fixture
def credential_repo() -> InMemoryCredentialRepository:
    return InMemoryCredentialRepository()


@pytest.fixture
def deal_repo() -> InMemoryDealRepository:
    return InMemoryDealRepository()


@pytest.fixture
def policy_repo() -> InMemoryRiskPolicyRepository:
    return InMemoryRiskPolicyRepository()


@pytest.fixture
def hubspot() -> FakeHubSpot:
    return FakeHubSpot()


@pytest.fixture
def sleep_recorder() -> SleepRecorder:
    return SleepRecorder()
