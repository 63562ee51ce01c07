"""Async repositories for CRM credentials, synced deals and risk policies.

All three follow the session_factory callable pattern: the factory is an
async generator yielding an AsyncSession, consumed with ``async for``. Every
method takes ``user_id`` explicitly; nothing reads ambient session state.

Write paths that must be race-safe are expressed as single statements:
- Credential save is INSERT ... ON CONFLICT (user_id) DO UPDATE.
- Token refresh is a compare-and-swap UPDATE guarded by the old refresh token.
- Deal upsert is INSERT ... ON CONFLICT (user_id, remote_id) DO UPDATE, with
  updated_at only moving when the content hash changes.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import case, delete, select, update
from sqlalchemy.dialects.postgresql import Insert, insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from src.dealpulse.deals.crm.field_mapping import normalize_metadata
from src.dealpulse.deals.models import CrmCredentialModel, DealModel, RiskPolicyModel
from src.dealpulse.deals.schemas import (
    Credential,
    DealMetadata,
    LocalDeal,
    RiskKeyword,
    RiskPolicy,
)

logger = structlog.get_logger(__name__)

SessionFactory = Callable[..., AsyncGenerator[AsyncSession, None]]


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_credential(model: CrmCredentialModel) -> Credential:
    return Credential(
        user_id=model.user_id,
        access_token=model.access_token,
        refresh_token=model.refresh_token,
        expires_at=model.expires_at,
        scope=model.scope,
        last_synced_at=model.last_synced_at,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _model_to_deal(model: DealModel) -> LocalDeal:
    """Convert DealModel to LocalDeal, normalizing legacy metadata keys."""
    return LocalDeal(
        id=str(model.id),
        user_id=model.user_id,
        remote_id=model.remote_id,
        name=model.name,
        amount=model.amount,
        currency=model.currency or "USD",
        stage=model.stage or "unknown",
        metadata=normalize_metadata(model.metadata_json),
        synced_at=model.synced_at,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _model_to_policy(model: RiskPolicyModel) -> RiskPolicy:
    return RiskPolicy(
        stalled_threshold_days=model.stalled_threshold_days,
        weight_amount=model.weight_amount,
        weight_stage=model.weight_stage,
        weight_inactivity=model.weight_inactivity,
        weight_notes=model.weight_notes,
        high_value_threshold=model.high_value_threshold,
        risky_stages=list(model.risky_stages or []),
        risk_keywords=[RiskKeyword.model_validate(k) for k in (model.risk_keywords or [])],
    )


def _policy_values(policy: RiskPolicy) -> dict[str, Any]:
    return {
        "stalled_threshold_days": policy.stalled_threshold_days,
        "weight_amount": policy.weight_amount,
        "weight_stage": policy.weight_stage,
        "weight_inactivity": policy.weight_inactivity,
        "weight_notes": policy.weight_notes,
        "high_value_threshold": policy.high_value_threshold,
        "risky_stages": list(policy.risky_stages),
        "risk_keywords": [k.model_dump(mode="json") for k in policy.risk_keywords],
    }


def compute_content_hash(deal: LocalDeal) -> str:
    """SHA-256 over the fields a sync writes (stable key order)."""
    payload = {
        "name": deal.name,
        "amount": deal.amount,
        "currency": deal.currency,
        "stage": deal.stage,
        "metadata": deal.metadata.to_storage(),
    }
    encoded = json.dumps(payload, sort_keys=True, default=str, separators=(",", ":"))
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def build_deal_upsert(deal: LocalDeal, synced_at: datetime) -> Insert:
    """Build the idempotent INSERT ... ON CONFLICT statement for one deal.

    On conflict with (user_id, remote_id) the row is updated in place.
    synced_at always advances; updated_at only advances when the stored
    content_hash differs from the incoming one.
    """
    content_hash = compute_content_hash(deal)
    stmt = pg_insert(DealModel).values(
        user_id=deal.user_id,
        remote_id=deal.remote_id,
        name=deal.name,
        amount=deal.amount,
        currency=deal.currency,
        stage=deal.stage,
        metadata_json=deal.metadata.to_storage(),
        content_hash=content_hash,
        synced_at=synced_at,
        updated_at=synced_at,
    )
    excluded = stmt.excluded
    table = DealModel.__table__
    changed = table.c.content_hash.is_distinct_from(excluded.content_hash)
    return stmt.on_conflict_do_update(
        index_elements=[table.c.user_id, table.c.remote_id],
        set_={
            "name": excluded.name,
            "amount": excluded.amount,
            "currency": excluded.currency,
            "stage": excluded.stage,
            "metadata_json": excluded.metadata_json,
            "content_hash": excluded.content_hash,
            "synced_at": excluded.synced_at,
            "updated_at": case((changed, excluded.updated_at), else_=table.c.updated_at),
        },
    ).returning(table.c.id)


# ── Credentials ─────────────────────────────────────────────────────────────


class CredentialRepository:
    """One OAuth credential row per user.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def get(self, user_id: str) -> Credential | None:
        async for session in self._session_factory():
            stmt = select(CrmCredentialModel).where(
                CrmCredentialModel.user_id == user_id
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return _model_to_credential(model)

    async def save(self, credential: Credential) -> Credential:
        """Insert or replace the user's credential (upsert on user_id).

        Args:
            credential: Credential from a successful code exchange.

        Returns:
            The credential as stored.
        """
        async for session in self._session_factory():
            now = datetime.now(timezone.utc)
            stmt = pg_insert(CrmCredentialModel).values(
                user_id=credential.user_id,
                access_token=credential.access_token,
                refresh_token=credential.refresh_token,
                expires_at=credential.expires_at,
                scope=credential.scope,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[CrmCredentialModel.__table__.c.user_id],
                set_={
                    "access_token": stmt.excluded.access_token,
                    "refresh_token": stmt.excluded.refresh_token,
                    "expires_at": stmt.excluded.expires_at,
                    "scope": stmt.excluded.scope,
                    "updated_at": now,
                },
            )
            await session.execute(stmt)
            await session.commit()
            logger.info("crm.credential_saved", user_id=credential.user_id)
            return credential.model_copy(update={"updated_at": now})

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
        """Replace tokens only if the stored refresh token is still the old one.

        Args:
            user_id: Owner of the credential.
            expected_refresh_token: Refresh token the caller used to refresh.
            access_token: New access token.
            refresh_token: New refresh token.
            expires_at: New absolute expiry.
            scope: New scope (kept unchanged when None).

        Returns:
            True if this call won the swap, False if another writer already
            replaced or deleted the credential.
        """
        values: dict[str, Any] = {
            "access_token": access_token,
            "refresh_token": refresh_token,
            "expires_at": expires_at,
            "updated_at": datetime.now(timezone.utc),
        }
        if scope is not None:
            values["scope"] = scope

        async for session in self._session_factory():
            stmt = (
                update(CrmCredentialModel)
                .where(
                    CrmCredentialModel.user_id == user_id,
                    CrmCredentialModel.refresh_token == expected_refresh_token,
                )
                .values(**values)
            )
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount == 1

    async def mark_synced(self, user_id: str, synced_at: datetime) -> None:
        async for session in self._session_factory():
            stmt = (
                update(CrmCredentialModel)
                .where(CrmCredentialModel.user_id == user_id)
                .values(last_synced_at=synced_at)
            )
            await session.execute(stmt)
            await session.commit()

    async def delete(self, user_id: str) -> bool:
        """Delete the user's credential. Returns True if a row was removed."""
        async for session in self._session_factory():
            stmt = delete(CrmCredentialModel).where(
                CrmCredentialModel.user_id == user_id
            )
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount > 0


# ── Deals ───────────────────────────────────────────────────────────────────


class DealRepository:
    """Synced deals keyed by (user_id, remote_id).

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def upsert_deal(self, deal: LocalDeal, synced_at: datetime) -> str:
        """Insert or update one deal idempotently.

        Args:
            deal: LocalDeal built by the sync pipeline.
            synced_at: Timestamp of the current sync pass.

        Returns:
            Local row id (string UUID).
        """
        async for session in self._session_factory():
            result = await session.execute(build_deal_upsert(deal, synced_at))
            await session.commit()
            return str(result.scalar_one())

    async def get_deal(self, user_id: str, remote_id: str) -> LocalDeal | None:
        async for session in self._session_factory():
            stmt = select(DealModel).where(
                DealModel.user_id == user_id,
                DealModel.remote_id == remote_id,
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return _model_to_deal(model)

    async def list_deals(self, user_id: str) -> list[LocalDeal]:
        """List a user's deals, most recently updated first."""
        async for session in self._session_factory():
            stmt = (
                select(DealModel)
                .where(DealModel.user_id == user_id)
                .order_by(DealModel.updated_at.desc().nulls_last(), DealModel.name)
            )
            result = await session.execute(stmt)
            return [_model_to_deal(m) for m in result.scalars().all()]

    async def update_metadata(
        self, user_id: str, remote_id: str, metadata: DealMetadata
    ) -> bool:
        """Replace a deal's metadata bag without touching synced columns.

        Returns:
            True if the deal exists, False otherwise.
        """
        async for session in self._session_factory():
            stmt = select(DealModel).where(
                DealModel.user_id == user_id,
                DealModel.remote_id == remote_id,
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                return False

            updated = _model_to_deal(model).model_copy(update={"metadata": metadata})
            new_hash = compute_content_hash(updated)
            if new_hash != model.content_hash:
                model.metadata_json = metadata.to_storage()
                model.content_hash = new_hash
                model.updated_at = datetime.now(timezone.utc)
                await session.commit()
            return True


# ── Risk Policies ───────────────────────────────────────────────────────────


class RiskPolicyRepository:
    """Per-user risk scoring policy, created with defaults on first read.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def get_or_create(self, user_id: str) -> RiskPolicy:
        async for session in self._session_factory():
            stmt = select(RiskPolicyModel).where(RiskPolicyModel.user_id == user_id)
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is not None:
                return _model_to_policy(model)

        policy = RiskPolicy()
        await self.save(user_id, policy)
        logger.info("risk.policy_defaults_created", user_id=user_id)
        return policy

    async def save(self, user_id: str, policy: RiskPolicy) -> RiskPolicy:
        """Insert or replace the user's policy (upsert on user_id)."""
        values = _policy_values(policy)
        async for session in self._session_factory():
            stmt = pg_insert(RiskPolicyModel).values(user_id=user_id, **values)
            stmt = stmt.on_conflict_do_update(
                index_elements=[RiskPolicyModel.__table__.c.user_id],
                set_={**values, "updated_at": datetime.now(timezone.utc)},
            )
            await session.execute(stmt)
            await session.commit()
            return policy
