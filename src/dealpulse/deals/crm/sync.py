"""Pull-based HubSpot deal sync with idempotent local upsert.

One sync pass for one user:
1. Load the credential; none means "not connected" (a normal state).
2. Validate or refresh the access token; a rejected refresh means
   "reconnect required".
3. Fetch one page of deals with properties and company/contact stubs.
4. Batch-read the distinct associated companies and contacts, falling back
   to per-id reads when the batch endpoint fails.
5. Per deal: resolve the primary company/contact, derive daysInStage and
   daysInactive, score risk with the user's policy.
6. Upsert every deal on (user_id, remote_id). A failing deal is counted and
   skipped; the rest of the page still lands.
7. Mark the credential as synced.
8. Report synced/total/failed.

Passes for the same user are serialized by a per-user asyncio.Lock, held for
one pass only. Different users never wait on each other. Each upsert is
idempotent on its own, so an abandoned pass can always be re-run.
"""

from __future__ import annotations

import asyncio
import weakref
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from functools import partial
from typing import TYPE_CHECKING, Any

import structlog

from src.dealpulse.deals.crm.field_mapping import (
    DEAL_PROPERTIES,
    ENTITY_PROPERTIES,
    entity_display_name,
    format_stage_name,
    from_hubspot_deal,
)
from src.dealpulse.deals.crm.retry import (
    DEFAULT_BASE_DELAY_SECONDS,
    DEFAULT_MAX_RETRIES,
    with_retry,
)
from src.dealpulse.deals.risk import RiskScorer
from src.dealpulse.deals.schemas import (
    CrmEntity,
    DealMetadata,
    EntityFetchResult,
    LocalDeal,
    RemoteDealSnapshot,
    RiskPolicy,
    ScorableDeal,
    SyncReport,
    UpsertOutcome,
)
from src.dealpulse.errors import DealPulseError

if TYPE_CHECKING:
    from src.dealpulse.deals.crm.associations import AssociationResolver
    from src.dealpulse.deals.crm.hubspot import HubSpotClient
    from src.dealpulse.deals.crm.tokens import TokenLifecycleManager
    from src.dealpulse.deals.repository import (
        CredentialRepository,
        DealRepository,
        RiskPolicyRepository,
    )

logger = structlog.get_logger(__name__)

MILLIS_PER_DAY = 86_400_000
ASSOCIATION_KINDS = ("companies", "contacts")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _whole_days_between(earlier: datetime, now: datetime) -> int:
    return max(0, (now - earlier).days)


def compute_days_in_stage(snapshot: RemoteDealSnapshot, now: datetime) -> int:
    """Whole days in the current stage.

    Uses the stage-duration property when it is positive; otherwise the deal
    has been in its stage since creation, so days since createdAt are used.
    Returns 0 when neither is available.
    """
    millis = snapshot.time_in_current_stage_millis
    if millis is not None and millis > 0:
        return millis // MILLIS_PER_DAY
    if snapshot.created_at is not None:
        return _whole_days_between(snapshot.created_at, now)
    return 0


def compute_days_inactive(snapshot: RemoteDealSnapshot, now: datetime) -> int:
    """Whole days since the last modification, 0 if never modified."""
    if snapshot.last_modified_at is None:
        return 0
    return _whole_days_between(snapshot.last_modified_at, now)


def _distinct(ids_per_deal: list[list[str]]) -> list[str]:
    seen: dict[str, None] = {}
    for ids in ids_per_deal:
        for entity_id in ids:
            seen.setdefault(entity_id, None)
    return list(seen)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class SyncPipeline:
    """Orchestrates HubSpot -> local deal sync for one user at a time.

    Args:
        credentials: Credential store.
        deals: Local deal store.
        policies: Risk policy store.
        tokens: Token lifecycle manager.
        hubspot: HubSpot API client.
        resolver: Primary association resolver.
        scorer: Risk scorer (default cutoffs when omitted).
        page_limit: Deals fetched per pass.
        max_retries: Retry budget for each remote call.
        base_delay: First backoff delay in seconds.
        sleep: Async sleep used between retries.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        credentials: CredentialRepository,
        deals: DealRepository,
        policies: RiskPolicyRepository,
        tokens: TokenLifecycleManager,
        hubspot: HubSpotClient,
        resolver: AssociationResolver,
        *,
        scorer: RiskScorer | None = None,
        page_limit: int = 100,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_delay: float = DEFAULT_BASE_DELAY_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._credentials = credentials
        self._deals = deals
        self._policies = policies
        self._tokens = tokens
        self._hubspot = hubspot
        self._resolver = resolver
        self._scorer = scorer or RiskScorer()
        self._page_limit = page_limit
        self._max_retries = max_retries
        self._base_delay = base_delay
        self._sleep = sleep
        self._clock = clock
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock

    async def _retry(self, operation: Callable[[], Awaitable[Any]]) -> Any:
        return await with_retry(
            operation, self._max_retries, self._base_delay, sleep=self._sleep
        )

    # ── Sync ────────────────────────────────────────────────────────────────

    async def sync_deals(self, user_id: str) -> SyncReport:
        """Run one sync pass for ``user_id``.

        Returns:
            SyncReport. NOT_CONNECTED and RECONNECT_REQUIRED are reported,
            not raised.

        Raises:
            TransientRemoteError: The deals list kept failing transiently.
            RemoteRequestError: HubSpot refused the deals list request.
        """
        lock = self._lock_for(user_id)
        if lock.locked():
            logger.info("sync.waiting_for_running_pass", user_id=user_id)
        async with lock:
            return await self._sync_locked(user_id)

    async def _sync_locked(self, user_id: str) -> SyncReport:
        credential = await self._credentials.get(user_id)
        if credential is None:
            logger.info("sync.not_connected", user_id=user_id)
            return SyncReport.not_connected()

        token_result = await self._tokens.ensure_valid_token(credential)
        if not token_result.usable or token_result.access_token is None:
            logger.warning("sync.reconnect_required", user_id=user_id)
            return SyncReport.reconnect_required()
        access_token = token_result.access_token

        records = await self._retry(
            lambda: self._hubspot.list_deals(
                access_token,
                DEAL_PROPERTIES,
                list(ASSOCIATION_KINDS),
                self._page_limit,
            )
        )

        outcomes: list[UpsertOutcome] = []
        snapshots: list[RemoteDealSnapshot] = []
        for record in records:
            try:
                snapshots.append(from_hubspot_deal(record))
            except (KeyError, TypeError, ValueError) as exc:
                remote_id = str(record.get("id", "unknown")) if isinstance(record, dict) else "unknown"
                logger.warning("sync.deal_parse_failed", user_id=user_id, remote_id=remote_id, error=str(exc))
                outcomes.append(UpsertOutcome(remote_id=remote_id, ok=False, error=f"unparsable record: {exc}"))

        companies = await self._fetch_entities(
            access_token, "companies", _distinct([s.company_ids for s in snapshots])
        )
        contacts = await self._fetch_entities(
            access_token, "contacts", _distinct([s.contact_ids for s in snapshots])
        )
        degraded = [r.kind for r in (companies, contacts) if r.degraded]

        policy = await self._policies.get_or_create(user_id)
        now = self._clock()

        for snapshot in snapshots:
            outcomes.append(
                await self._sync_one(
                    user_id, access_token, snapshot, companies, contacts, policy, now
                )
            )

        await self._credentials.mark_synced(user_id, now)

        report = SyncReport.from_outcomes(outcomes, total=len(records), degraded=degraded)
        logger.info(
            "sync.complete",
            user_id=user_id,
            synced=report.synced,
            total=report.total,
            failed=report.failed,
            degraded=degraded,
            token_status=token_result.status.value,
        )
        return report

    async def _sync_one(
        self,
        user_id: str,
        access_token: str,
        snapshot: RemoteDealSnapshot,
        companies: EntityFetchResult,
        contacts: EntityFetchResult,
        policy: RiskPolicy,
        now: datetime,
    ) -> UpsertOutcome:
        try:
            deal = await self.build_local_deal(
                user_id, access_token, snapshot, companies, contacts, policy, now
            )
            await self._deals.upsert_deal(deal, now)
        except Exception as exc:
            logger.error(
                "sync.deal_upsert_failed",
                user_id=user_id,
                remote_id=snapshot.remote_id,
                error=str(exc),
            )
            return UpsertOutcome(remote_id=snapshot.remote_id, ok=False, error=str(exc))
        return UpsertOutcome(remote_id=snapshot.remote_id, ok=True)

    async def build_local_deal(
        self,
        user_id: str,
        access_token: str,
        snapshot: RemoteDealSnapshot,
        companies: EntityFetchResult,
        contacts: EntityFetchResult,
        policy: RiskPolicy,
        now: datetime,
    ) -> LocalDeal:
        """Turn a remote snapshot into the LocalDeal written by the upsert."""
        company_id = await self._resolver.resolve_primary(
            access_token, snapshot.remote_id, snapshot.company_ids, "companies"
        )
        contact_id = await self._resolver.resolve_primary(
            access_token, snapshot.remote_id, snapshot.contact_ids, "contacts"
        )

        stage = snapshot.stage_id or "unknown"
        currency = (snapshot.currency or "USD").upper()
        days_inactive = compute_days_inactive(snapshot, now)

        risk = self._scorer.score(
            ScorableDeal(
                amount=snapshot.amount,
                currency=currency,
                stage=stage,
                days_inactive=days_inactive,
                notes=snapshot.notes,
            ),
            policy,
        )

        metadata = DealMetadata(
            company=companies.display_name(company_id),
            contact=contacts.display_name(contact_id),
            company_id=company_id,
            contact_id=contact_id,
            days_in_stage=compute_days_in_stage(snapshot, now),
            days_inactive=days_inactive,
            next_step=snapshot.next_step,
            notes=snapshot.notes,
            stage_label=format_stage_name(stage),
            close_date=_iso(snapshot.close_at),
            created_date=_iso(snapshot.created_at),
            last_modified_date=_iso(snapshot.last_modified_at),
            risk_score=risk.score,
            risk_level=risk.level,
            risk_factors=list(risk.factors),
            extra=dict(snapshot.extra_properties),
        )

        return LocalDeal(
            user_id=user_id,
            remote_id=snapshot.remote_id,
            name=snapshot.name or f"Deal {snapshot.remote_id}",
            amount=snapshot.amount,
            currency=currency,
            stage=stage,
            metadata=metadata,
        )

    # ── Associated Entities ─────────────────────────────────────────────────

    async def _fetch_entities(
        self, access_token: str, kind: str, ids: list[str]
    ) -> EntityFetchResult:
        """Batch-read entities of one kind, degrading to per-id reads."""
        if not ids:
            return EntityFetchResult(kind=kind)
        properties = ENTITY_PROPERTIES[kind]

        try:
            records = await self._retry(
                lambda: self._hubspot.batch_read(access_token, kind, ids, properties)
            )
        except DealPulseError as exc:
            logger.warning(
                "sync.batch_read_failed",
                kind=kind,
                count=len(ids),
                error=exc.message,
            )
            return await self._fetch_entities_one_by_one(access_token, kind, ids, properties)

        entities = {
            entity.entity_id: entity
            for entity in (self._to_entity(kind, record) for record in records)
        }
        missing = [entity_id for entity_id in ids if entity_id not in entities]
        return EntityFetchResult(kind=kind, entities=entities, missing_ids=missing)

    async def _fetch_entities_one_by_one(
        self, access_token: str, kind: str, ids: list[str], properties: list[str]
    ) -> EntityFetchResult:
        entities: dict[str, CrmEntity] = {}
        missing: list[str] = []
        for entity_id in ids:
            try:
                record = await self._retry(
                    partial(self._hubspot.read_object, access_token, kind, entity_id, properties)
                )
            except DealPulseError as exc:
                logger.warning(
                    "sync.entity_read_failed",
                    kind=kind,
                    entity_id=entity_id,
                    error=exc.message,
                )
                missing.append(entity_id)
                continue
            if record is None:
                missing.append(entity_id)
                continue
            entities[entity_id] = self._to_entity(kind, record)

        logger.info(
            "sync.entities_fetched_individually",
            kind=kind,
            fetched=len(entities),
            missing=len(missing),
        )
        return EntityFetchResult(
            kind=kind, entities=entities, degraded=True, missing_ids=missing
        )

    @staticmethod
    def _to_entity(kind: str, record: dict[str, Any]) -> CrmEntity:
        properties = record.get("properties") or {}
        return CrmEntity(
            entity_id=str(record["id"]),
            kind=kind,
            display_name=entity_display_name(kind, properties),
            properties=properties,
        )

    # ── Re-scoring ──────────────────────────────────────────────────────────

    async def rescore_deals(self, user_id: str) -> int:
        """Recompute risk for every stored deal with the current policy.

        Only the risk fields of each deal's metadata are rewritten.

        Returns:
            Number of deals re-scored.
        """
        async with self._lock_for(user_id):
            policy = await self._policies.get_or_create(user_id)
            deals = await self._deals.list_deals(user_id)
            rescored = 0
            for deal in deals:
                risk = self._scorer.score(
                    ScorableDeal(
                        amount=deal.amount,
                        currency=deal.currency,
                        stage=deal.stage,
                        days_inactive=deal.metadata.days_inactive,
                        notes=deal.metadata.notes,
                    ),
                    policy,
                )
                metadata = deal.metadata.model_copy(
                    update={
                        "risk_score": risk.score,
                        "risk_level": risk.level,
                        "risk_factors": list(risk.factors),
                    }
                )
                if await self._deals.update_metadata(user_id, deal.remote_id, metadata):
                    rescored += 1

        logger.info("risk.rescored", user_id=user_id, count=rescored)
        return rescored
