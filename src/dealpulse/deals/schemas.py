"""Pydantic schemas for CRM sync, credentials and risk scoring.

Defines all structured types flowing through the engine:
- Enums: RiskLevel, SyncStatus, TokenStatus
- Credentials: Credential, TokenGrant, TokenResult, ConnectionStatus
- Remote data: RemoteDealSnapshot, AssociationCandidate, CrmEntity, EntityFetchResult
- Local data: DealMetadata, LocalDeal
- Risk: RiskKeyword, RiskPolicy, ScorableDeal, RiskResult
- Sync outcomes: UpsertOutcome, SyncReport

Outcome types are tagged values rather than exceptions so callers can tell
"stop everything" (reconnect required) from "skip this record".
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


# ── Enums ───────────────────────────────────────────────────────────────────


class RiskLevel(str, Enum):
    """Bucketed risk level derived from the 0-100 score."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class SyncStatus(str, Enum):
    """Outcome of a sync pass, mapped 1:1 to what the UI shows."""

    OK = "ok"
    NOT_CONNECTED = "not_connected"
    RECONNECT_REQUIRED = "reconnect_required"
    FAILED = "failed"


class TokenStatus(str, Enum):
    """Result of validating a stored credential."""

    VALID = "valid"
    REFRESHED = "refreshed"
    INVALIDATED = "invalidated"


# ── Credentials ─────────────────────────────────────────────────────────────


class Credential(BaseModel):
    """One user's OAuth connection to the CRM (at most one per user)."""

    user_id: str
    access_token: str
    refresh_token: str
    expires_at: datetime
    scope: str | None = None
    last_synced_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def is_expired(self, now: datetime | None = None, skew_seconds: int = 0) -> bool:
        """True if the access token expires within ``skew_seconds`` of ``now``."""
        now = now or datetime.now(timezone.utc)
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at <= now + timedelta(seconds=skew_seconds)


class TokenGrant(BaseModel):
    """Token endpoint response for either grant type."""

    access_token: str
    refresh_token: str
    expires_in: int
    scope: str | None = None

    def expires_at(self, now: datetime | None = None) -> datetime:
        now = now or datetime.now(timezone.utc)
        return now + timedelta(seconds=self.expires_in)


class TokenResult(BaseModel):
    """Tagged result of ensure_valid_token.

    ``access_token`` and ``credential`` are set for VALID and REFRESHED and
    are None for INVALIDATED.
    """

    status: TokenStatus
    access_token: str | None = None
    credential: Credential | None = None

    @property
    def usable(self) -> bool:
        return self.status != TokenStatus.INVALIDATED

    @classmethod
    def invalidated(cls) -> TokenResult:
        return cls(status=TokenStatus.INVALIDATED)


class ConnectionStatus(BaseModel):
    """CRM connection state reported to the UI."""

    connected: bool
    expired: bool = False
    last_sync: datetime | None = None
    scope: str | None = None


# ── Remote Data ─────────────────────────────────────────────────────────────


class AssociationCandidate(BaseModel):
    """One associated entity returned by the per-deal associations endpoint."""

    entity_id: str
    is_primary: bool = False


class RemoteDealSnapshot(BaseModel):
    """Everything fetched for one remote deal in one sync pass."""

    remote_id: str
    name: str | None = None
    amount: float | None = None
    currency: str | None = None
    stage_id: str | None = None
    created_at: datetime | None = None
    last_modified_at: datetime | None = None
    close_at: datetime | None = None
    next_step: str | None = None
    notes: str | None = None
    time_in_current_stage_millis: int | None = None
    company_ids: list[str] = Field(default_factory=list)
    contact_ids: list[str] = Field(default_factory=list)
    extra_properties: dict[str, Any] = Field(default_factory=dict)


class CrmEntity(BaseModel):
    """Display attributes of an associated company or contact."""

    entity_id: str
    kind: str
    display_name: str | None = None
    properties: dict[str, Any] = Field(default_factory=dict)


class EntityFetchResult(BaseModel):
    """Outcome of fetching associated entities for one kind.

    ``degraded`` is True when the batch endpoint failed and the ids were
    fetched one by one instead; ``missing_ids`` lists ids that could not be
    read either way.
    """

    kind: str
    entities: dict[str, CrmEntity] = Field(default_factory=dict)
    degraded: bool = False
    missing_ids: list[str] = Field(default_factory=list)

    def display_name(self, entity_id: str | None) -> str | None:
        if entity_id is None:
            return None
        entity = self.entities.get(entity_id)
        return entity.display_name if entity else None


# ── Local Data ──────────────────────────────────────────────────────────────


class DealMetadata(BaseModel):
    """Typed view of LocalDeal.metadata.

    Well-known derived fields are first-class members; anything else the CRM
    sends lands in ``extra``. Stored with camelCase keys (``daysInStage``,
    ``riskScore``) because the dashboard reads them that way; legacy
    snake_case keys are folded in by field_mapping.normalize_metadata.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    company: str | None = None
    contact: str | None = None
    company_id: str | None = None
    contact_id: str | None = None
    days_in_stage: int = 0
    days_inactive: int = 0
    next_step: str | None = None
    notes: str | None = None
    stage_label: str | None = None
    close_date: str | None = None
    created_date: str | None = None
    last_modified_date: str | None = None
    risk_score: int | None = None
    risk_level: RiskLevel | None = None
    risk_factors: list[str] = Field(default_factory=list)
    extra: dict[str, Any] = Field(default_factory=dict)

    def to_storage(self) -> dict[str, Any]:
        """Flatten into the JSON bag persisted on the deals row."""
        data = self.model_dump(by_alias=True, mode="json", exclude={"extra"})
        stored = dict(self.extra)
        stored.update(data)
        return stored


class LocalDeal(BaseModel):
    """Persisted deal, unique on (user_id, remote_id)."""

    id: str | None = None
    user_id: str
    remote_id: str
    name: str
    amount: float | None = None
    currency: str = "USD"
    stage: str = "unknown"
    metadata: DealMetadata = Field(default_factory=DealMetadata)
    synced_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


# ── Risk ────────────────────────────────────────────────────────────────────


class RiskKeyword(BaseModel):
    """A note keyword and the weight it adds to the keyword factor."""

    word: str
    weight: float = 0.1


class RiskPolicy(BaseModel):
    """User-scoped scoring settings.

    The four weights are expected to sum to 1.0. The settings API enforces
    that on write; the scoring engine uses them exactly as given.
    """

    stalled_threshold_days: int = Field(default=14, ge=0)
    weight_amount: float = Field(default=0.25, ge=0)
    weight_stage: float = Field(default=0.25, ge=0)
    weight_inactivity: float = Field(default=0.30, ge=0)
    weight_notes: float = Field(default=0.20, ge=0)
    high_value_threshold: float = Field(default=100000, ge=0)
    risky_stages: list[str] = Field(
        default_factory=lambda: ["negotiation", "contractsent"]
    )
    risk_keywords: list[RiskKeyword] = Field(
        default_factory=lambda: [
            RiskKeyword(word="budget", weight=0.5),
            RiskKeyword(word="competitor", weight=0.5),
            RiskKeyword(word="delay", weight=0.4),
        ]
    )

    @property
    def weights_total(self) -> float:
        return (
            self.weight_amount
            + self.weight_stage
            + self.weight_inactivity
            + self.weight_notes
        )

    def risky_stage_set(self) -> frozenset[str]:
        """Risky stages lower-cased for case-insensitive matching."""
        return frozenset(s.strip().lower() for s in self.risky_stages if s.strip())


class ScorableDeal(BaseModel):
    """The deal attributes the risk engine reads."""

    amount: float | None = None
    currency: str = "USD"
    stage: str = ""
    days_inactive: int = 0
    notes: str | None = None


class RiskResult(BaseModel):
    """Score, level and ordered human-readable factors."""

    model_config = ConfigDict(frozen=True)

    score: int = Field(ge=0, le=100)
    level: RiskLevel
    factors: tuple[str, ...] = ()


# ── Sync Outcomes ───────────────────────────────────────────────────────────


class UpsertOutcome(BaseModel):
    """Result of writing a single deal."""

    remote_id: str
    ok: bool
    error: str | None = None


class SyncReport(BaseModel):
    """Summary of one sync pass."""

    status: SyncStatus = SyncStatus.OK
    connected: bool = True
    synced: int = 0
    total: int = 0
    failed: int = 0
    errors: list[str] = Field(default_factory=list)
    degraded_fetches: list[str] = Field(default_factory=list)

    @classmethod
    def not_connected(cls) -> SyncReport:
        return cls(status=SyncStatus.NOT_CONNECTED, connected=False)

    @classmethod
    def reconnect_required(cls) -> SyncReport:
        return cls(status=SyncStatus.RECONNECT_REQUIRED, connected=False)

    @classmethod
    def from_outcomes(
        cls, outcomes: list[UpsertOutcome], total: int, degraded: list[str] | None = None
    ) -> SyncReport:
        failures = [o for o in outcomes if not o.ok]
        return cls(
            status=SyncStatus.OK,
            connected=True,
            synced=len(outcomes) - len(failures),
            total=total,
            failed=len(failures),
            errors=[f"{o.remote_id}: {o.error}" for o in failures],
            degraded_fetches=degraded or [],
        )
