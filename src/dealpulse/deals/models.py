"""Persistence models for CRM credentials, synced deals and risk policies.

Three SQLAlchemy models on the shared Base:
- CrmCredentialModel: one OAuth credential per user (unique user_id)
- DealModel: one row per (user_id, remote_id) -- the upsert conflict key
- RiskPolicyModel: one scoring policy per user (unique user_id)
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    DateTime,
    Float,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSON, JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.dealpulse.core.database import Base


class CrmCredentialModel(Base):
    """OAuth access/refresh token pair for one user's CRM connection.

    Created on authorization-code exchange, mutated in place on refresh
    (compare-and-swap on refresh_token), deleted when the CRM rejects a
    refresh or the user disconnects.
    """

    __tablename__ = "crm_credentials"
    __table_args__ = (
        UniqueConstraint("user_id", name="uq_crm_credential_user"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    user_id: Mapped[str] = mapped_column(String(100), nullable=False)
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token: Mapped[str] = mapped_column(Text, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    scope: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class DealModel(Base):
    """Local copy of a remote CRM deal.

    (user_id, remote_id) is the idempotency key: the sync pipeline writes
    through INSERT ... ON CONFLICT on that pair. content_hash lets the upsert
    leave updated_at alone when the remote data did not change.
    """

    __tablename__ = "deals"
    __table_args__ = (
        UniqueConstraint("user_id", "remote_id", name="uq_deal_user_remote"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    user_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    remote_id: Mapped[str] = mapped_column(String(100), nullable=False)
    name: Mapped[str] = mapped_column(String(500), nullable=False)
    amount: Mapped[float | None] = mapped_column(Float, nullable=True)
    currency: Mapped[str] = mapped_column(
        String(3), default="USD", server_default=text("'USD'")
    )
    stage: Mapped[str] = mapped_column(
        String(100), default="unknown", server_default=text("'unknown'")
    )
    metadata_json: Mapped[dict] = mapped_column(
        JSONB, default=dict, server_default=text("'{}'::jsonb")
    )
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    synced_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )


class RiskPolicyModel(Base):
    """Per-user risk scoring settings."""

    __tablename__ = "risk_policies"
    __table_args__ = (
        UniqueConstraint("user_id", name="uq_risk_policy_user"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    user_id: Mapped[str] = mapped_column(String(100), nullable=False)
    stalled_threshold_days: Mapped[int] = mapped_column(
        Integer, default=14, server_default=text("14")
    )
    weight_amount: Mapped[float] = mapped_column(Float, nullable=False)
    weight_stage: Mapped[float] = mapped_column(Float, nullable=False)
    weight_inactivity: Mapped[float] = mapped_column(Float, nullable=False)
    weight_notes: Mapped[float] = mapped_column(Float, nullable=False)
    high_value_threshold: Mapped[float] = mapped_column(Float, nullable=False)
    risky_stages: Mapped[list] = mapped_column(
        JSON, default=list, server_default=text("'[]'::json")
    )
    risk_keywords: Mapped[list] = mapped_column(
        JSON, default=list, server_default=text("'[]'::json")
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )
