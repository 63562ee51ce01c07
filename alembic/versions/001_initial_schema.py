"""Initial schema: crm_credentials, deals, risk_policies.

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-19

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSON, JSONB, UUID

# revision identifiers, used by Alembic.
revision: str = "001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "crm_credentials",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("user_id", sa.String(100), nullable=False),
        sa.Column("access_token", sa.Text(), nullable=False),
        sa.Column("refresh_token", sa.Text(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("scope", sa.Text(), nullable=True),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("user_id", name="uq_crm_credential_user"),
    )

    op.create_table(
        "deals",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("user_id", sa.String(100), nullable=False),
        sa.Column("remote_id", sa.String(100), nullable=False),
        sa.Column("name", sa.String(500), nullable=False),
        sa.Column("amount", sa.Float(), nullable=True),
        sa.Column("currency", sa.String(3), server_default=sa.text("'USD'")),
        sa.Column("stage", sa.String(100), server_default=sa.text("'unknown'")),
        sa.Column("metadata_json", JSONB(), server_default=sa.text("'{}'::jsonb")),
        sa.Column("content_hash", sa.String(64), nullable=False),
        sa.Column("synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("user_id", "remote_id", name="uq_deal_user_remote"),
    )
    op.create_index("ix_deals_user_id", "deals", ["user_id"])

    op.create_table(
        "risk_policies",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("user_id", sa.String(100), nullable=False),
        sa.Column("stalled_threshold_days", sa.Integer(), server_default=sa.text("14")),
        sa.Column("weight_amount", sa.Float(), nullable=False),
        sa.Column("weight_stage", sa.Float(), nullable=False),
        sa.Column("weight_inactivity", sa.Float(), nullable=False),
        sa.Column("weight_notes", sa.Float(), nullable=False),
        sa.Column("high_value_threshold", sa.Float(), nullable=False),
        sa.Column("risky_stages", JSON(), server_default=sa.text("'[]'::json")),
        sa.Column("risk_keywords", JSON(), server_default=sa.text("'[]'::json")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("user_id", name="uq_risk_policy_user"),
    )


def downgrade() -> None:
    op.drop_table("risk_policies")
    op.drop_index("ix_deals_user_id", table_name="deals")
    op.drop_table("deals")
    op.drop_table("crm_credentials")
