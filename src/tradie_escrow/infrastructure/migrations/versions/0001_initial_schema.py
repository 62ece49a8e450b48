"""Initial escrow schema: jobs, proposals, escrow_payments, escrow_events.

Revision ID: 0001
Revises:
Create Date: 2026-10-19
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB

revision: str = "0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

JSONType = sa.JSON().with_variant(JSONB(), "postgresql")

ACTIVE_PAYMENT = "status IN ('pending', 'held_in_escrow')"
ACCEPTED_PROPOSAL = "status = 'accepted'"


def upgrade() -> None:
    op.create_table(
        "jobs",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("customer_id", sa.String(64), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("assigned_provider_id", sa.String(64), nullable=True),
        sa.Column("payment_reference", sa.String(255), nullable=True),
        sa.Column("budget_min", sa.BigInteger(), nullable=True),
        sa.Column("budget_max", sa.BigInteger(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "status IN ('open', 'in_progress', 'review_pending', 'disputed', "
            "'completed', 'cancelled')",
            name="ck_job_valid_status",
        ),
    )
    op.create_index("idx_job_status", "jobs", ["status"])
    op.create_index("idx_job_customer", "jobs", ["customer_id"])

    op.create_table(
        "proposals",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "job_id", sa.Uuid(), sa.ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("provider_id", sa.String(64), nullable=False),
        sa.Column("price", sa.BigInteger(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "status IN ('pending', 'accepted', 'rejected')", name="ck_proposal_valid_status"
        ),
        sa.CheckConstraint("price > 0", name="ck_proposal_positive_price"),
    )
    op.create_index("idx_proposal_job", "proposals", ["job_id"])
    op.create_index(
        "uq_proposal_accepted_per_job",
        "proposals",
        ["job_id"],
        unique=True,
        postgresql_where=sa.text(ACCEPTED_PROPOSAL),
        sqlite_where=sa.text(ACCEPTED_PROPOSAL),
    )

    op.create_table(
        "escrow_payments",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "job_id", sa.Uuid(), sa.ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("proposal_id", sa.Uuid(), sa.ForeignKey("proposals.id"), nullable=False),
        sa.Column("payer_id", sa.String(64), nullable=False),
        sa.Column("payee_id", sa.String(64), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("gateway_reference", sa.String(255), nullable=True),
        sa.Column("external_event_ids", JSONType, nullable=False),
        sa.Column("pending_action", sa.String(10), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "status IN ('pending', 'held_in_escrow', 'released', 'refunded', 'failed')",
            name="ck_payment_valid_status",
        ),
        sa.CheckConstraint("amount > 0", name="ck_payment_positive_amount"),
    )
    op.create_index("idx_payment_job", "escrow_payments", ["job_id"])
    op.create_index("idx_payment_gateway_reference", "escrow_payments", ["gateway_reference"])
    op.create_index(
        "uq_payment_active_per_job",
        "escrow_payments",
        ["job_id"],
        unique=True,
        postgresql_where=sa.text(ACTIVE_PAYMENT),
        sqlite_where=sa.text(ACTIVE_PAYMENT),
    )

    op.create_table(
        "escrow_events",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "job_id", sa.Uuid(), sa.ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("payment_id", sa.Uuid(), nullable=True),
        sa.Column("event_type", sa.String(40), nullable=False),
        sa.Column("old_status", sa.String(20), nullable=True),
        sa.Column("new_status", sa.String(20), nullable=False),
        sa.Column("actor", sa.String(64), nullable=False),
        sa.Column("metadata", JSONType, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("idx_event_job", "escrow_events", ["job_id"])
    op.create_index("idx_event_type", "escrow_events", ["event_type"])
    op.create_index("idx_event_created_at", "escrow_events", ["created_at"])


def downgrade() -> None:
    op.drop_table("escrow_events")
    op.drop_table("escrow_payments")
    op.drop_table("proposals")
    op.drop_table("jobs")
