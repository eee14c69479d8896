"""Revision 0001: preview_environments table

One row per (repository, pr_number). Desired columns are written by the API,
observed columns by the reconcile engine; `version` is the optimistic
concurrency token SQLAlchemy checks on every UPDATE.

Revision ID: 0001
Revises:
Create Date: 2026-10-17
"""

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "preview_environments",
        sa.Column(
            "id",
            sa.UUID(),
            server_default=sa.text("gen_random_uuid()"),
            nullable=False,
        ),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("repository", sa.Text(), nullable=False),
        sa.Column("pr_number", sa.Integer(), nullable=False),
        sa.Column("head_sha", sa.Text(), nullable=False),
        sa.Column("base_branch", sa.Text(), nullable=True),
        sa.Column("head_branch", sa.Text(), nullable=True),
        sa.Column(
            "services",
            postgresql.JSONB(),
            server_default=sa.text("'[]'::jsonb"),
            nullable=False,
        ),
        sa.Column("ttl", sa.Text(), server_default=sa.text("'4h'"), nullable=False),
        sa.Column(
            "resource_overrides",
            postgresql.JSONB(),
            server_default=sa.text("'{}'::jsonb"),
            nullable=False,
        ),
        sa.Column(
            "isolation",
            postgresql.JSONB(),
            server_default=sa.text("'{}'::jsonb"),
            nullable=False,
        ),
        sa.Column(
            "labels",
            postgresql.JSONB(),
            server_default=sa.text("'{}'::jsonb"),
            nullable=False,
        ),
        sa.Column("generation", sa.Integer(), server_default=sa.text("1"), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("finalizer", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("deletion_requested_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column(
            "phase",
            sa.Text(),
            sa.CheckConstraint(
                "phase IN ('Pending', 'Creating', 'Ready', 'Updating', 'Deleting', 'Failed')",
                name="ck_preview_environments_phase",
            ),
            server_default=sa.text("'Pending'"),
            nullable=False,
        ),
        sa.Column("url", sa.Text(), nullable=True),
        sa.Column("namespace_name", sa.Text(), nullable=True),
        sa.Column(
            "service_statuses",
            postgresql.JSONB(),
            server_default=sa.text("'[]'::jsonb"),
            nullable=False,
        ),
        sa.Column(
            "conditions",
            postgresql.JSONB(),
            server_default=sa.text("'[]'::jsonb"),
            nullable=False,
        ),
        sa.Column("cost_estimate", postgresql.JSONB(), nullable=True),
        sa.Column("actual_cost", postgresql.JSONB(), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("expires_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("last_synced_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column(
            "observed_generation", sa.Integer(), server_default=sa.text("0"), nullable=False
        ),
        sa.Column("applied_revision", sa.Text(), nullable=True),
        sa.Column("applied_services", postgresql.JSONB(), nullable=True),
        sa.Column("retry_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column(
            "inserted_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("now()"),
            nullable=True,
        ),
        sa.PrimaryKeyConstraint("id", name="pk_preview_environments"),
        sa.UniqueConstraint(
            "repository", "pr_number", name="uq_preview_environments_repo_pr"
        ),
    )
    op.create_index(
        "ix_preview_environments_expires_at", "preview_environments", ["expires_at"]
    )


def downgrade():
    op.drop_index("ix_preview_environments_expires_at", table_name="preview_environments")
    op.drop_table("preview_environments")
