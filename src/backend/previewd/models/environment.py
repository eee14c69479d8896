"""SQLAlchemy ORM model for preview environments.

One row per (repository, pr_number). Desired state is written by the API;
observed state is written only by the reconcile engine. `version` is the
optimistic-concurrency token: SQLAlchemy adds it to every UPDATE's WHERE
clause and raises StaleDataError when another writer got there first.
"""

from datetime import datetime

from sqlalchemy import Boolean, CheckConstraint, Integer, Text, UniqueConstraint, text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

PHASES = ("Pending", "Creating", "Ready", "Updating", "Deleting", "Failed")
DO_NOT_EXPIRE_LABEL = "preview.previewd.io/do-not-expire"


class Base(DeclarativeBase):
    pass


class Environment(Base):
    __tablename__ = "preview_environments"
    __table_args__ = (
        UniqueConstraint("repository", "pr_number", name="uq_preview_environments_repo_pr"),
    )

    id: Mapped[str] = mapped_column(
        PG_UUID(as_uuid=False), primary_key=True, server_default=text("gen_random_uuid()")
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)

    # ── desired state ─────────────────────────────────────────────────────
    repository: Mapped[str] = mapped_column(Text, nullable=False)
    pr_number: Mapped[int] = mapped_column(Integer, nullable=False)
    head_sha: Mapped[str] = mapped_column(Text, nullable=False)
    base_branch: Mapped[str | None] = mapped_column(Text, nullable=True)
    head_branch: Mapped[str | None] = mapped_column(Text, nullable=True)
    services: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    ttl: Mapped[str] = mapped_column(Text, nullable=False, server_default=text("'4h'"))
    resource_overrides: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    isolation: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    labels: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)

    # ── bookkeeping ───────────────────────────────────────────────────────
    generation: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    finalizer: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    deletion_requested_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )

    # ── observed state ────────────────────────────────────────────────────
    phase: Mapped[str] = mapped_column(
        Text,
        CheckConstraint(
            "phase IN ('Pending', 'Creating', 'Ready', 'Updating', 'Deleting', 'Failed')",
            name="ck_preview_environments_phase",
        ),
        server_default=text("'Pending'"),
        nullable=False,
    )
    url: Mapped[str | None] = mapped_column(Text, nullable=True)
    namespace_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    service_statuses: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    conditions: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    cost_estimate: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    actual_cost: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    created_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True, index=True
    )
    last_synced_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    observed_generation: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    applied_revision: Mapped[str | None] = mapped_column(Text, nullable=True)
    applied_services: Mapped[list | None] = mapped_column(JSONB, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    inserted_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), server_default=text("now()"), nullable=True
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def do_not_expire(self) -> bool:
        return (self.labels or {}).get(DO_NOT_EXPIRE_LABEL) == "true"
