"""Create sync tables

Revision ID: a1c2e3f4b5d6
Revises:
Create Date: 2026-09-14

Systems, controls, statements, pull/push jobs and the append-only audit_events
table.
"""
from __future__ import annotations

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision = "a1c2e3f4b5d6"
down_revision = None
branch_labels = None
depends_on = None

JOB_STATUSES = ("pending", "running", "completed", "failed", "partial", "cancelled")


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    op.create_table(
        "systems",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("external_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("owner", sa.String(length=255), nullable=True),
        sa.Column("status", sa.String(length=50), nullable=False, server_default="active"),
        sa.Column("remote_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_pull_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_systems_external_id", "systems", ["external_id"], unique=True)
    op.create_index("ix_systems_status", "systems", ["status"])

    op.create_table(
        "controls",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "system_id",
            sa.String(length=36),
            sa.ForeignKey("systems.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("external_id", sa.String(length=64), nullable=False),
        sa.Column("control_id", sa.String(length=50), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("family", sa.String(length=50), nullable=True),
        sa.Column("baseline", sa.String(length=50), nullable=True),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("implementation_status", sa.String(length=50), nullable=False, server_default="not_assessed"),
        sa.Column("remote_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_pull_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("system_id", "external_id", name="uq_controls_system_external_id"),
    )
    op.create_index("ix_controls_system_id", "controls", ["system_id"])
    op.create_index("ix_controls_family", "controls", ["family"])

    op.create_table(
        "statements",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "control_id",
            sa.String(length=36),
            sa.ForeignKey("controls.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("external_id", sa.String(length=64), nullable=False),
        sa.Column("statement_type", sa.String(length=50), nullable=False, server_default="implementation"),
        sa.Column("remote_content", sa.Text, nullable=True),
        sa.Column("remote_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("baseline_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("local_content", sa.Text, nullable=True),
        sa.Column("is_modified", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("modified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("modified_by", sa.String(length=128), nullable=True),
        sa.Column(
            "sync_status",
            sa.Enum("synced", "modified", "conflict", name="sync_status", create_constraint=True),
            nullable=False,
            server_default="synced",
        ),
        sa.Column("conflict_resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("conflict_resolved_by", sa.String(length=128), nullable=True),
        sa.Column("last_pull_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_push_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        *_timestamps(),
        sa.UniqueConstraint("control_id", "external_id", name="uq_statements_control_external_id"),
    )
    op.create_index("ix_statements_control_id", "statements", ["control_id"])
    op.create_index("ix_statements_is_modified", "statements", ["is_modified"])
    op.create_index("ix_statements_sync_status", "statements", ["sync_status"])

    op.create_table(
        "pull_jobs",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("system_ids", sa.JSON, nullable=False),
        sa.Column(
            "status",
            sa.Enum(*JOB_STATUSES, name="job_status", create_constraint=True),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("progress", sa.JSON, nullable=False),
        sa.Column("errors", sa.JSON, nullable=False),
        sa.Column("error", sa.Text, nullable=True),
        sa.Column("created_by", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_pull_jobs_status", "pull_jobs", ["status"])
    op.create_index("ix_pull_jobs_created_at", "pull_jobs", ["created_at"])

    op.create_table(
        "push_jobs",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("statement_ids", sa.JSON, nullable=False),
        sa.Column(
            "status",
            sa.Enum(*JOB_STATUSES, name="job_status", create_constraint=True),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("total_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("completed", sa.Integer, nullable=False, server_default="0"),
        sa.Column("succeeded", sa.Integer, nullable=False, server_default="0"),
        sa.Column("failed", sa.Integer, nullable=False, server_default="0"),
        sa.Column("skipped", sa.Integer, nullable=False, server_default="0"),
        sa.Column("results", sa.JSON, nullable=False),
        sa.Column("error", sa.Text, nullable=True),
        sa.Column("created_by", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_push_jobs_status", "push_jobs", ["status"])
    op.create_index("ix_push_jobs_created_by", "push_jobs", ["created_by"])
    op.create_index("ix_push_jobs_created_at", "push_jobs", ["created_at"])

    op.create_table(
        "audit_events",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("event_type", sa.String(length=50), nullable=False),
        sa.Column("entity_type", sa.String(length=50), nullable=False),
        sa.Column("entity_id", sa.String(length=128), nullable=False),
        sa.Column("action", sa.String(length=100), nullable=False),
        sa.Column("actor", sa.String(length=128), nullable=False, server_default="system"),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("details", sa.JSON, nullable=True),
        sa.Column("request_id", sa.String(length=64), nullable=True),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_audit_events_entity_id", "audit_events", ["entity_id"])
    op.create_index("ix_audit_events_status", "audit_events", ["status"])
    op.create_index("ix_audit_events_request_id", "audit_events", ["request_id"])
    op.create_index(
        "ix_audit_events_type_entity_created",
        "audit_events",
        ["event_type", "entity_type", "created_at"],
    )
    op.create_index("ix_audit_events_actor", "audit_events", ["actor"])
    op.create_index("ix_audit_events_created_at", "audit_events", ["created_at"])


def downgrade() -> None:
    op.drop_table("audit_events")
    op.drop_table("push_jobs")
    op.drop_table("pull_jobs")
    op.drop_table("statements")
    op.drop_table("controls")
    op.drop_table("systems")
    sa.Enum(name="job_status").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="sync_status").drop(op.get_bind(), checkfirst=True)
