"""Create webhook delivery tables.

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "webhook_endpoints",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("description", sa.Text, nullable=False, server_default=""),
        sa.Column("url", sa.String(500), nullable=False),
        sa.Column("method", sa.String(10), nullable=False, server_default="POST"),
        sa.Column("events", postgresql.JSON, nullable=False),
        sa.Column("headers", postgresql.JSON, nullable=False),
        sa.Column("secret", sa.String(255), nullable=True),
        sa.Column("signature_method", sa.String(10), nullable=False, server_default="sha256"),
        sa.Column(
            "signature_header",
            sa.String(100),
            nullable=False,
            server_default="X-Webhook-Signature",
        ),
        sa.Column(
            "timestamp_header",
            sa.String(100),
            nullable=False,
            server_default="X-Webhook-Timestamp",
        ),
        sa.Column("timeout_seconds", sa.Float, nullable=False, server_default="30"),
        sa.Column("max_concurrency", sa.Integer, nullable=True),
        sa.Column("retry_enabled", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("max_attempts", sa.Integer, nullable=False, server_default="5"),
        sa.Column("backoff_strategy", sa.String(20), nullable=False, server_default="exponential"),
        sa.Column("initial_delay_ms", sa.Integer, nullable=False, server_default="1000"),
        sa.Column("max_delay_ms", sa.Integer, nullable=False, server_default="60000"),
        sa.Column("retry_on_status", postgresql.JSON, nullable=False),
        sa.Column("retry_jitter", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("health_check_enabled", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column(
            "health_check_interval_seconds", sa.Integer, nullable=False, server_default="300"
        ),
        sa.Column("health_check_timeout_seconds", sa.Float, nullable=False, server_default="5"),
        sa.Column("health_check_expected_status", postgresql.JSON, nullable=False),
        sa.Column("last_health_check_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_health_check_status", sa.String(20), nullable=True),
        sa.Column("last_health_check_response_ms", sa.Integer, nullable=True),
        sa.Column("enabled", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
    )

    op.create_table(
        "webhook_deliveries",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("event_id", postgresql.UUID(as_uuid=True), nullable=False, index=True),
        sa.Column("event_type", sa.String(100), nullable=False, index=True),
        sa.Column(
            "endpoint_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("webhook_endpoints.id"),
            nullable=False,
            index=True,
        ),
        sa.Column("payload", postgresql.JSON, nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending", index=True),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer, nullable=False),
        sa.Column("last_status_code", sa.Integer, nullable=True),
        sa.Column("last_response_time_ms", sa.Integer, nullable=True),
        sa.Column("last_error", sa.Text, nullable=True),
        # Endpoint settings copied at creation
        sa.Column("endpoint_url", sa.String(500), nullable=False),
        sa.Column("http_method", sa.String(10), nullable=False),
        sa.Column("request_headers", postgresql.JSON, nullable=False),
        sa.Column("timeout_seconds", sa.Float, nullable=False),
        sa.Column("secret", sa.String(255), nullable=True),
        sa.Column("signature_method", sa.String(10), nullable=False),
        sa.Column("signature_header", sa.String(100), nullable=False),
        sa.Column("timestamp_header", sa.String(100), nullable=False),
        sa.Column("backoff_strategy", sa.String(20), nullable=False),
        sa.Column("initial_delay_ms", sa.Integer, nullable=False),
        sa.Column("max_delay_ms", sa.Integer, nullable=False),
        sa.Column("retry_on_status", postgresql.JSON, nullable=False),
        sa.Column("retry_jitter", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
            index=True,
        ),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_webhook_deliveries_endpoint_created",
        "webhook_deliveries",
        ["endpoint_id", "created_at"],
    )

    op.create_table(
        "webhook_delivery_attempts",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "delivery_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("webhook_deliveries.id"),
            nullable=False,
            index=True,
        ),
        sa.Column("attempt_number", sa.Integer, nullable=False),
        sa.Column("success", sa.Boolean, nullable=False),
        sa.Column("status_code", sa.Integer, nullable=True),
        sa.Column("response_time_ms", sa.Integer, nullable=True),
        sa.Column("response_body", sa.Text, nullable=True),
        sa.Column("error", sa.Text, nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
    )

    op.create_table(
        "webhook_retry_jobs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "delivery_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("webhook_deliveries.id"),
            nullable=False,
            index=True,
        ),
        sa.Column("endpoint_id", postgresql.UUID(as_uuid=True), nullable=False, index=True),
        sa.Column("attempt", sa.Integer, nullable=False),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=False, index=True),
        sa.Column("delay_ms", sa.Integer, nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="scheduled"),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_webhook_retry_jobs_status_due",
        "webhook_retry_jobs",
        ["status", "next_retry_at"],
    )

    op.create_table(
        "webhook_dead_letters",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "delivery_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("webhook_deliveries.id"),
            nullable=False,
            unique=True,
        ),
        sa.Column("endpoint_id", postgresql.UUID(as_uuid=True), nullable=False, index=True),
        sa.Column("event_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("payload", postgresql.JSON, nullable=False),
        sa.Column("failure_reason", sa.Text, nullable=False),
        sa.Column("attempts", sa.Integer, nullable=False),
        sa.Column("first_failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_by", sa.String(255), nullable=True),
        sa.Column("resolution_notes", sa.Text, nullable=True),
        sa.Column("superseded_by", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
    )
    op.create_index(
        "ix_webhook_dead_letters_endpoint_resolved",
        "webhook_dead_letters",
        ["endpoint_id", "resolved"],
    )


def downgrade() -> None:
    op.drop_table("webhook_dead_letters")
    op.drop_table("webhook_retry_jobs")
    op.drop_table("webhook_delivery_attempts")
    op.drop_table("webhook_deliveries")
    op.drop_table("webhook_endpoints")
