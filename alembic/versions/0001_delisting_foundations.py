from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0001_delisting_foundations"
down_revision = None
branch_labels = None
depends_on = None


def _jsonb(default: str):
    return dict(nullable=False, server_default=sa.text(f"'{default}'::jsonb"))


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "marketplace_listings",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("inventory_item_id", sa.String(), nullable=False),
        sa.Column("marketplace", sa.String(length=50), nullable=False),
        sa.Column("external_listing_id", sa.String(length=255), nullable=True),
        sa.Column("status", sa.String(length=30), nullable=False, server_default="active"),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index(
        "ix_marketplace_listings_item_marketplace", "marketplace_listings", ["inventory_item_id", "marketplace"]
    )

    op.create_table(
        "user_delisting_preferences",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), nullable=False, unique=True),
        sa.Column("auto_delist_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("default_preference", sa.String(length=30), nullable=False, server_default="immediate"),
        sa.Column("delay_minutes", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("require_confirmation", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("marketplace_preferences", postgresql.JSONB(astext_type=sa.Text()), **_jsonb("{}")),
        sa.Column("exclude_marketplaces", postgresql.JSONB(astext_type=sa.Text()), **_jsonb("[]")),
        sa.Column("min_sale_amount", sa.Numeric(10, 2), nullable=True),
        sa.Column("max_sale_amount", sa.Numeric(10, 2), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "delisting_jobs",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("inventory_item_id", sa.String(), nullable=False),
        sa.Column("trigger_type", sa.String(length=30), nullable=False, server_default="sale_detected"),
        sa.Column("trigger_data", postgresql.JSONB(astext_type=sa.Text()), **_jsonb("{}")),
        sa.Column("status", sa.String(length=30), nullable=False, server_default="pending"),
        sa.Column("sold_on_marketplace", sa.String(length=50), nullable=True),
        sa.Column("sale_price", sa.Numeric(10, 2), nullable=True),
        sa.Column("sale_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sale_external_id", sa.String(length=255), nullable=True),
        sa.Column("marketplaces_targeted", postgresql.JSONB(astext_type=sa.Text()), **_jsonb("[]")),
        sa.Column("marketplaces_completed", postgresql.JSONB(astext_type=sa.Text()), **_jsonb("[]")),
        sa.Column("marketplaces_failed", postgresql.JSONB(astext_type=sa.Text()), **_jsonb("[]")),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("error_log", postgresql.JSONB(astext_type=sa.Text()), **_jsonb("{}")),
        sa.Column("success_log", postgresql.JSONB(astext_type=sa.Text()), **_jsonb("{}")),
        sa.Column("requires_user_confirmation", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("user_confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("user_cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('pending','processing','completed','partially_failed','failed','cancelled')",
            name="ck_delisting_jobs_status",
        ),
    )
    op.create_index("ix_delisting_jobs_status_scheduled", "delisting_jobs", ["status", "scheduled_for"])
    op.create_index("ix_delisting_jobs_user_item", "delisting_jobs", ["user_id", "inventory_item_id"])

    op.create_table(
        "sale_events",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("inventory_item_id", sa.String(), nullable=True),
        sa.Column("listing_id", sa.String(), nullable=True),
        sa.Column("marketplace", sa.String(length=50), nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=False, server_default="item_sold"),
        sa.Column("external_event_id", sa.String(length=255), nullable=True),
        sa.Column("external_listing_id", sa.String(length=255), nullable=True),
        sa.Column("external_transaction_id", sa.String(length=255), nullable=True),
        sa.Column("sale_price", sa.Numeric(10, 2), nullable=True),
        sa.Column("sale_currency", sa.String(length=3), nullable=False, server_default="USD"),
        sa.Column("sale_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("buyer_id", sa.String(length=255), nullable=True),
        sa.Column("payment_status", sa.String(length=100), nullable=True),
        sa.Column("raw_webhook_data", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("raw_polling_data", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("processed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("processing_error", sa.Text(), nullable=True),
        sa.Column(
            "delisting_job_id",
            sa.String(),
            sa.ForeignKey("delisting_jobs.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("event_hash", sa.String(length=64), nullable=True),
        sa.Column("is_duplicate", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("duplicate_of", sa.String(), nullable=True),
        sa.Column("verified", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("verification_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("verification_error", sa.Text(), nullable=True),
        sa.Column("retry_after", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "raw_webhook_data IS NULL OR raw_polling_data IS NULL",
            name="ck_sale_events_single_provenance",
        ),
    )
    op.create_index("ix_sale_events_user_id", "sale_events", ["user_id"])
    op.create_index("ix_sale_events_queue", "sale_events", ["processed", "verification_attempts", "created_at"])
    op.create_index("ix_sale_events_event_hash", "sale_events", ["event_hash"], unique=True)
    op.create_index("ix_sale_events_external", "sale_events", ["marketplace", "external_event_id"])

    op.create_table(
        "delisting_audit_log",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("delisting_job_id", sa.String(), nullable=True),
        sa.Column("listing_id", sa.String(), nullable=True),
        sa.Column("action", sa.String(length=100), nullable=False),
        sa.Column("marketplace", sa.String(length=50), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("error_code", sa.String(length=100), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("context", postgresql.JSONB(astext_type=sa.Text()), **_jsonb("{}")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_delisting_audit_log_user_id", "delisting_audit_log", ["user_id"])
    op.create_index("ix_delisting_audit_log_delisting_job_id", "delisting_audit_log", ["delisting_job_id"])
    op.create_index("ix_delisting_audit_log_action", "delisting_audit_log", ["action"])


def downgrade():
    op.drop_table("delisting_audit_log")
    op.drop_table("sale_events")
    op.drop_table("delisting_jobs")
    op.drop_table("user_delisting_preferences")
    op.drop_index("ix_marketplace_listings_item_marketplace", table_name="marketplace_listings")
    op.drop_table("marketplace_listings")
