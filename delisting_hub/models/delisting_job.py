from decimal import Decimal

from sqlalchemy import Boolean, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func
from sqlalchemy.types import DateTime

from delisting_hub.core.ids import gen_id
from delisting_hub.models.base import Base, JsonType, TimestampMixin


class DelistingJob(TimestampMixin, Base):
    __tablename__ = "delisting_jobs"
    __table_args__ = (
        Index("ix_delisting_jobs_status_scheduled", "status", "scheduled_for"),
        Index("ix_delisting_jobs_user_item", "user_id", "inventory_item_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("dlj"))
    user_id: Mapped[str] = mapped_column(String, nullable=False)
    inventory_item_id: Mapped[str] = mapped_column(String, nullable=False)

    # "sale_detected" | "manual" | "scheduled" | "expired"
    trigger_type: Mapped[str] = mapped_column(String(30), nullable=False, default="sale_detected")
    trigger_data: Mapped[dict] = mapped_column(JsonType, nullable=False, default=dict)

    # pending/processing/completed/partially_failed/failed/cancelled
    status: Mapped[str] = mapped_column(String(30), nullable=False, default="pending")

    sold_on_marketplace: Mapped[str | None] = mapped_column(String(50), nullable=True)
    sale_price: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    sale_date: Mapped[str | None] = mapped_column(DateTime(timezone=True), nullable=True)
    sale_external_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # disjoint, only ever grow; stored as sorted lists
    marketplaces_targeted: Mapped[list] = mapped_column(JsonType, nullable=False, default=list)
    marketplaces_completed: Mapped[list] = mapped_column(JsonType, nullable=False, default=list)
    marketplaces_failed: Mapped[list] = mapped_column(JsonType, nullable=False, default=list)

    scheduled_for: Mapped[str] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    started_at: Mapped[str | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[str | None] = mapped_column(DateTime(timezone=True), nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)

    # per marketplace: {"error", "code", "timestamp", "retry_count"} / {"delisted_at", "duration_ms", ...}
    error_log: Mapped[dict] = mapped_column(JsonType, nullable=False, default=dict)
    success_log: Mapped[dict] = mapped_column(JsonType, nullable=False, default=dict)

    requires_user_confirmation: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    user_confirmed_at: Mapped[str | None] = mapped_column(DateTime(timezone=True), nullable=True)
    user_cancelled_at: Mapped[str | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
