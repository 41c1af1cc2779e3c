from decimal import Decimal

from sqlalchemy import Boolean, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import DateTime

from delisting_hub.core.ids import gen_id
from delisting_hub.models.base import Base, JsonType, TimestampMixin


class SaleEvent(TimestampMixin, Base):
    __tablename__ = "sale_events"
    __table_args__ = (
        Index("ix_sale_events_queue", "processed", "verification_attempts", "created_at"),
        Index("ix_sale_events_event_hash", "event_hash", unique=True),
        Index("ix_sale_events_external", "marketplace", "external_event_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("sev"))
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    inventory_item_id: Mapped[str | None] = mapped_column(String, nullable=True)
    listing_id: Mapped[str | None] = mapped_column(String, nullable=True)

    # source
    marketplace: Mapped[str] = mapped_column(String(50), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False, default="item_sold")
    external_event_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    external_listing_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    external_transaction_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # sale
    sale_price: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    sale_currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    sale_date: Mapped[str | None] = mapped_column(DateTime(timezone=True), nullable=True)
    buyer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payment_status: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # provenance: at most one of these is set
    raw_webhook_data: Mapped[dict | None] = mapped_column(JsonType, nullable=True)
    raw_polling_data: Mapped[dict | None] = mapped_column(JsonType, nullable=True)

    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    processing_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    delisting_job_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("delisting_jobs.id", ondelete="SET NULL"), nullable=True
    )

    event_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    is_duplicate: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    duplicate_of: Mapped[str | None] = mapped_column(String, nullable=True)

    verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    verification_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    verification_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # not eligible for the periodic queue before this time
    retry_after: Mapped[str | None] = mapped_column(DateTime(timezone=True), nullable=True)
