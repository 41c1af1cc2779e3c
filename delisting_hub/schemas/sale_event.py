from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field


Marketplace = Literal[
    "ebay", "poshmark", "facebook_marketplace", "mercari", "depop", "etsy", "vinted", "grailed",
]


class SaleEventIn(BaseModel):
    user_id: str
    marketplace: Marketplace
    event_type: str = "item_sold"
    inventory_item_id: str | None = None
    listing_id: str | None = None
    external_event_id: str | None = None
    external_listing_id: str | None = None
    external_transaction_id: str | None = None
    sale_price: Decimal | None = Field(default=None, ge=0)
    sale_currency: str = Field(default="USD", min_length=3, max_length=3)
    sale_date: datetime | None = None
    buyer_id: str | None = None
    payment_status: str | None = None

    # at most one of these; neither means a manually entered sale
    raw_webhook_data: dict | None = None
    raw_polling_data: dict | None = None


class SaleEventIngested(BaseModel):
    id: str
    duplicate: bool
    duplicate_of: str | None


class SaleEventOut(BaseModel):
    id: str
    user_id: str
    marketplace: str
    inventory_item_id: str | None
    external_listing_id: str | None
    processed: bool
    processing_error: str | None
    delisting_job_id: str | None
    is_duplicate: bool
    verified: bool
    verification_attempts: int
    verification_error: str | None
    created_at: str


class ProcessResultOut(BaseModel):
    success: bool
    job_id: str | None
    error: str | None
    retryable: bool
    error_kind: str | None
    retry_delay_ms: int | None


class ProcessingStatsOut(BaseModel):
    processed: int
    failed: int
    retried: int
    jobs_created: int
    errors: list[dict]


class CleanupOut(BaseModel):
    success: bool
    deleted_count: int
    error: str | None


class HourlyActivityOut(BaseModel):
    hour: str
    events_processed: int
    jobs_created: int
    errors: int


class QueueStatsOut(BaseModel):
    unprocessed_events: int
    processing_errors: int
    verification_failures: int
    recent_activity: list[HourlyActivityOut]
