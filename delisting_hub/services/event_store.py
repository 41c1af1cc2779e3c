"""
Record store port consumed by the sale event pipeline.

Everything above this module talks to a `SaleEventStore`; the SQLAlchemy
implementation lives in `sql_event_store`. `materialize_job` is the only
operation that must be atomic on the store side: it turns a verified event into
a delisting job (or none) and marks the event processed in one transaction.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Protocol, Sequence

from delisting_hub.core.clock import ensure_utc
from delisting_hub.services.provenance import NoProvenance, Provenance


@dataclass(frozen=True)
class SaleEventRecord:
    id: str
    user_id: str
    marketplace: str
    provenance: Provenance = field(default_factory=NoProvenance)

    inventory_item_id: str | None = None
    external_event_id: str | None = None
    external_listing_id: str | None = None
    external_transaction_id: str | None = None

    sale_price: Decimal | None = None
    sale_currency: str = "USD"

    processed: bool = False
    processing_error: str | None = None
    delisting_job_id: str | None = None

    is_duplicate: bool = False
    duplicate_of: str | None = None

    verified: bool = False
    verification_attempts: int = 0
    verification_error: str | None = None

    created_at: datetime | None = None


@dataclass(frozen=True)
class HourlyActivity:
    hour: str
    events_processed: int = 0
    jobs_created: int = 0
    errors: int = 0


@dataclass(frozen=True)
class QueueStats:
    unprocessed_events: int
    processing_errors: int
    verification_failures: int
    recent_activity: list[HourlyActivity] = field(default_factory=list)


class SaleEventStore(Protocol):
    async def get_event(self, event_id: str) -> SaleEventRecord | None:
        ...

    async def mark_processed(self, event_id: str) -> None:
        ...

    async def mark_verified(self, event_id: str) -> None:
        ...

    async def record_verification_failure(
        self, event_id: str, *, error: str, retry_after: datetime | None
    ) -> int:
        """Increments verification_attempts and returns the new count."""
        ...

    async def record_processing_error(self, event_id: str, error: str) -> None:
        ...

    async def materialize_job(self, event_id: str) -> str | None:
        ...

    async def fetch_unprocessed(self, *, limit: int, max_attempts: int, now: datetime) -> list[SaleEventRecord]:
        ...

    async def fetch_failed(self, *, limit: int, max_attempts: int) -> list[SaleEventRecord]:
        ...

    async def clear_processing_errors(self, event_ids: Sequence[str]) -> int:
        ...

    async def delete_processed_before(self, cutoff: datetime) -> int:
        ...

    async def queue_stats(self, *, max_attempts: int, since: datetime) -> QueueStats:
        ...

    async def list_stuck_events(self, *, max_attempts: int, limit: int) -> list[SaleEventRecord]:
        ...

    async def requeue_stuck_event(self, event_id: str, *, max_attempts: int) -> bool:
        ...


def summarize_hourly_activity(
    rows: Iterable[tuple[datetime, bool, str | None, str | None]],
) -> list[HourlyActivity]:
    """rows: (created_at, processed, processing_error, delisting_job_id)"""
    buckets: dict[str, dict[str, int]] = {}
    for created_at, processed, processing_error, job_id in rows:
        hour = ensure_utc(created_at).strftime("%Y-%m-%dT%H:00:00Z")
        b = buckets.setdefault(hour, {"events_processed": 0, "jobs_created": 0, "errors": 0})
        if processed:
            b["events_processed"] += 1
        if job_id:
            b["jobs_created"] += 1
        if processing_error:
            b["errors"] += 1
    return [HourlyActivity(hour=h, **counts) for h, counts in sorted(buckets.items())]
