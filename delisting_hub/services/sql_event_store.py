from __future__ import annotations
import hashlib
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import AsyncIterator, Callable, Sequence

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from delisting_hub.core.clock import ensure_utc, utcnow
from delisting_hub.models.delisting_job import DelistingJob
from delisting_hub.models.listing import LIVE_LISTING_STATUSES, MarketplaceListing
from delisting_hub.models.preferences import UserDelistingPreferences
from delisting_hub.models.sale_event import SaleEvent
from delisting_hub.services.audit import audit
from delisting_hub.services.errors import StoreError
from delisting_hub.services.event_store import QueueStats, SaleEventRecord, summarize_hourly_activity
from delisting_hub.services.planner import DelistingPolicy, plan_delisting
from delisting_hub.services.provenance import (
    PollingProvenance,
    Provenance,
    ProvenanceConflict,
    NoProvenance,
    provenance_columns,
    provenance_of,
)


log = logging.getLogger(__name__)


def compute_event_hash(
    marketplace: str,
    external_event_id: str | None,
    external_listing_id: str | None,
    sale_price: Decimal | None,
    sale_date: datetime | None,
) -> str:
    # same field order the webhook handlers and pollers use
    raw = "|".join([
        marketplace or "",
        external_event_id or "",
        external_listing_id or "",
        str(sale_price) if sale_price is not None else "",
        sale_date.isoformat() if sale_date is not None else "",
    ])
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class NewSaleEvent:
    user_id: str
    marketplace: str
    event_type: str = "item_sold"
    provenance: Provenance = field(default_factory=NoProvenance)
    inventory_item_id: str | None = None
    listing_id: str | None = None
    external_event_id: str | None = None
    external_listing_id: str | None = None
    external_transaction_id: str | None = None
    sale_price: Decimal | None = None
    sale_currency: str = "USD"
    sale_date: datetime | None = None
    buyer_id: str | None = None
    payment_status: str | None = None


@dataclass(frozen=True)
class IngestResult:
    event_id: str
    duplicate: bool
    duplicate_of: str | None = None


def _to_record(row: SaleEvent) -> SaleEventRecord:
    try:
        provenance = provenance_of(row.raw_webhook_data, row.raw_polling_data)
    except ProvenanceConflict as e:
        raise StoreError(f"Sale event {row.id}: {e}") from e

    return SaleEventRecord(
        id=row.id,
        user_id=row.user_id,
        marketplace=row.marketplace,
        provenance=provenance,
        inventory_item_id=row.inventory_item_id,
        external_event_id=row.external_event_id,
        external_listing_id=row.external_listing_id,
        external_transaction_id=row.external_transaction_id,
        sale_price=row.sale_price,
        sale_currency=row.sale_currency,
        processed=row.processed,
        processing_error=row.processing_error,
        delisting_job_id=row.delisting_job_id,
        is_duplicate=row.is_duplicate,
        duplicate_of=row.duplicate_of,
        verified=row.verified,
        verification_attempts=row.verification_attempts,
        verification_error=row.verification_error,
        created_at=ensure_utc(row.created_at),
    )


class SqlSaleEventStore:
    """
    SaleEventStore on SQLAlchemy.

    Every call opens its own session, so events dispatched concurrently by the
    queue never share one. Driver errors surface as StoreError.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], *, clock: Callable[[], datetime] = utcnow):
        self._session_factory = session_factory
        self._clock = clock

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as db:
                yield db
        except SQLAlchemyError as e:
            raise StoreError(f"{type(e).__name__}: {e}") from e

    async def _update_event(self, event_id: str, **values) -> int:
        async with self._session() as db:
            result = await db.execute(update(SaleEvent).where(SaleEvent.id == event_id).values(**values))
            await db.commit()
            return int(result.rowcount or 0)

    async def get_event(self, event_id: str) -> SaleEventRecord | None:
        async with self._session() as db:
            row = (await db.execute(select(SaleEvent).where(SaleEvent.id == event_id))).scalar_one_or_none()
            return _to_record(row) if row else None

    async def mark_processed(self, event_id: str) -> None:
        await self._update_event(event_id, processed=True)

    async def mark_verified(self, event_id: str) -> None:
        await self._update_event(event_id, verified=True, verification_error=None)

    async def record_verification_failure(self, event_id: str, *, error: str, retry_after: datetime | None) -> int:
        async with self._session() as db:
            await db.execute(
                update(SaleEvent)
                .where(SaleEvent.id == event_id)
                .values(
                    verification_attempts=SaleEvent.verification_attempts + 1,
                    verification_error=error,
                    retry_after=retry_after,
                )
            )
            attempts = (await db.execute(
                select(SaleEvent.verification_attempts).where(SaleEvent.id == event_id)
            )).scalar_one()
            await db.commit()
            return int(attempts)

    async def record_processing_error(self, event_id: str, error: str) -> None:
        await self._update_event(event_id, processing_error=error)

    async def materialize_job(self, event_id: str) -> str | None:
        """
        One transaction: lock the event, pick target marketplaces from the item's
        live listings, create or extend the open job, mark the event processed.
        """
        async with self._session() as db:
            async with db.begin():
                ev = (await db.execute(
                    select(SaleEvent).where(SaleEvent.id == event_id).with_for_update()
                )).scalar_one_or_none()
                if ev is None:
                    raise StoreError(f"Sale event not found: {event_id}")

                # another worker got here first
                if ev.processed:
                    return ev.delisting_job_id

                prefs = (await db.execute(
                    select(UserDelistingPreferences).where(UserDelistingPreferences.user_id == ev.user_id)
                )).scalar_one_or_none()

                candidates: Sequence[str] = []
                if ev.inventory_item_id:
                    candidates = (await db.execute(
                        select(MarketplaceListing.marketplace)
                        .where(
                            MarketplaceListing.inventory_item_id == ev.inventory_item_id,
                            MarketplaceListing.user_id == ev.user_id,
                            MarketplaceListing.marketplace != ev.marketplace,
                            MarketplaceListing.status.in_(LIVE_LISTING_STATUSES),
                            MarketplaceListing.deleted_at.is_(None),
                        )
                        .distinct()
                    )).scalars().all()

                plan = plan_delisting(
                    DelistingPolicy.from_row(prefs),
                    sold_on=ev.marketplace,
                    sale_price=ev.sale_price,
                    candidates=candidates,
                    now=self._clock(),
                )

                if plan is None:
                    ev.processed = True
                    ev.processing_error = None
                    return None

                job = (await db.execute(
                    select(DelistingJob)
                    .where(
                        DelistingJob.user_id == ev.user_id,
                        DelistingJob.inventory_item_id == ev.inventory_item_id,
                        DelistingJob.status == "pending",
                        DelistingJob.user_cancelled_at.is_(None),
                    )
                    .order_by(DelistingJob.created_at.asc())
                    .limit(1)
                    .with_for_update()
                )).scalar_one_or_none()

                if job is None:
                    action = "job_created"
                    job = DelistingJob(
                        user_id=ev.user_id,
                        inventory_item_id=ev.inventory_item_id,
                        trigger_type="sale_detected",
                        trigger_data={"sale_event_id": ev.id, "webhook_data": ev.raw_webhook_data},
                        status="pending",
                        sold_on_marketplace=ev.marketplace,
                        sale_price=ev.sale_price,
                        sale_date=ev.sale_date,
                        sale_external_id=ev.external_transaction_id,
                        marketplaces_targeted=sorted(plan.targets),
                        marketplaces_completed=[],
                        marketplaces_failed=[],
                        error_log={},
                        success_log={},
                        scheduled_for=plan.scheduled_for,
                        requires_user_confirmation=plan.requires_user_confirmation,
                    )
                    db.add(job)
                else:
                    action = "job_updated"
                    # never target a marketplace the item sold on; settled targets stay
                    settled = set(job.marketplaces_completed or []) | set(job.marketplaces_failed or [])
                    targeted = set(job.marketplaces_targeted) | plan.targets
                    job.marketplaces_targeted = sorted(
                        (targeted - {job.sold_on_marketplace, ev.marketplace}) | (targeted & settled)
                    )
                    job.requires_user_confirmation = job.requires_user_confirmation or plan.requires_user_confirmation
                await db.flush()

                ev.processed = True
                ev.processing_error = None
                ev.delisting_job_id = job.id

                await audit(
                    db,
                    user_id=ev.user_id,
                    delisting_job_id=job.id,
                    action=action,
                    marketplace=ev.marketplace,
                    success=True,
                    context={
                        "triggered_by": "sale_detected",
                        "sale_event_id": ev.id,
                        "marketplaces_count": len(job.marketplaces_targeted),
                        "preference": plan.preference,
                    },
                )
                return job.id

    async def fetch_unprocessed(self, *, limit: int, max_attempts: int, now: datetime) -> list[SaleEventRecord]:
        async with self._session() as db:
            rows = (await db.execute(
                select(SaleEvent)
                .where(
                    SaleEvent.processed.is_(False),
                    SaleEvent.verification_attempts < max_attempts,
                    or_(SaleEvent.retry_after.is_(None), SaleEvent.retry_after <= now),
                )
                .order_by(SaleEvent.created_at.asc(), SaleEvent.id.asc())
                .limit(limit)
            )).scalars().all()
            return [_to_record(r) for r in rows]

    async def fetch_failed(self, *, limit: int, max_attempts: int) -> list[SaleEventRecord]:
        async with self._session() as db:
            rows = (await db.execute(
                select(SaleEvent)
                .where(
                    SaleEvent.processed.is_(False),
                    SaleEvent.processing_error.is_not(None),
                    SaleEvent.verification_attempts < max_attempts,
                )
                .order_by(SaleEvent.created_at.asc(), SaleEvent.id.asc())
                .limit(limit)
            )).scalars().all()
            return [_to_record(r) for r in rows]

    async def clear_processing_errors(self, event_ids: Sequence[str]) -> int:
        if not event_ids:
            return 0
        async with self._session() as db:
            result = await db.execute(
                update(SaleEvent)
                .where(SaleEvent.id.in_(list(event_ids)))
                .values(processing_error=None, retry_after=None)
            )
            await db.commit()
            return int(result.rowcount or 0)

    async def delete_processed_before(self, cutoff: datetime) -> int:
        async with self._session() as db:
            result = await db.execute(
                delete(SaleEvent).where(SaleEvent.processed.is_(True), SaleEvent.created_at < cutoff)
            )
            await db.commit()
            return int(result.rowcount or 0)

    async def queue_stats(self, *, max_attempts: int, since: datetime) -> QueueStats:
        async with self._session() as db:
            async def count(*where) -> int:
                return int((await db.execute(select(func.count()).select_from(SaleEvent).where(*where))).scalar_one())

            unprocessed = await count(SaleEvent.processed.is_(False))
            errors = await count(SaleEvent.processing_error.is_not(None))
            verification_failures = await count(
                SaleEvent.verified.is_(False),
                SaleEvent.verification_attempts >= max_attempts,
            )
            recent = (await db.execute(
                select(SaleEvent.created_at, SaleEvent.processed, SaleEvent.processing_error, SaleEvent.delisting_job_id)
                .where(SaleEvent.created_at >= since)
                .order_by(SaleEvent.created_at.asc())
            )).all()

        return QueueStats(
            unprocessed_events=unprocessed,
            processing_errors=errors,
            verification_failures=verification_failures,
            recent_activity=summarize_hourly_activity(tuple(r) for r in recent),
        )

    async def list_stuck_events(self, *, max_attempts: int, limit: int) -> list[SaleEventRecord]:
        async with self._session() as db:
            rows = (await db.execute(
                select(SaleEvent)
                .where(
                    SaleEvent.processed.is_(False),
                    SaleEvent.verified.is_(False),
                    SaleEvent.verification_attempts >= max_attempts,
                )
                .order_by(SaleEvent.created_at.asc())
                .limit(limit)
            )).scalars().all()
            return [_to_record(r) for r in rows]

    async def requeue_stuck_event(self, event_id: str, *, max_attempts: int) -> bool:
        async with self._session() as db:
            result = await db.execute(
                update(SaleEvent)
                .where(
                    SaleEvent.id == event_id,
                    SaleEvent.processed.is_(False),
                    SaleEvent.verification_attempts >= max_attempts,
                )
                .values(verification_attempts=0, verification_error=None, retry_after=None)
            )
            await db.commit()
            return bool(result.rowcount)

    async def _find_original(self, db: AsyncSession, new: NewSaleEvent, event_hash: str) -> str | None:
        match = SaleEvent.event_hash == event_hash
        if new.external_event_id:
            match = or_(match, and_(
                SaleEvent.marketplace == new.marketplace,
                SaleEvent.external_event_id == new.external_event_id,
            ))
        return (await db.execute(
            select(SaleEvent.id)
            .where(match, SaleEvent.is_duplicate.is_(False))
            .order_by(SaleEvent.created_at.asc())
            .limit(1)
        )).scalar_one_or_none()

    async def ingest(self, new: NewSaleEvent) -> IngestResult:
        """Persist a sale signal from a webhook handler or poller, flagging re-reports as duplicates."""
        event_hash = compute_event_hash(
            new.marketplace, new.external_event_id, new.external_listing_id, new.sale_price, new.sale_date
        )

        async with self._session() as db:
            existing_id = await self._find_original(db, new, event_hash)
            row = _new_sale_event_row(new, event_hash, existing_id)
            db.add(row)
            try:
                await db.commit()
            except IntegrityError:
                # a concurrent redelivery inserted the original first
                await db.rollback()
                existing_id = await self._find_original(db, new, event_hash)
                if existing_id is None:
                    raise
                row = _new_sale_event_row(new, event_hash, existing_id)
                db.add(row)
                await db.commit()

            if existing_id:
                log.info("store: sale event %s is a duplicate of %s", row.id, existing_id)
            return IngestResult(event_id=row.id, duplicate=existing_id is not None, duplicate_of=existing_id)


def _new_sale_event_row(new: NewSaleEvent, event_hash: str, existing_id: str | None) -> SaleEvent:
    return SaleEvent(
        user_id=new.user_id,
        inventory_item_id=new.inventory_item_id,
        listing_id=new.listing_id,
        marketplace=new.marketplace,
        event_type=new.event_type,
        external_event_id=new.external_event_id,
        external_listing_id=new.external_listing_id,
        external_transaction_id=new.external_transaction_id,
        sale_price=new.sale_price,
        sale_currency=new.sale_currency,
        sale_date=new.sale_date,
        buyer_id=new.buyer_id,
        payment_status=new.payment_status,
        # unique index on event_hash: only the first report carries it
        event_hash=None if existing_id else event_hash,
        is_duplicate=existing_id is not None,
        duplicate_of=existing_id,
        # the poller confirmed the sale when it collected it
        verified=isinstance(new.provenance, PollingProvenance),
        verification_attempts=0,
        processed=False,
        **provenance_columns(new.provenance),
    )
