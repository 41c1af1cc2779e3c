from __future__ import annotations
import asyncio
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from delisting_hub.core.clock import ensure_utc, utcnow
from delisting_hub.models.delisting_job import DelistingJob
from delisting_hub.models.listing import LIVE_LISTING_STATUSES, MarketplaceListing
from delisting_hub.services.audit import audit
from delisting_hub.services.errors import ErrorKind, JobStateError
from delisting_hub.services.marketplace_gateway import GatewayResult, MarketplaceGateway
from delisting_hub.services.retry import compute_retry_delay_ms


log = logging.getLogger(__name__)

TERMINAL_JOB_STATUSES = frozenset({"completed", "partially_failed", "failed", "cancelled"})
RUNNABLE_JOB_STATUSES = frozenset({"pending", "processing"})


def resolve_job_status(completed, failed) -> str:
    if not failed:
        return "completed"
    if completed:
        return "partially_failed"
    return "failed"


@dataclass(frozen=True)
class JobRunResult:
    job_id: str
    status: str
    completed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    retry_scheduled: list[str] = field(default_factory=list)
    scheduled_for: datetime | None = None


@dataclass(frozen=True)
class _ListingOutcome:
    listing: MarketplaceListing
    result: GatewayResult
    duration_ms: int

    @property
    def ok(self) -> bool:
        # already ended on the marketplace: nothing left to remove
        return self.result.ok or self.result.error_kind == ErrorKind.LISTING_ALREADY_ENDED


async def _delist_one(gateway: MarketplaceGateway | None, listing: MarketplaceListing) -> _ListingOutcome:
    started = time.perf_counter()
    if gateway is None:
        res = GatewayResult(
            ok=False,
            error_kind=ErrorKind.API_UNAVAILABLE,
            error_message="marketplace service not configured",
            retryable=True,
        )
    else:
        try:
            res = await gateway.delist(
                marketplace=listing.marketplace,
                external_listing_id=listing.external_listing_id,
            )
        except Exception as e:
            log.exception("executor: delist crashed marketplace=%s listing=%s", listing.marketplace, listing.id)
            res = GatewayResult(ok=False, error_kind=ErrorKind.UNKNOWN_ERROR, error_message=f"{type(e).__name__}: {e}")

    duration = res.duration_ms if res.duration_ms is not None else int((time.perf_counter() - started) * 1000)
    return _ListingOutcome(listing=listing, result=res, duration_ms=duration)


def _check_runnable(job: DelistingJob, now: datetime) -> None:
    if job.user_cancelled_at is not None or job.status in TERMINAL_JOB_STATUSES:
        raise JobStateError("not_runnable", f"Job {job.id} is {job.status}")
    if job.status not in RUNNABLE_JOB_STATUSES:
        raise JobStateError("not_runnable", f"Job {job.id} has unexpected status {job.status}")
    if job.requires_user_confirmation and job.user_confirmed_at is None:
        raise JobStateError("confirmation_required", f"Job {job.id} requires user confirmation")
    if ensure_utc(job.scheduled_for) > now:
        raise JobStateError("not_due", f"Job {job.id} is scheduled for {job.scheduled_for}")


async def execute_delisting_job(
    db: AsyncSession,
    job_id: str,
    gateway: MarketplaceGateway | None,
    *,
    now: datetime | None = None,
) -> JobRunResult:
    """
    Removes the item from every targeted marketplace that is not settled yet.

    Marketplaces whose failure is retryable stay unsettled while the job has
    retries left; the job then goes back to pending with a backoff. Once every
    target is completed or failed the job gets its terminal status.
    """
    now = now or utcnow()

    job = (await db.execute(
        select(DelistingJob).where(DelistingJob.id == job_id).with_for_update()
    )).scalar_one_or_none()
    if job is None:
        raise JobStateError("not_found", f"Delisting job not found: {job_id}")
    _check_runnable(job, now)

    job.status = "processing"
    job.started_at = job.started_at or now

    completed = list(job.marketplaces_completed or [])
    failed = list(job.marketplaces_failed or [])
    settled = set(completed) | set(failed)
    remaining = [m for m in job.marketplaces_targeted or [] if m not in settled]

    success_log = dict(job.success_log or {})
    error_log = dict(job.error_log or {})

    listings: list[MarketplaceListing] = []
    if remaining:
        listings = list((await db.execute(
            select(MarketplaceListing).where(
                MarketplaceListing.user_id == job.user_id,
                MarketplaceListing.inventory_item_id == job.inventory_item_id,
                MarketplaceListing.marketplace.in_(remaining),
                MarketplaceListing.status.in_(LIVE_LISTING_STATUSES),
                MarketplaceListing.deleted_at.is_(None),
            )
        )).scalars().all())

    by_marketplace: dict[str, list[_ListingOutcome]] = defaultdict(list)
    outcomes = await asyncio.gather(*(_delist_one(gateway, listing) for listing in listings))
    for outcome in outcomes:
        by_marketplace[outcome.listing.marketplace].append(outcome)

        listing = outcome.listing
        if outcome.ok:
            listing.status = "cancelled"
            await audit(
                db,
                user_id=job.user_id,
                delisting_job_id=job.id,
                listing_id=listing.id,
                action="listing_delisted",
                marketplace=listing.marketplace,
                success=True,
                duration_ms=outcome.duration_ms,
                context={"external_listing_id": listing.external_listing_id},
            )
        else:
            code = (outcome.result.error_kind or ErrorKind.UNKNOWN_ERROR).value
            await audit(
                db,
                user_id=job.user_id,
                delisting_job_id=job.id,
                listing_id=listing.id,
                action="listing_delist_failed",
                marketplace=listing.marketplace,
                success=False,
                error_message=outcome.result.error_message,
                error_code=code,
                duration_ms=outcome.duration_ms,
                context={"external_listing_id": listing.external_listing_id, "retry_count": job.retry_count},
            )

    retry_kinds: list[ErrorKind] = []
    retry_scheduled: list[str] = []
    for marketplace in remaining:
        results = by_marketplace.get(marketplace, [])
        failures = [o for o in results if not o.ok]

        if not failures:
            completed.append(marketplace)
            success_log[marketplace] = {
                "delisted_at": now.isoformat(),
                "listings": [o.listing.id for o in results],
                "duration_ms": sum(o.duration_ms for o in results),
            }
            continue

        first = failures[0].result
        error_log[marketplace] = {
            "error": first.error_message,
            "code": (first.error_kind or ErrorKind.UNKNOWN_ERROR).value,
            "timestamp": now.isoformat(),
            "retry_count": job.retry_count,
        }
        if all(o.result.retryable for o in failures) and job.retry_count < job.max_retries:
            retry_scheduled.append(marketplace)
            retry_kinds.append(first.error_kind or ErrorKind.UNKNOWN_ERROR)
        else:
            failed.append(marketplace)

    job.marketplaces_completed = sorted(completed)
    job.marketplaces_failed = sorted(failed)
    job.success_log = success_log
    job.error_log = error_log

    if retry_scheduled:
        job.retry_count += 1
        kind = ErrorKind.RATE_LIMITED if ErrorKind.RATE_LIMITED in retry_kinds else retry_kinds[0]
        job.scheduled_for = now + timedelta(milliseconds=compute_retry_delay_ms(job.retry_count, kind))
        job.status = "pending"
        await db.commit()

        log.warning(
            "executor: job %s retry %d/%d scheduled for %s (%s)",
            job.id, job.retry_count, job.max_retries, job.scheduled_for, ", ".join(retry_scheduled),
        )
        return JobRunResult(
            job_id=job.id,
            status=job.status,
            completed=job.marketplaces_completed,
            failed=job.marketplaces_failed,
            retry_scheduled=sorted(retry_scheduled),
            scheduled_for=job.scheduled_for,
        )

    job.status = resolve_job_status(job.marketplaces_completed, job.marketplaces_failed)
    job.completed_at = now
    await audit(
        db,
        user_id=job.user_id,
        delisting_job_id=job.id,
        action="job_completed",
        success=job.status == "completed",
        context={
            "total_targeted": len(job.marketplaces_targeted or []),
            "total_completed": len(job.marketplaces_completed),
            "total_failed": len(job.marketplaces_failed),
            "final_status": job.status,
        },
    )
    await db.commit()

    log.info(
        "executor: job %s %s completed=%d failed=%d",
        job.id, job.status, len(job.marketplaces_completed), len(job.marketplaces_failed),
    )
    return JobRunResult(
        job_id=job.id,
        status=job.status,
        completed=job.marketplaces_completed,
        failed=job.marketplaces_failed,
    )
