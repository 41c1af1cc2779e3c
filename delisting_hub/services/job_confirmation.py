from __future__ import annotations
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from delisting_hub.core.clock import utcnow
from delisting_hub.models.delisting_job import DelistingJob
from delisting_hub.services.audit import audit
from delisting_hub.services.errors import JobStateError


async def _load_pending_job(db: AsyncSession, job_id: str, user_id: str) -> DelistingJob:
    job = (await db.execute(
        select(DelistingJob).where(DelistingJob.id == job_id).with_for_update()
    )).scalar_one_or_none()
    if job is None or job.user_id != user_id:
        raise JobStateError("not_found", "Delisting job not found")
    if job.status != "pending" or job.user_cancelled_at is not None:
        raise JobStateError("invalid_state", f"Job {job_id} is {job.status}")
    return job


async def confirm_job(db: AsyncSession, job_id: str, user_id: str, *, now: datetime | None = None) -> DelistingJob:
    now = now or utcnow()
    job = await _load_pending_job(db, job_id, user_id)

    job.user_confirmed_at = now
    # a confirmed job runs on the next dispatcher tick
    job.scheduled_for = now

    await audit(db, user_id=user_id, delisting_job_id=job.id, action="job_confirmed", success=True)
    await db.commit()
    return job


async def cancel_job(
    db: AsyncSession,
    job_id: str,
    user_id: str,
    reason: str | None,
    *,
    now: datetime | None = None,
) -> DelistingJob:
    now = now or utcnow()
    job = await _load_pending_job(db, job_id, user_id)

    job.status = "cancelled"
    job.user_cancelled_at = now
    job.cancellation_reason = reason
    job.completed_at = now

    await audit(
        db,
        user_id=user_id,
        delisting_job_id=job.id,
        action="job_cancelled",
        success=True,
        context={"reason": reason},
    )
    await db.commit()
    return job
