from __future__ import annotations
import logging
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from delisting_hub.core.clock import utcnow
from delisting_hub.models.delisting_job import DelistingJob


log = logging.getLogger(__name__)


async def requeue_stale_jobs(db: AsyncSession, *, stale_minutes: int = 15, now: datetime | None = None) -> int:
    now = now or utcnow()
    result = await db.execute(
        update(DelistingJob)
        .where(
            DelistingJob.status == "processing",
            DelistingJob.started_at.is_not(None),
            DelistingJob.started_at < now - timedelta(minutes=stale_minutes),
        )
        .values(status="pending")
    )
    return int(result.rowcount or 0)


async def claim_ready_jobs(db: AsyncSession, *, batch_size: int = 50, now: datetime | None = None) -> list[str]:
    now = now or utcnow()

    # jobs waiting on a user decision are never picked up
    stmt = (
        select(DelistingJob.id)
        .where(
            DelistingJob.status == "pending",
            DelistingJob.user_cancelled_at.is_(None),
            DelistingJob.scheduled_for <= now,
            or_(
                DelistingJob.requires_user_confirmation.is_(False),
                DelistingJob.user_confirmed_at.is_not(None),
            ),
        )
        .order_by(DelistingJob.scheduled_for.asc())
        .with_for_update(skip_locked=True)
        .limit(batch_size)
    )
    ids = list((await db.execute(stmt)).scalars().all())
    if not ids:
        return []

    await db.execute(
        update(DelistingJob)
        .where(DelistingJob.id.in_(ids))
        .values(status="processing", started_at=now)
    )
    await db.flush()
    return ids


async def dispatch_delisting_jobs(
    db: AsyncSession,
    *,
    enqueue: Callable[[str], None],
    batch_size: int = 50,
    stale_minutes: int = 15,
) -> int:
    await requeue_stale_jobs(db, stale_minutes=stale_minutes)
    ids = await claim_ready_jobs(db, batch_size=batch_size)

    # commit before enqueue so workers see the claimed rows
    await db.commit()
    if not ids:
        return 0

    failed: list[str] = []
    for job_id in ids:
        try:
            enqueue(job_id)
        except Exception:
            log.exception("dispatcher: enqueue failed for job %s", job_id)
            failed.append(job_id)

    if failed:
        await db.execute(
            update(DelistingJob)
            .where(DelistingJob.id.in_(failed), DelistingJob.status == "processing")
            .values(status="pending")
        )
        await db.commit()

    return len(ids) - len(failed)
