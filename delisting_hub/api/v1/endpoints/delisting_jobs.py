from typing import Callable

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from delisting_hub.api.deps import get_job_enqueuer
from delisting_hub.core.config import settings
from delisting_hub.core.db import get_db
from delisting_hub.models.delisting_job import DelistingJob
from delisting_hub.schemas.delisting_job import DelistingJobOut, DispatchOut, JobActionIn, JobCancelIn
from delisting_hub.services.errors import JobStateError
from delisting_hub.services.internal_admin import require_internal_admin
from delisting_hub.services.job_confirmation import cancel_job, confirm_job
from delisting_hub.services.job_dispatcher import dispatch_delisting_jobs

router = APIRouter(prefix="/internal/delisting-jobs", dependencies=[Depends(require_internal_admin)])


def _job_out(j: DelistingJob) -> DelistingJobOut:
    return DelistingJobOut(
        id=j.id,
        user_id=j.user_id,
        inventory_item_id=j.inventory_item_id,
        status=j.status,
        sold_on_marketplace=j.sold_on_marketplace,
        marketplaces_targeted=list(j.marketplaces_targeted or []),
        marketplaces_completed=list(j.marketplaces_completed or []),
        marketplaces_failed=list(j.marketplaces_failed or []),
        scheduled_for=str(j.scheduled_for),
        retry_count=j.retry_count,
        requires_user_confirmation=j.requires_user_confirmation,
        user_confirmed_at=str(j.user_confirmed_at) if j.user_confirmed_at else None,
        user_cancelled_at=str(j.user_cancelled_at) if j.user_cancelled_at else None,
        cancellation_reason=j.cancellation_reason,
    )


def _http_error(e: JobStateError) -> HTTPException:
    return HTTPException(status_code=404 if e.code == "not_found" else 409, detail=e.message)


@router.post("/dispatch", response_model=DispatchOut)
async def dispatch_jobs(
    db: AsyncSession = Depends(get_db),
    enqueue: Callable[[str], None] = Depends(get_job_enqueuer),
) -> DispatchOut:
    count = await dispatch_delisting_jobs(db, enqueue=enqueue, batch_size=settings.job_dispatch_batch_size)
    return DispatchOut(dispatched=count)


@router.get("/{job_id}", response_model=DelistingJobOut)
async def get_job(job_id: str, db: AsyncSession = Depends(get_db)) -> DelistingJobOut:
    job = (await db.execute(select(DelistingJob).where(DelistingJob.id == job_id))).scalar_one_or_none()
    if not job:
        raise HTTPException(status_code=404, detail="Delisting job not found")
    return _job_out(job)


@router.post("/{job_id}/confirm", response_model=DelistingJobOut)
async def confirm(job_id: str, body: JobActionIn, db: AsyncSession = Depends(get_db)) -> DelistingJobOut:
    try:
        job = await confirm_job(db, job_id, body.user_id)
    except JobStateError as e:
        raise _http_error(e)
    return _job_out(job)


@router.post("/{job_id}/cancel", response_model=DelistingJobOut)
async def cancel(job_id: str, body: JobCancelIn, db: AsyncSession = Depends(get_db)) -> DelistingJobOut:
    try:
        job = await cancel_job(db, job_id, body.user_id, body.reason)
    except JobStateError as e:
        raise _http_error(e)
    return _job_out(job)
