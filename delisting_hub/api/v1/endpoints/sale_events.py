from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Query, Response

from delisting_hub.api.deps import get_event_store, get_rate_limiter, get_sale_event_queue
from delisting_hub.core.config import settings
from delisting_hub.schemas.sale_event import (
    CleanupOut,
    ProcessingStatsOut,
    ProcessResultOut,
    QueueStatsOut,
    SaleEventIn,
    SaleEventIngested,
    SaleEventOut,
)
from delisting_hub.services.errors import ErrorKind
from delisting_hub.services.event_store import SaleEventRecord
from delisting_hub.services.internal_admin import require_internal_admin
from delisting_hub.services.provenance import ProvenanceConflict, provenance_of
from delisting_hub.services.rate_limit import TokenRateLimiter
from delisting_hub.services.sale_event_queue import SaleEventQueue
from delisting_hub.services.sql_event_store import NewSaleEvent, SqlSaleEventStore

router = APIRouter(prefix="/internal/sale-events", dependencies=[Depends(require_internal_admin)])


def _event_out(e: SaleEventRecord) -> SaleEventOut:
    return SaleEventOut(
        id=e.id,
        user_id=e.user_id,
        marketplace=e.marketplace,
        inventory_item_id=e.inventory_item_id,
        external_listing_id=e.external_listing_id,
        processed=e.processed,
        processing_error=e.processing_error,
        delisting_job_id=e.delisting_job_id,
        is_duplicate=e.is_duplicate,
        verified=e.verified,
        verification_attempts=e.verification_attempts,
        verification_error=e.verification_error,
        created_at=e.created_at.isoformat() if e.created_at else "",
    )


@router.post("", response_model=SaleEventIngested, status_code=201)
async def ingest_sale_event(
    body: SaleEventIn,
    store: SqlSaleEventStore = Depends(get_event_store),
) -> SaleEventIngested:
    try:
        provenance = provenance_of(body.raw_webhook_data, body.raw_polling_data)
    except ProvenanceConflict as e:
        raise HTTPException(status_code=422, detail=str(e))

    data = body.model_dump(exclude={"raw_webhook_data", "raw_polling_data"})
    res = await store.ingest(NewSaleEvent(provenance=provenance, **data))
    return SaleEventIngested(id=res.event_id, duplicate=res.duplicate, duplicate_of=res.duplicate_of)


@router.get("/stats", response_model=QueueStatsOut)
async def sale_event_stats(queue: SaleEventQueue = Depends(get_sale_event_queue)) -> QueueStatsOut:
    stats = await queue.queue_stats()
    return QueueStatsOut(**asdict(stats))


@router.post("/run", response_model=ProcessingStatsOut)
async def run_sale_event_batch(queue: SaleEventQueue = Depends(get_sale_event_queue)) -> ProcessingStatsOut:
    stats = await queue.run_once()
    return ProcessingStatsOut(**stats.as_dict())


@router.post("/retry", response_model=ProcessingStatsOut)
async def retry_failed_sale_events(
    response: Response,
    limit: int = Query(default=10, ge=1, le=100),
    queue: SaleEventQueue = Depends(get_sale_event_queue),
    limiter: TokenRateLimiter = Depends(get_rate_limiter),
) -> ProcessingStatsOut:
    rl = await limiter.allow(
        key="sale_events:retry",
        limit=settings.retry_rate_limit_per_minute,
        window_seconds=60,
    )
    if not rl.allowed:
        raise HTTPException(
            status_code=429,
            detail="Rate limit exceeded",
            headers={"Retry-After": str(rl.reset_seconds)},
        )
    response.headers.update(rl.headers())

    stats = await queue.retry_failed(limit)
    return ProcessingStatsOut(**stats.as_dict())


@router.post("/cleanup", response_model=CleanupOut)
async def cleanup_sale_events(
    older_than_days: int = Query(default=30, ge=1),
    queue: SaleEventQueue = Depends(get_sale_event_queue),
) -> CleanupOut:
    result = await queue.cleanup(older_than_days)
    return CleanupOut(success=result.success, deleted_count=result.deleted_count, error=result.error)


@router.get("/stuck", response_model=list[SaleEventOut])
async def list_stuck_sale_events(
    limit: int = Query(default=50, ge=1, le=500),
    queue: SaleEventQueue = Depends(get_sale_event_queue),
) -> list[SaleEventOut]:
    rows = await queue.store.list_stuck_events(max_attempts=queue.max_retries, limit=limit)
    return [_event_out(r) for r in rows]


@router.post("/{event_id}/requeue", response_model=SaleEventOut)
async def requeue_sale_event(
    event_id: str,
    queue: SaleEventQueue = Depends(get_sale_event_queue),
) -> SaleEventOut:
    if not await queue.store.requeue_stuck_event(event_id, max_attempts=queue.max_retries):
        raise HTTPException(status_code=404, detail="Stuck sale event not found")
    event = await queue.store.get_event(event_id)
    return _event_out(event)


@router.post("/{event_id}/process", response_model=ProcessResultOut)
async def process_sale_event(
    event_id: str,
    queue: SaleEventQueue = Depends(get_sale_event_queue),
) -> ProcessResultOut:
    res = await queue.processor.process_one(event_id)
    if res.error_kind == ErrorKind.NOT_FOUND:
        raise HTTPException(status_code=404, detail=res.error)
    return ProcessResultOut(
        success=res.success,
        job_id=res.job_id,
        error=res.error,
        retryable=res.retryable,
        error_kind=res.error_kind.value if res.error_kind else None,
        retry_delay_ms=res.retry_delay_ms,
    )
