from __future__ import annotations
import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Sequence

from opentelemetry import trace

from delisting_hub.core.clock import utcnow
from delisting_hub.services.event_store import QueueStats, SaleEventRecord, SaleEventStore
from delisting_hub.services.processor import ProcessResult, SaleEventProcessor


log = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass
class ProcessingStats:
    processed: int = 0
    failed: int = 0
    retried: int = 0
    jobs_created: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)

    def add_error(self, event_id: str, error: str, now: datetime) -> None:
        self.errors.append({"event_id": event_id, "error": error, "timestamp": now.isoformat()})

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class CleanupResult:
    success: bool
    deleted_count: int
    error: str | None = None


class SaleEventQueue:
    """
    Batch scheduler for unprocessed sale events.

    A batch is read oldest-first and split into chunks of `max_concurrent_jobs`.
    Events inside a chunk run concurrently; the next chunk starts only after every
    event of the current one has settled. A failing event never aborts the batch.
    """

    def __init__(
        self,
        store: SaleEventStore,
        processor: SaleEventProcessor,
        *,
        batch_size: int = 50,
        max_concurrent_jobs: int = 10,
        max_retries: int = 3,
        clock: Callable[[], datetime] = utcnow,
    ):
        if max_concurrent_jobs < 1:
            raise ValueError("max_concurrent_jobs must be >= 1")
        self.store = store
        self.processor = processor
        self.batch_size = batch_size
        self.max_concurrent_jobs = max_concurrent_jobs
        self.max_retries = max_retries
        self._clock = clock

    async def run_once(self) -> ProcessingStats:
        with tracer.start_as_current_span("sale_event_queue.run_once") as span:
            try:
                events = await self.store.fetch_unprocessed(
                    limit=self.batch_size, max_attempts=self.max_retries, now=self._clock()
                )
            except Exception as e:
                log.exception("queue: failed to fetch unprocessed sale events")
                stats = ProcessingStats()
                stats.add_error("queue_error", str(e), self._clock())
                return stats

            span.set_attribute("sale_events.batch_size", len(events))
            if not events:
                log.debug("queue: no unprocessed sale events")
                return ProcessingStats()

            stats = await self.process_batch(events)
            span.set_attribute("sale_events.jobs_created", stats.jobs_created)
            return stats

    async def retry_failed(self, limit: int = 10) -> ProcessingStats:
        """Operator retry: clear processing_error on failed events, then run exactly that set."""
        try:
            events = await self.store.fetch_failed(limit=limit, max_attempts=self.max_retries)
            if not events:
                return ProcessingStats()

            log.info("queue: retrying %d failed sale events", len(events))
            await self.store.clear_processing_errors([e.id for e in events])
        except Exception as e:
            log.exception("queue: failed to prepare retry of failed sale events")
            stats = ProcessingStats()
            stats.add_error("retry_error", str(e), self._clock())
            return stats

        return await self.process_batch(events)

    async def process_batch(self, events: Sequence[SaleEventRecord]) -> ProcessingStats:
        stats = ProcessingStats()
        log.info("queue: processing batch of %d sale events", len(events))

        for i in range(0, len(events), self.max_concurrent_jobs):
            chunk = events[i:i + self.max_concurrent_jobs]
            results = await asyncio.gather(
                *(self._dispatch(ev.id) for ev in chunk),
                return_exceptions=True,
            )
            for ev, result in zip(chunk, results):
                if isinstance(result, BaseException):
                    result = ProcessResult(success=False, error=f"{type(result).__name__}: {result}", retryable=True)
                self._account(stats, ev.id, result)

        log.info(
            "queue: batch done processed=%d failed=%d retried=%d jobs_created=%d",
            stats.processed, stats.failed, stats.retried, stats.jobs_created,
        )
        return stats

    async def _dispatch(self, event_id: str) -> ProcessResult:
        try:
            return await self.processor.process_one(event_id)
        except Exception as e:
            log.exception("queue: sale event %s crashed", event_id)
            return ProcessResult(success=False, error=f"{type(e).__name__}: {e}", retryable=True)

    def _account(self, stats: ProcessingStats, event_id: str, result: ProcessResult) -> None:
        if result.success:
            stats.processed += 1
            if result.job_id:
                stats.jobs_created += 1
            return

        if result.retryable:
            stats.retried += 1
        else:
            stats.failed += 1
        stats.add_error(event_id, result.error or "Unknown error", self._clock())

    async def cleanup(self, older_than_days: int = 30) -> CleanupResult:
        # only processed rows; an old unprocessed event is a bug signal, keep it
        cutoff = self._clock() - timedelta(days=older_than_days)
        try:
            deleted = await self.store.delete_processed_before(cutoff)
        except Exception as e:
            log.exception("queue: cleanup failed")
            return CleanupResult(success=False, deleted_count=0, error=str(e))

        log.info("queue: cleaned up %d processed sale events older than %d days", deleted, older_than_days)
        return CleanupResult(success=True, deleted_count=deleted)

    async def queue_stats(self) -> QueueStats:
        return await self.store.queue_stats(
            max_attempts=self.max_retries,
            since=self._clock() - timedelta(hours=24),
        )
