import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from delisting_hub.services.event_store import SaleEventRecord
from delisting_hub.services.processor import ProcessResult
from delisting_hub.services.sale_event_queue import SaleEventQueue

from fakes import InMemorySaleEventStore

NOW = datetime(2026, 3, 14, 12, 0, tzinfo=timezone.utc)


def _events(n, **fields):
    return [
        SaleEventRecord(id=f"sev_{i}", user_id="usr_1", marketplace="ebay",
                        created_at=NOW - timedelta(minutes=n - i), **fields)
        for i in range(1, n + 1)
    ]


class StubProcessor:
    def __init__(self, handler):
        self.handler = handler
        self.seen: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def process_one(self, event_id):
        self.seen.append(event_id)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            return await self.handler(event_id)
        finally:
            self.in_flight -= 1


async def _ok(event_id):
    return ProcessResult(success=True, job_id=f"job_for_{event_id}")


def _queue(store, processor, **kwargs):
    return SaleEventQueue(store, processor, clock=lambda: NOW, **kwargs)


@pytest.mark.asyncio
async def test_one_failure_does_not_abort_the_batch():
    async def handler(event_id):
        if event_id == "sev_3":
            raise RuntimeError("processor exploded")
        return await _ok(event_id)

    processor = StubProcessor(handler)
    stats = await _queue(InMemorySaleEventStore(_events(5)), processor).run_once()

    assert sorted(processor.seen) == [f"sev_{i}" for i in range(1, 6)]
    assert stats.processed == 4
    assert stats.jobs_created == 4
    assert stats.retried == 1
    assert stats.failed == 0
    assert [e["event_id"] for e in stats.errors] == ["sev_3"]
    assert "processor exploded" in stats.errors[0]["error"]
    assert stats.errors[0]["timestamp"] == NOW.isoformat()


@pytest.mark.asyncio
async def test_retryable_and_terminal_failures_are_counted_apart():
    async def handler(event_id):
        if event_id == "sev_1":
            return ProcessResult(success=False, error="Sale event not found", retryable=False)
        if event_id == "sev_2":
            return ProcessResult(success=False, error="Sale verification failed: 503", retryable=True)
        return ProcessResult(success=True)

    stats = await _queue(InMemorySaleEventStore(_events(3)), StubProcessor(handler)).run_once()

    assert (stats.processed, stats.failed, stats.retried, stats.jobs_created) == (1, 1, 1, 0)
    assert {e["event_id"] for e in stats.errors} == {"sev_1", "sev_2"}


@pytest.mark.asyncio
async def test_chunks_bound_concurrency():
    processor = StubProcessor(_ok)
    stats = await _queue(InMemorySaleEventStore(_events(7)), processor, max_concurrent_jobs=3).run_once()

    assert stats.processed == 7
    assert processor.max_in_flight == 3


@pytest.mark.asyncio
async def test_batch_is_oldest_first_and_limited():
    processor = StubProcessor(_ok)
    await _queue(InMemorySaleEventStore(_events(5)), processor, batch_size=2, max_concurrent_jobs=1).run_once()
    assert processor.seen == ["sev_1", "sev_2"]


@pytest.mark.asyncio
async def test_events_out_of_attempts_are_not_selected():
    store = InMemorySaleEventStore(_events(2, verification_attempts=3))
    processor = StubProcessor(_ok)
    stats = await _queue(store, processor, max_retries=3).run_once()
    assert processor.seen == []
    assert stats.processed == 0


@pytest.mark.asyncio
async def test_fetch_failure_reports_queue_error():
    store = InMemorySaleEventStore(_events(2))
    store.fail_on["fetch_unprocessed"] = RuntimeError("db down")

    stats = await _queue(store, StubProcessor(_ok)).run_once()

    assert stats.processed == 0
    assert stats.errors == [{"event_id": "queue_error", "error": "db down", "timestamp": NOW.isoformat()}]


@pytest.mark.asyncio
async def test_retry_failed_clears_errors_before_processing():
    store = InMemorySaleEventStore(_events(3, processing_error="deadlock"))

    async def handler(event_id):
        # the event must already look clean when it is re-run
        assert store.events[event_id].processing_error is None
        return await _ok(event_id)

    stats = await _queue(store, StubProcessor(handler)).retry_failed(limit=2)

    assert stats.processed == 2
    assert store.events["sev_3"].processing_error == "deadlock"


@pytest.mark.asyncio
async def test_retry_failed_with_nothing_to_do():
    store = InMemorySaleEventStore(_events(2))
    stats = await _queue(store, StubProcessor(_ok)).retry_failed()
    assert stats.as_dict() == {"processed": 0, "failed": 0, "retried": 0, "jobs_created": 0, "errors": []}
    assert "clear_processing_errors" not in store.calls


@pytest.mark.asyncio
async def test_retry_failed_reports_store_error():
    store = InMemorySaleEventStore(_events(1, processing_error="x"))
    store.fail_on["clear_processing_errors"] = RuntimeError("lock timeout")

    stats = await _queue(store, StubProcessor(_ok)).retry_failed()

    assert [e["event_id"] for e in stats.errors] == ["retry_error"]


@pytest.mark.asyncio
async def test_cleanup_only_removes_processed_events_past_retention():
    old = NOW - timedelta(days=45)
    store = InMemorySaleEventStore([
        SaleEventRecord(id="old_done", user_id="u", marketplace="ebay", processed=True, created_at=old),
        SaleEventRecord(id="old_pending", user_id="u", marketplace="ebay", processed=False, created_at=old),
        SaleEventRecord(id="new_done", user_id="u", marketplace="ebay", processed=True, created_at=NOW),
    ])

    result = await _queue(store, StubProcessor(_ok)).cleanup(older_than_days=30)

    assert result.success and result.deleted_count == 1
    assert set(store.events) == {"old_pending", "new_done"}


@pytest.mark.asyncio
async def test_cleanup_failure_is_reported():
    store = InMemorySaleEventStore()
    store.fail_on["delete_processed_before"] = RuntimeError("permission denied")

    result = await _queue(store, StubProcessor(_ok)).cleanup()

    assert result.success is False
    assert result.deleted_count == 0
    assert result.error == "permission denied"


@pytest.mark.asyncio
async def test_queue_stats_cover_last_day():
    events = _events(2) + [
        SaleEventRecord(id="done", user_id="u", marketplace="ebay", processed=True, delisting_job_id="dlj_1",
                        verified=True, created_at=NOW - timedelta(minutes=30)),
        SaleEventRecord(id="stuck", user_id="u", marketplace="ebay", verification_attempts=3,
                        created_at=NOW - timedelta(days=3)),
    ]
    stats = await _queue(InMemorySaleEventStore(events), StubProcessor(_ok)).queue_stats()

    assert stats.unprocessed_events == 3
    assert stats.verification_failures == 1
    assert sum(h.jobs_created for h in stats.recent_activity) == 1
    assert all(h.hour.endswith(":00:00Z") for h in stats.recent_activity)


def test_zero_concurrency_is_rejected():
    with pytest.raises(ValueError):
        SaleEventQueue(InMemorySaleEventStore(), StubProcessor(_ok), max_concurrent_jobs=0)
