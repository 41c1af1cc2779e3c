from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass

from delisting_hub.services.sale_event_queue import SaleEventQueue


log = logging.getLogger(__name__)


class SupervisorAlreadyStarted(RuntimeError):
    pass


@dataclass(frozen=True)
class SupervisorConfig:
    processing_interval_seconds: float = 10.0
    cleanup_interval_seconds: float = 24 * 60 * 60
    cleanup_initial_delay_seconds: float = 60 * 60
    cleanup_retention_days: int = 30


class SupervisorHandle:
    def __init__(self, process_task: asyncio.Task, cleanup_task: asyncio.Task):
        self.process_task = process_task
        self.cleanup_task = cleanup_task

    @property
    def running(self) -> bool:
        return not (self.process_task.done() and self.cleanup_task.done())

    async def stop(self) -> None:
        for task in (self.process_task, self.cleanup_task):
            task.cancel()
        await asyncio.gather(self.process_task, self.cleanup_task, return_exceptions=True)


class QueueSupervisor:
    """
    Owns the two background loops of the sale event queue.

    The process loop sleeps *after* each tick completes, so two ticks never
    overlap. The cleanup loop waits an initial delay and then runs on its own
    slower interval. A crashing tick is logged and the loop carries on.

    One supervisor per process: start() can be called once. Running a second
    process against the same store needs an external lock.
    """

    def __init__(self, queue: SaleEventQueue, config: SupervisorConfig | None = None):
        self._queue = queue
        self._config = config or SupervisorConfig()
        self._handle: SupervisorHandle | None = None

    def start(self) -> SupervisorHandle:
        if self._handle is not None:
            raise SupervisorAlreadyStarted("queue supervisor already started")

        log.info("supervisor: starting sale event queue loops")
        self._handle = SupervisorHandle(
            process_task=asyncio.create_task(self._process_loop(), name="sale-event-queue"),
            cleanup_task=asyncio.create_task(self._cleanup_loop(), name="sale-event-cleanup"),
        )
        return self._handle

    async def _process_loop(self) -> None:
        while True:
            try:
                stats = await self._queue.run_once()
                if stats.processed or stats.failed or stats.retried:
                    log.info(
                        "supervisor: tick processed=%d failed=%d retried=%d jobs_created=%d",
                        stats.processed, stats.failed, stats.retried, stats.jobs_created,
                    )
            except Exception:
                log.exception("supervisor: process tick crashed")
            await asyncio.sleep(self._config.processing_interval_seconds)

    async def _cleanup_loop(self) -> None:
        await asyncio.sleep(self._config.cleanup_initial_delay_seconds)
        while True:
            try:
                result = await self._queue.cleanup(self._config.cleanup_retention_days)
                if not result.success:
                    log.warning("supervisor: cleanup failed: %s", result.error)
            except Exception:
                log.exception("supervisor: cleanup tick crashed")
            await asyncio.sleep(self._config.cleanup_interval_seconds)
