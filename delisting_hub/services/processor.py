from __future__ import annotations
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from delisting_hub.core.clock import utcnow
from delisting_hub.services.audit import AuditEntry, AuditLogger
from delisting_hub.services.errors import ErrorKind, StoreError
from delisting_hub.services.event_store import SaleEventRecord, SaleEventStore
from delisting_hub.services.retry import compute_retry_delay_ms
from delisting_hub.services.verifier import SaleEventVerifier


log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessResult:
    success: bool
    job_id: str | None = None
    error: str | None = None
    retryable: bool = False
    error_kind: ErrorKind | None = None
    retry_delay_ms: int | None = None


class SaleEventProcessor:
    """
    Per-event state machine: load -> idempotency/duplicate checks -> verify ->
    materialize a delisting job (atomic, on the store) -> audit.

    Safe to call again for the same event: a processed event short-circuits to its
    existing job id without touching the store or the audit log.
    """

    def __init__(
        self,
        store: SaleEventStore,
        verifier: SaleEventVerifier,
        audit_logger: AuditLogger,
        *,
        max_verification_attempts: int = 3,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._verifier = verifier
        self._audit = audit_logger
        self._max_verification_attempts = max_verification_attempts
        self._clock = clock

    async def process_one(self, event_id: str) -> ProcessResult:
        log.debug("processor: processing sale event %s", event_id)

        try:
            event = await self._store.get_event(event_id)
        except StoreError as e:
            return ProcessResult(success=False, error=str(e), retryable=True, error_kind=ErrorKind.STORE_ERROR)

        if event is None:
            return ProcessResult(
                success=False,
                error=f"Sale event not found: {event_id}",
                retryable=False,
                error_kind=ErrorKind.NOT_FOUND,
            )

        if event.processed:
            log.info("processor: sale event %s already processed", event_id)
            return ProcessResult(success=True, job_id=event.delisting_job_id)

        try:
            if event.is_duplicate:
                log.info("processor: sale event %s is a duplicate of %s", event_id, event.duplicate_of)
                await self._store.mark_processed(event_id)
                return ProcessResult(success=True)

            if not event.verified:
                failed = await self._verify(event)
                if failed is not None:
                    return failed

            job_id = await self._store.materialize_job(event_id)
        except StoreError as e:
            return await self._store_failure(event_id, e)

        if job_id is None:
            log.info("processor: sale event %s processed, nothing left to delist", event_id)
            return ProcessResult(success=True)

        log.info("processor: sale event %s processed, job=%s", event_id, job_id)
        await self._audit.record(AuditEntry(
            user_id=event.user_id,
            delisting_job_id=job_id,
            action="sale_event_processed",
            marketplace=event.marketplace,
            success=True,
            context={
                "sale_event_id": event_id,
                "external_listing_id": event.external_listing_id,
                "sale_price": float(event.sale_price) if event.sale_price is not None else None,
            },
        ))
        return ProcessResult(success=True, job_id=job_id)

    async def _verify(self, event: SaleEventRecord) -> ProcessResult | None:
        result = await self._verifier.verify(event)
        if result.verified:
            await self._store.mark_verified(event.id)
            return None

        kind = result.error_kind or ErrorKind.VERIFICATION_FAILED
        delay_ms = compute_retry_delay_ms(event.verification_attempts + 1, kind) if result.retryable else None
        retry_after = self._clock() + timedelta(milliseconds=delay_ms) if delay_ms is not None else None

        attempts = await self._store.record_verification_failure(
            event.id, error=result.error or "verification failed", retry_after=retry_after
        )

        if attempts >= self._max_verification_attempts:
            # stays unprocessed and drops out of the queue until an operator requeues it
            log.error(
                "processor: sale event %s exhausted %d verification attempts: %s",
                event.id, attempts, result.error,
            )
            await self._audit.record(AuditEntry(
                user_id=event.user_id,
                action="sale_event_verification_exhausted",
                marketplace=event.marketplace,
                success=False,
                error_message=result.error,
                error_code=kind.value,
                context={"sale_event_id": event.id, "verification_attempts": attempts},
            ))

        return ProcessResult(
            success=False,
            error=f"Sale verification failed: {result.error}",
            retryable=result.retryable,
            error_kind=kind,
            retry_delay_ms=delay_ms,
        )

    async def _store_failure(self, event_id: str, err: StoreError) -> ProcessResult:
        log.error("processor: store error for sale event %s: %s", event_id, err)
        try:
            await self._store.record_processing_error(event_id, str(err))
        except StoreError:
            log.exception("processor: could not persist processing_error for %s", event_id)
        return ProcessResult(success=False, error=str(err), retryable=True, error_kind=ErrorKind.STORE_ERROR)
