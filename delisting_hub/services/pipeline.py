from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from delisting_hub.core.config import settings
from delisting_hub.services.audit import SqlAuditLogger
from delisting_hub.services.marketplace_gateway import MarketplaceGateway
from delisting_hub.services.processor import SaleEventProcessor
from delisting_hub.services.sale_event_queue import SaleEventQueue
from delisting_hub.services.sql_event_store import SqlSaleEventStore
from delisting_hub.services.supervisor import SupervisorConfig
from delisting_hub.services.verifier import SaleEventVerifier


def build_sale_event_queue(
    session_factory: async_sessionmaker[AsyncSession],
    gateway: MarketplaceGateway | None,
) -> SaleEventQueue:
    store = SqlSaleEventStore(session_factory)
    processor = SaleEventProcessor(
        store,
        SaleEventVerifier(gateway),
        SqlAuditLogger(session_factory),
        max_verification_attempts=settings.queue_max_retries,
    )
    return SaleEventQueue(
        store,
        processor,
        batch_size=settings.queue_batch_size,
        max_concurrent_jobs=settings.queue_max_concurrent_jobs,
        max_retries=settings.queue_max_retries,
    )


def supervisor_config() -> SupervisorConfig:
    return SupervisorConfig(
        processing_interval_seconds=settings.queue_processing_interval_ms / 1000,
        cleanup_interval_seconds=settings.cleanup_interval_hours * 3600,
        cleanup_initial_delay_seconds=settings.cleanup_initial_delay_minutes * 60,
        cleanup_retention_days=settings.cleanup_retention_days,
    )
