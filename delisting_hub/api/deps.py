from __future__ import annotations
from functools import lru_cache
from typing import Callable

from fastapi import Depends

from delisting_hub.core.config import settings
from delisting_hub.core.db import SessionLocal
from delisting_hub.services.marketplace_gateway import MarketplaceGateway, build_marketplace_gateway
from delisting_hub.services.pipeline import build_sale_event_queue
from delisting_hub.services.rate_limit import TokenRateLimiter
from delisting_hub.services.sale_event_queue import SaleEventQueue
from delisting_hub.services.sql_event_store import SqlSaleEventStore
from worker.celery_app import enqueue_delisting_job


# created once per process (reuse http + redis pools)

@lru_cache
def get_gateway() -> MarketplaceGateway | None:
    return build_marketplace_gateway()


@lru_cache
def get_sale_event_queue() -> SaleEventQueue:
    return build_sale_event_queue(SessionLocal, get_gateway())


def get_event_store(queue: SaleEventQueue = Depends(get_sale_event_queue)) -> SqlSaleEventStore:
    return queue.store


@lru_cache
def get_rate_limiter() -> TokenRateLimiter:
    return TokenRateLimiter(settings.redis_url)


def get_job_enqueuer() -> Callable[[str], None]:
    return enqueue_delisting_job
