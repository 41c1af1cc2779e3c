import asyncio
import logging

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from delisting_hub.core.config import settings
from delisting_hub.services.job_dispatcher import dispatch_delisting_jobs
from worker.celery_app import celery, enqueue_delisting_job


log = logging.getLogger(__name__)


async def _tick(Session) -> int:
    async with Session() as db:
        count = await dispatch_delisting_jobs(
            db,
            enqueue=enqueue_delisting_job,
            batch_size=settings.job_dispatch_batch_size,
        )
    if count:
        log.info("dispatcher: enqueued %d delisting jobs", count)
    return count


async def main():
    logging.basicConfig(level=logging.INFO)
    celery.connection().ensure_connection(max_retries=3)

    engine = create_async_engine(settings.database_url, pool_pre_ping=True)
    Session = async_sessionmaker(engine, expire_on_commit=False)

    log.info("dispatcher: started")
    try:
        while True:
            try:
                await _tick(Session)
            except Exception:
                log.exception("dispatcher: tick crashed")
            await asyncio.sleep(settings.job_dispatch_poll_seconds)
    finally:
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
