import asyncio
import logging

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from worker.celery_app import celery
from delisting_hub.core.config import settings
import delisting_hub.models  # noqa: F401  # ensures models are registered
from delisting_hub.services.delisting_executor import execute_delisting_job as run_delisting_job
from delisting_hub.services.errors import JobStateError
from delisting_hub.services.marketplace_gateway import build_marketplace_gateway


log = logging.getLogger(__name__)


async def _execute_delisting_job(job_id: str) -> dict:
    engine = create_async_engine(settings.database_url, pool_pre_ping=True)
    Session = async_sessionmaker(engine, expire_on_commit=False)
    gateway = build_marketplace_gateway()

    try:
        async with Session() as db:
            try:
                result = await run_delisting_job(db, job_id, gateway)
            except JobStateError as e:
                # claimed job got cancelled, or was picked up twice
                log.warning("tasks: job %s not executed: %s", job_id, e.message)
                await db.rollback()
                return {"job_id": job_id, "status": "skipped", "reason": e.code}
        return {"job_id": result.job_id, "status": result.status, "retry_scheduled": result.retry_scheduled}
    finally:
        if gateway is not None:
            await gateway.aclose()
        await engine.dispose()


@celery.task(name="worker.tasks.execute_delisting_job")
def execute_delisting_job(job_id: str) -> dict:
    return asyncio.run(_execute_delisting_job(job_id))
