import asyncio
import logging

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from delisting_hub.core.config import settings
from delisting_hub.services.marketplace_gateway import build_marketplace_gateway
from delisting_hub.services.pipeline import build_sale_event_queue, supervisor_config
from delisting_hub.services.supervisor import QueueSupervisor


log = logging.getLogger(__name__)


async def main():
    """Runs the sale event queue outside the API process (set SUPERVISOR_ENABLED=false on the API)."""
    logging.basicConfig(level=logging.INFO)

    engine = create_async_engine(settings.database_url, pool_pre_ping=True)
    Session = async_sessionmaker(engine, expire_on_commit=False)
    gateway = build_marketplace_gateway()
    if gateway is None:
        log.warning("supervisor: MARKETPLACE_SERVICE_URL not set, unverified events will not pass verification")

    handle = QueueSupervisor(build_sale_event_queue(Session, gateway), supervisor_config()).start()
    try:
        await asyncio.gather(handle.process_task, handle.cleanup_task)
    finally:
        await handle.stop()
        if gateway is not None:
            await gateway.aclose()
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
