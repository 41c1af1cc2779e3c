import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from delisting_hub.api.deps import get_gateway, get_sale_event_queue
from delisting_hub.api.v1.router import router as v1_router
from delisting_hub.core.config import settings
from delisting_hub.core.telemetry import setup_telemetry
from delisting_hub.services.pipeline import supervisor_config
from delisting_hub.services.supervisor import QueueSupervisor


log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    handle = None
    if settings.supervisor_enabled:
        handle = QueueSupervisor(get_sale_event_queue(), supervisor_config()).start()
    try:
        yield
    finally:
        if handle is not None:
            await handle.stop()
            log.info("supervisor: stopped")
        gateway = get_gateway()
        if gateway is not None:
            await gateway.aclose()


app = FastAPI(title="Delisting Hub API", version="0.1.0", lifespan=lifespan)

setup_telemetry(app)
app.include_router(v1_router)
