from fastapi import APIRouter

from delisting_hub.api.v1.endpoints.health import router as health_router
from delisting_hub.api.v1.endpoints.sale_events import router as sale_events_router
from delisting_hub.api.v1.endpoints.delisting_jobs import router as delisting_jobs_router


router = APIRouter(prefix="/v1")
router.include_router(health_router, tags=["health"])
router.include_router(sale_events_router, tags=["sale-events"])
router.include_router(delisting_jobs_router, tags=["delisting-jobs"])
