from fastapi import APIRouter

from delisting_hub.core.config import settings
from delisting_hub.schemas.common import HealthOut

router = APIRouter()


@router.get("/health", response_model=HealthOut)
async def health() -> HealthOut:
    return HealthOut(status="ok", service=settings.service_name, env=settings.env)
