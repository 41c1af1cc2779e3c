from pydantic import BaseModel, Field


class JobActionIn(BaseModel):
    user_id: str


class JobCancelIn(JobActionIn):
    reason: str | None = Field(default=None, max_length=1000)


class DelistingJobOut(BaseModel):
    id: str
    user_id: str
    inventory_item_id: str
    status: str
    sold_on_marketplace: str | None
    marketplaces_targeted: list[str]
    marketplaces_completed: list[str]
    marketplaces_failed: list[str]
    scheduled_for: str
    retry_count: int
    requires_user_confirmation: bool
    user_confirmed_at: str | None
    user_cancelled_at: str | None
    cancellation_reason: str | None


class DispatchOut(BaseModel):
    dispatched: int
