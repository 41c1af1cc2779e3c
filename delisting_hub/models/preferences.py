from decimal import Decimal

from sqlalchemy import Boolean, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from delisting_hub.core.ids import gen_id
from delisting_hub.models.base import Base, JsonType, TimestampMixin


class UserDelistingPreferences(TimestampMixin, Base):
    __tablename__ = "user_delisting_preferences"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("dlp"))
    user_id: Mapped[str] = mapped_column(String, nullable=False, unique=True)

    auto_delist_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    # "immediate" | "delayed" | "manual_confirmation"
    default_preference: Mapped[str] = mapped_column(String(30), nullable=False, default="immediate")
    delay_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    require_confirmation: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # keyed by the marketplace the item sold on: {"preference": ..., "delay": ..., "enabled": ...}
    marketplace_preferences: Mapped[dict] = mapped_column(JsonType, nullable=False, default=dict)
    exclude_marketplaces: Mapped[list] = mapped_column(JsonType, nullable=False, default=list)

    min_sale_amount: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    max_sale_amount: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
