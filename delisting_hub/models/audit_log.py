from sqlalchemy import Boolean, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from delisting_hub.core.ids import gen_id
from delisting_hub.models.base import Base, JsonType

class DelistingAuditLog(Base):
    __tablename__ = "delisting_audit_log"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("aud"))
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    delisting_job_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    listing_id: Mapped[str | None] = mapped_column(String, nullable=True)

    action: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    marketplace: Mapped[str | None] = mapped_column(String(50), nullable=True)

    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    context: Mapped[dict] = mapped_column(JsonType, nullable=False, default=dict)

    created_at: Mapped[str] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
