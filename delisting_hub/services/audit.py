from __future__ import annotations
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from delisting_hub.models.audit_log import DelistingAuditLog


log = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditEntry:
    user_id: str
    action: str
    success: bool
    delisting_job_id: str | None = None
    listing_id: str | None = None
    marketplace: str | None = None
    error_message: str | None = None
    error_code: str | None = None
    duration_ms: int | None = None
    context: dict[str, Any] = field(default_factory=dict)


class AuditLogger(Protocol):
    async def record(self, entry: AuditEntry) -> None:
        ...


async def audit(
    db: AsyncSession,
    *,
    user_id: str,
    action: str,
    success: bool,
    delisting_job_id: str | None = None,
    listing_id: str | None = None,
    marketplace: str | None = None,
    error_message: str | None = None,
    error_code: str | None = None,
    duration_ms: int | None = None,
    context: dict | None = None,
) -> None:
    # append-only; rows are never updated by this service
    db.add(DelistingAuditLog(
        user_id=user_id,
        delisting_job_id=delisting_job_id,
        listing_id=listing_id,
        action=action,
        marketplace=marketplace,
        success=success,
        error_message=error_message,
        error_code=error_code,
        duration_ms=duration_ms,
        context=context or {},
    ))


class SqlAuditLogger:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def record(self, entry: AuditEntry) -> None:
        # a lost audit row must not turn a finished action into a failure
        try:
            async with self._session_factory() as db:
                await audit(db, **asdict(entry))
                await db.commit()
        except SQLAlchemyError:
            log.exception("audit: failed to write action=%s user=%s", entry.action, entry.user_id)
