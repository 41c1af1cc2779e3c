from sqlalchemy import Index, String
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import DateTime

from delisting_hub.core.ids import gen_id
from delisting_hub.models.base import Base, TimestampMixin


# statuses that still count as "listed" on a marketplace
LIVE_LISTING_STATUSES = ("active", "pending")


class MarketplaceListing(TimestampMixin, Base):
    """
    Read model of an inventory item's listing on one marketplace.

    Rows are owned by the inventory surface; this service only reads them to pick
    delisting targets and flips `status` to "cancelled" once a delist succeeds.
    """

    __tablename__ = "marketplace_listings"
    __table_args__ = (
        Index("ix_marketplace_listings_item_marketplace", "inventory_item_id", "marketplace"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("lst"))
    user_id: Mapped[str] = mapped_column(String, nullable=False)
    inventory_item_id: Mapped[str] = mapped_column(String, nullable=False)

    marketplace: Mapped[str] = mapped_column(String(50), nullable=False)  # e.g. "ebay", "poshmark"
    external_listing_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # "draft" | "pending" | "active" | "sold" | "cancelled"
    status: Mapped[str] = mapped_column(String(30), nullable=False, default="active")
    deleted_at: Mapped[str | None] = mapped_column(DateTime(timezone=True), nullable=True)
