from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Iterable


MANUAL_CONFIRMATION_HOLD = timedelta(days=7)

PREFERENCES = ("immediate", "delayed", "manual_confirmation")


@dataclass(frozen=True)
class DelistingPolicy:
    """In-memory view of a user's delisting preferences (defaults when the user has no row)."""

    auto_delist_enabled: bool = True
    default_preference: str = "immediate"
    delay_minutes: int = 0
    require_confirmation: bool = False
    marketplace_preferences: dict[str, dict[str, Any]] = field(default_factory=dict)
    exclude_marketplaces: frozenset[str] = frozenset()
    min_sale_amount: Decimal | None = None
    max_sale_amount: Decimal | None = None

    @classmethod
    def from_row(cls, row) -> "DelistingPolicy":
        if row is None:
            return cls()
        return cls(
            auto_delist_enabled=row.auto_delist_enabled,
            default_preference=row.default_preference,
            delay_minutes=row.delay_minutes or 0,
            require_confirmation=row.require_confirmation,
            marketplace_preferences=dict(row.marketplace_preferences or {}),
            exclude_marketplaces=frozenset(row.exclude_marketplaces or ()),
            min_sale_amount=row.min_sale_amount,
            max_sale_amount=row.max_sale_amount,
        )


@dataclass(frozen=True)
class DelistingPlan:
    targets: frozenset[str]
    scheduled_for: datetime
    requires_user_confirmation: bool
    preference: str


def _outside_sale_bounds(policy: DelistingPolicy, sale_price: Decimal | None) -> bool:
    if sale_price is None:
        return False
    if policy.min_sale_amount is not None and sale_price < policy.min_sale_amount:
        return True
    if policy.max_sale_amount is not None and sale_price > policy.max_sale_amount:
        return True
    return False


def plan_delisting(
    policy: DelistingPolicy,
    *,
    sold_on: str,
    sale_price: Decimal | None,
    candidates: Iterable[str],
    now: datetime,
) -> DelistingPlan | None:
    """Returns None when no job should be created for this sale."""
    if not policy.auto_delist_enabled:
        return None

    override = policy.marketplace_preferences.get(sold_on) or {}
    if override.get("enabled") is False:
        return None

    targets = frozenset(candidates) - policy.exclude_marketplaces - {sold_on}
    if not targets:
        return None

    preference = override.get("preference") or policy.default_preference
    if preference not in PREFERENCES:
        preference = "immediate"
    delay = override.get("delay")
    delay_minutes = int(delay) if delay is not None else policy.delay_minutes

    requires_confirmation = policy.require_confirmation or _outside_sale_bounds(policy, sale_price)

    if preference == "delayed":
        scheduled_for = now + timedelta(minutes=max(0, delay_minutes))
    elif preference == "manual_confirmation":
        scheduled_for = now + MANUAL_CONFIRMATION_HOLD
        requires_confirmation = True
    else:
        scheduled_for = now

    return DelistingPlan(
        targets=targets,
        scheduled_for=scheduled_for,
        requires_user_confirmation=requires_confirmation,
        preference=preference,
    )
