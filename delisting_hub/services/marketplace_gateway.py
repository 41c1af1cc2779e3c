from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Protocol

from delisting_hub.core.config import settings
from delisting_hub.services.errors import ErrorKind
from delisting_hub.services.http_client import ConnectorHttpClient


DELIST_REASON = "Item sold on another marketplace"


@dataclass(frozen=True)
class GatewayResult:
    ok: bool
    error_kind: ErrorKind | None = None
    error_message: str | None = None
    retryable: bool = False
    detail: dict[str, Any] = field(default_factory=dict)
    duration_ms: int | None = None


class MarketplaceGateway(Protocol):
    """Marketplace capability: confirm a sale or remove a listing. Never raises for API failures."""

    async def confirm_sale(
        self,
        *,
        marketplace: str,
        external_listing_id: str | None,
        external_transaction_id: str | None,
    ) -> GatewayResult:
        ...

    async def delist(
        self,
        *,
        marketplace: str,
        external_listing_id: str | None,
        reason: str = DELIST_REASON,
    ) -> GatewayResult:
        ...


class HttpMarketplaceGateway:
    """Talks to the marketplace connector service that owns the eBay/Poshmark/... clients."""

    def __init__(self, client: ConnectorHttpClient):
        self._client = client

    async def aclose(self) -> None:
        await self._client.aclose()

    async def confirm_sale(
        self,
        *,
        marketplace: str,
        external_listing_id: str | None,
        external_transaction_id: str | None,
    ) -> GatewayResult:
        res = await self._client.post_json(
            f"/marketplaces/{marketplace}/sales/confirm",
            json_body={
                "external_listing_id": external_listing_id,
                "external_transaction_id": external_transaction_id,
            },
        )
        if res.ok and not res.detail.get("confirmed", True):
            return GatewayResult(
                ok=False,
                error_kind=ErrorKind.VERIFICATION_FAILED,
                error_message=str(res.detail.get("reason") or "sale not confirmed by marketplace"),
                detail=res.detail,
                duration_ms=res.elapsed_ms,
            )
        return _to_gateway_result(res)

    async def delist(
        self,
        *,
        marketplace: str,
        external_listing_id: str | None,
        reason: str = DELIST_REASON,
    ) -> GatewayResult:
        if not external_listing_id:
            return GatewayResult(
                ok=False,
                error_kind=ErrorKind.INVALID_REQUEST,
                error_message="listing has no external id on the marketplace",
            )
        res = await self._client.post_json(
            f"/marketplaces/{marketplace}/listings/{external_listing_id}/end",
            json_body={"reason": reason},
        )
        return _to_gateway_result(res)


def _to_gateway_result(res) -> GatewayResult:
    return GatewayResult(
        ok=res.ok,
        error_kind=res.error_kind,
        error_message=res.error_message,
        retryable=res.retryable,
        detail=res.detail,
        duration_ms=res.elapsed_ms,
    )


def build_marketplace_gateway() -> HttpMarketplaceGateway | None:
    if not settings.marketplace_service_url:
        return None
    client = ConnectorHttpClient(
        base_url=settings.marketplace_service_url,
        timeout_seconds=settings.marketplace_timeout_seconds,
        default_headers={"Authorization": f"Bearer {settings.marketplace_service_token.get_secret_value()}"},
    )
    return HttpMarketplaceGateway(client)
