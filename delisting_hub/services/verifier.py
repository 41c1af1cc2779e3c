from __future__ import annotations
import logging
from dataclasses import dataclass

from delisting_hub.services.errors import ErrorKind
from delisting_hub.services.event_store import SaleEventRecord
from delisting_hub.services.marketplace_gateway import MarketplaceGateway
from delisting_hub.services.provenance import NoProvenance, PollingProvenance, WebhookProvenance


log = logging.getLogger(__name__)


@dataclass(frozen=True)
class VerificationResult:
    verified: bool
    error: str | None = None
    retryable: bool = False
    error_kind: ErrorKind | None = None


class SaleEventVerifier:
    """
    Decides whether a sale event can be acted on.

    Webhook payloads were signature-checked by the ingestion boundary and polling
    payloads were confirmed by the poller, so both are trusted as-is. Events without
    a source payload are confirmed with the marketplace; every failure on that path
    is reported as retryable.
    """

    def __init__(self, gateway: MarketplaceGateway | None):
        self._gateway = gateway

    async def verify(self, event: SaleEventRecord) -> VerificationResult:
        provenance = event.provenance

        if isinstance(provenance, WebhookProvenance):
            return VerificationResult(verified=True)

        if isinstance(provenance, PollingProvenance):
            return VerificationResult(verified=True)

        if isinstance(provenance, NoProvenance):
            return await self._confirm_with_marketplace(event)

        raise TypeError(f"unknown provenance: {provenance!r}")

    async def _confirm_with_marketplace(self, event: SaleEventRecord) -> VerificationResult:
        if self._gateway is None:
            return VerificationResult(
                verified=False,
                error="Verification failed: no marketplace verification capability configured",
                retryable=True,
                error_kind=ErrorKind.VERIFICATION_FAILED,
            )

        try:
            result = await self._gateway.confirm_sale(
                marketplace=event.marketplace,
                external_listing_id=event.external_listing_id,
                external_transaction_id=event.external_transaction_id,
            )
        except Exception as e:
            log.warning("verifier: confirm_sale raised for event=%s: %s", event.id, e)
            return VerificationResult(
                verified=False,
                error=f"Verification failed: {type(e).__name__}: {e}",
                retryable=True,
                error_kind=ErrorKind.UNKNOWN_ERROR,
            )

        if result.ok:
            return VerificationResult(verified=True)

        return VerificationResult(
            verified=False,
            error=f"Verification failed: {result.error_message or 'marketplace did not confirm sale'}",
            retryable=True,
            error_kind=result.error_kind or ErrorKind.VERIFICATION_FAILED,
        )
