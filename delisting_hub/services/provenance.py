from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Union


@dataclass(frozen=True)
class WebhookProvenance:
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PollingProvenance:
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class NoProvenance:
    """Synthetic or manually entered sale with no source payload."""


Provenance = Union[WebhookProvenance, PollingProvenance, NoProvenance]


class ProvenanceConflict(ValueError):
    pass


def provenance_of(raw_webhook_data: dict | None, raw_polling_data: dict | None) -> Provenance:
    if raw_webhook_data is not None and raw_polling_data is not None:
        raise ProvenanceConflict("sale event carries both webhook and polling data")
    if raw_webhook_data is not None:
        return WebhookProvenance(raw_webhook_data)
    if raw_polling_data is not None:
        return PollingProvenance(raw_polling_data)
    return NoProvenance()


def provenance_columns(provenance: Provenance) -> dict[str, dict | None]:
    if isinstance(provenance, WebhookProvenance):
        return {"raw_webhook_data": provenance.payload, "raw_polling_data": None}
    if isinstance(provenance, PollingProvenance):
        return {"raw_webhook_data": None, "raw_polling_data": provenance.payload}
    return {"raw_webhook_data": None, "raw_polling_data": None}
