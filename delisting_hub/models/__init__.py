from delisting_hub.models.base import Base  # noqa: F401

from delisting_hub.models.listing import MarketplaceListing  # noqa: F401
from delisting_hub.models.preferences import UserDelistingPreferences  # noqa: F401
from delisting_hub.models.delisting_job import DelistingJob  # noqa: F401
from delisting_hub.models.sale_event import SaleEvent  # noqa: F401
from delisting_hub.models.audit_log import DelistingAuditLog  # noqa: F401
