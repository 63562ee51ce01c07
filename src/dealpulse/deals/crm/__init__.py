"""CRM integration layer -- HubSpot OAuth lifecycle and pull-based deal sync.

Provides:
- HubSpotClient: OAuth token endpoints plus CRM v3/v4 object APIs
- TokenLifecycleManager: authorize, validate/refresh, revoke, status
- AssociationResolver: primary company/contact selection
- SyncPipeline: per-user sync pass with idempotent upsert and re-scoring
- with_retry: bounded exponential backoff shared by all remote calls
"""

from src.dealpulse.deals.crm.associations import AssociationResolver
from src.dealpulse.deals.crm.field_mapping import (
    DEAL_PROPERTIES,
    format_stage_name,
    from_hubspot_deal,
    normalize_metadata,
)
from src.dealpulse.deals.crm.hubspot import HubSpotClient
from src.dealpulse.deals.crm.retry import with_retry
from src.dealpulse.deals.crm.sync import SyncPipeline
from src.dealpulse.deals.crm.tokens import TokenLifecycleManager

__all__ = [
    "AssociationResolver",
    "HubSpotClient",
    "SyncPipeline",
    "TokenLifecycleManager",
    "with_retry",
    "DEAL_PROPERTIES",
    "format_stage_name",
    "from_hubspot_deal",
    "normalize_metadata",
]
