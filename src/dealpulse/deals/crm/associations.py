"""Primary association resolution for deals with several linked entities."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

import structlog

from src.dealpulse.deals.crm.retry import (
    DEFAULT_BASE_DELAY_SECONDS,
    DEFAULT_MAX_RETRIES,
    with_retry,
)
from src.dealpulse.errors import DealPulseError

if TYPE_CHECKING:
    from src.dealpulse.deals.crm.hubspot import HubSpotClient

logger = structlog.get_logger(__name__)


class AssociationResolver:
    """Pick the single primary company or contact for a deal.

    - No candidates: None.
    - One candidate: returned as-is, no request made.
    - Several: the per-deal associations endpoint is queried; the entry
      labelled "primary" wins, otherwise the first entry HubSpot returns.
    - If that lookup fails, the first of the original ids is used and the
      failure is logged. Resolution never fails a sync pass.

    Args:
        hubspot: HubSpot API client.
        max_retries: Retry budget for the associations call.
        base_delay: First backoff delay in seconds.
        sleep: Async sleep used between retries.
    """

    def __init__(
        self,
        hubspot: HubSpotClient,
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_delay: float = DEFAULT_BASE_DELAY_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._hubspot = hubspot
        self._max_retries = max_retries
        self._base_delay = base_delay
        self._sleep = sleep

    async def resolve_primary(
        self,
        access_token: str,
        deal_remote_id: str,
        associated_ids: list[str],
        kind: str,
    ) -> str | None:
        """Return the primary entity id of ``kind`` for one deal.

        Args:
            access_token: Valid HubSpot access token.
            deal_remote_id: HubSpot deal id.
            associated_ids: Ids from the deal's association stubs.
            kind: "companies" or "contacts".
        """
        if not associated_ids:
            return None
        if len(associated_ids) == 1:
            return associated_ids[0]

        try:
            candidates = await with_retry(
                lambda: self._hubspot.get_associations(access_token, deal_remote_id, kind),
                self._max_retries,
                self._base_delay,
                sleep=self._sleep,
            )
        except DealPulseError as exc:
            logger.warning(
                "sync.association_lookup_failed",
                deal_id=deal_remote_id,
                kind=kind,
                error=exc.message,
            )
            return associated_ids[0]

        if not candidates:
            return associated_ids[0]

        for candidate in candidates:
            if candidate.is_primary:
                return candidate.entity_id
        return candidates[0].entity_id
