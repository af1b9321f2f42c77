"""Enrichment event sink.

Enrichment results arrive asynchronously, possibly after the search that
queued them has been replaced. Each callback is bound to the run token it was
issued under; results for an older token, or for a lead that is no longer
resident, are ignored.
"""

from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Union

from .lead_set import LeadSet
from .logging_utils import get_logger
from .models import Enrichment, EnrichmentStatus, Lead

logger = get_logger(__name__)

EnrichmentPayload = Union[Enrichment, Dict[str, Any]]
EnrichmentCallback = Callable[[str, EnrichmentPayload], Awaitable[Optional[Lead]]]


class SocialProfileCache(Protocol):
    """External store of social profile URLs discovered during enrichment."""

    async def record(self, lead: Lead, socials: Dict[str, str]) -> None:
        ...


class InMemorySocialProfileCache:
    """SocialProfileCache kept in a dict, keyed by lead id."""

    def __init__(self) -> None:
        self.profiles: Dict[str, Dict[str, str]] = {}

    async def record(self, lead: Lead, socials: Dict[str, str]) -> None:
        self.profiles.setdefault(lead.id, {}).update(socials)


class EnrichmentEventSink:
    """Apply enrichment results to the lead set."""

    def __init__(
        self,
        lead_set: LeadSet,
        social_cache: Optional[SocialProfileCache] = None,
    ):
        self.lead_set = lead_set
        self.social_cache = social_cache

    async def on_enrichment(
        self,
        lead_id: str,
        payload: EnrichmentPayload,
        run_token: Optional[int] = None,
    ) -> Optional[Lead]:
        """Merge an enrichment result into the matching lead.

        Args:
            lead_id: Id of the lead the result belongs to.
            payload: Enrichment model or provider payload dict.
            run_token: Token the enrichment request was issued under. None
                applies the result to the current set.

        Returns:
            The updated lead, or None if the event was dropped.
        """
        enrichment = (
            payload
            if isinstance(payload, Enrichment)
            else Enrichment.from_payload(payload)
        )
        merged = await self.lead_set.apply_enrichment(
            lead_id, enrichment, token=run_token
        )
        if merged is None:
            return None

        logger.debug(
            "Enrichment merged",
            extra={
                "run_token": run_token,
                "lead_id": lead_id,
                "emails": len(enrichment.emails),
                "phones": len(enrichment.phones),
            },
        )

        if enrichment.socials and self.social_cache is not None:
            try:
                await self.social_cache.record(merged, enrichment.socials)
            except Exception as e:
                logger.warning(
                    f"Failed to record social profiles: {e}", extra={"lead_id": lead_id}
                )

        return merged

    async def on_enrichment_failed(
        self, lead_id: str, run_token: Optional[int] = None
    ) -> Optional[Lead]:
        """Mark a lead's enrichment as failed unless it already completed."""
        return await self.lead_set.advance_enrichment_status(
            lead_id, EnrichmentStatus.FAILED, token=run_token
        )

    async def mark_processing(
        self, lead_ids: List[str], run_token: Optional[int] = None
    ) -> int:
        """Mark pending leads as queued for enrichment."""
        count = 0
        for lead_id in lead_ids:
            if await self.lead_set.advance_enrichment_status(
                lead_id, EnrichmentStatus.PROCESSING, token=run_token
            ):
                count += 1
        return count

    def subscribe(self) -> EnrichmentCallback:
        """Return a callback bound to the current run token."""
        token = self.lead_set.generation

        async def callback(lead_id: str, payload: EnrichmentPayload) -> Optional[Lead]:
            return await self.on_enrichment(lead_id, payload, run_token=token)

        return callback
