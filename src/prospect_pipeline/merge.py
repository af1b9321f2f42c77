"""Field-level merge of two leads with the same identity."""

from typing import Any, Optional

from .models import Enrichment, EnrichmentStatus, Lead


def _prefer(existing: Any, incoming: Any) -> Any:
    """Keep the existing value unless it is empty."""
    if existing is None or existing == "":
        return incoming
    return existing


def _latest(a, b):
    if a is None:
        return b
    if b is None:
        return a
    return max(a, b)


def advance_status(
    existing: EnrichmentStatus, incoming: EnrichmentStatus
) -> EnrichmentStatus:
    """Return the more advanced of two enrichment statuses."""
    return existing if existing.rank >= incoming.rank else incoming


def merge_enrichment(
    existing: Optional[Enrichment], incoming: Optional[Enrichment]
) -> Optional[Enrichment]:
    """Union two enrichments; later social URLs override earlier ones."""
    if existing is None and incoming is None:
        return None
    if existing is None:
        return incoming.model_copy(deep=True)
    if incoming is None:
        return existing.model_copy(deep=True)

    return Enrichment(
        emails=existing.emails | incoming.emails,
        phones=existing.phones | incoming.phones,
        socials={**existing.socials, **incoming.socials},
        sources=existing.sources | incoming.sources,
        catch_all=existing.catch_all or incoming.catch_all,
        enriched_at=_latest(existing.enriched_at, incoming.enriched_at),
        url=_prefer(existing.url, incoming.url),
    )


def merge_leads(existing: Lead, incoming: Lead) -> Lead:
    """Merge an incoming record into the resident one.

    The resident id and populated scalars win. Enrichment collections are
    unioned, the status only moves forward and the catch-all flag is sticky.
    Merging a lead with itself returns an equal lead.

    Args:
        existing: Lead currently held in the lead set.
        incoming: Newly received record with the same identity.

    Returns:
        A new Lead; neither argument is modified.
    """
    enrichment = merge_enrichment(existing.enrichment, incoming.enrichment)

    email = _prefer(existing.email, incoming.email)
    if not email and incoming.enrichment is not None:
        email = incoming.enrichment.first_email

    return Lead(
        id=existing.id,
        name=existing.name,
        address=_prefer(existing.address, incoming.address),
        phone=_prefer(existing.phone, incoming.phone),
        website=_prefer(existing.website, incoming.website),
        email=email,
        rating=_prefer(existing.rating, incoming.rating),
        review_count=_prefer(existing.review_count, incoming.review_count),
        source=existing.source,
        platform=_prefer(existing.platform, incoming.platform),
        place_id=_prefer(existing.place_id, incoming.place_id),
        enrichment=enrichment,
        enrichment_status=advance_status(
            existing.enrichment_status, incoming.enrichment_status
        ),
        classification=existing.classification or incoming.classification,
        synthetic=existing.synthetic and incoming.synthetic,
        search_query=_prefer(existing.search_query, incoming.search_query),
        search_location=_prefer(existing.search_location, incoming.search_location),
        created_at=min(existing.created_at, incoming.created_at),
    )
