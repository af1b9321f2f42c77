"""Client-side lead filters.

Filters are registered by name so a SearchContext can carry them as plain
strings. Use ``@register_filter("name")`` to add one.
"""

from typing import Callable, Dict, Iterable, List, Optional

from .logging_utils import get_logger
from .models import Lead

logger = get_logger(__name__)

LeadPredicate = Callable[[Lead], bool]

FILTERS: Dict[str, LeadPredicate] = {}


def register_filter(name: str):
    """Decorator to register a lead predicate under a filter name.

    Example:
        @register_filter("has_phone")
        def has_phone(lead: Lead) -> bool:
            return bool(lead.phone)
    """

    def decorator(func: LeadPredicate) -> LeadPredicate:
        FILTERS[name] = func
        return func

    return decorator


def get_filter(name: str) -> Optional[LeadPredicate]:
    return FILTERS.get(name)


def available_filters() -> List[str]:
    return sorted(FILTERS)


@register_filter("has_phone")
def has_phone(lead: Lead) -> bool:
    return bool(lead.all_phones)


@register_filter("has_website")
def has_website(lead: Lead) -> bool:
    return bool(lead.website)


@register_filter("no_website")
def no_website(lead: Lead) -> bool:
    return not lead.website


@register_filter("has_email")
def has_email(lead: Lead) -> bool:
    return bool(lead.all_emails)


@register_filter("min_rating_4")
def min_rating_4(lead: Lead) -> bool:
    return lead.rating is not None and lead.rating >= 4.0


def apply_filters(leads: Iterable[Lead], names: Iterable[str]) -> List[Lead]:
    """Keep leads that satisfy every named filter.

    Unknown filter names are logged and ignored.
    """
    predicates = []
    for name in sorted(set(names)):
        predicate = get_filter(name)
        if predicate is None:
            logger.warning(f"Unknown lead filter ignored: {name}")
            continue
        predicates.append(predicate)

    return [lead for lead in leads if all(p(lead) for p in predicates)]


def finalize_leads(
    leads: Iterable[Lead], names: Iterable[str], limit: int
) -> List[Lead]:
    """Filter, then truncate to ``limit`` keeping arrival order."""
    return apply_filters(leads, names)[: max(limit, 0)]
