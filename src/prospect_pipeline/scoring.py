"""Scoring hook run once per completed or partial search."""

from typing import List, Protocol

from .models import Lead


class Scorer(Protocol):
    """Synchronous, local classifier that annotates leads.

    Implementations return the leads (same ids, same order) with their
    ``classification`` filled in.
    """

    def score(self, leads: List[Lead]) -> List[Lead]:
        ...


class PassthroughScorer:
    """Scorer that leaves leads unchanged."""

    def score(self, leads: List[Lead]) -> List[Lead]:
        return list(leads)
