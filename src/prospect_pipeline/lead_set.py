# lead_set.py
"""In-memory lead set guarded by a single mutation gate.

Every mutation path (streaming batches, enrichment events, finalization,
restore and reset) goes through the same ``asyncio.Lock`` so no update is
lost. A monotonically increasing generation acts as the run token: work
started under an older generation is dropped instead of being applied to a
newer set.
"""

import asyncio
import uuid
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

from .identity import identity_key, is_same_identity, normalize
from .logging_utils import get_logger
from .merge import advance_status, merge_leads
from .models import Enrichment, EnrichmentStatus, Lead, SearchMode

logger = get_logger(__name__)

LeadListener = Callable[[List[Lead]], Awaitable[None]]


class LeadSet:
    """Identity-deduplicated collection of leads.

    Leads are stored by id and indexed by normalized name; identity matching
    only ever compares leads that share a name.

    Subset matching is not transitive, so the resulting count can depend on
    arrival order: {name, phone}, {name, address}, {name, phone, address}
    leaves two leads, while the reverse order collapses to one. This is part
    of the heuristic identity key's known false-negative risk and is kept
    until a stronger identifier (such as a provider place id) is available.
    """

    def __init__(self, leads: Optional[Iterable[Lead]] = None):
        self._leads: Dict[str, Lead] = {}
        self._by_name: Dict[str, List[str]] = {}
        self._generation = 0
        self._lock = asyncio.Lock()
        self._listeners: List[LeadListener] = []

        for lead in leads or []:
            self._upsert(lead)

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    @property
    def generation(self) -> int:
        """Current run token."""
        return self._generation

    def is_current(self, token: Optional[int]) -> bool:
        return token is None or token == self._generation

    def __len__(self) -> int:
        return len(self._leads)

    def __contains__(self, lead_id: object) -> bool:
        return lead_id in self._leads

    def get(self, lead_id: str) -> Optional[Lead]:
        return self._leads.get(lead_id)

    def leads(self) -> List[Lead]:
        """Arrival-ordered copy of the current leads."""
        return list(self._leads.values())

    def keys(self) -> List[str]:
        """Identity keys of the current leads."""
        return [identity_key(lead) for lead in self._leads.values()]

    async def snapshot(self) -> List[Lead]:
        """Copy of the leads taken while holding the mutation gate."""
        async with self._lock:
            return list(self._leads.values())

    def add_listener(self, listener: LeadListener) -> None:
        """Register a coroutine called with a snapshot after each mutation.

        Listeners run inside the mutation gate and only when the set is
        non-empty, except after a finalize that fell back to an empty set;
        they must not call back into the lead set.
        """
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Write side
    # ------------------------------------------------------------------

    async def begin_run(self, mode: SearchMode) -> int:
        """Return the token for a new ingestion run.

        Replace-mode runs bump the generation so in-flight enrichment results
        and flushes from earlier runs are discarded. Append-mode runs keep the
        current generation since the resident leads stay valid.
        """
        async with self._lock:
            if mode == SearchMode.REPLACE:
                self._generation += 1
            return self._generation

    async def apply_batch(
        self, leads: Iterable[Lead], token: int, clear: bool = False
    ) -> Optional[int]:
        """Merge a batch of leads.

        Args:
            leads: Incoming leads.
            token: Run token the batch was produced under.
            clear: Drop the resident leads first (first batch of a replace run).

        Returns:
            Number of newly added leads, or None if the token is stale.
        """
        async with self._lock:
            if token != self._generation:
                logger.debug(
                    "Dropping stale batch",
                    extra={"run_token": token, "generation": self._generation},
                )
                return None
            if clear:
                self._clear()
            added = sum(1 for lead in leads if self._upsert(lead))
            await self._notify()
            return added

    async def apply_enrichment(
        self, lead_id: str, enrichment: Enrichment, token: Optional[int] = None
    ) -> Optional[Lead]:
        """Fold enrichment data into a resident lead and mark it completed.

        Returns:
            The merged lead, or None if the token is stale or the id unknown.
        """
        async with self._lock:
            if not self.is_current(token):
                logger.debug(
                    f"Dropping stale enrichment for {lead_id}",
                    extra={"run_token": token, "generation": self._generation},
                )
                return None
            existing = self._leads.get(lead_id)
            if existing is None:
                logger.debug(f"Enrichment for unknown lead ignored: {lead_id}")
                return None

            incoming = existing.model_copy(
                update={
                    "enrichment": enrichment,
                    "enrichment_status": EnrichmentStatus.COMPLETED,
                }
            )
            merged = merge_leads(existing, incoming)
            self._leads[lead_id] = merged
            await self._notify()
            return merged

    async def advance_enrichment_status(
        self, lead_id: str, status: EnrichmentStatus, token: Optional[int] = None
    ) -> Optional[Lead]:
        """Move a lead's enrichment status forward.

        Returns:
            The updated lead, or None if nothing changed.
        """
        async with self._lock:
            if not self.is_current(token):
                return None
            existing = self._leads.get(lead_id)
            if existing is None:
                return None
            new_status = advance_status(existing.enrichment_status, status)
            if new_status == existing.enrichment_status:
                return None
            updated = existing.model_copy(update={"enrichment_status": new_status})
            self._leads[lead_id] = updated
            await self._notify()
            return updated

    async def finalize(
        self,
        token: int,
        transform: Callable[[List[Lead]], List[Lead]],
        fallback: Optional[List[Lead]] = None,
    ) -> Optional[List[Lead]]:
        """Replace the contents with ``transform(current leads)`` atomically.

        The transform runs inside the mutation gate so concurrent enrichment
        events are never overwritten by an older snapshot.

        When the transform leaves nothing and ``fallback`` is given, the set is
        restored to ``fallback`` instead; listeners are notified even if that
        leaves the set empty, since the run's leads were already published.

        Returns:
            The transformed leads (empty when the fallback was restored), or
            None if the token is stale.
        """
        async with self._lock:
            if token != self._generation:
                return None
            result = transform(list(self._leads.values()))
            if not result and fallback is not None:
                logger.info(
                    f"Finalized run left no leads, restoring {len(fallback)} previous",
                    extra={"run_token": token},
                )
                self._clear()
                for lead in fallback:
                    self._upsert(lead)
                await self._notify(allow_empty=True)
                return []
            self._clear()
            for lead in result:
                self._upsert(lead)
            await self._notify()
            return list(self._leads.values())

    async def load(self, leads: Iterable[Lead]) -> int:
        """Replace the contents with restored leads under a new generation."""
        async with self._lock:
            self._generation += 1
            self._clear()
            for lead in leads:
                self._upsert(lead)
            return self._generation

    async def reset(self) -> int:
        """Empty the set and invalidate every in-flight run."""
        async with self._lock:
            self._generation += 1
            self._clear()
            logger.info(
                "Lead set reset", extra={"run_token": self._generation}
            )
            return self._generation

    # ------------------------------------------------------------------
    # Internals (caller holds the lock)
    # ------------------------------------------------------------------

    def _clear(self) -> None:
        self._leads.clear()
        self._by_name.clear()

    def _upsert(self, lead: Lead) -> bool:
        name_key = normalize(lead.name)
        candidates = self._by_name.setdefault(name_key, [])
        for lead_id in candidates:
            existing = self._leads[lead_id]
            if is_same_identity(existing, lead):
                self._leads[lead_id] = merge_leads(existing, lead)
                return False

        if lead.id in self._leads:
            lead = lead.model_copy(update={"id": f"{lead.id}_{uuid.uuid4().hex[:8]}"})
        self._leads[lead.id] = lead
        candidates.append(lead.id)
        return True

    async def _notify(self, allow_empty: bool = False) -> None:
        if not self._listeners or (not self._leads and not allow_empty):
            return
        snapshot = list(self._leads.values())
        for listener in self._listeners:
            await listener(snapshot)
