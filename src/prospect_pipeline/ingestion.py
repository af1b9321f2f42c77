# ingestion.py
"""Streaming ingestion controller.

Consumes a discovery stream, coalesces partial batches into the lead set,
reconnects a bounded number of times while nothing has been received yet,
and classifies the run as complete, partial, interrupted, failed or
cancelled. Filters, truncation and scoring run once when the stream ends.
"""

import asyncio
from typing import AsyncIterator, List, Optional

from .coalescer import BatchCoalescer
from .config import config
from .discovery_client import DiscoveryProvider
from .filters import finalize_leads
from .lead_set import LeadSet
from .logging_utils import get_logger
from .models import (
    ConnectionStatus,
    DiscoveryError,
    DiscoveryTransportError,
    IngestionUpdate,
    Lead,
    OutcomeKind,
    PartialBatch,
    ProgressEvent,
    SearchContext,
    SearchMode,
    SearchOutcome,
    TerminalEvent,
    TerminalKind,
)
from .scoring import PassthroughScorer, Scorer

logger = get_logger(__name__)


class _SearchRun:
    """Mutable bookkeeping for one search invocation."""

    def __init__(
        self, token: int, context: SearchContext, mode: SearchMode, seeded: int
    ):
        self.token = token
        self.context = context
        self.mode = mode
        self.seeded = seeded
        # Resident leads when the run started, restored if nothing survives finalize
        self.previous: List[Lead] = []
        self.cancelled = False
        # Append runs keep the resident leads; replace runs clear on first flush.
        self.cleared = mode == SearchMode.APPEND
        self.batches = 0
        self.received = 0
        self.flushed = 0
        self.progress = 0.0
        self.coverage = None
        self.attempt = 0


class StreamingIngestionController:
    """Drive one discovery search at a time into a LeadSet."""

    def __init__(
        self,
        lead_set: LeadSet,
        provider: DiscoveryProvider,
        scorer: Optional[Scorer] = None,
        flush_interval: Optional[float] = None,
        max_reconnect_attempts: Optional[int] = None,
        reconnect_delay: Optional[float] = None,
        partial_threshold: Optional[float] = None,
    ):
        self.lead_set = lead_set
        self.provider = provider
        self.scorer = scorer or PassthroughScorer()
        self.flush_interval = (
            flush_interval
            if flush_interval is not None
            else config.flush_interval_seconds
        )
        self.max_reconnect_attempts = (
            max_reconnect_attempts
            if max_reconnect_attempts is not None
            else config.RECONNECT_MAX_ATTEMPTS
        )
        self.reconnect_delay = (
            reconnect_delay
            if reconnect_delay is not None
            else config.RECONNECT_DELAY_SECONDS
        )
        self.partial_threshold = (
            partial_threshold
            if partial_threshold is not None
            else config.PARTIAL_RESULT_THRESHOLD
        )
        self._active: Optional[_SearchRun] = None

    @property
    def is_running(self) -> bool:
        return self._active is not None and not self._active.cancelled

    def cancel(self) -> None:
        """Stop applying results from the in-flight search, if any."""
        if self._active is not None:
            self._active.cancelled = True

    async def start_search(
        self, context: SearchContext, mode: SearchMode = SearchMode.REPLACE
    ) -> AsyncIterator[IngestionUpdate]:
        """Run a search and yield progress updates.

        The last update carries the SearchOutcome. Closing the iterator early
        cancels the run and discards anything not yet merged.
        """
        self.cancel()
        token = await self.lead_set.begin_run(mode)
        previous = await self.lead_set.snapshot()
        seeded = len(previous) if mode == SearchMode.APPEND else 0
        run = _SearchRun(token, context, mode, seeded)
        run.previous = previous
        self._active = run

        coalescer: BatchCoalescer[Lead] = BatchCoalescer(
            lambda leads: self._flush(run, leads), interval=self.flush_interval
        )
        outcome: Optional[SearchOutcome] = None

        logger.info(
            f"Starting {mode.value} search for '{context.query}'",
            extra={"run_token": token, "requested_count": context.requested_count},
        )

        try:
            yield self._update(run, ConnectionStatus.VERIFYING)

            kind: Optional[OutcomeKind] = None
            error: Optional[str] = None
            while kind is None:
                try:
                    connected = False
                    stream = self.provider.search(context)
                    try:
                        async for event in stream:
                            if run.cancelled:
                                break
                            if not connected:
                                connected = True
                                yield self._update(run, ConnectionStatus.CONNECTED)

                            if isinstance(event, PartialBatch):
                                leads = self._to_leads(event.leads, context)
                                run.batches += 1
                                run.received += len(leads)
                                await coalescer.add(leads)
                            elif isinstance(event, ProgressEvent):
                                run.progress = max(
                                    run.progress, min(100.0, event.progress)
                                )
                                if event.coverage is not None:
                                    run.coverage = event.coverage
                                yield self._update(run, ConnectionStatus.CONNECTED)
                            elif isinstance(event, TerminalEvent):
                                kind, error = self._terminal_kind(run, event)
                                break
                    finally:
                        aclose = getattr(stream, "aclose", None)
                        if aclose is not None:
                            await aclose()

                    if run.cancelled:
                        kind = OutcomeKind.CANCELLED
                    elif kind is None:
                        raise DiscoveryTransportError(
                            "Discovery stream ended without a terminal event"
                        )

                except DiscoveryTransportError as e:
                    error = str(e)
                    if run.received:
                        logger.warning(
                            f"Discovery stream dropped after {run.received} leads: {e}",
                            extra={"run_token": token},
                        )
                        kind = OutcomeKind.INTERRUPTED
                    elif run.attempt >= self.max_reconnect_attempts:
                        logger.error(
                            f"Discovery unreachable after {run.attempt} reconnect attempts: {e}",
                            extra={"run_token": token},
                        )
                        kind = OutcomeKind.FAILED
                    else:
                        run.attempt += 1
                        delay = self.reconnect_delay * (2 ** (run.attempt - 1))
                        logger.warning(
                            f"Attempt {run.attempt}/{self.max_reconnect_attempts} "
                            f"failed: {e}. Retrying in {delay:.1f}s...",
                            extra={"run_token": token},
                        )
                        yield self._update(run, ConnectionStatus.RETRYING)
                        await asyncio.sleep(delay)
                        yield self._update(run, ConnectionStatus.VERIFYING)

                except DiscoveryError as e:
                    logger.error(
                        f"Discovery request rejected: {e}", extra={"run_token": token}
                    )
                    error = str(e)
                    kind = (
                        OutcomeKind.INTERRUPTED if run.received else OutcomeKind.FAILED
                    )

            if kind == OutcomeKind.CANCELLED:
                await coalescer.close(discard=True)
            else:
                await coalescer.close()

            outcome = await self._finish(run, kind, error)
            status = (
                ConnectionStatus.FAILED
                if outcome.kind == OutcomeKind.FAILED
                else ConnectionStatus.CONNECTED
            )
            yield self._update(run, status, outcome=outcome)

        finally:
            if outcome is None:
                run.cancelled = True
                await coalescer.close(discard=True)
            if self._active is run:
                self._active = None

    async def run_search(
        self, context: SearchContext, mode: SearchMode = SearchMode.REPLACE
    ) -> SearchOutcome:
        """Run a search to completion and return its outcome."""
        outcome: Optional[SearchOutcome] = None
        async for update in self.start_search(context, mode):
            if update.outcome is not None:
                outcome = update.outcome
        return outcome

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _to_leads(records: List[dict], context: SearchContext) -> List[Lead]:
        leads = []
        for record in records:
            try:
                leads.append(Lead.from_provider(record, context))
            except ValueError as e:
                logger.warning(f"Skipping invalid provider record: {e}")
        return leads

    @staticmethod
    def _terminal_kind(run: _SearchRun, event: TerminalEvent):
        if event.kind == TerminalKind.FAILURE:
            kind = OutcomeKind.INTERRUPTED if run.received else OutcomeKind.FAILED
            return kind, event.error or "Search failed"
        if event.kind == TerminalKind.PARTIAL:
            return OutcomeKind.PARTIAL, None
        return OutcomeKind.COMPLETE, None

    async def _flush(self, run: _SearchRun, leads: List[Lead]) -> None:
        if run.cancelled:
            return
        added = await self.lead_set.apply_batch(
            leads, run.token, clear=not run.cleared
        )
        if added is None:
            run.cancelled = True
            return
        run.cleared = True
        run.flushed += len(leads)

    async def _finish(
        self, run: _SearchRun, kind: OutcomeKind, error: Optional[str]
    ) -> SearchOutcome:
        context = run.context

        def outcome(kind: OutcomeKind, found: int = 0, error: Optional[str] = None):
            return SearchOutcome(
                kind=kind,
                run_token=run.token,
                requested_count=context.requested_count,
                found_count=found,
                received_count=run.received,
                error=error,
            )

        if kind == OutcomeKind.CANCELLED or run.cancelled:
            logger.info("Search cancelled", extra={"run_token": run.token})
            return outcome(OutcomeKind.CANCELLED)

        if kind == OutcomeKind.FAILED or run.flushed == 0:
            logger.error(
                f"Search for '{context.query}' produced no results",
                extra={"run_token": run.token},
            )
            return outcome(OutcomeKind.FAILED, error=error or "No results found")

        limit = context.requested_count + run.seeded

        def transform(leads: List[Lead]) -> List[Lead]:
            return self.scorer.score(finalize_leads(leads, context.filters, limit))

        final = await self.lead_set.finalize(run.token, transform, fallback=run.previous)
        if final is None:
            return outcome(OutcomeKind.CANCELLED)
        if not final:
            logger.warning(
                f"No leads for '{context.query}' matched the active filters",
                extra={"run_token": run.token, "received": run.received},
            )
            return outcome(
                OutcomeKind.FAILED, error="No leads matched the active filters"
            )

        found = max(0, len(final) - run.seeded)
        if (
            kind == OutcomeKind.COMPLETE
            and found < context.requested_count * self.partial_threshold
        ):
            kind = OutcomeKind.PARTIAL

        logger.info(
            f"Search finished: {kind.value}, {found}/{context.requested_count} leads",
            extra={"run_token": run.token, "received": run.received},
        )
        return outcome(kind, found=found, error=error)

    def _update(
        self,
        run: _SearchRun,
        status: ConnectionStatus,
        outcome: Optional[SearchOutcome] = None,
    ) -> IngestionUpdate:
        return IngestionUpdate(
            run_token=run.token,
            status=status,
            progress=100.0 if outcome is not None else run.progress,
            coverage=run.coverage,
            lead_count=len(self.lead_set),
            attempt=run.attempt,
            outcome=outcome,
        )
