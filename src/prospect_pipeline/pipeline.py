# pipeline.py
"""Lead pipeline facade.

Wires the lead set, ingestion controller, enrichment sink, persistence
manager and workflow state machine together and keeps the local storage
tiers in step with every mutation.
"""

from typing import AsyncIterator, Iterable, List, Optional

from .config import PipelineConfig, config
from .discovery_client import DiscoveryClient, DiscoveryProvider
from .enrichment import EnrichmentCallback, EnrichmentEventSink, SocialProfileCache
from .ingestion import StreamingIngestionController
from .lead_set import LeadSet
from .logging_utils import get_logger
from .models import (
    IngestionUpdate,
    Lead,
    OutcomeKind,
    PersistenceRecord,
    ResetResult,
    SaveResult,
    SearchContext,
    SearchMode,
    SearchOutcome,
    WorkflowStage,
    WorkflowState,
)
from .persistence import TieredPersistenceManager
from .remote_backup import RemoteBackupClient
from .scoring import Scorer
from .stores import InMemoryKeyValueStore, SqlKeyValueStore
from .workflow import TransitionResult, WorkflowStateMachine

logger = get_logger(__name__)


class LeadPipeline:
    """Entry point for searching, enriching, persisting and reviewing leads."""

    def __init__(
        self,
        provider: DiscoveryProvider,
        persistence: TieredPersistenceManager,
        scorer: Optional[Scorer] = None,
        social_cache: Optional[SocialProfileCache] = None,
        settings: Optional[PipelineConfig] = None,
    ):
        settings = settings or config
        self.provider = provider
        self.persistence = persistence
        self.search_context: Optional[SearchContext] = None

        self.lead_set = LeadSet()
        self.lead_set.add_listener(self._mirror)
        self.ingestion = StreamingIngestionController(
            self.lead_set,
            provider,
            scorer=scorer,
            flush_interval=settings.flush_interval_seconds,
            max_reconnect_attempts=settings.RECONNECT_MAX_ATTEMPTS,
            reconnect_delay=settings.RECONNECT_DELAY_SECONDS,
            partial_threshold=settings.PARTIAL_RESULT_THRESHOLD,
        )
        self.enrichment = EnrichmentEventSink(self.lead_set, social_cache)
        self.workflow = WorkflowStateMachine(
            lambda: len(self.lead_set), on_change=self._workflow_changed
        )

    @classmethod
    def from_config(
        cls,
        settings: Optional[PipelineConfig] = None,
        account_id: str = "default",
        scorer: Optional[Scorer] = None,
        social_cache: Optional[SocialProfileCache] = None,
    ) -> "LeadPipeline":
        """Build a pipeline from configuration.

        The remote backup tier is only wired in when REMOTE_BACKUP_URL is set.

        Raises:
            ConfigError: If the discovery provider is not configured.
        """
        settings = settings or config
        settings.validate_for_discovery()

        remote = None
        if settings.REMOTE_BACKUP_URL:
            remote = RemoteBackupClient(
                base_url=settings.REMOTE_BACKUP_URL,
                auth_token=settings.AUTH_TOKEN,
                timeout=settings.REMOTE_BACKUP_TIMEOUT_SECONDS,
            )

        persistence = TieredPersistenceManager(
            session_store=InMemoryKeyValueStore(),
            durable_store=SqlKeyValueStore(
                settings.DURABLE_STORE_URL, namespace=account_id
            ),
            remote=remote,
            autosave_interval=settings.AUTOSAVE_INTERVAL_SECONDS,
            fetch_limit=settings.REMOTE_FETCH_LIMIT,
        )
        provider = DiscoveryClient(
            base_url=settings.DISCOVERY_API_URL,
            auth_token=settings.AUTH_TOKEN,
            timeout=settings.DISCOVERY_TIMEOUT_SECONDS,
        )
        return cls(provider, persistence, scorer, social_cache, settings)

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    @property
    def leads(self) -> List[Lead]:
        return self.lead_set.leads()

    @property
    def stage(self) -> WorkflowStage:
        return self.workflow.stage

    @property
    def run_token(self) -> int:
        return self.lead_set.generation

    def operative_leads(self) -> List[Lead]:
        """Leads the outreach and calling stages act on."""
        return self.workflow.operative_leads(self.leads)

    async def snapshot(self) -> PersistenceRecord:
        """Consistent copy of the current state for persistence."""
        leads = await self.lead_set.snapshot()
        return self._record(leads)

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def restore(self, credential: Optional[str] = None) -> Optional[PersistenceRecord]:
        """Load persisted state, handling a change of session credential."""
        changed = False
        if credential:
            changed = await self.persistence.check_credential(credential)
            if changed:
                logger.info("New session credential, resetting workflow")
                await self.persistence.discard_session_context()

        record = await self.persistence.load()
        if record is None:
            self.workflow.reset()
            return None

        await self.lead_set.load(record.leads)
        if changed:
            self.search_context = None
            self.workflow.reset()
        else:
            self.search_context = record.search_context
            self.workflow.restore(record.workflow)
        return record

    async def sign_in(self, credential: str) -> Optional[PersistenceRecord]:
        return await self.restore(credential)

    async def sign_out(self) -> None:
        """End the logical session, dropping the session tier."""
        self.ingestion.cancel()
        await self.persistence.end_session()
        self.workflow.reset()
        self.search_context = None

    async def close(self) -> None:
        self.ingestion.cancel()
        await self.persistence.close()
        for resource in (self.provider, self.persistence.remote, self.persistence.durable_store):
            close = getattr(resource, "close", None)
            if close is not None:
                await close()

    # ------------------------------------------------------------------
    # Searching
    # ------------------------------------------------------------------

    async def start_search(
        self, context: SearchContext, mode: SearchMode = SearchMode.REPLACE
    ) -> AsyncIterator[IngestionUpdate]:
        """Stream a search into the lead set, yielding progress updates.

        A hard failure keeps the previous search context; any other outcome
        adopts the new one, backs it up remotely and opens Review.
        """
        previous_context = self.search_context
        self.search_context = context

        async for update in self.ingestion.start_search(context, mode):
            if update.outcome is not None:
                await self._search_finished(update.outcome, previous_context)
            yield update

    async def run_search(
        self, context: SearchContext, mode: SearchMode = SearchMode.REPLACE
    ) -> SearchOutcome:
        outcome: Optional[SearchOutcome] = None
        async for update in self.start_search(context, mode):
            if update.outcome is not None:
                outcome = update.outcome
        return outcome

    async def _search_finished(
        self, outcome: SearchOutcome, previous_context: Optional[SearchContext]
    ) -> None:
        if outcome.kind in (OutcomeKind.FAILED, OutcomeKind.CANCELLED):
            self.search_context = previous_context
            if len(self.lead_set):
                # Tiers were written with the abandoned search's context
                await self.persistence.mirror_local(await self.snapshot())
            return

        record = await self.snapshot()
        await self.persistence.mirror_local(record)
        self.persistence.backup_in_background(record)
        if self.workflow.stage == WorkflowStage.SEARCH and len(self.lead_set):
            await self.workflow.advance()

    # ------------------------------------------------------------------
    # Enrichment
    # ------------------------------------------------------------------

    async def on_enrichment(
        self, lead_id: str, payload, run_token: Optional[int] = None
    ) -> Optional[Lead]:
        return await self.enrichment.on_enrichment(lead_id, payload, run_token)

    def enrichment_callback(self) -> EnrichmentCallback:
        """Callback bound to the current run token."""
        return self.enrichment.subscribe()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def save(self) -> SaveResult:
        """Manual save to every tier."""
        return await self.persistence.save(await self.snapshot())

    def start_autosave(self) -> None:
        self.persistence.start_autosave(self.snapshot)

    def stop_autosave(self) -> None:
        self.persistence.stop_autosave()

    async def reset(self) -> ResetResult:
        """Clear the lead set, the workflow and every storage tier."""
        self.ingestion.cancel()
        await self.lead_set.reset()
        self.search_context = None
        self.workflow.reset()
        return await self.persistence.clear_all()

    # ------------------------------------------------------------------
    # Workflow
    # ------------------------------------------------------------------

    async def advance(self) -> TransitionResult:
        return await self.workflow.advance()

    async def rewind(self) -> TransitionResult:
        return await self.workflow.rewind()

    async def go_to(self, stage: WorkflowStage) -> TransitionResult:
        return await self.workflow.go_to(stage)

    async def select(self, lead_ids: Iterable[str]) -> None:
        await self.workflow.select(lead_ids)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _record(
        self, leads: List[Lead], workflow: Optional[WorkflowState] = None
    ) -> PersistenceRecord:
        return PersistenceRecord(
            leads=leads,
            search_context=self.search_context,
            workflow=workflow or self.workflow.state,
        )

    async def _mirror(self, leads: List[Lead]) -> None:
        if not leads:
            # A finalized run fell back to an empty set; drop what it wrote
            await self.persistence.clear_local()
            return
        await self.persistence.mirror_local(self._record(leads))

    async def _workflow_changed(self, state: WorkflowState) -> None:
        leads = self.lead_set.leads()
        if leads:
            await self.persistence.mirror_local(self._record(leads, state))
