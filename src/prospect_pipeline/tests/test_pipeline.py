# src/prospect_pipeline/tests/test_pipeline.py
"""
Unit tests for the LeadPipeline facade.

Tests cover:
- Search results mirrored to local tiers and backed up remotely
- Workflow opening Review after a successful search
- Hard failures keeping the previous set and context
- Enrichment callbacks across a new search
- Restore precedence and credential changes
- Manual save and reset
"""
import os
from unittest.mock import patch

import pytest

from prospect_pipeline.config import ConfigError, PipelineConfig
from prospect_pipeline.models import (
    Lead,
    OutcomeKind,
    PartialBatch,
    PersistenceRecord,
    SearchContext,
    SearchMode,
    TerminalEvent,
    TerminalKind,
    WorkflowStage,
    WorkflowState,
)
from prospect_pipeline.persistence import RECORD_KEY, TieredPersistenceManager
from prospect_pipeline.pipeline import LeadPipeline
from prospect_pipeline.stores import InMemoryKeyValueStore
from prospect_pipeline.tests.test_ingestion import FakeProvider, records
from prospect_pipeline.tests.test_persistence import FakeRemote


def make_settings() -> PipelineConfig:
    settings = PipelineConfig()
    settings.FLUSH_INTERVAL_MS = 0
    settings.RECONNECT_MAX_ATTEMPTS = 1
    settings.RECONNECT_DELAY_SECONDS = 0.0
    settings.PARTIAL_RESULT_THRESHOLD = 0.95
    return settings


def make_pipeline(provider, remote=None, session=None, durable=None):
    session = session or InMemoryKeyValueStore()
    durable = durable or InMemoryKeyValueStore()
    persistence = TieredPersistenceManager(session, durable, remote, autosave_interval=60)
    pipeline = LeadPipeline(provider, persistence, settings=make_settings())
    return pipeline, session, durable


def success(count, start=0):
    return [PartialBatch(leads=records(count, start=start)), TerminalEvent(total=count)]


class TestSearch:
    """Tests for searching through the facade."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_search_persists_and_opens_review(self):
        remote = FakeRemote()
        pipeline, session, durable = make_pipeline(FakeProvider(success(5)), remote)
        context = SearchContext(query="plumber", location="Austin, TX", requested_count=5)

        outcome = await pipeline.run_search(context)
        await pipeline.persistence.wait_for_backups()

        assert outcome.kind == OutcomeKind.COMPLETE
        assert len(pipeline.leads) == 5
        assert pipeline.stage == WorkflowStage.REVIEW
        assert pipeline.search_context == context

        stored = PersistenceRecord.model_validate_json(await durable.get(RECORD_KEY))
        assert len(stored.leads) == 5
        assert stored.search_context == context
        assert stored.workflow.stage == WorkflowStage.REVIEW
        assert await session.get(RECORD_KEY) is not None
        assert len(remote.saves) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_search_keeps_previous_state(self):
        provider = FakeProvider(
            success(3),
            [TerminalEvent(kind=TerminalKind.FAILURE, error="quota exceeded")],
        )
        pipeline, _, _ = make_pipeline(provider)
        first = SearchContext(query="plumber", requested_count=3)

        await pipeline.run_search(first)
        before = [lead.id for lead in pipeline.leads]
        outcome = await pipeline.run_search(SearchContext(query="roofer"))

        assert outcome.kind == OutcomeKind.FAILED
        assert outcome.error == "quota exceeded"
        assert [lead.id for lead in pipeline.leads] == before
        assert pipeline.search_context == first

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_filtered_out_search_keeps_previous_leads_and_tiers(self):
        provider = FakeProvider(success(5), success(3, start=10))
        pipeline, session, durable = make_pipeline(provider)
        first = SearchContext(query="plumber", requested_count=5)

        await pipeline.run_search(first)
        before = [lead.id for lead in pipeline.leads]
        outcome = await pipeline.run_search(
            SearchContext(query="dentist", requested_count=3, filters={"min_rating_4"})
        )

        assert outcome.kind == OutcomeKind.FAILED
        assert [lead.id for lead in pipeline.leads] == before
        assert pipeline.search_context == first
        for store in (session, durable):
            stored = PersistenceRecord.model_validate_json(await store.get(RECORD_KEY))
            assert [lead.id for lead in stored.leads] == before
            assert stored.search_context.query == "plumber"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_first_search_filtered_out_leaves_tiers_empty(self):
        pipeline, session, durable = make_pipeline(FakeProvider(success(3)))

        outcome = await pipeline.run_search(
            SearchContext(query="dentist", requested_count=3, filters={"min_rating_4"})
        )

        assert outcome.kind == OutcomeKind.FAILED
        assert pipeline.leads == []
        assert pipeline.stage == WorkflowStage.SEARCH
        assert await session.get(RECORD_KEY) is None
        assert await durable.get(RECORD_KEY) is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_append_continues_partial_search(self):
        provider = FakeProvider(success(3), success(3, start=2))
        pipeline, _, _ = make_pipeline(provider)
        context = SearchContext(query="plumber", requested_count=10)

        first = await pipeline.run_search(context)
        second = await pipeline.run_search(context, SearchMode.APPEND)

        assert first.kind == OutcomeKind.PARTIAL
        assert first.can_continue is True
        assert len(pipeline.leads) == 5
        assert second.found_count == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stale_enrichment_after_new_search(self):
        provider = FakeProvider(success(2), success(2))
        pipeline, _, _ = make_pipeline(provider)
        context = SearchContext(query="plumber", requested_count=2)

        await pipeline.run_search(context)
        lead_id = pipeline.leads[0].id
        callback = pipeline.enrichment_callback()
        await pipeline.run_search(context)

        result = await callback(lead_id, {"emails": ["late@x.com"]})

        assert result is None
        assert all(lead.enrichment is None for lead in pipeline.leads)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_enrichment_mirrored_locally(self):
        pipeline, _, durable = make_pipeline(FakeProvider(success(2)))
        await pipeline.run_search(SearchContext(query="plumber", requested_count=2))
        lead_id = pipeline.leads[0].id

        await pipeline.on_enrichment(lead_id, {"emails": ["info@x.com"]})

        stored = PersistenceRecord.model_validate_json(await durable.get(RECORD_KEY))
        enriched = next(lead for lead in stored.leads if lead.id == lead_id)
        assert enriched.email == "info@x.com"


class TestRestore:
    """Tests for restoring persisted state."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_restore_from_durable(self):
        durable = InMemoryKeyValueStore()
        record = PersistenceRecord(
            leads=[Lead(id="a", name="Acme")],
            search_context=SearchContext(query="plumber"),
            workflow=WorkflowState(stage=WorkflowStage.OUTREACH_SETUP),
        )
        await durable.set(RECORD_KEY, record.model_dump_json())
        remote = FakeRemote(leads=[Lead(id="r", name="Remote")])
        pipeline, _, _ = make_pipeline(FakeProvider(success(1)), remote, durable=durable)

        restored = await pipeline.restore()

        assert restored is not None
        assert [lead.id for lead in pipeline.leads] == ["a"]
        assert pipeline.stage == WorkflowStage.OUTREACH_SETUP
        assert pipeline.search_context.query == "plumber"
        assert remote.fetch_calls == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_new_credential_resets_workflow(self):
        durable = InMemoryKeyValueStore()
        record = PersistenceRecord(
            leads=[Lead(id="a", name="Acme")],
            search_context=SearchContext(query="plumber"),
            workflow=WorkflowState(stage=WorkflowStage.CALLING),
        )
        await durable.set(RECORD_KEY, record.model_dump_json())
        pipeline, _, _ = make_pipeline(FakeProvider(success(1)), durable=durable)
        await pipeline.persistence.check_credential("old-token")

        await pipeline.sign_in("new-token")

        assert pipeline.stage == WorkflowStage.SEARCH
        assert pipeline.search_context is None
        assert [lead.id for lead in pipeline.leads] == ["a"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_restore_with_nothing_stored(self):
        pipeline, _, _ = make_pipeline(FakeProvider(success(1)))

        assert await pipeline.restore() is None
        assert pipeline.stage == WorkflowStage.SEARCH


class TestSaveAndReset:
    """Tests for manual save and destructive reset."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_manual_save(self):
        remote = FakeRemote()
        pipeline, _, _ = make_pipeline(FakeProvider(success(2)), remote)
        await pipeline.run_search(SearchContext(query="plumber", requested_count=2))
        await pipeline.persistence.wait_for_backups()

        result = await pipeline.save()

        assert result.local_saved is True
        assert result.remote_saved is True
        assert len(remote.saves) == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_reset_clears_everything(self):
        remote = FakeRemote(fail=False)
        pipeline, session, durable = make_pipeline(FakeProvider(success(2)), remote)
        await pipeline.run_search(SearchContext(query="plumber", requested_count=2))
        await pipeline.persistence.wait_for_backups()
        token = pipeline.run_token

        result = await pipeline.reset()

        assert result.local_cleared is True
        assert result.remote_deleted is True
        assert pipeline.leads == []
        assert pipeline.stage == WorkflowStage.SEARCH
        assert pipeline.search_context is None
        assert pipeline.run_token == token + 1
        assert await durable.get(RECORD_KEY) is None
        assert await session.get(RECORD_KEY) is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_review_after_reset_shows_empty_state(self):
        pipeline, _, _ = make_pipeline(FakeProvider(success(2)))
        await pipeline.run_search(SearchContext(query="plumber", requested_count=2))
        await pipeline.reset()

        result = await pipeline.go_to(WorkflowStage.REVIEW)

        assert result.empty_state is True
        assert pipeline.stage == WorkflowStage.SEARCH


class TestFromConfig:
    """Tests for LeadPipeline.from_config()."""

    @pytest.mark.unit
    def test_requires_discovery_url(self):
        with patch.dict(os.environ, {}, clear=True):
            settings = PipelineConfig()

        with pytest.raises(ConfigError):
            LeadPipeline.from_config(settings)

    @pytest.mark.unit
    def test_remote_tier_only_when_configured(self):
        env = {
            "DISCOVERY_API_URL": "https://discovery.example.com",
            "DURABLE_STORE_URL": "sqlite:///:memory:",
        }
        with patch.dict(os.environ, env, clear=True):
            settings = PipelineConfig()

        pipeline = LeadPipeline.from_config(settings)

        assert pipeline.persistence.remote is None
        assert pipeline.stage == WorkflowStage.SEARCH
