"""Prospect lead-acquisition pipeline.

This package ingests streamed prospect-discovery results, reconciles them into
a single canonical lead list, persists that list across session, durable and
remote tiers, and drives the resumable search/review/outreach/calling workflow.
"""

__version__ = "0.1.0"

from .models import (
    DiscoveryError,
    DiscoveryTransportError,
    Enrichment,
    EnrichmentStatus,
    Lead,
    PipelineError,
    RemoteBackupError,
    SearchContext,
    SearchMode,
    SearchOutcome,
    OutcomeKind,
    WorkflowStage,
)

__all__ = [
    "__version__",
    "DiscoveryError",
    "DiscoveryTransportError",
    "Enrichment",
    "EnrichmentStatus",
    "Lead",
    "OutcomeKind",
    "PipelineError",
    "RemoteBackupError",
    "SearchContext",
    "SearchMode",
    "SearchOutcome",
    "WorkflowStage",
]
