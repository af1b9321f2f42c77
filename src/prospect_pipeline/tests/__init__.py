"""
Prospect Pipeline Test Package.

This package contains unit tests for the prospect pipeline modules.

Test categories:
- test_config.py: Configuration and environment variable loading
- test_models.py: Pydantic model validation
- test_identity.py / test_merge.py: Identity resolution and merge rules
- test_lead_set.py / test_coalescer.py: Mutation gate, run tokens, batching
- test_discovery_client.py / test_ingestion.py: Streaming discovery
- test_enrichment.py: Enrichment event sink
- test_stores.py / test_remote_backup.py / test_persistence.py: Storage tiers
- test_workflow.py / test_pipeline.py: Workflow and facade
"""

__all__ = []
