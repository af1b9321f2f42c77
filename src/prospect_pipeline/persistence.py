# persistence.py
"""Tiered persistence of search results.

Three tiers hold the same PersistenceRecord:

- session tier: in-memory, fastest, dropped at the end of a logical session
- durable tier: local SQL store, survives restarts
- remote backup: cross-device copy, written asynchronously and best-effort

On load the freshest local copy wins; the remote tier is only consulted when
both local tiers are empty, and a successful remote load backfills them.
"""

import asyncio
import hashlib
from typing import Awaitable, Callable, Optional, Set

from pydantic import ValidationError

from .config import config
from .logging_utils import get_logger
from .models import (
    PersistenceRecord,
    RemoteBackupError,
    ResetResult,
    SaveOrigin,
    SaveResult,
    WorkflowState,
    utcnow,
)
from .remote_backup import RemoteBackup
from .stores import KeyValueStore

logger = get_logger(__name__)

RECORD_KEY = "search_results"
CREDENTIAL_KEY = "credential_fingerprint"

RecordProvider = Callable[[], Awaitable[Optional[PersistenceRecord]]]


def fingerprint(credential: str) -> str:
    """Stable, non-reversible fingerprint of a session credential."""
    return hashlib.sha256(credential.encode("utf-8")).hexdigest()


class TieredPersistenceManager:
    """Keep the session, durable and remote tiers in step."""

    def __init__(
        self,
        session_store: KeyValueStore,
        durable_store: KeyValueStore,
        remote: Optional[RemoteBackup] = None,
        autosave_interval: Optional[float] = None,
        fetch_limit: Optional[int] = None,
    ):
        self.session_store = session_store
        self.durable_store = durable_store
        self.remote = remote
        self.autosave_interval = (
            autosave_interval
            if autosave_interval is not None
            else config.AUTOSAVE_INTERVAL_SECONDS
        )
        self.fetch_limit = fetch_limit or config.REMOTE_FETCH_LIMIT

        self.last_local_save_at = None
        self.last_remote_save_at = None
        self.last_remote_error: Optional[str] = None

        self._autosave_task: Optional[asyncio.Task] = None
        self._backup_tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Load
    # ------------------------------------------------------------------

    async def load(self) -> Optional[PersistenceRecord]:
        """Restore the most authoritative non-empty record.

        Session tier first, then the durable tier; the remote backup is only
        fetched when both are empty. Remote failures degrade to None.
        """
        for tier_name, store in (
            ("session", self.session_store),
            ("durable", self.durable_store),
        ):
            record = await self._read(store, tier_name)
            if record is not None and not record.is_empty:
                logger.info(
                    f"Restored {len(record.leads)} leads from {tier_name} tier"
                )
                if store is self.durable_store:
                    await self.session_store.set(RECORD_KEY, record.model_dump_json())
                return record

        if self.remote is None:
            return None

        try:
            snapshot = await self.remote.fetch(limit=self.fetch_limit)
        except RemoteBackupError as e:
            logger.warning(f"Remote backup unavailable during restore: {e}")
            self.last_remote_error = str(e)
            return None

        if not snapshot.leads:
            return None

        record = PersistenceRecord(
            leads=snapshot.leads,
            search_context=snapshot.search_context,
            workflow=WorkflowState(),
            origin=SaveOrigin.REMOTE_BACKUP,
        )
        await self.mirror_local(record)
        logger.info(f"Restored {len(record.leads)} leads from remote backup")
        return record

    async def _read(
        self, store: KeyValueStore, tier_name: str
    ) -> Optional[PersistenceRecord]:
        raw = await store.get(RECORD_KEY)
        if not raw:
            return None
        try:
            return PersistenceRecord.model_validate_json(raw)
        except ValidationError as e:
            logger.warning(f"Discarding unreadable {tier_name} record: {e}")
            await store.delete(RECORD_KEY)
            return None

    # ------------------------------------------------------------------
    # Save
    # ------------------------------------------------------------------

    async def mirror_local(self, record: PersistenceRecord) -> bool:
        """Write a non-empty record to the session and durable tiers.

        Returns:
            False when the record is empty and nothing was written.
        """
        if record.is_empty:
            return False
        saved_at = utcnow()
        local = record.model_copy(
            update={"origin": SaveOrigin.LOCAL_CACHE, "saved_at": saved_at}
        )
        payload = local.model_dump_json()
        await self.session_store.set(RECORD_KEY, payload)
        await self.durable_store.set(RECORD_KEY, payload)
        self.last_local_save_at = saved_at
        return True

    async def save_remote(self, record: PersistenceRecord) -> SaveResult:
        """Push a record to the remote backup.

        Empty or fully synthetic records are never sent. Failures are
        reported on the result, not raised.
        """
        if self.remote is None:
            return SaveResult(remote_error="Remote backup is not configured")
        if record.is_empty or not record.has_real_leads:
            return SaveResult(remote_error="Nothing to back up")

        real_leads = [lead for lead in record.leads if not lead.is_synthetic]
        try:
            await self.remote.save(real_leads, record.search_context)
        except RemoteBackupError as e:
            logger.warning(f"Remote backup failed, keeping local copy only: {e}")
            self.last_remote_error = str(e)
            return SaveResult(remote_error=str(e))

        self.last_remote_save_at = utcnow()
        self.last_remote_error = None
        return SaveResult(remote_saved=True, saved_at=self.last_remote_save_at)

    async def save(self, record: PersistenceRecord) -> SaveResult:
        """Manual save: mirror locally, then wait for the remote backup."""
        local_saved = await self.mirror_local(record)
        result = await self.save_remote(record)
        return result.model_copy(update={"local_saved": local_saved})

    def backup_in_background(self, record: PersistenceRecord) -> Optional[asyncio.Task]:
        """Schedule a remote save without waiting for it."""
        if self.remote is None or record.is_empty or not record.has_real_leads:
            return None
        task = asyncio.get_running_loop().create_task(self.save_remote(record))
        self._backup_tasks.add(task)
        task.add_done_callback(self._backup_tasks.discard)
        return task

    @property
    def backup_status(self) -> str:
        if self.last_remote_save_at is not None:
            return f"backed up at {self.last_remote_save_at.isoformat()}"
        if self.last_remote_error:
            return f"not yet backed up ({self.last_remote_error})"
        return "not yet backed up"

    # ------------------------------------------------------------------
    # Periodic backup
    # ------------------------------------------------------------------

    def start_autosave(self, provider: RecordProvider) -> asyncio.Task:
        """Back up ``provider()`` to the remote tier on a fixed interval."""
        self.stop_autosave()
        self._autosave_task = asyncio.get_running_loop().create_task(
            self._autosave_loop(provider)
        )
        return self._autosave_task

    def stop_autosave(self) -> None:
        if self._autosave_task is not None:
            self._autosave_task.cancel()
            self._autosave_task = None

    @property
    def autosave_running(self) -> bool:
        return self._autosave_task is not None and not self._autosave_task.done()

    async def _autosave_loop(self, provider: RecordProvider) -> None:
        while True:
            await asyncio.sleep(self.autosave_interval)
            record = await provider()
            if record is None or record.is_empty or not record.has_real_leads:
                continue
            result = await self.save_remote(record)
            if result.remote_saved:
                logger.debug(f"Periodic backup saved {len(record.leads)} leads")

    # ------------------------------------------------------------------
    # Reset and sign-in
    # ------------------------------------------------------------------

    async def clear_local(self) -> None:
        """Drop the record from the session and durable tiers."""
        await self.session_store.delete(RECORD_KEY)
        await self.durable_store.delete(RECORD_KEY)
        self.last_local_save_at = None

    async def clear_all(self) -> ResetResult:
        """Clear every tier. A failed remote delete becomes a warning."""
        await self.clear_local()

        if self.remote is None:
            return ResetResult(local_cleared=True, remote_deleted=False)

        try:
            deleted = await self.remote.delete(clear_all=True)
        except RemoteBackupError as e:
            logger.warning(f"Remote backup could not be cleared: {e}")
            return ResetResult(
                local_cleared=True,
                remote_deleted=False,
                warning=(
                    "Local data was cleared but the remote backup could not be "
                    f"deleted: {e}"
                ),
            )

        self.last_remote_save_at = None
        logger.info(f"Cleared all tiers ({deleted} remote leads deleted)")
        return ResetResult(local_cleared=True, remote_deleted=True)

    async def check_credential(self, credential: str) -> bool:
        """Record the session credential; return True if it changed."""
        current = fingerprint(credential)
        previous = await self.durable_store.get(CREDENTIAL_KEY)
        if previous == current:
            return False
        await self.durable_store.set(CREDENTIAL_KEY, current)
        return previous is not None

    async def discard_session_context(self) -> None:
        """Drop the search context and workflow position from the session tier."""
        record = await self._read(self.session_store, "session")
        if record is None:
            return
        cleared = record.model_copy(
            update={"search_context": None, "workflow": WorkflowState()}
        )
        await self.session_store.set(RECORD_KEY, cleared.model_dump_json())

    async def end_session(self) -> None:
        """Drop the session tier entirely."""
        await self.session_store.clear()

    async def wait_for_backups(self) -> None:
        if self._backup_tasks:
            await asyncio.gather(*list(self._backup_tasks))

    async def close(self) -> None:
        self.stop_autosave()
        await self.wait_for_backups()
