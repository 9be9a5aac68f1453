"""Reconciliation sync.

Periodically compares the remote knowledge listing with the local documents
of the sync source: new remote items are ingested, local documents whose
item disappeared remotely are removed, and files no document references any
more are deleted from the knowledge root.
"""

import asyncio
import time
from enum import Enum

from pydantic import BaseModel

from services.knowledge_sync.DocumentLoader import is_supported
from services.knowledge_sync.IngestionService import IngestionService, IngestOutcome
from shared.clients.source.SourceClientInterface import SourceClientInterface
from shared.clients.source.models.KnowledgeItem import RemoteKnowledgeItem
from shared.clients.storage.StorageClientInterface import MAX_PAGE_SIZE, StorageClientInterface
from shared.helper.HelperConfig import HelperConfig
from shared.helper.identity import deterministic_id
from shared.models.config import KnowledgeSettings
from shared.models.knowledge import KnowledgeDocument


class SyncState(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    STOPPED = "stopped"


class SyncReport(BaseModel):
    """Counts of one sync cycle."""

    remote_items: int = 0
    local_documents: int = 0
    created: int = 0
    replaced: int = 0
    skipped: int = 0
    failed: int = 0
    removed: int = 0
    orphan_files_removed: int = 0
    duration: float = 0.0


class SyncService:
    """Keeps the local knowledge of one agent in line with the remote source."""

    def __init__(
        self,
        helper_config: HelperConfig,
        settings: KnowledgeSettings,
        storage: StorageClientInterface,
        source_client: SourceClientInterface,
        ingestion: IngestionService,
    ) -> None:
        self.logging = helper_config.get_logger()
        self.settings = settings
        self._storage = storage
        self._source_client = source_client
        self._ingestion = ingestion

        self._state = SyncState.IDLE
        self._task: asyncio.Task | None = None
        self._stop_event = asyncio.Event()
        self._cycle_lock = asyncio.Lock()
        self.last_report: SyncReport | None = None

    @property
    def state(self) -> SyncState:
        return self._state

    ##########################################
    ############### LIFECYCLE ################
    ##########################################

    def start(self) -> None:
        """Launch the background loop. Calling it again while running is a no-op."""
        if self._state == SyncState.STOPPED:
            raise RuntimeError("SyncService was stopped and cannot be restarted.")
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._run_loop(), name=f"knowledge-sync-{self.settings.agent_id}")
        self.logging.info("Knowledge sync started for agent %s (interval %ss).", self.settings.agent_id, self.settings.sync_interval)

    async def stop(self) -> None:
        """Stop the loop and wait for the in-flight cycle to finish."""
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None
        # a cycle started through sync_now may still hold the lock
        async with self._cycle_lock:
            self._state = SyncState.STOPPED
        self.logging.info("Knowledge sync stopped for agent %s.", self.settings.agent_id)

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.do_sync_cycle()
            except Exception as e:
                self.logging.error("Knowledge sync cycle failed: %s", e)
            try:
                # only the idle wait is interrupted by stop()
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.settings.sync_interval)
            except asyncio.TimeoutError:
                pass

    ##########################################
    ############### CORE SYNC ################
    ##########################################

    async def do_sync_cycle(self) -> SyncReport:
        """Run one reconciliation cycle.

        Returns:
            SyncReport: What the cycle did.

        Raises:
            Exception: If the remote or local listing fails. Per-item failures are counted, not raised.
        """
        async with self._cycle_lock:
            if self._state == SyncState.STOPPED:
                raise RuntimeError("SyncService is stopped.")
            self._state = SyncState.SYNCING
            started = time.monotonic()
            try:
                report = await self._reconcile()
            finally:
                if self._state != SyncState.STOPPED:
                    self._state = SyncState.IDLE
            report.duration = round(time.monotonic() - started, 3)
            self.last_report = report
            self.logging.info(
                "Knowledge sync: %d remote, %d local, %d created, %d replaced, %d skipped, %d failed, %d removed, %d orphan files (%.2fs).",
                report.remote_items, report.local_documents, report.created, report.replaced,
                report.skipped, report.failed, report.removed, report.orphan_files_removed, report.duration,
            )
            return report

    async def _reconcile(self) -> SyncReport:
        report = SyncReport()

        remote_items = await self._source_client.do_fetch_all_knowledge_items(page_size=self.settings.sync_page_size)
        remote: dict[str, RemoteKnowledgeItem] = {}
        for item in remote_items:
            remote[deterministic_id(item.metadata.url)] = item
        report.remote_items = len(remote)

        local = await self._list_local_documents({"source": self.settings.source_name})
        report.local_documents = len(local)

        # ingest new (or, with recheck_existing, all) remote items
        to_ingest = [
            item for item_id, item in remote.items()
            if self.settings.recheck_existing or item_id not in local
        ]
        if to_ingest:
            sem = asyncio.Semaphore(self.settings.ingest_concurrency)
            results = await asyncio.gather(
                *[self._ingest_item(item, sem) for item in to_ingest],
                return_exceptions=True,
            )
            for result in results:
                if result is IngestOutcome.CREATED:
                    report.created += 1
                elif result is IngestOutcome.REPLACED:
                    report.replaced += 1
                elif result is IngestOutcome.SKIPPED:
                    report.skipped += 1
                else:
                    report.failed += 1

        # tombstone by absence
        for document_id in [doc_id for doc_id in local if doc_id not in remote]:
            try:
                if await self._ingestion.remove(document_id):
                    report.removed += 1
            except Exception as e:
                report.failed += 1
                self.logging.error("Failed to remove knowledge %s: %s", document_id, e)

        report.orphan_files_removed = await self._cleanup_orphan_files()
        return report

    async def _ingest_item(self, item: RemoteKnowledgeItem, sem: asyncio.Semaphore) -> IngestOutcome | Exception:
        async with sem:
            try:
                return await self._ingestion.ingest(item)
            except Exception as e:
                self.logging.error("Error processing knowledge file %s (%s): %s", item.name, item.metadata.url, e)
                return e

    async def _list_local_documents(self, filters: dict | None = None) -> dict[str, KnowledgeDocument]:
        """List all local documents of the agent, following cursors until exhausted."""
        documents: dict[str, KnowledgeDocument] = {}
        cursor: str | None = None
        while True:
            page = await self._storage.do_list_documents(
                agent_id=self.settings.agent_id,
                limit=MAX_PAGE_SIZE,
                cursor=cursor,
                filters=filters,
            )
            for doc in page.items:
                documents[doc.id] = doc
            if page.next_cursor is None:
                return documents
            cursor = page.next_cursor

    async def _cleanup_orphan_files(self) -> int:
        """Delete files in the knowledge root that no document references."""
        root = self._ingestion.knowledge_root
        if not root.is_dir():
            return 0
        referenced = {
            doc.metadata.get("fileName")
            for doc in (await self._list_local_documents()).values()
            if doc.metadata.get("fileName")
        }
        removed = 0
        for path in root.iterdir():
            if not path.is_file() or path.name.startswith(".") or path.name in referenced:
                continue
            if not is_supported(path.name):
                continue
            try:
                path.unlink()
                removed += 1
                self.logging.debug("Removed orphan knowledge file %s.", path.name)
            except OSError as e:
                self.logging.warning("Could not remove orphan knowledge file %s: %s", path.name, e)
        return removed
