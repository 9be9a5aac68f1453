"""Public knowledge API of one agent."""

# KnowledgeService.list shadows the builtin inside the class body
from __future__ import annotations

from typing import Any

from services.knowledge_sync.IngestionService import IngestionService, IngestOutcome
from services.knowledge_sync.SearchService import SearchService
from services.knowledge_sync.SyncService import SyncReport, SyncService, SyncState
from shared.clients.embed.EmbedClientInterface import EmbedClientInterface
from shared.clients.source.SourceClientInterface import SourceClientInterface
from shared.clients.storage.StorageClientInterface import StorageClientInterface
from shared.helper.HelperConfig import HelperConfig
from shared.models.config import KnowledgeSettings
from shared.models.knowledge import DocumentPage, KnowledgeDocument, KnowledgeFragment, ScoredFragment


class KnowledgeService:
    """Knowledge base of one agent: add, list, search, get, remove, and the background sync."""

    def __init__(
        self,
        helper_config: HelperConfig,
        settings: KnowledgeSettings,
        storage: StorageClientInterface,
        embed_client: EmbedClientInterface,
        source_client: SourceClientInterface | None = None,
    ) -> None:
        self.logging = helper_config.get_logger()
        self.settings = settings
        self._storage = storage
        self.ingestion = IngestionService(
            helper_config=helper_config,
            settings=settings,
            storage=storage,
            embed_client=embed_client,
            source_client=source_client,
        )
        self.searcher = SearchService(
            helper_config=helper_config,
            storage=storage,
            embed_client=embed_client,
            default_limit=settings.search_limit,
            default_threshold=settings.search_threshold,
        )
        self.sync: SyncService | None = None
        if source_client is not None:
            self.sync = SyncService(
                helper_config=helper_config,
                settings=settings,
                storage=storage,
                source_client=source_client,
                ingestion=self.ingestion,
            )

    @property
    def agent_id(self) -> str:
        return self.settings.agent_id

    @property
    def sync_state(self) -> SyncState | None:
        return self.sync.state if self.sync else None

    def _require_sync(self) -> SyncService:
        if self.sync is None:
            raise RuntimeError(f"Knowledge service of agent {self.agent_id} has no remote source configured.")
        return self.sync

    ##########################################
    ################# CRUD ###################
    ##########################################

    async def add(self, document_id: str, text: str, metadata: dict[str, Any] | None = None) -> IngestOutcome:
        return await self.ingestion.add(document_id, text, metadata)

    async def list(
        self,
        limit: int = 20,
        cursor: str | None = None,
        sort: str = "desc",
        filters: dict[str, Any] | None = None,
        include_fragments: bool = False,
    ) -> DocumentPage:
        return await self._storage.do_list_documents(
            agent_id=self.agent_id,
            limit=limit,
            cursor=cursor,
            sort=sort,
            filters=filters,
            include_fragments=include_fragments,
        )

    async def search(
        self,
        query: str,
        limit: int | None = None,
        threshold: float | None = None,
        filters: dict[str, Any] | None = None,
    ) -> list[ScoredFragment]:
        return await self.searcher.search(query, self.agent_id, limit=limit, threshold=threshold, filters=filters)

    async def get(self, document_id: str) -> KnowledgeDocument | None:
        return await self._storage.do_get_document(document_id, agent_id=self.agent_id)

    async def fragments(self, document_id: str) -> list[KnowledgeFragment]:
        """Fragments of a document of this agent, ordered by chunk index."""
        return await self._storage.do_list_fragments(document_id, agent_id=self.agent_id)

    async def remove(self, document_id: str) -> bool:
        # only documents of this agent
        if await self.get(document_id) is None:
            return False
        return await self.ingestion.remove(document_id)

    async def clear(self) -> int:
        """Remove every document of the agent."""
        return await self._storage.do_clear_agent(self.agent_id)

    ##########################################
    ################# SYNC ###################
    ##########################################

    def start(self) -> None:
        self._require_sync().start()

    async def stop(self) -> None:
        if self.sync is not None:
            await self.sync.stop()

    async def sync_now(self) -> SyncReport:
        """Run one sync cycle immediately, waiting for a running cycle first."""
        return await self._require_sync().do_sync_cycle()
