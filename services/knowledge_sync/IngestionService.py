"""Ingestion pipeline.

Downloads a remote knowledge file, extracts its text, and stores it as one
main document row plus embedded fragments. Unchanged content (same
checksum) is skipped, changed content replaces the old version in a single
transaction.
"""

import asyncio
import os
from enum import Enum
from pathlib import Path
from typing import Any

from services.knowledge_sync.ChunkingService import ChunkingService
from services.knowledge_sync.DocumentLoader import DocumentLoader, is_supported
from shared.clients.embed.EmbedClientInterface import EmbedClientInterface
from shared.clients.source.SourceClientInterface import SourceClientInterface
from shared.clients.source.models.KnowledgeItem import RemoteKnowledgeItem
from shared.clients.storage.StorageClientInterface import StorageClientInterface
from shared.exceptions import ConflictError, UnsupportedFormatError, ValidationError
from shared.helper.HelperConfig import HelperConfig
from shared.helper.identity import calculate_checksum, deterministic_id, fragment_id, now_ms
from shared.models.config import KnowledgeSettings
from shared.models.knowledge import KnowledgeDocument, KnowledgeFragment

STAGING_DIR = ".staging"


class IngestOutcome(str, Enum):
    CREATED = "created"
    REPLACED = "replaced"
    SKIPPED = "skipped"


class IngestionService:
    """Turns remote items and raw texts into stored, embedded knowledge."""

    def __init__(
        self,
        helper_config: HelperConfig,
        settings: KnowledgeSettings,
        storage: StorageClientInterface,
        embed_client: EmbedClientInterface,
        source_client: SourceClientInterface | None = None,
        chunker: ChunkingService | None = None,
        loader: DocumentLoader | None = None,
    ) -> None:
        self.logging = helper_config.get_logger()
        self.settings = settings
        self._storage = storage
        self._embed_client = embed_client
        self._source_client = source_client
        self._chunker = chunker or ChunkingService(settings.chunk_size, settings.chunk_overlap)
        self._loader = loader or DocumentLoader(logger=self.logging)
        self.knowledge_root = Path(settings.knowledge_root)
        # retained file name -> document id, held while an ingest of that document runs
        self._claimed_names: dict[str, str] = {}
        self._names_lock = asyncio.Lock()

    ##########################################
    ################ HELPERS #################
    ##########################################

    def local_path(self, file_name: str) -> Path:
        """Path of the retained copy of a file. Only the base name is used."""
        name = Path(file_name).name
        if not name or name in (".", ".."):
            raise ValidationError(f"Invalid file name: {file_name!r}.")
        return self.knowledge_root / name

    def _staging_path(self, document_id: str, file_name: str) -> Path:
        staging = self.knowledge_root / STAGING_DIR
        staging.mkdir(parents=True, exist_ok=True)
        return staging / f"{document_id}{Path(file_name).suffix.lower()}.part"

    async def _file_holders(self, file_name: str) -> set[str]:
        """Ids of the agent's documents that reference a retained file."""
        page = await self._storage.do_list_documents(
            agent_id=self.settings.agent_id,
            limit=2,
            filters={"fileName": file_name},
        )
        return {doc.id for doc in page.items}

    async def _claim_retained_path(self, document_id: str, file_name: str) -> Path:
        """Pick the retained location of a remote file and reserve it for the running ingest.

        A stored document keeps its file name. A new one uses the remote file
        name unless another document already keeps a file of that name, then
        the document id is appended to the stem.
        """
        async with self._names_lock:
            existing = await self._storage.do_get_document(document_id, agent_id=self.settings.agent_id)
            if existing is not None and existing.metadata.get("fileName"):
                target = self.local_path(existing.metadata["fileName"])
                self._claimed_names[target.name] = document_id
                return target

            target = self.local_path(file_name)
            holders = await self._file_holders(target.name)
            claimed_by = self._claimed_names.get(target.name)
            if claimed_by is not None:
                holders.add(claimed_by)
            if holders - {document_id}:
                target = self.local_path(f"{target.stem}-{document_id[:8]}{target.suffix}")
            self._claimed_names[target.name] = document_id
            return target

    async def _embed_chunks(self, chunks: list[str]) -> list[list[float]]:
        """Embed every chunk, at most embed_concurrency requests at a time."""
        sem = asyncio.Semaphore(self.settings.embed_concurrency)

        async def embed_one(text: str) -> list[float]:
            async with sem:
                return await self._embed_client.embed_text(text)

        return list(await asyncio.gather(*[embed_one(chunk) for chunk in chunks]))

    ##########################################
    ############### CORE INGEST ##############
    ##########################################

    async def add(self, document_id: str, text: str, metadata: dict[str, Any] | None = None) -> IngestOutcome:
        """Store a text as a document with embedded fragments.

        Args:
            document_id (str): Id of the document.
            text (str): Full document text.
            metadata (dict[str, Any] | None): Caller metadata. "source" and "kind" are lifted into their columns.

        Returns:
            IngestOutcome: SKIPPED if the stored checksum matches, otherwise CREATED or REPLACED.

        Raises:
            ConflictError: If the id belongs to a document of another agent.
            TransientIOError: If embedding or storage is temporarily unavailable.
            PersistenceError: If the replacement could not be written.
        """
        metadata = dict(metadata or {})
        checksum = calculate_checksum(text)
        agent_id = self.settings.agent_id

        existing = await self._storage.do_get_document(document_id)
        if existing is not None and existing.agent_id != agent_id:
            raise ConflictError(f"Document {document_id} belongs to another agent.")
        if existing is not None and existing.checksum == checksum:
            self.logging.debug("Document %s unchanged (checksum %s), skipping.", document_id, checksum[:12])
            return IngestOutcome.SKIPPED

        chunks = self._chunker.chunk(text)
        vectors = await self._embed_chunks(chunks)

        created_at = existing.created_at if existing is not None else now_ms()
        source = metadata.get("source")
        kind = metadata.get("kind")
        doc = KnowledgeDocument(
            id=document_id,
            agent_id=agent_id,
            source=source,
            kind=kind,
            checksum=checksum,
            created_at=created_at,
            text="",
            metadata=metadata,
        )
        fragments = [
            KnowledgeFragment(
                id=fragment_id(document_id, checksum, index),
                document_id=document_id,
                agent_id=agent_id,
                text=chunk,
                chunk_index=index,
                created_at=created_at,
                embedding=vector,
                metadata={**metadata, "checksum": checksum},
            )
            for index, (chunk, vector) in enumerate(zip(chunks, vectors))
        ]
        await self._storage.do_replace_document(doc, fragments)

        outcome = IngestOutcome.REPLACED if existing is not None else IngestOutcome.CREATED
        self.logging.info("Document %s %s with %d fragments.", document_id, outcome.value, len(fragments))
        return outcome

    async def ingest(self, item: RemoteKnowledgeItem) -> IngestOutcome:
        """Download, extract and store one remote item.

        The file is staged under the knowledge root and moved to its retained
        location only after the document was stored. On failure the staged
        file is deleted.

        Args:
            item (RemoteKnowledgeItem): The remote item.

        Returns:
            IngestOutcome: The outcome of add().

        Raises:
            UnsupportedFormatError: If the file type has no loader.
            ExtractionError: If the text cannot be extracted.
            TransientIOError: If the download or a backend is temporarily unavailable.
        """
        if self._source_client is None:
            raise RuntimeError("IngestionService has no source client, cannot download remote items.")
        if not is_supported(item.name):
            raise UnsupportedFormatError(f"Unsupported file type for '{item.name}'.")

        document_id = deterministic_id(item.metadata.url)
        staging = self._staging_path(document_id, item.name)
        target = await self._claim_retained_path(document_id, item.name)
        try:
            size = await self._source_client.do_download(item.metadata.url, staging)
            self.logging.debug("Downloaded %s (%d bytes).", item.name, size)
            text = await self._loader.extract_text(staging, item.name)
            outcome = await self.add(
                document_id,
                text,
                metadata={
                    "source": self.settings.source_name,
                    "fileName": target.name,
                    "url": item.metadata.url,
                    "remoteId": item.id,
                },
            )
            os.replace(staging, target)
            return outcome
        finally:
            if staging.exists():
                staging.unlink()
            if self._claimed_names.get(target.name) == document_id:
                del self._claimed_names[target.name]

    async def remove(self, document_id: str) -> bool:
        """Delete a document of the agent with its fragments and its retained local file.

        The file stays when another document still references it.

        Returns:
            bool: True if the document existed.
        """
        agent_id = self.settings.agent_id
        existing = await self._storage.do_get_document(document_id, agent_id=agent_id)
        deleted = await self._storage.do_delete_document(document_id, agent_id=agent_id)
        file_name = (existing.metadata.get("fileName") if existing else None)
        if file_name and not await self._file_holders(file_name):
            path = self.local_path(file_name)
            if path.exists():
                path.unlink()
                self.logging.debug("Removed local file %s.", path)
        if deleted:
            self.logging.info("Removed document %s.", document_id)
        return deleted
