"""Knowledge records as stored and returned by the storage clients."""

from typing import Any

from pydantic import BaseModel, Field


class KnowledgeDocument(BaseModel):
    """
    Main row of one knowledge document. The text lives in its fragments.

    Attributes:
        id:         Deterministic id (UUID5 of the remote URL for synced items).
        agent_id:   Owning agent.
        source:     Origin tag, e.g. the sync source name.
        kind:       Free-form kind, may be unset.
        checksum:   SHA-256 hex of the full extracted text.
        created_at: Epoch milliseconds.
        text:       Empty for documents stored as fragments.
        metadata:   Caller metadata plus the reserved keys (source, kind, isMain, isChunk, checksum, ...).
        fragments:  Filled only when listed with include_fragments.
    """

    id: str
    agent_id: str
    source: str | None = None
    kind: str | None = None
    checksum: str | None = None
    created_at: int
    text: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    fragments: list["KnowledgeFragment"] | None = None


class KnowledgeFragment(BaseModel):
    """
    One embedded chunk of a document. Fragments are the sole target of similarity search.
    """

    id: str
    document_id: str
    agent_id: str
    text: str
    chunk_index: int
    created_at: int
    embedding: list[float] | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class ScoredFragment(BaseModel):
    """
    Search hit: fragment fields without the embedding, plus the cosine similarity.
    """

    id: str
    document_id: str
    agent_id: str
    text: str
    chunk_index: int
    created_at: int
    metadata: dict[str, Any] = Field(default_factory=dict)
    similarity: float


class DocumentPage(BaseModel):
    """
    One page of a document listing.

    Attributes:
        items:       Documents of this page.
        next_cursor: Opaque cursor for the next page, or None when all pages have been consumed.
    """

    items: list[KnowledgeDocument]
    next_cursor: str | None = None


KnowledgeDocument.model_rebuild()
