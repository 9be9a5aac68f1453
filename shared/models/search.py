"""Pydantic models for the knowledge API requests and responses."""

from typing import Any

from pydantic import BaseModel, Field

from shared.models.knowledge import ScoredFragment


class AddKnowledgeRequest(BaseModel):
    """Text to store as a knowledge document. A random id is used when none is given."""

    id: str | None = None
    text: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class AddKnowledgeResponse(BaseModel):
    id: str
    outcome: str


class SearchRequest(BaseModel):
    """Similarity search over the fragments of the agent."""

    query: str
    limit: int | None = None
    threshold: float | None = None
    filters: dict[str, Any] | None = None


class SearchResponse(BaseModel):
    """Response payload returned after a search."""

    query: str
    results: list[ScoredFragment]
    total: int


class SyncAcceptedResponse(BaseModel):
    status: str = "accepted"
    agent_id: str
