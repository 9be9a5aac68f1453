"""Remote knowledge item model, backend-independent."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class RemoteKnowledgeMetadata(BaseModel):
    """
    Metadata of a remote knowledge item. Only ``url`` is required, unknown keys are kept.
    """
    model_config = ConfigDict(extra="allow")

    url: str


class RemoteKnowledgeItem(BaseModel):
    """
    Represents a single knowledge file as listed by the remote source.

    Attributes:
        id:        Numeric id on the remote side, also the paging cursor.
        name:      File name including the extension (e.g. "handbook.pdf").
        metadata:  Holds the download URL.
        createdAt: Creation time on the remote side, if reported.
    """
    model_config = ConfigDict(populate_by_name=True)

    id: int
    name: str
    metadata: RemoteKnowledgeMetadata
    created_at: datetime | None = Field(default=None, alias="createdAt")


class RemoteKnowledgePage(BaseModel):
    """
    One page of remote items.

    Attributes:
        items:       Items of this page, in remote order.
        next_cursor: Cursor for the next page, or None when this was the last page.
    """

    items: list[RemoteKnowledgeItem]
    next_cursor: int | None = None
