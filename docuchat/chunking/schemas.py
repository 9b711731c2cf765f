"""
Chunk schemas - the atomic units that get embedded and indexed.

``ChunkSpan`` is the raw output of the token-window splitter;
``Chunk`` adds identity and a metadata snapshot of the parent document so
retrieval results can be displayed and cited without a join.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


@dataclass(frozen=True)
class ChunkSpan:
    """One token window of a page.  Offsets are inclusive, relative to the page."""

    text: str
    page: int
    token_count: int
    start_index: int
    end_index: int


class Chunk(BaseModel):
    """A token-bounded slice of a Document's text.  Immutable once created."""

    model_config = ConfigDict(frozen=True)

    # Identity
    chunk_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    document_id: str
    chunk_index: int                     # Position within the document

    # Content
    content: str
    page: int
    token_count: int
    start_index: int                     # Inclusive token offset within the page
    end_index: int                       # Inclusive token offset within the page
    embedding: Optional[list[float]] = None

    # Snapshot of the parent document at chunk-creation time
    metadata: dict[str, Any] = Field(default_factory=dict)

    def index_metadata(self, organization_id: str) -> dict[str, Any]:
        """Row payload stored next to the vector in a VectorIndex."""
        return {
            **self.metadata,
            "document_id": self.document_id,
            "organization_id": organization_id,
            "chunk_index": self.chunk_index,
            "content": self.content,
            "page": self.page,
            "token_count": self.token_count,
            "start_index": self.start_index,
            "end_index": self.end_index,
        }
