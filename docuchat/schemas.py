"""
Core Pydantic schemas for the DocuChat RAG core.

Documents, query scopes, retrieved passages and citations are shared by
the ingestion and query pipelines so every answer can be traced back to
the exact chunk (and page) that supports it.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# --- Enumerations ------------------------------------------------------------

class DocumentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    READY = "ready"
    ERROR = "error"


# Allowed lifecycle moves.  READY/ERROR -> PROCESSING covers re-ingestion.
STATUS_TRANSITIONS: dict[DocumentStatus, set[DocumentStatus]] = {
    DocumentStatus.PENDING: {DocumentStatus.PROCESSING, DocumentStatus.ERROR},
    DocumentStatus.PROCESSING: {DocumentStatus.READY, DocumentStatus.ERROR},
    DocumentStatus.READY: {DocumentStatus.PROCESSING},
    DocumentStatus.ERROR: {DocumentStatus.PROCESSING},
}


Role = Literal["system", "user", "assistant"]


# --- Documents ----------------------------------------------------------------

class Document(BaseModel):
    """
    A source file registered for ingestion.

    Owned by an organization (and a user inside it); folder and tags are
    only used to resolve retrieval scopes into document-id allow-lists.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    title: str
    mime: str = "text/plain"
    status: DocumentStatus = DocumentStatus.PENDING
    organization_id: str
    user_id: Optional[str] = None
    folder_id: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    error: Optional[str] = None             # Last ingestion failure, if any
    chunk_count: int = 0
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


# --- Query side ---------------------------------------------------------------

class QueryScope(BaseModel):
    """Which documents a query may draw passages from."""

    organization_id: str
    user_id: Optional[str] = None
    folder_id: Optional[str] = None
    tags: list[str] = Field(default_factory=list)

    @property
    def has_filters(self) -> bool:
        return self.folder_id is not None or bool(self.tags)


class PromptMessage(BaseModel):
    """One role-tagged segment sent to the generative step (or a history turn)."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: str


class RetrievedPassage(BaseModel):
    """
    A chunk returned by the retriever, with its cosine similarity and the
    1-based ordinal shown to the model as "Document N".
    """

    model_config = ConfigDict(frozen=True)

    ordinal: int = Field(ge=1)
    chunk_id: str
    document_id: str
    document_title: str = "Untitled"
    content: str
    page: Optional[int] = None
    similarity: float
    metadata: dict[str, Any] = Field(default_factory=dict)


class Citation(BaseModel):
    """Pointer from an answer back to a passage that was actually retrieved."""

    model_config = ConfigDict(frozen=True)

    ordinal: int
    chunk_id: str
    document_id: str
    document_title: str
    page: Optional[int] = None
    similarity: float

    @classmethod
    def from_passage(cls, passage: RetrievedPassage) -> "Citation":
        return cls(
            ordinal=passage.ordinal,
            chunk_id=passage.chunk_id,
            document_id=passage.document_id,
            document_title=passage.document_title,
            page=passage.page,
            similarity=passage.similarity,
        )
