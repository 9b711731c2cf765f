"""
Exception hierarchy for the DocuChat RAG core.

Every failure in the ingestion and query pipelines surfaces to the caller
as one of these types.  Each carries a ``details`` dict so log lines and
API layers can report context without parsing the message.
"""
from __future__ import annotations

from typing import Any, Optional


class DocuChatError(Exception):
    """Base exception for all pipeline errors."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class EmbeddingUnavailable(DocuChatError):
    """The external embedding capability failed (timeout, quota, bad response)."""


class IndexUnavailable(DocuChatError):
    """Vector search or vector storage failed."""


class MalformedInput(DocuChatError):
    """Input that cannot be chunked, embedded or indexed as given."""


class GenerationFailed(DocuChatError):
    """The generative call failed."""


class GenerationCancelled(GenerationFailed):
    """A streaming generation was cancelled by the caller."""


class ScopeNotFound(DocuChatError):
    """A folder/tag filter resolved to no accessible documents."""


class IngestionFailed(DocuChatError):
    """A document could not be ingested; the chunk-level cause is chained."""

    def __init__(
        self,
        document_id: str,
        cause: BaseException,
        chunk_index: Optional[int] = None,
    ) -> None:
        details: dict[str, Any] = {"document_id": document_id, "cause": type(cause).__name__}
        if chunk_index is not None:
            details["chunk_index"] = chunk_index
        super().__init__(f"Ingestion failed for document {document_id}: {cause}", details)
        self.document_id = document_id
        self.cause = cause
        self.chunk_index = chunk_index
