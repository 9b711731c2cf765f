"""
Scoped Retriever
-----------------
Embeds the user query, resolves the query scope (organization, user,
folder, tags) into a document-id allow-list, and runs a dense cosine
search over the vector index.

Scope resolution only ever returns documents in ``ready`` status, so
chunks of documents that are still processing or failed ingestion never
reach a prompt.  An empty allow-list short-circuits: the index is not
searched at all.

The retriever is stateless per query -- call retrieve() as many times as
you like, from as many threads as you like, on the same instance.
"""
from __future__ import annotations

from typing import Optional

import numpy as np
from langsmith import traceable
from loguru import logger

from docuchat.documents.store import DocumentStore
from docuchat.embedding.embedder import Embedder
from docuchat.embedding.vector_index import ScopeFilter, SearchHit, VectorIndex
from docuchat.exceptions import DocuChatError, IndexUnavailable, MalformedInput, ScopeNotFound
from docuchat.schemas import QueryScope, RetrievedPassage
from docuchat.utils.helpers import truncate_text


class Retriever:
    """
    Embed -> resolve scope -> search -> number passages 1..N.

    Args:
        index:                 Vector index backend.
        embedder:              Query embedder (same model as ingestion).
        documents:             Document store used to resolve scopes.
        max_chunks:            Maximum passages returned per query.
        similarity_threshold:  Minimum cosine similarity for a passage.
        raise_on_empty_scope:  Raise ScopeNotFound instead of returning []
                               when a scope covers no ready documents.
    """

    def __init__(
        self,
        index: VectorIndex,
        embedder: Embedder,
        documents: DocumentStore,
        max_chunks: int = 8,
        similarity_threshold: float = 0.25,
        raise_on_empty_scope: bool = False,
    ) -> None:
        self.index = index
        self.embedder = embedder
        self.documents = documents
        self.max_chunks = max_chunks
        self.similarity_threshold = similarity_threshold
        self.raise_on_empty_scope = raise_on_empty_scope

    @traceable(name="retrieve", run_type="retriever")
    def retrieve(
        self,
        query: str,
        scope: QueryScope,
        query_vector: Optional[np.ndarray] = None,
    ) -> list[RetrievedPassage]:
        """
        Return passages relevant to ``query`` within ``scope``.

        Args:
            query: Raw user query string.
            scope: Organization/user/folder/tag restriction.
            query_vector: Pre-computed query embedding (skips the embed call).

        Returns:
            Passages ranked by similarity, with ordinals 1..N in rank order.

        Raises:
            MalformedInput: the query is empty.
            EmbeddingUnavailable: the query could not be embedded.
            IndexUnavailable: the vector search failed.
        """
        if not query or not query.strip():
            raise MalformedInput("Query text is empty")

        logger.debug(f"[Retriever] Query: {truncate_text(query)!r} | org={scope.organization_id}")

        if query_vector is None:
            query_vector = self.embedder.embed_query(query)

        allowed = self.resolve_scope(scope)
        if not allowed:
            logger.info(
                f"[Retriever] Scope covers no ready documents "
                f"(org={scope.organization_id} folder={scope.folder_id} tags={scope.tags}) "
                f"-- skipping index search"
            )
            if self.raise_on_empty_scope:
                raise ScopeNotFound(
                    "No accessible documents match the requested scope",
                    {"organization_id": scope.organization_id, "folder_id": scope.folder_id, "tags": scope.tags},
                )
            return []

        hits = self._search(query_vector, ScopeFilter(scope.organization_id, frozenset(allowed)))
        passages = [self._to_passage(ordinal, hit) for ordinal, hit in enumerate(hits, start=1)]

        if passages:
            logger.info(
                f"[Retriever] Retrieved {len(passages)} passage(s) "
                f"(top similarity: {passages[0].similarity:.4f})"
            )
        else:
            logger.info(f"[Retriever] No passages above threshold {self.similarity_threshold}")
        return passages

    def resolve_scope(self, scope: QueryScope) -> set[str]:
        """
        Turn a scope into the set of ready document ids it covers.

        Folder and tag filters are resolved separately and intersected;
        with neither, every ready document of the organization (and user,
        when given) is allowed.
        """
        base = dict(organization_id=scope.organization_id, user_id=scope.user_id)
        if not scope.has_filters:
            return self.documents.list_document_ids(**base)

        allowed: Optional[set[str]] = None
        if scope.folder_id is not None:
            allowed = self.documents.list_document_ids(**base, folder_id=scope.folder_id)
            if not allowed:
                return set()
        if scope.tags:
            tagged = self.documents.list_document_ids(**base, tags=scope.tags)
            allowed = tagged if allowed is None else allowed & tagged
        return allowed or set()

    def _search(self, query_vector: np.ndarray, scope_filter: ScopeFilter) -> list[SearchHit]:
        try:
            return self.index.search(
                query_vector,
                scope_filter,
                limit=self.max_chunks,
                threshold=self.similarity_threshold,
            )
        except DocuChatError:
            raise
        except Exception as exc:
            raise IndexUnavailable(
                f"Vector search failed: {exc}",
                {"backend": type(self.index).__name__},
            ) from exc

    @staticmethod
    def _to_passage(ordinal: int, hit: SearchHit) -> RetrievedPassage:
        meta = hit.metadata
        return RetrievedPassage(
            ordinal=ordinal,
            chunk_id=hit.chunk_id,
            document_id=meta["document_id"],
            document_title=meta.get("document_title") or "Untitled",
            content=meta.get("content", ""),
            page=meta.get("page"),
            similarity=hit.similarity,
            metadata={
                k: v for k, v in meta.items()
                if k not in {"content", "document_id", "document_title", "page"}
            },
        )
