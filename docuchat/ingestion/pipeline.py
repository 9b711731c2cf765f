"""
Ingestion Pipeline - Chunk, Embed, Index
-----------------------------------------
Takes a registered document's text through its lifecycle:

    pending -> processing -> ready
                          -> error

Each chunk is embedded and inserted by its own task on a bounded thread
pool.  Ingestion is all-or-nothing: the first failing task cancels the
ones not yet started, the rows already written for the document are
deleted from the index, and the document is marked ``error`` with the
message of the lowest-indexed failing chunk.  The caller receives
``IngestionFailed`` with that chunk's exception chained.

Embedding calls are retried here (tenacity, exponential back-off) on
``EmbeddingUnavailable`` only; malformed input fails immediately.
"""
from __future__ import annotations

import time
from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional, Sequence

import numpy as np
from loguru import logger
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from docuchat.chunking.chunker import TokenChunker
from docuchat.chunking.schemas import Chunk
from docuchat.config import AppConfig
from docuchat.documents.store import DocumentStore, InMemoryDocumentStore
from docuchat.embedding.embedder import Embedder, create_embedder
from docuchat.embedding.vector_index import VectorIndex, create_vector_index
from docuchat.exceptions import DocuChatError, EmbeddingUnavailable, IngestionFailed, MalformedInput
from docuchat.schemas import Document, DocumentStatus


@dataclass
class IngestionResult:
    """Outcome of ingesting one document."""

    document_id: str
    status: DocumentStatus
    chunk_count: int = 0
    elapsed_ms: float = 0.0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == DocumentStatus.READY

    def to_dict(self) -> dict:
        return {
            "document_id": self.document_id,
            "status": self.status.value,
            "chunk_count": self.chunk_count,
            "elapsed_ms": round(self.elapsed_ms, 1),
            "error": self.error,
        }


class IngestionService:
    """
    Registers documents and turns their text into indexed chunks.

    Args:
        embedder:                 Embedding generator (same model as queries).
        index:                    Vector index the chunks are written to.
        documents:                Document store holding status and metadata.
        chunker:                  Token-window chunker.
        max_workers:              Concurrent chunk tasks per document.
        max_documents_in_flight:  Concurrent documents in ingest_many().
        embed_attempts:           Attempts per chunk embedding call.
        retry_wait_min_s:         Lower bound of the back-off between attempts.
        retry_wait_max_s:         Upper bound of the back-off between attempts.
    """

    def __init__(
        self,
        embedder: Embedder,
        index: VectorIndex,
        documents: DocumentStore,
        chunker: Optional[TokenChunker] = None,
        max_workers: int = 4,
        max_documents_in_flight: int = 2,
        embed_attempts: int = 3,
        retry_wait_min_s: float = 1.0,
        retry_wait_max_s: float = 20.0,
    ) -> None:
        self.embedder = embedder
        self.index = index
        self.documents = documents
        self.chunker = chunker or TokenChunker()
        self.max_workers = max_workers
        self.max_documents_in_flight = max_documents_in_flight
        self.embed_attempts = embed_attempts
        self.retry_wait_min_s = retry_wait_min_s
        self.retry_wait_max_s = retry_wait_max_s

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        index: Optional[VectorIndex] = None,
        documents: Optional[DocumentStore] = None,
        embedder: Optional[Embedder] = None,
    ) -> "IngestionService":
        if embedder is None:
            embedder = create_embedder(config.embedding)
        if index is None:
            index = create_vector_index(config.index, config.embedding.dimensions)
        if documents is None:
            documents = InMemoryDocumentStore.load(Path(config.index.store_path))
        return cls(
            embedder=embedder,
            index=index,
            documents=documents,
            chunker=TokenChunker(
                target_size=config.chunking.target_size,
                overlap_fraction=config.chunking.overlap_fraction,
                encoding=config.chunking.encoding,
            ),
            max_workers=config.ingestion.max_workers,
            max_documents_in_flight=config.ingestion.max_documents_in_flight,
            embed_attempts=config.ingestion.embed_attempts,
            retry_wait_min_s=config.ingestion.retry_wait_min_s,
            retry_wait_max_s=config.ingestion.retry_wait_max_s,
        )

    # --- Registration ---------------------------------------------------------

    def register(
        self,
        title: str,
        organization_id: str,
        user_id: Optional[str] = None,
        mime: str = "text/plain",
        folder_id: Optional[str] = None,
        tags: Optional[Iterable[str]] = None,
        document_id: Optional[str] = None,
    ) -> Document:
        """Create a ``pending`` document record."""
        fields = dict(
            title=title,
            organization_id=organization_id,
            user_id=user_id,
            mime=mime,
            folder_id=folder_id,
            tags=list(tags or []),
        )
        if document_id is not None:
            fields["id"] = document_id
        doc = self.documents.add(Document(**fields))
        logger.info(f"[Ingestion] Registered {doc.id} ({doc.title!r}) for org={organization_id}")
        return doc

    # --- Ingestion ------------------------------------------------------------

    def ingest(self, document_id: str, text: str) -> IngestionResult:
        """
        Chunk, embed and index ``text`` as the content of ``document_id``.

        Re-ingesting a ready or failed document replaces its rows.

        Raises:
            MalformedInput: the document is not registered.
            IngestionFailed: any chunk failed; the document is left in
                ``error`` with no rows in the index.
        """
        doc = self.documents.get(document_id)
        if doc is None:
            raise MalformedInput("Document is not registered", {"document_id": document_id})

        start = time.perf_counter()
        doc = self.documents.update_status(document_id, DocumentStatus.PROCESSING)
        logger.info(f"[Ingestion] Processing {document_id} ({doc.title!r})")

        try:
            self.index.delete_by_document(document_id)
            chunks = self.chunker.chunk_document(doc, text)
        except DocuChatError as exc:
            raise self._rollback(document_id, exc, None) from exc

        if chunks:
            self._index_chunks(doc, chunks)

        self.documents.update_status(document_id, DocumentStatus.READY, chunk_count=len(chunks))
        elapsed_ms = (time.perf_counter() - start) * 1000
        logger.info(
            f"[Ingestion] {document_id} ready | {len(chunks)} chunk(s) | {elapsed_ms:.0f}ms"
        )
        return IngestionResult(document_id, DocumentStatus.READY, len(chunks), elapsed_ms)

    def _index_chunks(self, doc: Document, chunks: Sequence[Chunk]) -> None:
        workers = min(self.max_workers, len(chunks))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="ingest") as pool:
            futures: dict[Future, Chunk] = {
                pool.submit(self._process_chunk, chunk, doc.organization_id): chunk
                for chunk in chunks
            }
            done, pending = wait(futures, return_when=FIRST_EXCEPTION)
            failed = any(f.exception() is not None for f in done)
            if failed:
                for fut in pending:
                    fut.cancel()
                # Tasks already running must finish before the rollback
                wait(futures)

        if not failed:
            return

        failures = sorted(
            ((futures[f].chunk_index, f.exception()) for f in futures
             if not f.cancelled() and f.exception() is not None),
            key=lambda item: item[0],
        )
        chunk_index, cause = failures[0]
        logger.error(
            f"[Ingestion] {doc.id}: {len(failures)} chunk task(s) failed, "
            f"first at chunk {chunk_index}: {cause}"
        )
        raise self._rollback(doc.id, cause, chunk_index) from cause

    def _process_chunk(self, chunk: Chunk, organization_id: str) -> None:
        vector = self._embed_with_retry(chunk)
        self.index.insert(chunk.chunk_id, vector, chunk.index_metadata(organization_id))

    def _embed_with_retry(self, chunk: Chunk) -> np.ndarray:
        retrying = Retrying(
            stop=stop_after_attempt(self.embed_attempts),
            wait=wait_exponential(multiplier=1, min=self.retry_wait_min_s, max=self.retry_wait_max_s),
            retry=retry_if_exception_type(EmbeddingUnavailable),
            before_sleep=lambda state: logger.warning(
                f"[Ingestion] Embedding chunk {chunk.chunk_index} of {chunk.document_id} failed "
                f"(attempt {state.attempt_number}/{self.embed_attempts}) -- retrying"
            ),
            reraise=True,
        )
        return retrying(self.embedder.embed, chunk.content)

    def _rollback(
        self, document_id: str, cause: BaseException, chunk_index: Optional[int]
    ) -> IngestionFailed:
        """Delete the document's rows, record the error on it and build the exception to raise."""
        try:
            removed = self.index.delete_by_document(document_id)
        except DocuChatError as exc:
            removed = 0
            logger.error(f"[Ingestion] {document_id}: could not remove indexed rows during rollback: {exc}")
        message = str(cause)
        if chunk_index is not None:
            message = f"chunk {chunk_index}: {message}"
        self.documents.update_status(document_id, DocumentStatus.ERROR, error=message)
        logger.error(f"[Ingestion] {document_id} -> error | rolled back {removed} row(s) | {message}")
        return IngestionFailed(document_id, cause, chunk_index)

    def ingest_many(self, items: Sequence[tuple[str, str]]) -> list[IngestionResult]:
        """
        Ingest several ``(document_id, text)`` pairs concurrently.

        Failures do not propagate: each document's outcome is reported in
        the returned list, in input order.
        """
        if not items:
            return []

        def _one(document_id: str, text: str) -> IngestionResult:
            start = time.perf_counter()
            try:
                return self.ingest(document_id, text)
            except DocuChatError as exc:
                return IngestionResult(
                    document_id,
                    DocumentStatus.ERROR,
                    elapsed_ms=(time.perf_counter() - start) * 1000,
                    error=str(exc.cause) if isinstance(exc, IngestionFailed) else exc.message,
                )

        workers = min(self.max_documents_in_flight, len(items))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="ingest-doc") as pool:
            results = list(pool.map(lambda item: _one(*item), items))

        ready = sum(1 for r in results if r.ok)
        logger.info(f"[Ingestion] Batch complete | {ready}/{len(results)} document(s) ready")
        return results

    # --- Deletion -------------------------------------------------------------

    def delete_document(self, document_id: str) -> int:
        """Remove a document and every index row derived from it."""
        removed = self.index.delete_by_document(document_id)
        existed = self.documents.delete(document_id)
        if not existed:
            logger.warning(f"[Ingestion] Delete: document {document_id} not found in store")
        logger.info(f"[Ingestion] Deleted {document_id} | {removed} row(s) removed from index")
        return removed
