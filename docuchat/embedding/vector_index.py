"""
Vector Index
-------------
Storage and nearest-neighbour search for chunk embeddings, behind one
interface so the retriever never depends on a concrete engine:

  InMemoryVectorIndex -- exact brute-force cosine search with numpy
                         (reference backend, used by tests)
  FAISSVectorIndex    -- faiss IndexFlatIP with id mapping and on-disk
                         persistence (see faiss_index.py)

Contract shared by every backend:
  - insert() is idempotent on chunk_id; a re-insert replaces the row and
    moves it to the end of the insertion order.
  - search() returns only rows with similarity >= threshold, ranked by
    similarity descending with ties broken by insertion order.
  - Every operation holds the index lock, so a search never observes a
    partially written row.
"""
from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import numpy as np
from loguru import logger

from docuchat.config import IndexSettings
from docuchat.exceptions import MalformedInput

REQUIRED_METADATA = ("document_id", "organization_id")


@dataclass(frozen=True)
class ScopeFilter:
    """
    Restricts a search to one organization and, optionally, to an explicit
    allow-list of document ids.  ``document_ids=None`` means no allow-list;
    an empty set matches nothing.
    """

    organization_id: str
    document_ids: Optional[frozenset[str]] = None

    def admits(self, metadata: dict[str, Any]) -> bool:
        if metadata.get("organization_id") != self.organization_id:
            return False
        return self.document_ids is None or metadata.get("document_id") in self.document_ids


@dataclass(frozen=True)
class SearchHit:
    chunk_id: str
    similarity: float
    metadata: dict[str, Any] = field(default_factory=dict)


def prepare_vector(vector, dimensions: int) -> np.ndarray:
    """Validate a vector and return it L2-normalised as float32."""
    vec = np.asarray(vector, dtype=np.float32).reshape(-1)
    if vec.shape[0] != dimensions:
        raise MalformedInput(
            "Vector dimension mismatch",
            {"expected": dimensions, "received": int(vec.shape[0])},
        )
    if not np.all(np.isfinite(vec)):
        raise MalformedInput("Vector contains NaN or infinite values")
    norm = float(np.linalg.norm(vec))
    if norm == 0.0:
        raise MalformedInput("Zero vector cannot be L2-normalised")
    return (vec / norm).astype(np.float32)


def check_metadata(chunk_id: str, metadata: dict[str, Any]) -> None:
    missing = [key for key in REQUIRED_METADATA if not metadata.get(key)]
    if missing:
        raise MalformedInput(
            "Index metadata is missing required keys",
            {"chunk_id": chunk_id, "missing": missing},
        )


class VectorIndex(ABC):
    """Interface every vector index backend implements."""

    dimensions: int

    @abstractmethod
    def insert(self, chunk_id: str, vector, metadata: dict[str, Any]) -> None:
        """Store (or replace) the row for ``chunk_id``."""

    @abstractmethod
    def delete_by_document(self, document_id: str) -> int:
        """Remove every row of ``document_id``; return how many were removed."""

    @abstractmethod
    def search(
        self,
        query_vector,
        scope_filter: ScopeFilter,
        limit: int,
        threshold: float,
    ) -> list[SearchHit]:
        """Ranked rows within scope whose cosine similarity is >= threshold."""

    @abstractmethod
    def count(self) -> int:
        """Number of stored rows."""

    def __len__(self) -> int:
        return self.count()


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------

@dataclass
class _Row:
    vector: np.ndarray
    metadata: dict[str, Any]


class InMemoryVectorIndex(VectorIndex):
    """
    Exact brute-force cosine index held in process memory.

    Rows live in an insertion-ordered dict; a stacked matrix of all vectors
    is rebuilt lazily after writes so a search is a single matrix-vector
    product.  Instances share nothing, so each test can build its own.
    """

    def __init__(self, dimensions: int = 1536) -> None:
        self.dimensions = dimensions
        self._rows: dict[str, _Row] = {}
        self._lock = threading.RLock()
        self._matrix: Optional[np.ndarray] = None
        self._row_ids: list[str] = []
        self._orgs: Optional[np.ndarray] = None

    def insert(self, chunk_id: str, vector, metadata: dict[str, Any]) -> None:
        check_metadata(chunk_id, metadata)
        vec = prepare_vector(vector, self.dimensions)
        row = _Row(vector=vec, metadata=dict(metadata))
        with self._lock:
            self._rows.pop(chunk_id, None)
            self._rows[chunk_id] = row
            self._matrix = None

    def delete_by_document(self, document_id: str) -> int:
        with self._lock:
            doomed = [cid for cid, row in self._rows.items() if row.metadata["document_id"] == document_id]
            for cid in doomed:
                del self._rows[cid]
            if doomed:
                self._matrix = None
        logger.debug(f"[InMemoryIndex] Deleted {len(doomed)} row(s) for document {document_id}")
        return len(doomed)

    def search(
        self,
        query_vector,
        scope_filter: ScopeFilter,
        limit: int,
        threshold: float,
    ) -> list[SearchHit]:
        query = prepare_vector(query_vector, self.dimensions).astype(np.float64)
        if limit <= 0:
            return []

        with self._lock:
            if not self._rows:
                return []
            if self._matrix is None:
                self._rebuild()

            mask = self._orgs == scope_filter.organization_id
            if scope_filter.document_ids is not None:
                allowed = scope_filter.document_ids
                mask &= np.fromiter(
                    (self._rows[cid].metadata["document_id"] in allowed for cid in self._row_ids),
                    dtype=bool,
                    count=len(self._row_ids),
                )
            candidates = np.flatnonzero(mask)
            if candidates.size == 0:
                return []

            sims = np.clip(self._matrix[candidates] @ query, -1.0, 1.0)
            keep = sims >= threshold
            candidates, sims = candidates[keep], sims[keep]
            # Stable sort: equal similarities keep insertion order
            order = np.argsort(-sims, kind="stable")[:limit]

            return [
                SearchHit(
                    chunk_id=self._row_ids[candidates[i]],
                    similarity=float(sims[i]),
                    metadata=dict(self._rows[self._row_ids[candidates[i]]].metadata),
                )
                for i in order
            ]

    def _rebuild(self) -> None:
        self._row_ids = list(self._rows.keys())
        self._matrix = np.stack([self._rows[cid].vector for cid in self._row_ids]).astype(np.float64)
        self._orgs = np.array(
            [self._rows[cid].metadata["organization_id"] for cid in self._row_ids], dtype=object
        )

    def count(self) -> int:
        with self._lock:
            return len(self._rows)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def create_vector_index(settings: IndexSettings, dimensions: int) -> VectorIndex:
    """Build the configured backend, loading a persisted FAISS index when present."""
    if settings.backend == "memory":
        return InMemoryVectorIndex(dimensions=dimensions)

    from docuchat.embedding.faiss_index import FAISSVectorIndex

    index_dir = Path(settings.index_dir)
    if (index_dir / "faiss.index").exists():
        index = FAISSVectorIndex.load(index_dir)
        if index.dimensions != dimensions:
            raise MalformedInput(
                "Persisted index dimension does not match configuration",
                {"index": index.dimensions, "config": dimensions},
            )
        return index
    return FAISSVectorIndex(dimensions=dimensions)
