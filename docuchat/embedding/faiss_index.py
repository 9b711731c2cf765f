"""
FAISS Vector Index
-------------------
Wraps faiss.IndexIDMap2(IndexFlatIP) -- inner product == cosine similarity
after L2 normalisation -- and keeps a parallel row table (chunk id +
metadata) keyed by the int64 FAISS id.

FAISS ids are allocated from a monotonically increasing counter, so id
order is insertion order and ties in similarity can be broken by id.

Persistence:
  - FAISS index   -> <index_dir>/faiss.index
  - Row metadata  -> <index_dir>/rows.json
  - Manifest      -> <index_dir>/index_manifest.json
"""
from __future__ import annotations

import threading
from pathlib import Path
from typing import Any

import faiss
import numpy as np
from loguru import logger

from docuchat.embedding.vector_index import (
    ScopeFilter,
    SearchHit,
    VectorIndex,
    check_metadata,
    prepare_vector,
)
from docuchat.exceptions import IndexUnavailable
from docuchat.utils.helpers import load_json, save_json

INDEX_DIR = Path("data/index")


class FAISSVectorIndex(VectorIndex):
    """
    Exact FAISS index with delete support.

    Add rows with insert(), persist with save(), restore with
    FAISSVectorIndex.load().
    """

    def __init__(self, dimensions: int = 1536) -> None:
        self.dimensions = dimensions
        self.faiss_index = faiss.IndexIDMap2(faiss.IndexFlatIP(dimensions))
        self._ids: dict[str, int] = {}                 # chunk_id -> faiss id
        self._rows: dict[int, dict[str, Any]] = {}     # faiss id -> {chunk_id, metadata}
        self._next_id = 0
        self._lock = threading.RLock()

    # --- Writes ---------------------------------------------------------------

    def insert(self, chunk_id: str, vector, metadata: dict[str, Any]) -> None:
        check_metadata(chunk_id, metadata)
        vec = prepare_vector(vector, self.dimensions).reshape(1, -1)

        with self._lock:
            try:
                old = self._ids.pop(chunk_id, None)
                if old is not None:
                    self.faiss_index.remove_ids(np.array([old], dtype=np.int64))
                    self._rows.pop(old, None)

                fid = self._next_id
                self.faiss_index.add_with_ids(
                    np.ascontiguousarray(vec, dtype=np.float32),
                    np.array([fid], dtype=np.int64),
                )
            except RuntimeError as exc:
                raise IndexUnavailable(
                    f"FAISS insert failed: {exc}", {"chunk_id": chunk_id}
                ) from exc

            self._next_id += 1
            self._ids[chunk_id] = fid
            self._rows[fid] = {"chunk_id": chunk_id, "metadata": dict(metadata)}

    def delete_by_document(self, document_id: str) -> int:
        with self._lock:
            doomed = [
                fid for fid, row in self._rows.items()
                if row["metadata"]["document_id"] == document_id
            ]
            if not doomed:
                return 0
            try:
                self.faiss_index.remove_ids(np.array(doomed, dtype=np.int64))
            except RuntimeError as exc:
                raise IndexUnavailable(
                    f"FAISS delete failed: {exc}", {"document_id": document_id}
                ) from exc
            for fid in doomed:
                row = self._rows.pop(fid)
                self._ids.pop(row["chunk_id"], None)

        logger.debug(f"[FAISSIndex] Deleted {len(doomed)} vector(s) for document {document_id}")
        return len(doomed)

    # --- Search ---------------------------------------------------------------

    def search(
        self,
        query_vector,
        scope_filter: ScopeFilter,
        limit: int,
        threshold: float,
    ) -> list[SearchHit]:
        """
        Dense cosine search restricted to ``scope_filter``.

        The flat index is scanned in full (k = ntotal) so that scope
        filtering happens before the limit is applied.

        Returns: SearchHits sorted by similarity descending, then insertion order.
        """
        qv = prepare_vector(query_vector, self.dimensions).reshape(1, -1)
        if limit <= 0:
            return []

        with self._lock:
            total = self.faiss_index.ntotal
            if total == 0:
                return []
            try:
                scores, indices = self.faiss_index.search(qv, total)
            except RuntimeError as exc:
                raise IndexUnavailable(f"FAISS search failed: {exc}") from exc

            matches: list[tuple[float, int]] = []
            for score, fid in zip(scores[0], indices[0]):
                if fid < 0:
                    continue
                score = min(1.0, max(-1.0, float(score)))
                if score < threshold:
                    continue
                if scope_filter.admits(self._rows[int(fid)]["metadata"]):
                    matches.append((score, int(fid)))

            matches.sort(key=lambda m: (-m[0], m[1]))
            return [
                SearchHit(
                    chunk_id=self._rows[fid]["chunk_id"],
                    similarity=score,
                    metadata=dict(self._rows[fid]["metadata"]),
                )
                for score, fid in matches[:limit]
            ]

    def count(self) -> int:
        with self._lock:
            return int(self.faiss_index.ntotal)

    # --- Persistence ----------------------------------------------------------

    def save(self, index_dir: Path = INDEX_DIR) -> None:
        """Persist FAISS index + row metadata + manifest to disk."""
        index_dir = Path(index_dir)
        index_dir.mkdir(parents=True, exist_ok=True)

        with self._lock:
            faiss.write_index(self.faiss_index, str(index_dir / "faiss.index"))
            rows = [{"faiss_id": fid, **row} for fid, row in self._rows.items()]
            save_json({"next_id": self._next_id, "rows": rows}, index_dir / "rows.json")
            manifest = {
                "total_vectors": int(self.faiss_index.ntotal),
                "dimensions": self.dimensions,
                "documents": len({r["metadata"]["document_id"] for r in self._rows.values()}),
                "organizations": sorted({r["metadata"]["organization_id"] for r in self._rows.values()}),
            }
            save_json(manifest, index_dir / "index_manifest.json")

        logger.info(f"[FAISSIndex] {manifest['total_vectors']} vectors saved -> {index_dir}")

    @classmethod
    def load(cls, index_dir: Path = INDEX_DIR) -> "FAISSVectorIndex":
        """Load a persisted index from disk."""
        index_dir = Path(index_dir)
        raw_index = faiss.read_index(str(index_dir / "faiss.index"))
        state = load_json(index_dir / "rows.json", default={"next_id": 0, "rows": []})

        instance = cls(dimensions=raw_index.d)
        instance.faiss_index = raw_index
        instance._next_id = int(state["next_id"])
        for row in state["rows"]:
            fid = int(row["faiss_id"])
            instance._rows[fid] = {"chunk_id": row["chunk_id"], "metadata": row["metadata"]}
            instance._ids[row["chunk_id"]] = fid

        logger.info(
            f"[FAISSIndex] Loaded: {instance.faiss_index.ntotal} vectors, "
            f"{len(instance._rows)} rows"
        )
        return instance
