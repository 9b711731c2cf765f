"""
Tests for the vector index backends.

Every contract test runs against both the in-memory and the FAISS backend.
"""
import threading

import numpy as np
import pytest

from docuchat.config import IndexSettings
from docuchat.embedding.faiss_index import FAISSVectorIndex
from docuchat.embedding.vector_index import (
    InMemoryVectorIndex,
    ScopeFilter,
    create_vector_index,
)
from docuchat.exceptions import MalformedInput

ORG = ScopeFilter("org-1")


def _meta(doc="doc-1", org="org-1", **extra):
    return {"document_id": doc, "organization_id": org, **extra}


@pytest.fixture(params=["memory", "faiss"])
def vindex(request):
    if request.param == "memory":
        return InMemoryVectorIndex(dimensions=3)
    return FAISSVectorIndex(dimensions=3)


class TestVectorIndexContract:
    """Behaviour shared by all backends."""

    def test_search_ranks_by_similarity(self, vindex):
        vindex.insert("c-far", [0.0, 1.0, 0.0], _meta())
        vindex.insert("c-near", [1.0, 0.1, 0.0], _meta())
        vindex.insert("c-mid", [1.0, 1.0, 0.0], _meta())

        hits = vindex.search([1.0, 0.0, 0.0], ORG, limit=10, threshold=-1.0)

        assert [h.chunk_id for h in hits] == ["c-near", "c-mid", "c-far"]
        assert hits[0].similarity == pytest.approx(1 / np.sqrt(1.01), abs=1e-5)

    def test_threshold_excludes_low_similarity(self, vindex):
        vindex.insert("c-1", [1.0, 0.0, 0.0], _meta())
        vindex.insert("c-2", [0.0, 1.0, 0.0], _meta())

        hits = vindex.search([1.0, 0.0, 0.0], ORG, limit=10, threshold=0.25)

        assert [h.chunk_id for h in hits] == ["c-1"]
        assert all(h.similarity >= 0.25 for h in hits)

    def test_limit_is_respected(self, vindex):
        for i in range(5):
            vindex.insert(f"c-{i}", [1.0, 0.01 * i, 0.0], _meta())
        assert len(vindex.search([1.0, 0.0, 0.0], ORG, limit=2, threshold=0.0)) == 2
        assert vindex.search([1.0, 0.0, 0.0], ORG, limit=0, threshold=0.0) == []

    def test_ties_break_by_insertion_order(self, vindex):
        for cid in ("c-b", "c-a", "c-c"):
            vindex.insert(cid, [0.0, 0.0, 1.0], _meta())
        hits = vindex.search([0.0, 0.0, 1.0], ORG, limit=10, threshold=0.0)
        assert [h.chunk_id for h in hits] == ["c-b", "c-a", "c-c"]

    def test_repeated_search_is_deterministic(self, vindex):
        rng = np.random.default_rng(7)
        for i in range(20):
            vindex.insert(f"c-{i}", rng.standard_normal(3), _meta(doc=f"doc-{i % 3}"))
        query = [0.3, -0.2, 0.9]
        first = vindex.search(query, ORG, limit=8, threshold=-1.0)
        second = vindex.search(query, ORG, limit=8, threshold=-1.0)
        assert [(h.chunk_id, h.similarity) for h in first] == [(h.chunk_id, h.similarity) for h in second]

    def test_scope_filters_organization(self, vindex):
        vindex.insert("c-mine", [1.0, 0.0, 0.0], _meta(org="org-1"))
        vindex.insert("c-theirs", [1.0, 0.0, 0.0], _meta(org="org-2", doc="doc-2"))

        hits = vindex.search([1.0, 0.0, 0.0], ORG, limit=10, threshold=0.0)

        assert [h.chunk_id for h in hits] == ["c-mine"]

    def test_scope_filters_document_allow_list(self, vindex):
        vindex.insert("c-1", [1.0, 0.0, 0.0], _meta(doc="doc-1"))
        vindex.insert("c-2", [1.0, 0.0, 0.0], _meta(doc="doc-2"))

        hits = vindex.search([1.0, 0.0, 0.0], ScopeFilter("org-1", frozenset({"doc-2"})), 10, 0.0)
        assert [h.chunk_id for h in hits] == ["c-2"]

        assert vindex.search([1.0, 0.0, 0.0], ScopeFilter("org-1", frozenset()), 10, 0.0) == []

    def test_delete_by_document(self, vindex):
        vindex.insert("c-1", [1.0, 0.0, 0.0], _meta(doc="doc-1"))
        vindex.insert("c-2", [0.0, 1.0, 0.0], _meta(doc="doc-1"))
        vindex.insert("c-3", [0.0, 0.0, 1.0], _meta(doc="doc-2"))

        assert vindex.delete_by_document("doc-1") == 2
        assert vindex.delete_by_document("doc-1") == 0
        assert vindex.count() == 1
        assert len(vindex) == 1
        hits = vindex.search([1.0, 1.0, 1.0], ORG, limit=10, threshold=-1.0)
        assert [h.chunk_id for h in hits] == ["c-3"]

    def test_reinsert_replaces_row(self, vindex):
        vindex.insert("c-1", [1.0, 0.0, 0.0], _meta(content="old"))
        vindex.insert("c-2", [0.0, 0.0, 1.0], _meta())
        vindex.insert("c-1", [0.0, 0.0, 1.0], _meta(content="new"))

        assert vindex.count() == 2
        hits = vindex.search([0.0, 0.0, 1.0], ORG, limit=10, threshold=0.5)
        # re-insert moved c-1 behind c-2 in insertion order
        assert [h.chunk_id for h in hits] == ["c-2", "c-1"]
        assert hits[1].metadata["content"] == "new"

    def test_search_returns_metadata_copies(self, vindex):
        vindex.insert("c-1", [1.0, 0.0, 0.0], _meta(content="text"))
        hit = vindex.search([1.0, 0.0, 0.0], ORG, limit=1, threshold=0.0)[0]
        hit.metadata["content"] = "mutated"
        again = vindex.search([1.0, 0.0, 0.0], ORG, limit=1, threshold=0.0)[0]
        assert again.metadata["content"] == "text"

    def test_empty_index_returns_nothing(self, vindex):
        assert vindex.search([1.0, 0.0, 0.0], ORG, limit=5, threshold=0.0) == []

    @pytest.mark.parametrize("vector", [[1.0, 0.0], [0.0, 0.0, 0.0], [np.nan, 1.0, 0.0]])
    def test_rejects_bad_vectors(self, vindex, vector):
        with pytest.raises(MalformedInput):
            vindex.insert("c-1", vector, _meta())

    def test_rejects_missing_scope_metadata(self, vindex):
        with pytest.raises(MalformedInput):
            vindex.insert("c-1", [1.0, 0.0, 0.0], {"document_id": "doc-1"})


class TestConcurrentAccess:

    def test_search_during_writes_sees_whole_rows(self, vindex):
        vindex.insert("stable", [1.0, 0.0, 0.0], _meta(doc="doc-stable", page=1, content="kept"))
        errors = []
        stop = threading.Event()

        def writer():
            try:
                for i in range(200):
                    doc = f"doc-{i % 5}"
                    vindex.insert(f"c-{i}", [1.0, (i % 7) / 7, 0.5], _meta(doc=doc, page=i, content=f"text {i}"))
                    if i % 3 == 0:
                        vindex.delete_by_document(doc)
            except Exception as exc:
                errors.append(exc)
            finally:
                stop.set()

        def reader():
            try:
                while not stop.is_set():
                    for hit in vindex.search([1.0, 0.2, 0.3], ORG, limit=50, threshold=-1.0):
                        assert set(hit.metadata) >= {"document_id", "organization_id", "page", "content"}
                        assert hit.metadata["content"] == (
                            "kept" if hit.chunk_id == "stable" else f"text {hit.metadata['page']}"
                        )
            except Exception as exc:
                errors.append(exc)

        threads = [threading.Thread(target=writer)] + [threading.Thread(target=reader) for _ in range(3)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert errors == []
        assert "stable" in {h.chunk_id for h in vindex.search([1.0, 0.0, 0.0], ORG, limit=500, threshold=-1.0)}


class TestFAISSPersistence:

    def test_save_and_load_round_trip(self, tmp_path):
        idx = FAISSVectorIndex(dimensions=3)
        idx.insert("c-1", [1.0, 0.0, 0.0], _meta(content="alpha"))
        idx.insert("c-2", [0.0, 1.0, 0.0], _meta(doc="doc-2", content="beta"))
        idx.delete_by_document("doc-2")
        idx.insert("c-3", [0.9, 0.1, 0.0], _meta(content="gamma"))
        idx.save(tmp_path)

        loaded = FAISSVectorIndex.load(tmp_path)

        assert loaded.count() == 2
        hits = loaded.search([1.0, 0.0, 0.0], ORG, limit=5, threshold=0.0)
        assert [h.chunk_id for h in hits] == ["c-1", "c-3"]
        assert hits[0].metadata["content"] == "alpha"
        # ids keep increasing after a reload
        loaded.insert("c-4", [0.0, 0.0, 1.0], _meta())
        assert loaded.count() == 3
        assert (tmp_path / "index_manifest.json").exists()

    def test_factory_loads_persisted_index(self, tmp_path):
        idx = FAISSVectorIndex(dimensions=3)
        idx.insert("c-1", [1.0, 0.0, 0.0], _meta())
        idx.save(tmp_path)

        settings = IndexSettings(backend="faiss", index_dir=str(tmp_path))
        assert create_vector_index(settings, dimensions=3).count() == 1
        with pytest.raises(MalformedInput):
            create_vector_index(settings, dimensions=4)

    def test_factory_memory_backend(self):
        idx = create_vector_index(IndexSettings(backend="memory"), dimensions=8)
        assert isinstance(idx, InMemoryVectorIndex)
        assert idx.dimensions == 8
