"""
Tests for the document store and configuration loading.
"""
from pathlib import Path

import pytest
from pydantic import ValidationError

from conftest import ready_document
from docuchat.config import AppConfig, load_config
from docuchat.documents.store import InMemoryDocumentStore
from docuchat.schemas import Document, DocumentStatus


# ============================================================================
# Document store
# ============================================================================

class TestDocumentStore:

    def test_add_and_get(self):
        store = InMemoryDocumentStore()
        doc = store.add(Document(id="d-1", title="A", organization_id="org-1"))
        assert store.get("d-1") == doc
        assert store.get("missing") is None

    def test_duplicate_add_rejected(self):
        store = InMemoryDocumentStore([Document(id="d-1", title="A", organization_id="org-1")])
        with pytest.raises(ValueError):
            store.add(Document(id="d-1", title="B", organization_id="org-1"))

    def test_status_lifecycle(self):
        store = InMemoryDocumentStore([Document(id="d-1", title="A", organization_id="org-1")])
        store.update_status("d-1", DocumentStatus.PROCESSING)
        doc = store.update_status("d-1", DocumentStatus.READY, chunk_count=4)
        assert doc.status == DocumentStatus.READY
        assert doc.chunk_count == 4

    def test_illegal_transition_rejected(self):
        store = InMemoryDocumentStore([Document(id="d-1", title="A", organization_id="org-1")])
        with pytest.raises(ValueError):
            store.update_status("d-1", DocumentStatus.READY)

    def test_update_missing_document(self):
        with pytest.raises(KeyError):
            InMemoryDocumentStore().update_status("nope", DocumentStatus.PROCESSING)

    def test_list_document_ids_filters(self):
        store = InMemoryDocumentStore([
            ready_document("d-1", folder_id="f", tags=["a", "b"], user_id="u-1"),
            ready_document("d-2", folder_id="f", tags=["a"]),
            ready_document("d-3", org="org-2"),
            Document(id="d-4", title="pending", organization_id="org-1"),
        ])
        assert store.list_document_ids("org-1") == {"d-1", "d-2"}
        assert store.list_document_ids("org-1", tags=["a", "b"]) == {"d-1"}
        assert store.list_document_ids("org-1", user_id="u-1") == {"d-1"}
        assert store.list_document_ids("org-1", folder_id="other") == set()
        assert store.list_document_ids("org-1", statuses=[DocumentStatus.PENDING]) == {"d-4"}

    def test_save_and_load(self, tmp_path):
        path = tmp_path / "documents.json"
        store = InMemoryDocumentStore([ready_document("d-1", tags=["x"])])
        store.save(path)

        loaded = InMemoryDocumentStore.load(path)

        doc = loaded.get("d-1")
        assert doc.status == DocumentStatus.READY
        assert doc.tags == ["x"]

    def test_load_missing_file_is_empty(self, tmp_path):
        assert InMemoryDocumentStore.load(tmp_path / "none.json").list_documents() == []


# ============================================================================
# Configuration
# ============================================================================

class TestConfig:

    def test_missing_file_gives_defaults(self, tmp_path):
        cfg = load_config(tmp_path / "absent.yaml")
        assert cfg == AppConfig()
        assert cfg.chunking.target_size == 800
        assert cfg.chunking.overlap_fraction == 0.2
        assert cfg.retrieval.similarity_threshold == 0.25
        assert cfg.retrieval.max_chunks == 8
        assert cfg.generation.max_history_turns == 10

    def test_yaml_overrides(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            "environment: development\n"
            "embedding:\n  provider: deterministic\n  dimensions: 64\n"
            "retrieval:\n  similarity_threshold: 0.4\n"
            "index:\n  backend: memory\n",
            encoding="utf-8",
        )
        cfg = load_config(path)
        assert cfg.embedding.provider == "deterministic"
        assert cfg.embedding.dimensions == 64
        assert cfg.retrieval.similarity_threshold == 0.4
        assert cfg.retrieval.max_chunks == 8
        assert cfg.index.backend == "memory"

    def test_invalid_value_rejected(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("chunking:\n  overlap_fraction: 1.5\n", encoding="utf-8")
        with pytest.raises(ValidationError):
            load_config(path)

    def test_production_forbids_deterministic_vectors(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("environment: production\nembedding:\n  fallback_on_error: true\n", encoding="utf-8")
        with pytest.raises(ValidationError):
            load_config(path)

    def test_shipped_config_is_valid(self):
        cfg = load_config(Path(__file__).resolve().parent.parent / "config" / "config.yaml")
        assert cfg.environment == "development"
        assert cfg.embedding.fallback_on_error is False
