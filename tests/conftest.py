"""
Shared fixtures for the DocuChat test suite.

Everything runs offline: embeddings come from the deterministic generator
or hand-made vectors, and generation from a scripted fake.
"""
from __future__ import annotations

import threading
from typing import Optional, Sequence

import numpy as np
import pytest

from docuchat.documents.store import InMemoryDocumentStore
from docuchat.embedding.embedder import DeterministicEmbedder, Embedder
from docuchat.embedding.vector_index import InMemoryVectorIndex
from docuchat.exceptions import GenerationCancelled
from docuchat.generation.generator import GenerationResult, Generator
from docuchat.schemas import Document, DocumentStatus, PromptMessage, RetrievedPassage

DIMS = 1536


class FakeGenerator(Generator):
    """Returns a scripted answer and records every prompt it receives."""

    def __init__(self, answer: str = "", model: str = "gpt-4o-mini") -> None:
        self.answer = answer
        self.model = model
        self.calls: list[list[PromptMessage]] = []

    def generate(self, messages: Sequence[PromptMessage]) -> GenerationResult:
        self.calls.append(list(messages))
        return GenerationResult(self.answer, self.model, prompt_tokens=100, completion_tokens=20)

    def stream(self, messages, on_token, cancel_event: Optional[threading.Event] = None):
        self.calls.append(list(messages))
        delivered = []
        for token in self.answer.split(" "):
            if cancel_event is not None and cancel_event.is_set():
                raise GenerationCancelled("Generation cancelled by caller")
            delivered.append(token)
            on_token(token)
        return GenerationResult(" ".join(delivered), self.model, prompt_tokens=100, completion_tokens=len(delivered))


class StaticEmbedder(Embedder):
    """Looks vectors up in a dict; unknown text raises KeyError."""

    def __init__(self, vectors: dict[str, Sequence[float]]) -> None:
        self.vectors = {k: np.asarray(v, dtype=np.float32) for k, v in vectors.items()}
        self.dimensions = len(next(iter(self.vectors.values())))

    def embed_texts(self, texts: list[str]) -> np.ndarray:
        return np.stack([self.vectors[t] for t in texts])


def make_passage(ordinal: int, chunk_id: str, document_id: str = "doc-1", page: int = 1, **kw) -> RetrievedPassage:
    return RetrievedPassage(
        ordinal=ordinal,
        chunk_id=chunk_id,
        document_id=document_id,
        document_title=kw.pop("document_title", "Report"),
        content=kw.pop("content", f"content of {chunk_id}"),
        page=page,
        similarity=kw.pop("similarity", 0.9 - ordinal * 0.01),
        **kw,
    )


def ready_document(doc_id: str, org: str = "org-1", **kw) -> Document:
    return Document(id=doc_id, title=kw.pop("title", doc_id), organization_id=org, status=DocumentStatus.READY, **kw)


@pytest.fixture
def embedder() -> DeterministicEmbedder:
    return DeterministicEmbedder(dimensions=DIMS)


@pytest.fixture
def index() -> InMemoryVectorIndex:
    return InMemoryVectorIndex(dimensions=DIMS)


@pytest.fixture
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def generator() -> FakeGenerator:
    return FakeGenerator()
