"""
Tests for the embedding generators and their configuration guards.
"""
from types import SimpleNamespace
from unittest.mock import MagicMock

import numpy as np
import pytest
from openai import OpenAIError
from pydantic import ValidationError

from docuchat.config import AppConfig, EmbeddingSettings
from docuchat.embedding.embedder import (
    DeterministicEmbedder,
    OpenAIEmbedder,
    create_embedder,
    l2_normalise,
)
from docuchat.exceptions import EmbeddingUnavailable, MalformedInput


def _response(vectors, total_tokens=12):
    data = [SimpleNamespace(index=i, embedding=list(v)) for i, v in enumerate(vectors)]
    return SimpleNamespace(data=list(reversed(data)), usage=SimpleNamespace(total_tokens=total_tokens))


def _client(response=None, error=None):
    client = MagicMock()
    if error is not None:
        client.embeddings.create.side_effect = error
    else:
        client.embeddings.create.return_value = response
    return client


# ============================================================================
# Deterministic generator
# ============================================================================

class TestDeterministicEmbedder:

    def test_identical_text_identical_vector(self):
        emb = DeterministicEmbedder(dimensions=64)
        a = emb.embed("The monthly growth trend")
        b = DeterministicEmbedder(dimensions=64).embed("The monthly growth trend")
        assert np.array_equal(a, b)

    def test_vectors_are_unit_length(self):
        vecs = DeterministicEmbedder(dimensions=64).embed_texts(["alpha beta", "gamma"])
        assert vecs.shape == (2, 64)
        assert vecs.dtype == np.float32
        assert np.allclose(np.linalg.norm(vecs, axis=1), 1.0, atol=1e-5)

    def test_shared_words_are_closer(self):
        emb = DeterministicEmbedder()
        query = emb.embed("What is the monthly growth trend?")
        related = emb.embed("The monthly growth trend shows a 5% increase.")
        unrelated = emb.embed("Conclusion and future outlook for operations.")
        assert float(query @ related) > 0.4
        assert float(query @ unrelated) < 0.2

    def test_empty_text_is_malformed(self):
        with pytest.raises(MalformedInput):
            DeterministicEmbedder().embed("   ")

    def test_empty_batch(self):
        assert DeterministicEmbedder(dimensions=8).embed_texts([]).shape == (0, 8)


# ============================================================================
# OpenAI generator
# ============================================================================

class TestOpenAIEmbedder:

    def test_embeds_and_normalises(self):
        client = _client(_response([[3.0, 4.0, 0.0], [0.0, 0.0, 2.0]]))
        emb = OpenAIEmbedder(model="text-embedding-3-small", dimensions=3, client=client)

        vecs = emb.embed_texts(["a", "b"])

        assert np.allclose(vecs[0], [0.6, 0.8, 0.0])
        assert np.allclose(vecs[1], [0.0, 0.0, 1.0])
        kwargs = client.embeddings.create.call_args.kwargs
        assert kwargs["input"] == ["a", "b"]
        assert kwargs["dimensions"] == 3

    def test_batches_requests(self):
        client = MagicMock()
        client.embeddings.create.side_effect = lambda **kw: _response([[1.0, 0.0]] * len(kw["input"]))
        emb = OpenAIEmbedder(dimensions=2, batch_size=2, client=client)

        vecs = emb.embed_texts(["a", "b", "c", "d", "e"])

        assert vecs.shape == (5, 2)
        assert client.embeddings.create.call_count == 3
        assert emb.usage_summary()["total_api_calls"] == 3

    def test_api_error_raises_embedding_unavailable(self):
        emb = OpenAIEmbedder(dimensions=3, client=_client(error=OpenAIError("quota exceeded")))
        with pytest.raises(EmbeddingUnavailable) as exc_info:
            emb.embed("hello")
        assert isinstance(exc_info.value.__cause__, OpenAIError)

    def test_wrong_vector_length_is_unavailable(self):
        emb = OpenAIEmbedder(dimensions=3, client=_client(_response([[1.0, 0.0]])))
        with pytest.raises(EmbeddingUnavailable):
            emb.embed("hello")

    def test_missing_items_is_unavailable(self):
        emb = OpenAIEmbedder(dimensions=2, client=_client(_response([[1.0, 0.0]])))
        with pytest.raises(EmbeddingUnavailable):
            emb.embed_texts(["a", "b"])

    def test_empty_input_never_calls_api(self):
        client = _client(_response([[1.0, 0.0]]))
        emb = OpenAIEmbedder(dimensions=2, client=client)
        with pytest.raises(MalformedInput):
            emb.embed_texts(["ok", ""])
        client.embeddings.create.assert_not_called()

    def test_fallback_used_only_when_configured(self):
        fallback = DeterministicEmbedder(dimensions=3)
        emb = OpenAIEmbedder(
            dimensions=3,
            fallback=fallback,
            client=_client(error=OpenAIError("timeout")),
        )
        vec = emb.embed("hello world")
        assert np.allclose(vec, fallback.embed("hello world"))


# ============================================================================
# Factory + configuration
# ============================================================================

class TestCreateEmbedder:

    def test_deterministic_provider(self):
        emb = create_embedder(EmbeddingSettings(provider="deterministic", dimensions=16))
        assert isinstance(emb, DeterministicEmbedder)
        assert emb.dimensions == 16

    def test_openai_without_fallback(self):
        emb = create_embedder(EmbeddingSettings(dimensions=16), client=MagicMock())
        assert isinstance(emb, OpenAIEmbedder)
        assert emb.fallback is None

    def test_openai_with_fallback(self):
        emb = create_embedder(EmbeddingSettings(dimensions=16, fallback_on_error=True), client=MagicMock())
        assert isinstance(emb.fallback, DeterministicEmbedder)

    def test_production_rejects_fallback(self):
        with pytest.raises(ValidationError):
            AppConfig(environment="production", embedding={"fallback_on_error": True})
        with pytest.raises(ValidationError):
            AppConfig(environment="production", embedding={"provider": "deterministic"})


def test_l2_normalise_leaves_zero_rows():
    out = l2_normalise(np.array([[0.0, 0.0], [0.0, 5.0]]))
    assert np.array_equal(out, np.array([[0.0, 0.0], [0.0, 1.0]], dtype=np.float32))
