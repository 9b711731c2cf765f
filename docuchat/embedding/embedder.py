"""
Embedding Generators
---------------------
Two implementations behind one interface:

  OpenAIEmbedder        -- text-embedding-3-small via the OpenAI API
  DeterministicEmbedder -- offline/dev generator, no network

Both return L2-normalised float32 vectors, so cosine similarity equals the
inner product downstream.

The OpenAI embedder does not retry: the SDK's built-in retries are turned
off and any failure (timeout, quota, connection, malformed response) is
raised as ``EmbeddingUnavailable`` for the caller to handle.  The
deterministic generator is only used when the configuration asks for it,
either as the provider or as an explicit ``fallback_on_error`` substitute;
``AppConfig`` refuses both for production.
"""
from __future__ import annotations

import hashlib
import re
import threading
import time
from abc import ABC, abstractmethod
from functools import lru_cache
from typing import Any, Optional

import numpy as np
from langsmith import traceable
from loguru import logger

from docuchat.config import EmbeddingSettings
from docuchat.exceptions import EmbeddingUnavailable, MalformedInput

MODEL = "text-embedding-3-small"
DIMENSIONS = 1536          # text-embedding-3-small native dimensions
BATCH_SIZE = 512           # OpenAI allows up to 2048; 512 keeps requests < 1 MB

_WORD = re.compile(r"[a-z0-9]+")


def l2_normalise(matrix: np.ndarray) -> np.ndarray:
    """Row-normalise a 1-D or 2-D array; zero rows are left as zeros."""
    matrix = np.asarray(matrix, dtype=np.float32)
    norms = np.linalg.norm(matrix, axis=-1, keepdims=True)
    norms = np.where(norms == 0, 1, norms)
    return (matrix / norms).astype(np.float32)


def _check_input(text) -> None:
    if not isinstance(text, str):
        raise MalformedInput("Embedding input must be a string", {"type": type(text).__name__})
    if not text.strip():
        raise MalformedInput("Embedding input is empty")


class Embedder(ABC):
    """Maps text to fixed-length unit vectors."""

    dimensions: int

    @abstractmethod
    def embed_texts(self, texts: list[str]) -> np.ndarray:
        """Embed ``texts`` and return an (N, dimensions) float32 array."""

    def embed(self, text: str) -> np.ndarray:
        """Embed a single string.  Returns shape (dimensions,) float32 array."""
        return self.embed_texts([text])[0]

    def embed_query(self, text: str) -> np.ndarray:
        return self.embed(text)


# ---------------------------------------------------------------------------
# Deterministic (offline) generator
# ---------------------------------------------------------------------------

@lru_cache(maxsize=65536)
def _token_vector(token: str, dimensions: int) -> np.ndarray:
    seed = int.from_bytes(hashlib.sha256(token.encode("utf-8")).digest()[:8], "little")
    vec = np.random.default_rng(seed).standard_normal(dimensions)
    vec /= np.linalg.norm(vec)
    vec.setflags(write=False)
    return vec


class DeterministicEmbedder(Embedder):
    """
    Offline embedding generator for development and tests.

    Each lower-cased word token seeds a Gaussian sample; the samples are
    summed (weighted by term count) and normalised.  Identical text always
    maps to the identical unit vector, and texts that share words land
    closer together than unrelated ones.
    """

    def __init__(self, dimensions: int = DIMENSIONS) -> None:
        self.dimensions = dimensions

    def embed_texts(self, texts: list[str]) -> np.ndarray:
        if not texts:
            return np.empty((0, self.dimensions), dtype=np.float32)
        for text in texts:
            _check_input(text)
        return np.stack([self._vector(t) for t in texts]).astype(np.float32)

    def _vector(self, text: str) -> np.ndarray:
        tokens = _WORD.findall(text.lower()) or [text]
        acc = np.zeros(self.dimensions, dtype=np.float64)
        for token in tokens:
            acc += _token_vector(token, self.dimensions)
        return l2_normalise(acc)


# ---------------------------------------------------------------------------
# OpenAI generator
# ---------------------------------------------------------------------------

class OpenAIEmbedder(Embedder):
    """
    Generates L2-normalised embeddings using text-embedding-3-small.

    Args:
        model:        Embedding model name.
        dimensions:   Expected vector length; responses of another length
                      are rejected as malformed.
        batch_size:   Texts per API call.
        timeout_s:    Per-request timeout.
        fallback:     Optional generator used when the API fails.  Only set
                      by ``create_embedder`` when configuration allows it.
        client:       Pre-built ``openai.OpenAI`` client (tests inject mocks).
    """

    def __init__(
        self,
        model: str = MODEL,
        dimensions: int = DIMENSIONS,
        batch_size: int = BATCH_SIZE,
        timeout_s: float = 30.0,
        fallback: Optional[Embedder] = None,
        client: Any = None,
    ) -> None:
        self.model = model
        self.dimensions = dimensions
        self.batch_size = batch_size
        self.fallback = fallback
        if client is None:
            from openai import OpenAI  # lazy import keeps import graph clean
            client = OpenAI(max_retries=0, timeout=timeout_s)
        self._client = client
        self._lock = threading.Lock()
        self.total_tokens_used: int = 0
        self.total_api_calls: int = 0

    @traceable(name="embed_texts", run_type="embedding")
    def embed_texts(self, texts: list[str]) -> np.ndarray:
        """
        Embed a list of strings and return an (N, DIMENSIONS) float32 array.
        Texts are processed in batches to stay within API limits.

        Raises:
            MalformedInput: an input is empty or not a string.
            EmbeddingUnavailable: the API call failed and no fallback is configured.
        """
        if not texts:
            return np.empty((0, self.dimensions), dtype=np.float32)
        for text in texts:
            _check_input(text)

        all_embeddings: list[list[float]] = []
        for i in range(0, len(texts), self.batch_size):
            batch = texts[i: i + self.batch_size]
            try:
                embeddings = self._embed_batch(batch)
            except EmbeddingUnavailable as exc:
                if self.fallback is None:
                    raise
                logger.warning(
                    f"[Embedder] {exc.message} -- substituting deterministic vectors "
                    f"for {len(batch)} text(s) (fallback_on_error=true)"
                )
                embeddings = self.fallback.embed_texts(batch).tolist()
            all_embeddings.extend(embeddings)

        return l2_normalise(np.array(all_embeddings, dtype=np.float32))

    def _embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Call the OpenAI Embeddings API for a single batch."""
        from openai import OpenAIError

        kwargs: dict[str, Any] = {"model": self.model, "input": texts, "encoding_format": "float"}
        if self.model.startswith("text-embedding-3"):
            kwargs["dimensions"] = self.dimensions

        start = time.perf_counter()
        try:
            response = self._client.embeddings.create(**kwargs)
        except OpenAIError as exc:
            raise EmbeddingUnavailable(
                f"Embedding API call failed: {exc}",
                {"model": self.model, "error": type(exc).__name__, "batch": len(texts)},
            ) from exc
        elapsed = time.perf_counter() - start

        data = sorted(getattr(response, "data", None) or [], key=lambda x: x.index)
        if len(data) != len(texts):
            raise EmbeddingUnavailable(
                "Malformed embedding response: item count mismatch",
                {"expected": len(texts), "received": len(data)},
            )
        embeddings = [item.embedding for item in data]
        for emb in embeddings:
            if emb is None or len(emb) != self.dimensions:
                raise EmbeddingUnavailable(
                    "Malformed embedding response: unexpected vector length",
                    {"expected": self.dimensions, "received": None if emb is None else len(emb)},
                )

        usage = getattr(response, "usage", None)
        tokens_used = int(getattr(usage, "total_tokens", 0) or 0)
        with self._lock:
            self.total_tokens_used += tokens_used
            self.total_api_calls += 1

        logger.debug(f"[Embedder] API call: {len(texts)} texts, {tokens_used} tokens, {elapsed:.2f}s")
        return embeddings

    def usage_summary(self) -> dict:
        return {
            "model": self.model,
            "total_api_calls": self.total_api_calls,
            "total_tokens_used": self.total_tokens_used,
            # text-embedding-3-small: $0.020 per million tokens
            "estimated_cost_usd": round(self.total_tokens_used / 1_000_000 * 0.020, 6),
        }


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def create_embedder(settings: EmbeddingSettings, client: Any = None) -> Embedder:
    """Build the embedder selected by configuration."""
    if settings.provider == "deterministic":
        logger.warning("[Embedder] Using deterministic offline embeddings (provider=deterministic)")
        return DeterministicEmbedder(dimensions=settings.dimensions)

    fallback = DeterministicEmbedder(settings.dimensions) if settings.fallback_on_error else None
    return OpenAIEmbedder(
        model=settings.model,
        dimensions=settings.dimensions,
        batch_size=settings.batch_size,
        timeout_s=settings.timeout_s,
        fallback=fallback,
        client=client,
    )
