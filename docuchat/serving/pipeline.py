"""
RAG Serving Pipeline
---------------------
Orchestrates one question from text to cited answer:

    question
        |
        v
    Embedder          (query vector)                      EMBEDDING
        |
        v
    Retriever         (scope -> allow-list -> dense search) RETRIEVING
        |
        +-- no passages --> fixed answer, no citations     NO_CONTEXT
        |
        v
    PromptAssembler   (system + history + excerpts)       PROMPTING
        |
        v
    Generator         (blocking or streamed)              GENERATING
        |
        v
    extract_citations (Document N -> passage)             EXTRACTING
        |
        v
    QueryResult                                           DONE

Every call walks its own state list; the pipeline object holds no
per-query mutable state, so one instance can serve concurrent callers.
A typed failure at any step moves the run to ERRORED and is re-raised
with the visited states in ``error.details["states"]``; a partial answer
is never returned.

The outer query() method is decorated with @traceable so LangSmith captures
embedding, retrieval and generation in a single trace.
"""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional, Sequence

from langsmith import traceable
from loguru import logger

from docuchat.config import AppConfig
from docuchat.documents.store import DocumentStore, InMemoryDocumentStore
from docuchat.embedding.embedder import Embedder, create_embedder
from docuchat.embedding.vector_index import VectorIndex, create_vector_index
from docuchat.exceptions import DocuChatError, MalformedInput
from docuchat.generation.assembler import PromptAssembler
from docuchat.generation.citations import extract_citations
from docuchat.generation.generator import Generator, TokenCallback, _cost_usd, create_generator
from docuchat.generation.prompts import NO_CONTEXT_RESPONSE
from docuchat.retrieval.retriever import Retriever
from docuchat.schemas import Citation, PromptMessage, QueryScope, RetrievedPassage
from docuchat.utils.helpers import truncate_text


class PipelineState(str, Enum):
    IDLE = "idle"
    EMBEDDING = "embedding"
    RETRIEVING = "retrieving"
    NO_CONTEXT = "no_context"
    PROMPTING = "prompting"
    GENERATING = "generating"
    EXTRACTING = "extracting"
    DONE = "done"
    ERRORED = "errored"


# ---------------------------------------------------------------------------
# Result schema
# ---------------------------------------------------------------------------

@dataclass
class QueryResult:
    """
    Full output from a single RAG query.

    Timing fields are in milliseconds.  Token counts come from the
    generator's usage report and are zero on the no-context path.
    """

    query: str
    answer: str
    citations: list[Citation]
    passages: list[RetrievedPassage]
    states: list[PipelineState] = field(default_factory=list)

    # Latency breakdown
    embedding_ms: float = 0.0
    retrieval_ms: float = 0.0
    generation_ms: float = 0.0

    # Token stats
    model: str = ""
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def no_context(self) -> bool:
        return PipelineState.NO_CONTEXT in self.states

    @property
    def total_ms(self) -> float:
        return self.embedding_ms + self.retrieval_ms + self.generation_ms

    @property
    def estimated_cost_usd(self) -> float:
        return _cost_usd(self.model, self.prompt_tokens, self.completion_tokens) if self.model else 0.0

    def to_dict(self) -> dict:
        return {
            "query": self.query,
            "answer": self.answer,
            "citations": [c.model_dump() for c in self.citations],
            "passages": [
                {
                    "ordinal": p.ordinal,
                    "chunk_id": p.chunk_id,
                    "document_id": p.document_id,
                    "document_title": p.document_title,
                    "page": p.page,
                    "similarity": round(p.similarity, 4),
                }
                for p in self.passages
            ],
            "states": [s.value for s in self.states],
            "latency_ms": {
                "embedding": round(self.embedding_ms, 1),
                "retrieval": round(self.retrieval_ms, 1),
                "generation": round(self.generation_ms, 1),
                "total": round(self.total_ms, 1),
            },
            "tokens": {
                "prompt": self.prompt_tokens,
                "completion": self.completion_tokens,
                "total": self.prompt_tokens + self.completion_tokens,
            },
            "model": self.model,
            "estimated_cost_usd": round(self.estimated_cost_usd, 6),
        }


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

class RAGPipeline:
    """
    End-to-end query pipeline over injected collaborators.

    Usage:
        pipeline = RAGPipeline.from_config(load_config())
        result = pipeline.query("What is the growth trend?", QueryScope(organization_id="acme"))
        print(result.answer)
        for cit in result.citations:
            print(cit.document_title, cit.page)
    """

    def __init__(
        self,
        embedder: Embedder,
        retriever: Retriever,
        assembler: PromptAssembler,
        generator: Generator,
    ) -> None:
        self.embedder = embedder
        self.retriever = retriever
        self.assembler = assembler
        self.generator = generator

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        index: Optional[VectorIndex] = None,
        documents: Optional[DocumentStore] = None,
        embedder: Optional[Embedder] = None,
        generator: Optional[Generator] = None,
    ) -> "RAGPipeline":
        """Wire a pipeline from configuration; any collaborator can be injected."""
        if embedder is None:
            embedder = create_embedder(config.embedding)
        if index is None:
            index = create_vector_index(config.index, config.embedding.dimensions)
        if documents is None:
            documents = InMemoryDocumentStore.load(Path(config.index.store_path))
        retriever = Retriever(
            index=index,
            embedder=embedder,
            documents=documents,
            max_chunks=config.retrieval.max_chunks,
            similarity_threshold=config.retrieval.similarity_threshold,
            raise_on_empty_scope=config.retrieval.raise_on_empty_scope,
        )
        pipeline = cls(
            embedder=embedder,
            retriever=retriever,
            assembler=PromptAssembler(max_history_turns=config.generation.max_history_turns),
            generator=generator if generator is not None else create_generator(config.generation),
        )
        logger.info(
            f"[RAGPipeline] Ready | {index.count()} vectors | "
            f"model={pipeline.generator.model} | threshold={config.retrieval.similarity_threshold}"
        )
        return pipeline

    @traceable(name="rag_query", run_type="chain")
    def query(
        self,
        question: str,
        scope: QueryScope,
        history: Optional[Sequence[PromptMessage]] = None,
        stream: bool = False,
        on_token: Optional[TokenCallback] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> QueryResult:
        """
        Answer ``question`` from the documents ``scope`` covers.

        Args:
            question:     The raw question from the user.
            scope:        Organization (required) plus optional user/folder/tags.
            history:      Prior conversation turns, oldest first.
            stream:       Deliver tokens through ``on_token`` as they arrive.
            on_token:     Token callback, required when ``stream`` is set.
            cancel_event: Set it to stop a streamed generation.

        Returns:
            QueryResult with answer, citations, passages, states and timings.

        Raises:
            MalformedInput, EmbeddingUnavailable, IndexUnavailable,
            ScopeNotFound, GenerationFailed, GenerationCancelled.
        """
        states: list[PipelineState] = [PipelineState.IDLE]
        logger.info(f"[RAGPipeline] Query: {truncate_text(question, 100)!r} | org={scope.organization_id}")

        try:
            return self._run(question, scope, history, stream, on_token, cancel_event, states)
        except DocuChatError as exc:
            states.append(PipelineState.ERRORED)
            exc.details["states"] = [s.value for s in states]
            logger.error(f"[RAGPipeline] {type(exc).__name__} after {states[-2].value}: {exc.message}")
            raise

    def _run(
        self,
        question: str,
        scope: QueryScope,
        history: Optional[Sequence[PromptMessage]],
        stream: bool,
        on_token: Optional[TokenCallback],
        cancel_event: Optional[threading.Event],
        states: list[PipelineState],
    ) -> QueryResult:
        if not isinstance(question, str) or not question.strip():
            raise MalformedInput("Question is empty")
        if stream and on_token is None:
            raise MalformedInput("Streaming requires an on_token callback")

        # -- 1. Embed -----------------------------------------------------------
        states.append(PipelineState.EMBEDDING)
        t0 = time.perf_counter()
        query_vector = self.embedder.embed_query(question)
        embedding_ms = (time.perf_counter() - t0) * 1000

        # -- 2. Retrieve --------------------------------------------------------
        states.append(PipelineState.RETRIEVING)
        t1 = time.perf_counter()
        passages = self.retriever.retrieve(question, scope, query_vector=query_vector)
        retrieval_ms = (time.perf_counter() - t1) * 1000

        if not passages:
            states.extend([PipelineState.NO_CONTEXT, PipelineState.DONE])
            logger.info("[RAGPipeline] No relevant passages -- answering without generation")
            if stream:
                on_token(NO_CONTEXT_RESPONSE)
            return QueryResult(
                query=question,
                answer=NO_CONTEXT_RESPONSE,
                citations=[],
                passages=[],
                states=list(states),
                embedding_ms=embedding_ms,
                retrieval_ms=retrieval_ms,
            )

        # -- 3. Assemble --------------------------------------------------------
        states.append(PipelineState.PROMPTING)
        messages = self.assembler.assemble(question, passages, history)

        # -- 4. Generate --------------------------------------------------------
        states.append(PipelineState.GENERATING)
        t2 = time.perf_counter()
        if stream:
            generation = self.generator.stream(messages, on_token, cancel_event)
        else:
            generation = self.generator.generate(messages)
        generation_ms = (time.perf_counter() - t2) * 1000

        # -- 5. Cite ------------------------------------------------------------
        states.append(PipelineState.EXTRACTING)
        citations = extract_citations(generation.text, passages)
        if not citations and NO_CONTEXT_RESPONSE not in generation.text:
            logger.warning(
                f"[RAGPipeline] citation_format_missing | no [Document N] reference resolved "
                f"in answer over {len(passages)} passage(s)"
            )

        states.append(PipelineState.DONE)
        logger.info(
            f"[RAGPipeline] Complete | "
            f"embed={embedding_ms:.0f}ms retrieve={retrieval_ms:.0f}ms generate={generation_ms:.0f}ms | "
            f"passages={len(passages)} citations={len(citations)} tokens={generation.total_tokens}"
        )

        return QueryResult(
            query=question,
            answer=generation.text,
            citations=citations,
            passages=passages,
            states=list(states),
            embedding_ms=embedding_ms,
            retrieval_ms=retrieval_ms,
            generation_ms=generation_ms,
            model=generation.model,
            prompt_tokens=generation.prompt_tokens,
            completion_tokens=generation.completion_tokens,
        )
