"""
DocuChat - Token Window Chunker
--------------------------------
Splits extracted document text into page segments, then slides a fixed
token window over each page:

  - Page breaks: a form feed, or two or more consecutive blank lines.
    Whitespace-only segments are dropped but still advance the page counter.
  - Window: ``target_size`` tokens, advancing by
    ``target_size - floor(target_size * overlap_fraction)`` tokens, so
    consecutive chunks of a page share ``floor(target_size * overlap_fraction)``
    tokens.  The last (possibly short) window of a page is always emitted.

Token offsets are inclusive and relative to the page's token stream, so the
same page always produces the same spans.
"""
from __future__ import annotations

import re
from functools import lru_cache
from typing import Iterator

import tiktoken
from loguru import logger

from docuchat.chunking.schemas import Chunk, ChunkSpan
from docuchat.exceptions import MalformedInput
from docuchat.schemas import Document

# ── Constants ─────────────────────────────────────────────────────────────────

DEFAULT_TARGET_SIZE = 800
DEFAULT_OVERLAP_FRACTION = 0.2
DEFAULT_ENCODING = "cl100k_base"      # GPT-3.5/4 and text-embedding-3-*

PAGE_BREAK = re.compile(r"\f|\n\s*\n\s*\n")

SUPPORTED_MIME_PREFIXES = ("text/",)
SUPPORTED_MIME_TYPES = {
    "application/json",
    "application/xml",
    "application/pdf",      # text already extracted upstream
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
}


@lru_cache(maxsize=4)
def _encoding(name: str) -> tiktoken.Encoding:
    return tiktoken.get_encoding(name)


def count_tokens(text: str, encoding: str = DEFAULT_ENCODING) -> int:
    """Count BPE tokens with the given tiktoken encoding."""
    return len(_encoding(encoding).encode(text, disallowed_special=()))


def is_supported_mime(mime: str) -> bool:
    mime = mime.lower().split(";")[0].strip()
    return mime.startswith(SUPPORTED_MIME_PREFIXES) or mime in SUPPORTED_MIME_TYPES


def split_pages(text: str) -> list[tuple[int, str]]:
    """
    Split text into ``(page_number, page_text)`` pairs using the page-break
    heuristic.  Page numbers are 1-based positions in the split.
    """
    pages: list[tuple[int, str]] = []
    for position, segment in enumerate(PAGE_BREAK.split(text), start=1):
        segment = segment.strip()
        if segment:
            pages.append((position, segment))
    return pages


def _validate_text(text) -> None:
    if not isinstance(text, str):
        raise MalformedInput(
            "Document text must be a string",
            {"type": type(text).__name__},
        )
    if "\x00" in text:
        raise MalformedInput("Document text contains NUL bytes (binary content?)")
    try:
        text.encode("utf-8")
    except UnicodeEncodeError as exc:
        raise MalformedInput(
            "Document text is not valid Unicode",
            {"position": exc.start},
        ) from exc


# ── Main Chunker ──────────────────────────────────────────────────────────────

class TokenChunker:
    """
    Page-aware sliding-window chunker.

    Usage:
        chunker = TokenChunker(target_size=800, overlap_fraction=0.2)
        spans = chunker.chunk(text)
        chunks = chunker.chunk_document(document, text)
    """

    def __init__(
        self,
        target_size: int = DEFAULT_TARGET_SIZE,
        overlap_fraction: float = DEFAULT_OVERLAP_FRACTION,
        encoding: str = DEFAULT_ENCODING,
    ) -> None:
        if target_size < 1:
            raise ValueError(f"target_size must be >= 1, got {target_size}")
        if not 0.0 <= overlap_fraction < 1.0:
            raise ValueError(f"overlap_fraction must be in [0, 1), got {overlap_fraction}")

        self.target_size = target_size
        self.overlap_fraction = overlap_fraction
        self.overlap_tokens = int(target_size * overlap_fraction)
        self.stride = target_size - self.overlap_tokens
        self.encoding_name = encoding
        self._enc = _encoding(encoding)

    # --- Tokenizer ------------------------------------------------------------

    def encode(self, text: str) -> list[int]:
        # Special-token markers in user documents are plain text here
        return self._enc.encode(text, disallowed_special=())

    def decode(self, tokens: list[int]) -> str:
        return self._enc.decode(tokens)

    # --- Chunking -------------------------------------------------------------

    def chunk(self, text: str) -> list[ChunkSpan]:
        """
        Split ``text`` into overlapping token windows tagged with page numbers.

        Empty (or whitespace-only) text yields no spans.

        Raises:
            MalformedInput: text is not a string or not valid Unicode.
        """
        _validate_text(text)
        spans: list[ChunkSpan] = []
        for page, page_text in split_pages(text):
            spans.extend(self._windows(page, self.encode(page_text)))
        return spans

    def _windows(self, page: int, tokens: list[int]) -> Iterator[ChunkSpan]:
        start = 0
        while start < len(tokens):
            end = min(start + self.target_size, len(tokens))
            window = tokens[start:end]
            yield ChunkSpan(
                text=self.decode(window),
                page=page,
                token_count=len(window),
                start_index=start,
                end_index=end - 1,
            )
            if end >= len(tokens):
                break
            start += self.stride

    def chunk_document(self, document: Document, text: str) -> list[Chunk]:
        """
        Chunk a document's extracted text into ``Chunk`` models.

        Args:
            document: The registered Document (title/mime are snapshotted).
            text: Extracted plain text of the document.

        Returns:
            Chunks in document order, ready for embedding.
        """
        if not is_supported_mime(document.mime):
            raise MalformedInput(
                f"Unsupported content type for chunking: {document.mime}",
                {"document_id": document.id},
            )

        spans = self.chunk(text)
        chunks = [
            Chunk(
                document_id=document.id,
                chunk_index=i,
                content=span.text,
                page=span.page,
                token_count=span.token_count,
                start_index=span.start_index,
                end_index=span.end_index,
                metadata={"document_title": document.title, "mime_type": document.mime},
            )
            for i, span in enumerate(spans)
        ]

        pages = len({c.page for c in chunks})
        logger.debug(
            f"[Chunker] {document.id[:12]} | {pages} page(s) | "
            f"target={self.target_size} overlap={self.overlap_tokens} -> {len(chunks)} chunk(s)"
        )
        return chunks


def chunk(
    text: str,
    target_size: int = DEFAULT_TARGET_SIZE,
    overlap_fraction: float = DEFAULT_OVERLAP_FRACTION,
) -> list[ChunkSpan]:
    """Functional shortcut for ``TokenChunker(target_size, overlap_fraction).chunk(text)``."""
    return TokenChunker(target_size, overlap_fraction).chunk(text)
