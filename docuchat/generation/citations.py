"""
Citation Extractor
-------------------
Maps "[Document N, Page P]" references in a generated answer back to the
passages that were actually retrieved for it.

Pure function, no I/O: the answer text is scanned for bracketed groups,
every "Document N" (or "Doc N") that opens a group or a "," / ";"
separated part of one is resolved through the passage ordinals.  Text
after the number (an echoed title, a page) is never read as a reference,
and ordinals that are too long or point at nothing are dropped.  The
page always comes from the passage, never from the model's text.
"""
from __future__ import annotations

import re
from typing import Sequence

from docuchat.schemas import Citation, RetrievedPassage

_BRACKET = re.compile(r"\[([^\[\]]*)\]")
_REFERENCE = re.compile(r"(?:^|[;,])\s*doc(?:ument)?\s*#?\s*(\d{1,6})\b", re.IGNORECASE)
# "Document N: <title>, Page P" echoes the excerpt header; the title runs to the next ";"
_TITLE = re.compile(r":[^;]*")


def find_references(answer_text: str) -> list[int]:
    """Document numbers referenced in ``answer_text``, in order of appearance."""
    numbers: list[int] = []
    for group in _BRACKET.finditer(answer_text or ""):
        numbers.extend(int(m.group(1)) for m in _REFERENCE.finditer(_TITLE.sub("", group.group(1))))
    return numbers


def extract_citations(
    answer_text: str,
    passages: Sequence[RetrievedPassage],
) -> list[Citation]:
    """
    Resolve the answer's document references into citations.

    Returns one Citation per distinct chunk, in first-mention order.
    Out-of-range ordinals are ignored.
    """
    by_ordinal = {p.ordinal: p for p in passages}
    seen: set[str] = set()
    citations: list[Citation] = []

    for number in find_references(answer_text):
        passage = by_ordinal.get(number)
        if passage is None or passage.chunk_id in seen:
            continue
        seen.add(passage.chunk_id)
        citations.append(Citation.from_passage(passage))
    return citations
