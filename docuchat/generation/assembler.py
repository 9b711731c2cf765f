"""
Prompt Assembler
-----------------
Builds the ordered message list sent to the generator:

  1. system     -- fixed answering policy (prompts.SYSTEM_PROMPT)
  2. history    -- the most recent ``max_history_turns`` messages, roles and
                   order preserved
  3. user       -- "Question: ..." followed by the numbered excerpts

Excerpts are numbered by passage ordinal, so "Document N" in the prompt is
exactly the N the citation extractor resolves later.
"""
from __future__ import annotations

from typing import Optional, Sequence

from loguru import logger

from docuchat.generation.prompts import (
    NO_CONTEXT_EXCERPTS,
    PASSAGE_TEMPLATE,
    SYSTEM_PROMPT,
    UNKNOWN_PAGE,
    USER_TEMPLATE,
)
from docuchat.schemas import PromptMessage, RetrievedPassage


def format_passage(passage: RetrievedPassage) -> str:
    return PASSAGE_TEMPLATE.format(
        ordinal=passage.ordinal,
        title=passage.document_title or "Untitled",
        page=passage.page if passage.page is not None else UNKNOWN_PAGE,
        content=passage.content,
    )


class PromptAssembler:
    """Turns (query, passages, history) into role-tagged prompt messages."""

    def __init__(self, max_history_turns: int = 10, system_prompt: str = SYSTEM_PROMPT) -> None:
        if max_history_turns < 0:
            raise ValueError("max_history_turns must be >= 0")
        self.max_history_turns = max_history_turns
        self.system_prompt = system_prompt

    def assemble(
        self,
        query: str,
        passages: Sequence[RetrievedPassage],
        history: Optional[Sequence[PromptMessage]] = None,
    ) -> list[PromptMessage]:
        messages = [PromptMessage(role="system", content=self.system_prompt)]

        turns = list(history or [])
        if self.max_history_turns:
            messages.extend(turns[-self.max_history_turns:])

        ranked = sorted(passages, key=lambda p: p.ordinal)
        excerpts = "\n".join(format_passage(p) for p in ranked) if ranked else NO_CONTEXT_EXCERPTS
        messages.append(
            PromptMessage(role="user", content=USER_TEMPLATE.format(query=query, excerpts=excerpts))
        )

        logger.debug(
            f"[Assembler] {len(messages)} message(s) | {len(ranked)} excerpt(s) | "
            f"{len(messages) - 2} history turn(s)"
        )
        return messages
