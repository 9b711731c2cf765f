"""
Tests for prompt assembly.
"""
import pytest

from conftest import make_passage
from docuchat.generation.assembler import PromptAssembler
from docuchat.generation.prompts import NO_CONTEXT_EXCERPTS, NO_CONTEXT_RESPONSE, SYSTEM_PROMPT
from docuchat.schemas import PromptMessage


def _history(n):
    return [
        PromptMessage(role="user" if i % 2 == 0 else "assistant", content=f"turn {i}")
        for i in range(n)
    ]


class TestPromptAssembler:

    def test_system_policy_comes_first(self):
        messages = PromptAssembler().assemble("Q?", [make_passage(1, "c-1")])
        assert messages[0].role == "system"
        assert messages[0].content == SYSTEM_PROMPT
        assert NO_CONTEXT_RESPONSE in SYSTEM_PROMPT
        assert "[Document N, Page P]" in SYSTEM_PROMPT

    def test_user_turn_lists_excerpts_in_rank_order(self):
        passages = [
            make_passage(2, "c-2", page=4, document_title="Handbook", content="second"),
            make_passage(1, "c-1", page=2, document_title="Report", content="first"),
        ]
        user = PromptAssembler().assemble("What grew?", passages)[-1]

        assert user.role == "user"
        assert user.content.startswith("Question: What grew?")
        first = user.content.index("[Document 1: Report, Page 2]\nfirst")
        second = user.content.index("[Document 2: Handbook, Page 4]\nsecond")
        assert first < second

    def test_missing_page_and_title(self):
        passage = make_passage(1, "c-1", page=None, document_title="")
        user = PromptAssembler().assemble("Q?", [passage])[-1]
        assert "[Document 1: Untitled, Page N/A]" in user.content

    def test_no_passages_renders_placeholder(self):
        messages = PromptAssembler().assemble("Q?", [])
        assert len(messages) == 2
        assert NO_CONTEXT_EXCERPTS in messages[-1].content

    def test_history_keeps_most_recent_turns_in_order(self):
        messages = PromptAssembler(max_history_turns=3).assemble("Q?", [], _history(6))
        middle = messages[1:-1]
        assert [m.content for m in middle] == ["turn 3", "turn 4", "turn 5"]
        assert [m.role for m in middle] == ["assistant", "user", "assistant"]

    def test_history_limit_counts_messages_not_pairs(self):
        messages = PromptAssembler(max_history_turns=1).assemble("Q?", [], _history(4))
        assert [(m.role, m.content) for m in messages[1:-1]] == [("assistant", "turn 3")]

    def test_short_history_is_kept_whole(self):
        messages = PromptAssembler(max_history_turns=10).assemble("Q?", [], _history(2))
        assert [m.content for m in messages[1:-1]] == ["turn 0", "turn 1"]

    def test_zero_history_turns(self):
        messages = PromptAssembler(max_history_turns=0).assemble("Q?", [], _history(4))
        assert [m.role for m in messages] == ["system", "user"]

    def test_negative_history_rejected(self):
        with pytest.raises(ValueError):
            PromptAssembler(max_history_turns=-1)
