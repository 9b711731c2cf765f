"""
Generators
-----------
Two implementations behind one interface:

  OpenAIGenerator    -- OpenAI chat completions (gpt-4o-mini, gpt-4o)
  AnthropicGenerator -- Anthropic messages API (claude-haiku-4-5, claude-sonnet-4-6)

Both take the assembled prompt messages and return a GenerationResult.
``stream()`` delivers tokens to an ``on_token`` callback on the calling
thread, in arrival order, and stops as soon as ``cancel_event`` is set.

Any SDK error is raised as ``GenerationFailed``; cancellation is raised as
``GenerationCancelled``.  Neither generator retries.
"""
from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence

from langsmith import traceable
from loguru import logger

from docuchat.config import GenerationSettings
from docuchat.exceptions import GenerationCancelled, GenerationFailed
from docuchat.schemas import PromptMessage

TokenCallback = Callable[[str], None]


# ---------------------------------------------------------------------------
# Model pricing table  (input_$/M, output_$/M)
# ---------------------------------------------------------------------------

_MODEL_PRICING: dict[str, tuple[float, float]] = {
    "gpt-4o-mini":               (0.150,  0.600),
    "gpt-4o":                    (2.500, 10.000),
    "claude-haiku-4-5-20251001": (0.800,  4.000),
    "claude-sonnet-4-6":         (3.000, 15.000),
}


def _cost_usd(model: str, prompt_tokens: int, completion_tokens: int) -> float:
    rates = _MODEL_PRICING.get(model, (0.150, 0.600))
    return (prompt_tokens * rates[0] + completion_tokens * rates[1]) / 1_000_000


# ---------------------------------------------------------------------------
# Result schema
# ---------------------------------------------------------------------------

@dataclass
class GenerationResult:
    """Provider-agnostic output of one generation call."""

    text: str
    model: str
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    @property
    def estimated_cost_usd(self) -> float:
        return _cost_usd(self.model, self.prompt_tokens, self.completion_tokens)


class Generator(ABC):
    """Produces an answer from role-tagged prompt messages."""

    model: str

    @abstractmethod
    def generate(self, messages: Sequence[PromptMessage]) -> GenerationResult: ...

    @abstractmethod
    def stream(
        self,
        messages: Sequence[PromptMessage],
        on_token: TokenCallback,
        cancel_event: Optional[threading.Event] = None,
    ) -> GenerationResult: ...


def _check_cancelled(cancel_event: Optional[threading.Event], model: str, received: int) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise GenerationCancelled(
            "Generation cancelled by caller",
            {"model": model, "tokens_delivered": received},
        )


# ---------------------------------------------------------------------------
# OpenAI Generator
# ---------------------------------------------------------------------------

class OpenAIGenerator(Generator):
    """Grounded answer synthesis using OpenAI chat models."""

    def __init__(
        self,
        model: str = "gpt-4o-mini",
        max_tokens: int = 1500,
        temperature: float = 0.2,
        client: Any = None,
    ) -> None:
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        if client is None:
            from openai import OpenAI  # lazy import keeps import graph clean
            client = OpenAI(max_retries=0)
        self._client = client

    def _request(self, messages: Sequence[PromptMessage], **extra) -> Any:
        from openai import OpenAIError

        try:
            return self._client.chat.completions.create(
                model=self.model,
                messages=[{"role": m.role, "content": m.content} for m in messages],
                max_tokens=self.max_tokens,
                temperature=self.temperature,
                **extra,
            )
        except OpenAIError as exc:
            raise GenerationFailed(
                f"OpenAI completion failed: {exc}",
                {"model": self.model, "error": type(exc).__name__},
            ) from exc

    @traceable(name="generate_openai", run_type="llm")
    def generate(self, messages: Sequence[PromptMessage]) -> GenerationResult:
        logger.debug(f"[OpenAIGenerator] {self.model} | {len(messages)} message(s)")
        response = self._request(messages)

        if not getattr(response, "choices", None):
            raise GenerationFailed("OpenAI returned no choices", {"model": self.model})
        answer = response.choices[0].message.content or ""
        usage = response.usage
        prompt_tok = getattr(usage, "prompt_tokens", 0) or 0
        comp_tok = getattr(usage, "completion_tokens", 0) or 0

        logger.info(
            f"[OpenAIGenerator] Done | prompt={prompt_tok} completion={comp_tok} | "
            f"cost=${_cost_usd(self.model, prompt_tok, comp_tok):.5f}"
        )
        return GenerationResult(answer, self.model, prompt_tok, comp_tok)

    @traceable(name="stream_openai", run_type="llm")
    def stream(
        self,
        messages: Sequence[PromptMessage],
        on_token: TokenCallback,
        cancel_event: Optional[threading.Event] = None,
    ) -> GenerationResult:
        from openai import OpenAIError

        _check_cancelled(cancel_event, self.model, 0)
        stream = self._request(messages, stream=True, stream_options={"include_usage": True})

        parts: list[str] = []
        prompt_tok = comp_tok = 0
        try:
            for event in stream:
                _check_cancelled(cancel_event, self.model, len(parts))
                if getattr(event, "usage", None) is not None:
                    prompt_tok = event.usage.prompt_tokens or 0
                    comp_tok = event.usage.completion_tokens or 0
                if not event.choices:
                    continue
                token = event.choices[0].delta.content
                if token:
                    parts.append(token)
                    on_token(token)
        except OpenAIError as exc:
            raise GenerationFailed(
                f"OpenAI stream failed: {exc}",
                {"model": self.model, "error": type(exc).__name__},
            ) from exc
        finally:
            close = getattr(stream, "close", None)
            if close is not None:
                close()

        logger.info(f"[OpenAIGenerator] Stream done | {len(parts)} token(s) delivered")
        return GenerationResult("".join(parts), self.model, prompt_tok, comp_tok)


# ---------------------------------------------------------------------------
# Anthropic Generator
# ---------------------------------------------------------------------------

class AnthropicGenerator(Generator):
    """
    Grounded answer synthesis using Anthropic Claude models.

    The Anthropic SDK takes the system prompt as a separate ``system``
    parameter, so system segments are lifted out of the message list here.
    """

    def __init__(
        self,
        model: str = "claude-haiku-4-5-20251001",
        max_tokens: int = 1500,
        temperature: float = 0.2,
        client: Any = None,
    ) -> None:
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        if client is None:
            from anthropic import Anthropic  # lazy import
            client = Anthropic(max_retries=0)
        self._client = client

    def _params(self, messages: Sequence[PromptMessage]) -> dict[str, Any]:
        system = "\n\n".join(m.content for m in messages if m.role == "system")
        return {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "system": system,
            "messages": [
                {"role": m.role, "content": m.content} for m in messages if m.role != "system"
            ],
        }

    def _failed(self, exc: Exception, what: str) -> GenerationFailed:
        return GenerationFailed(
            f"Anthropic {what} failed: {exc}",
            {"model": self.model, "error": type(exc).__name__},
        )

    @traceable(name="generate_anthropic", run_type="llm")
    def generate(self, messages: Sequence[PromptMessage]) -> GenerationResult:
        from anthropic import AnthropicError

        logger.debug(f"[AnthropicGenerator] {self.model} | {len(messages)} message(s)")
        try:
            response = self._client.messages.create(**self._params(messages))
        except AnthropicError as exc:
            raise self._failed(exc, "completion") from exc

        answer = "".join(
            block.text for block in (response.content or []) if getattr(block, "type", "text") == "text"
        )
        # Anthropic usage: input_tokens / output_tokens
        prompt_tok = response.usage.input_tokens
        comp_tok = response.usage.output_tokens

        logger.info(
            f"[AnthropicGenerator] Done | input={prompt_tok} output={comp_tok} | "
            f"cost=${_cost_usd(self.model, prompt_tok, comp_tok):.5f}"
        )
        return GenerationResult(answer, self.model, prompt_tok, comp_tok)

    @traceable(name="stream_anthropic", run_type="llm")
    def stream(
        self,
        messages: Sequence[PromptMessage],
        on_token: TokenCallback,
        cancel_event: Optional[threading.Event] = None,
    ) -> GenerationResult:
        from anthropic import AnthropicError

        _check_cancelled(cancel_event, self.model, 0)
        parts: list[str] = []
        try:
            with self._client.messages.stream(**self._params(messages)) as stream:
                for token in stream.text_stream:
                    _check_cancelled(cancel_event, self.model, len(parts))
                    parts.append(token)
                    on_token(token)
                final = stream.get_final_message()
        except AnthropicError as exc:
            raise self._failed(exc, "stream") from exc

        usage = getattr(final, "usage", None)
        prompt_tok = getattr(usage, "input_tokens", 0) or 0
        comp_tok = getattr(usage, "output_tokens", 0) or 0
        logger.info(f"[AnthropicGenerator] Stream done | {len(parts)} token(s) delivered")
        return GenerationResult("".join(parts), self.model, prompt_tok, comp_tok)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def create_generator(settings: GenerationSettings, client: Any = None) -> Generator:
    """Build the generator selected by configuration."""
    cls = AnthropicGenerator if settings.provider == "anthropic" else OpenAIGenerator
    return cls(
        model=settings.model,
        max_tokens=settings.max_tokens,
        temperature=settings.temperature,
        client=client,
    )
