"""
Completion providers — the engine's only outbound LLM seam.

Features:
- CompletionProvider protocol: complete() and stream_complete()
- LiteLLMProvider: litellm.acompletion() with a per-call timeout
- EchoProvider: deterministic offline provider for dry runs
- Closed ProviderKind set; build_provider() matches it exhaustively

Every provider-side failure (HTTP error, connection, timeout, malformed
response) surfaces as ProviderError so the retry policy sees one kind.
"""
import asyncio
import inspect
import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Protocol, Union, runtime_checkable

from litellm import acompletion

from keel_engine.config import EngineConfig
from keel_engine.exceptions import ProviderError, StageTimeoutError

logger = logging.getLogger("keel.engine.providers")

ChunkHandler = Callable[[str], Union[None, Awaitable[None]]]


@dataclass
class CompletionOptions:
    """Everything a provider needs for one call."""
    messages: list[dict[str, str]]
    model: str
    temperature: float = 0.2
    max_tokens: int = 4096
    timeout_s: float = 300.0
    stage: str = ""
    expected_outputs: tuple[str, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class CompletionResult:
    """Normalized provider response."""
    content: str
    model: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    latency_ms: int = 0
    finish_reason: str = ""

    @property
    def usage(self) -> dict[str, int]:
        return {"input_tokens": self.input_tokens, "output_tokens": self.output_tokens}


@runtime_checkable
class CompletionProvider(Protocol):
    async def complete(self, options: CompletionOptions) -> CompletionResult: ...

    async def stream_complete(self, options: CompletionOptions, on_chunk: ChunkHandler) -> CompletionResult: ...


class ProviderKind(str, Enum):
    LITELLM = "litellm"
    ECHO = "echo"


async def _call_chunk_handler(on_chunk: ChunkHandler, text: str) -> None:
    result = on_chunk(text)
    if inspect.isawaitable(result):
        await result


# ── LiteLLM ─────────────────────────────────────────────────────────────

class LiteLLMProvider:
    """
    Provider backed by litellm (OpenAI-compatible routing to any vendor).

    Parameters:
        api_base: Optional proxy base URL.
        api_key: Optional key forwarded to litellm.
    """

    def __init__(self, api_base: Optional[str] = None, api_key: Optional[str] = None):
        self.api_base = api_base
        self.api_key = api_key

    def _kwargs(self, options: CompletionOptions, stream: bool) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": options.model,
            "messages": options.messages,
            "temperature": options.temperature,
            "max_tokens": options.max_tokens,
            "drop_params": True,  # let litellm drop unsupported params per provider
        }
        if stream:
            kwargs["stream"] = True
        if self.api_base:
            kwargs["api_base"] = self.api_base
        if self.api_key:
            kwargs["api_key"] = self.api_key
        return kwargs

    async def complete(self, options: CompletionOptions) -> CompletionResult:
        start = time.monotonic()
        try:
            response = await asyncio.wait_for(
                acompletion(**self._kwargs(options, stream=False)),
                timeout=options.timeout_s,
            )
            choice = response.choices[0]
            usage = response.usage or {}
            return CompletionResult(
                content=choice.message.content or "",
                model=getattr(response, "model", None) or options.model,
                input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
                output_tokens=getattr(usage, "completion_tokens", 0) or 0,
                latency_ms=int((time.monotonic() - start) * 1000),
                finish_reason=choice.finish_reason or "",
            )
        except asyncio.TimeoutError:
            logger.error("LLM call for stage '%s' timed out after %.0fs", options.stage, options.timeout_s)
            raise StageTimeoutError(options.stage, int(options.timeout_s * 1000)) from None
        except Exception as e:
            logger.error("LLM call for stage '%s' failed: %s", options.stage, e)
            raise ProviderError(options.stage, f"LLM completion failed: {e}") from e

    async def stream_complete(self, options: CompletionOptions, on_chunk: ChunkHandler) -> CompletionResult:
        start = time.monotonic()
        parts: list[str] = []
        finish_reason = ""
        try:
            response = await asyncio.wait_for(
                acompletion(**self._kwargs(options, stream=True)),
                timeout=options.timeout_s,
            )
            async for chunk in response:
                delta = chunk.choices[0].delta if chunk.choices else None
                if not delta:
                    continue
                text = getattr(delta, "content", "") or ""
                if text:
                    parts.append(text)
                    await _call_chunk_handler(on_chunk, text)
                finish_reason = chunk.choices[0].finish_reason or finish_reason
        except asyncio.TimeoutError:
            logger.error("LLM stream for stage '%s' timed out after %.0fs", options.stage, options.timeout_s)
            raise StageTimeoutError(options.stage, int(options.timeout_s * 1000)) from None
        except Exception as e:
            logger.error("LLM stream for stage '%s' failed: %s", options.stage, e)
            raise ProviderError(options.stage, f"LLM streaming failed: {e}") from e
        return CompletionResult(
            content="".join(parts),
            model=options.model,
            latency_ms=int((time.monotonic() - start) * 1000),
            finish_reason=finish_reason,
        )


# ── Echo ────────────────────────────────────────────────────────────────

class EchoProvider:
    """Answers with a fenced JSON object mapping each expected output to the prompt."""

    async def complete(self, options: CompletionOptions) -> CompletionResult:
        prompt = options.messages[-1]["content"] if options.messages else ""
        payload = {name: prompt for name in options.expected_outputs} or {"response": prompt}
        return CompletionResult(
            content="```json\n" + json.dumps(payload, indent=2) + "\n```",
            model="echo",
            finish_reason="stop",
        )

    async def stream_complete(self, options: CompletionOptions, on_chunk: ChunkHandler) -> CompletionResult:
        result = await self.complete(options)
        await _call_chunk_handler(on_chunk, result.content)
        return result


def build_provider(kind: ProviderKind | str, config: Optional[EngineConfig] = None) -> CompletionProvider:
    """Construct the provider for *kind* (closed set)."""
    kind = ProviderKind(kind)
    match kind:
        case ProviderKind.LITELLM:
            if config is None:
                return LiteLLMProvider()
            return LiteLLMProvider(
                api_base=config.litellm_base_url,
                api_key=config.litellm_master_key or None,
            )
        case ProviderKind.ECHO:
            return EchoProvider()
    raise ValueError(f"Unhandled provider kind: {kind}")  # pragma: no cover
