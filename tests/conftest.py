"""
keel Test Suite — Shared Fixtures

Everything runs in-process: a scripted completion provider stands in for
the LLM, the capability registry is built from the packaged YAML, and
cache file dependencies live under tmp_path.
"""
import asyncio
import json
from collections import Counter, defaultdict
from typing import Any

import pytest

from keel_agents.capabilities import AgentCapabilityRegistry
from keel_agents.resolver import DynamicAgentResolver
from keel_engine.cache import StageOutputCache
from keel_engine.events import EventEmitter, PipelineEvent
from keel_engine.pipeline_executor import PipelineExecutor
from keel_engine.providers import CompletionOptions, CompletionResult
from keel_engine.stage_executor import StageExecutor


# ── Pytest Configuration ──────────────────────────────────────────────────────

def pytest_configure(config):
    config.addinivalue_line("markers", "unit: fast in-process tests")
    config.addinivalue_line("markers", "integration: tests that wire several components")


# ── Fake provider ─────────────────────────────────────────────────────────────

class ScriptedProvider:
    """Completion provider driven by per-stage scripts.

    A script entry may be:
      - dict        -> answered as a fenced JSON object
      - str         -> returned verbatim as the completion text
      - Exception   -> raised
      - callable    -> called with the CompletionOptions, result used as above
    A list of entries is consumed one per call (last entry repeats).
    Stages without a script answer with every expected output set to
    ``"<stage>:<output>"``.
    """

    def __init__(self, scripts: dict[str, Any] | None = None, delay: float = 0.0):
        self.scripts = dict(scripts or {})
        self.delay = delay
        self.calls: Counter = Counter()
        self.requests: dict[str, list[CompletionOptions]] = defaultdict(list)

    @property
    def total_calls(self) -> int:
        return sum(self.calls.values())

    def _entry(self, options: CompletionOptions) -> Any:
        index = self.calls[options.stage] - 1
        script = self.scripts.get(options.stage)
        if script is None:
            return {name: f"{options.stage}:{name}" for name in options.expected_outputs} or "ok"
        if isinstance(script, list):
            return script[min(index, len(script) - 1)]
        return script

    async def complete(self, options: CompletionOptions) -> CompletionResult:
        self.calls[options.stage] += 1
        self.requests[options.stage].append(options)
        if self.delay:
            await asyncio.sleep(self.delay)
        entry = self._entry(options)
        if callable(entry) and not isinstance(entry, Exception):
            entry = entry(options)
            if asyncio.iscoroutine(entry):
                entry = await entry
        if isinstance(entry, BaseException):
            raise entry
        content = entry if isinstance(entry, str) else "```json\n" + json.dumps(entry) + "\n```"
        return CompletionResult(content=content, model=options.model, input_tokens=10, output_tokens=5)

    async def stream_complete(self, options: CompletionOptions, on_chunk) -> CompletionResult:
        result = await self.complete(options)
        for piece in (result.content[:10], result.content[10:]):
            if piece:
                on_chunk(piece)
        return result


class EventRecorder:
    """Subscriber that keeps every delivered event."""

    def __init__(self):
        self.events: list[PipelineEvent] = []

    def __call__(self, event: PipelineEvent) -> None:
        self.events.append(event)

    def types(self) -> list[str]:
        return [e.type.value for e in self.events]

    def of_type(self, value: str) -> list[PipelineEvent]:
        return [e for e in self.events if e.type.value == value]


# ── Fixtures ──────────────────────────────────────────────────────────────────

@pytest.fixture
def provider():
    return ScriptedProvider()


@pytest.fixture
def emitter():
    return EventEmitter()


@pytest.fixture
def recorder(emitter):
    rec = EventRecorder()
    emitter.subscribe(rec)
    return rec


@pytest.fixture
def cache():
    return StageOutputCache()


@pytest.fixture
def stage_executor(provider, emitter):
    return StageExecutor(provider, events=emitter)


@pytest.fixture
def pipeline_executor(stage_executor, cache, emitter):
    return PipelineExecutor(stage_executor, cache=cache, events=emitter)


@pytest.fixture(scope="session")
def registry():
    """Registry built from the packaged capabilities.yaml."""
    return AgentCapabilityRegistry().initialize()


@pytest.fixture
def resolver(registry):
    return DynamicAgentResolver(registry)


@pytest.fixture
def watched_file(tmp_path):
    """A file used as a cache dependency."""
    path = tmp_path / "schema.sql"
    path.write_text("CREATE TABLE users (id INT);\n", encoding="utf-8")
    return path
