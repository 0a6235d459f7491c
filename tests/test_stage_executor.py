# tests/test_stage_executor.py
"""Tests for single-stage execution: conditionals, agents, timeouts, parsing."""
import asyncio

import pytest

pytestmark = pytest.mark.unit

from conftest import EventRecorder, ScriptedProvider
from keel_agents.analytics import SelectionAnalytics
from keel_agents.context import TaskContext
from keel_engine.events import EventEmitter
from keel_engine.exceptions import (
    ConfigurationError,
    PipelineDefinitionError,
    ProviderError,
    StageTimeoutError,
    ValidationFailure,
)
from keel_engine.pipeline import PipelineStage, RetryReason, StageOutput
from keel_engine.sources import RoleAgentSource, TemplatePromptSource
from keel_engine.stage_executor import ExecutionContext, StageExecutor, derive_task_context

TERRAFORM_INPUTS = {
    "task": "Set up AWS infrastructure with Terraform",
    "affected_files": ["infra/main.tf", "infra/variables.tf"],
    "dependencies": ["terraform", "aws-cli"],
}


def _stage(**kwargs):
    kwargs.setdefault("stage", "plan")
    kwargs.setdefault("prompt", "Plan the change")
    kwargs.setdefault("outputs", ("plan",))
    return PipelineStage(**kwargs)


# ============================================================================
# 1. Conditionals
# ============================================================================


class TestCheckCondition:

    def test_no_conditional_runs(self, stage_executor):
        assert stage_executor.check_condition(_stage(), {}) is True

    @pytest.mark.parametrize("expression,inputs,expected", [
        ("true", {}, True),
        ("false", {}, False),
        ("ready", {"ready": 1}, True),
        ("not ready", {"ready": 1}, False),
        ("count >= 3", {"count": 3}, True),
        ("count > 3", {"count": "many"}, False),
        ("mode == 'full'", {"mode": "full"}, True),
    ])
    def test_expressions(self, stage_executor, expression, inputs, expected):
        assert stage_executor.check_condition(_stage(conditional=expression), inputs) is expected

    def test_prior_and_initial_lookups(self, stage_executor):
        prior = {"scan": StageOutput(stage="scan", success=True, outputs={"issues": 2})}
        stage = _stage(conditional="scan.issues > 0")
        assert stage_executor.check_condition(stage, {}, prior) is True
        stage = _stage(conditional="input.env == prod")
        assert stage_executor.check_condition(stage, {}, {}, {"env": "prod"}) is True

    def test_unsupported_expression(self, stage_executor):
        with pytest.raises(PipelineDefinitionError):
            stage_executor.check_condition(_stage(conditional="1 +"), {})


@pytest.mark.asyncio
class TestConditionalExecution:

    async def test_false_condition_skips_without_provider_call(self, stage_executor, provider):
        output = await stage_executor.execute(_stage(conditional="false"), {})
        assert output.skipped
        assert output.success is True
        assert provider.total_calls == 0


# ============================================================================
# 2. Agent selection
# ============================================================================


@pytest.mark.asyncio
class TestAgentSelection:
    """Static agents win; otherwise the resolver decides."""

    async def test_no_resolver_no_agent(self, stage_executor, provider):
        output = await stage_executor.execute(_stage(), {})
        assert output.metadata["agent"] is None
        assert provider.requests["plan"][0].messages[0]["role"] == "user"

    async def test_stage_agent(self, provider, resolver):
        executor = StageExecutor(provider, resolver=resolver)
        output = await executor.execute(_stage(agent="secops-engineer"), TERRAFORM_INPUTS)
        assert output.metadata["agent"] == "secops-engineer"
        assert "agent_selection" not in output.metadata

    async def test_context_agent(self, provider, resolver):
        executor = StageExecutor(provider, resolver=resolver)
        output = await executor.execute(_stage(), TERRAFORM_INPUTS, ExecutionContext(agent="lead"))
        assert output.metadata["agent"] == "lead"

    async def test_resolver_selection_recorded(self, provider, resolver):
        analytics = SelectionAnalytics()
        executor = StageExecutor(provider, resolver=resolver, analytics=analytics)
        context = ExecutionContext(command_name="deploy-infra", run_id="r1")
        output = await executor.execute(_stage(), TERRAFORM_INPUTS, context)

        assert output.metadata["agent"] == "platform-engineer"
        assert output.metadata["agent_selection"]["fallback"] is False
        system = provider.requests["plan"][0].messages[0]
        assert system["role"] == "system"
        assert "platform-engineer" in system["content"]
        (event,) = analytics.events()
        assert event.command_name == "deploy-infra"
        assert event.run_id == "r1"

    async def test_dynamic_agents_disabled(self, provider, resolver):
        executor = StageExecutor(provider, resolver=resolver)
        output = await executor.execute(_stage(), TERRAFORM_INPUTS, ExecutionContext(dynamic_agents=False))
        assert output.metadata["agent"] is None

    async def test_explicit_task_context_wins(self, provider, resolver):
        executor = StageExecutor(provider, resolver=resolver)
        task = TaskContext(description="Build the checkout page", affected_files=["src/Checkout.tsx"],
                           dependencies=["react"])
        output = await executor.execute(_stage(), TERRAFORM_INPUTS, ExecutionContext(task=task))
        assert output.metadata["agent"] != "platform-engineer"

    async def test_custom_agent_instructions(self, provider):
        agents = RoleAgentSource({"lead": "You coordinate."})
        executor = StageExecutor(provider, agents=agents)
        await executor.execute(_stage(agent="lead"), {})
        assert provider.requests["plan"][0].messages[0]["content"] == "You coordinate."


class TestDeriveTaskContext:

    def test_from_well_known_inputs(self):
        task = derive_task_context(_stage(), TERRAFORM_INPUTS)
        assert task.description == TERRAFORM_INPUTS["task"]
        assert task.affected_files == TERRAFORM_INPUTS["affected_files"]
        assert task.dependencies == ["terraform", "aws-cli"]

    def test_falls_back_to_stage_text(self):
        task = derive_task_context(_stage(), {"files": "not-a-list"})
        assert task.description == "plan: Plan the change"
        assert task.affected_files == []


# ============================================================================
# 3. Provider call, timeout, parsing
# ============================================================================


@pytest.mark.asyncio
class TestProviderCall:

    async def test_prompt_rendering_and_options(self, provider):
        prompts = TemplatePromptSource({"plan-v1": "Plan for {{ service }}"})
        executor = StageExecutor(provider, prompts=prompts, model="m-default", temperature=0.5)
        await executor.execute(_stage(prompt="plan-v1"), {"service": "billing"}, ExecutionContext(model="m-run"))
        options = provider.requests["plan"][0]
        assert options.messages[-1]["content"].startswith("Plan for billing")
        assert "keys: plan" in options.messages[-1]["content"]
        assert options.model == "m-run"
        assert options.temperature == 0.5
        assert options.expected_outputs == ("plan",)

    async def test_strict_prompt_source(self, provider):
        executor = StageExecutor(provider, prompts=TemplatePromptSource(strict=True))
        with pytest.raises(ConfigurationError, match="Unknown prompt"):
            await executor.execute(_stage(), {})

    async def test_usage_metadata(self, stage_executor):
        output = await stage_executor.execute(_stage(), {})
        assert output.outputs == {"plan": "plan:plan"}
        assert output.metadata["usage"] == {"input_tokens": 10, "output_tokens": 5}

    async def test_timeout(self):
        provider = ScriptedProvider({"plan": lambda options: asyncio.sleep(5)})
        executor = StageExecutor(provider)
        with pytest.raises(StageTimeoutError) as exc_info:
            await executor.execute(_stage(timeout_ms=20), {})
        assert exc_info.value.kind == RetryReason.TIMEOUT
        assert exc_info.value.timeout_ms == 20

    async def test_default_timeout(self):
        provider = ScriptedProvider({"plan": lambda options: asyncio.sleep(5)})
        executor = StageExecutor(provider, default_timeout_ms=20)
        with pytest.raises(StageTimeoutError):
            await executor.execute(_stage(), {})

    async def test_provider_exception_wrapped(self):
        executor = StageExecutor(ScriptedProvider({"plan": ConnectionError("reset by peer")}))
        with pytest.raises(ProviderError, match="reset by peer") as exc_info:
            await executor.execute(_stage(), {})
        assert exc_info.value.kind == RetryReason.ERROR
        assert exc_info.value.stage == "plan"

    async def test_provider_error_passes_through(self):
        executor = StageExecutor(ScriptedProvider({"plan": ProviderError("plan", "rate limited")}))
        with pytest.raises(ProviderError, match="^rate limited$"):
            await executor.execute(_stage(), {})

    async def test_missing_outputs(self):
        executor = StageExecutor(ScriptedProvider({"plan": {"summary": "x", "other": 1}}))
        with pytest.raises(ValidationFailure) as exc_info:
            await executor.execute(_stage(outputs=("plan", "risk")), {})
        assert exc_info.value.missing == ["plan", "risk"]
        assert exc_info.value.kind == RetryReason.VALIDATION_FAILED

    async def test_no_outputs_keeps_response(self):
        executor = StageExecutor(ScriptedProvider({"plan": "All good."}))
        output = await executor.execute(_stage(outputs=()), {})
        assert output.outputs == {"response": "All good."}


@pytest.mark.asyncio
class TestEvents:

    async def test_request_and_response_events(self, stage_executor, emitter, recorder):
        await stage_executor.execute(_stage(), {}, ExecutionContext(run_id="r9"))
        await emitter.drain()
        assert recorder.types() == ["llm:request", "llm:response"]
        assert recorder.events[0].run_id == "r9"
        assert recorder.events[1].data["output_tokens"] == 5

    async def test_streaming_progress(self, provider):
        emitter = EventEmitter()
        recorder = EventRecorder()
        emitter.subscribe(recorder)
        executor = StageExecutor(provider, events=emitter, stream=True)
        output = await executor.execute(_stage(), {})
        await emitter.drain()
        chunks = [e.data["chunk"] for e in recorder.of_type("stage:progress")]
        assert len(chunks) == 2
        assert "".join(chunks).startswith("```json")
        assert output.outputs == {"plan": "plan:plan"}
