# keel_engine/stage_executor.py
"""
Single-stage execution.

Steps for one attempt:
1. Evaluate ``stage.conditional`` (false -> skipped StageOutput)
2. Resolve the executing agent: stage/command static agent, else the
   dynamic resolver when one was injected and dynamic selection is on
3. Render the prompt and call the completion provider under
   ``stage.timeout_ms`` (asyncio.wait_for cancels the call on timeout)
4. Parse declared outputs from the response

Failures are raised as StageFailure subclasses (ProviderError,
StageTimeoutError, ValidationFailure). No retries here: the pipeline
executor owns attempt counting and backoff.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from keel_agents.analytics import SelectionAnalytics
from keel_agents.context import TaskContext
from keel_agents.resolver import AgentSelection, DynamicAgentResolver
from keel_engine.events import EventEmitter, EventType
from keel_engine.exceptions import ConfigurationError, ProviderError, StageFailure, StageTimeoutError
from keel_engine.inputs import Condition
from keel_engine.output_parsing import parse_stage_outputs
from keel_engine.pipeline import PipelineStage, StageOutput
from keel_engine.providers import CompletionOptions, CompletionProvider
from keel_engine.sources import AgentSource, PromptSource, RoleAgentSource, TemplatePromptSource

logger = logging.getLogger("keel.engine.stage")

DEFAULT_STAGE_TIMEOUT_MS = 300_000


@dataclass(frozen=True)
class ExecutionContext:
    """
    Per-run settings shared by every stage.

    Attributes:
        command_name: Command the pipeline belongs to.
        agent: Static agent role for every stage (disables resolution).
        task: Task description used for dynamic agent selection.
        model: Model override for this run.
        run_id: Correlation id (set by the pipeline executor).
        dynamic_agents: Allow the resolver when no static agent is set.
        initial_inputs: Run inputs, visible to conditionals as ``input.*``.
    """
    command_name: str = "command"
    agent: Optional[str] = None
    task: Optional[TaskContext] = None
    model: Optional[str] = None
    run_id: str = ""
    dynamic_agents: bool = True
    initial_inputs: Mapping[str, Any] = field(default_factory=dict)


def derive_task_context(stage: PipelineStage, inputs: Mapping[str, Any]) -> TaskContext:
    """Build a TaskContext from well-known stage inputs."""
    description = inputs.get("task") or inputs.get("description")
    if not isinstance(description, str) or not description.strip():
        description = f"{stage.stage}: {stage.prompt}"
    files = inputs.get("affected_files") or inputs.get("files") or []
    deps = inputs.get("dependencies") or []
    return TaskContext(
        description=description,
        affected_files=list(files) if isinstance(files, (list, tuple)) else [],
        dependencies=list(deps) if isinstance(deps, (list, tuple)) else [],
    )


class StageExecutor:
    """
    Executes one PipelineStage attempt.

    Parameters:
        provider: Completion provider.
        events: Event emitter (optional).
        prompts: Prompt source (default: prompt reference as template).
        agents: Agent instruction source.
        resolver: Optional dynamic agent resolver.
        analytics: Optional sink for agent selections.
        default_timeout_ms: Used when a stage sets no timeout_ms.
        stream: Use ``stream_complete`` and emit progress chunks.
    """

    def __init__(
        self,
        provider: CompletionProvider,
        events: Optional[EventEmitter] = None,
        prompts: Optional[PromptSource] = None,
        agents: Optional[AgentSource] = None,
        resolver: Optional[DynamicAgentResolver] = None,
        analytics: Optional[SelectionAnalytics] = None,
        default_timeout_ms: int = DEFAULT_STAGE_TIMEOUT_MS,
        model: str = "gpt-4o-mini",
        temperature: float = 0.2,
        max_tokens: int = 4096,
        provider_timeout_s: float = 300.0,
        stream: bool = False,
    ):
        self.provider = provider
        self.events = events or EventEmitter()
        self.prompts = prompts or TemplatePromptSource()
        self.agents = agents or RoleAgentSource()
        self.resolver = resolver
        self.analytics = analytics
        self.default_timeout_ms = default_timeout_ms
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.provider_timeout_s = provider_timeout_s
        self.stream = stream

    # ── public API ──────────────────────────────────────────────────────

    def check_condition(
        self,
        stage: PipelineStage,
        inputs: Mapping[str, Any],
        prior: Optional[Mapping[str, StageOutput]] = None,
        initial: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        """True when the stage should run."""
        if not stage.conditional:
            return True
        return Condition.parse(stage.conditional).evaluate(inputs, prior or {}, initial or {})

    def select_agent(
        self,
        stage: PipelineStage,
        inputs: Mapping[str, Any],
        context: ExecutionContext,
    ) -> tuple[Optional[str], Optional[AgentSelection]]:
        """Static agent wins; otherwise ask the resolver if there is one."""
        if stage.agent:
            return stage.agent, None
        if context.agent:
            return context.agent, None
        if self.resolver is None or not context.dynamic_agents:
            return None, None

        task = context.task or derive_task_context(stage, inputs)
        selection = self.resolver.resolve_agent(task)
        if self.analytics is not None:
            self.analytics.record(context.command_name, task, selection, run_id=context.run_id)
        logger.info(
            "Stage '%s' -> agent %s (confidence=%.2f%s)",
            stage.stage_id, selection.selected_agent, selection.confidence,
            ", fallback" if selection.fallback else "",
        )
        return selection.selected_agent, selection

    async def execute(
        self,
        stage: PipelineStage,
        resolved_inputs: Mapping[str, Any],
        context: Optional[ExecutionContext] = None,
        prior: Optional[Mapping[str, StageOutput]] = None,
    ) -> StageOutput:
        """
        Run one attempt of *stage*.

        Raises:
            StageFailure: ProviderError / StageTimeoutError / ValidationFailure.
            ConfigurationError: Unknown prompt or bad conditional.
        """
        context = context or ExecutionContext()
        stage_id = stage.stage_id
        start = time.monotonic()

        if not self.check_condition(stage, resolved_inputs, prior, context.initial_inputs):
            logger.info("Stage '%s' skipped (condition false: %s)", stage_id, stage.conditional)
            return StageOutput.skipped_for(stage_id, f"condition false: {stage.conditional}")

        role, selection = self.select_agent(stage, resolved_inputs, context)
        messages = self._build_messages(stage, resolved_inputs, role)
        options = CompletionOptions(
            messages=messages,
            model=context.model or self.model,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            timeout_s=self.provider_timeout_s,
            stage=stage_id,
            expected_outputs=tuple(stage.outputs),
            metadata={"command": context.command_name, "agent": role, "run_id": context.run_id},
        )
        timeout_ms = stage.timeout_ms or self.default_timeout_ms

        self.events.emit(
            EventType.LLM_REQUEST, context.run_id, stage_id,
            model=options.model, agent=role, timeout_ms=timeout_ms,
        )
        try:
            result = await asyncio.wait_for(self._call_provider(options, context), timeout=timeout_ms / 1000)
        except (StageFailure, ConfigurationError):
            # Provider-side timeouts arrive here already classified
            raise
        except asyncio.TimeoutError:
            logger.warning("Stage '%s' timed out after %dms", stage_id, timeout_ms)
            raise StageTimeoutError(stage_id, timeout_ms) from None
        except Exception as e:
            raise ProviderError(stage_id, f"Completion failed: {e}") from e

        self.events.emit(
            EventType.LLM_RESPONSE, context.run_id, stage_id,
            model=result.model or options.model,
            latency_ms=result.latency_ms,
            input_tokens=result.input_tokens,
            output_tokens=result.output_tokens,
        )

        outputs = parse_stage_outputs(result.content, stage.outputs, stage_id)
        duration_ms = int((time.monotonic() - start) * 1000)
        metadata: dict[str, Any] = {
            "agent": role,
            "model": result.model or options.model,
            "usage": result.usage,
        }
        if selection is not None:
            metadata["agent_selection"] = selection.to_dict()
        return StageOutput(
            stage=stage_id,
            success=True,
            outputs=outputs,
            duration_ms=duration_ms,
            metadata=metadata,
        )

    # ── internals ───────────────────────────────────────────────────────

    def _build_messages(
        self,
        stage: PipelineStage,
        inputs: Mapping[str, Any],
        role: Optional[str],
    ) -> list[dict[str, str]]:
        messages = []
        if role:
            messages.append({"role": "system", "content": self.agents.system_prompt(role)})
        content = self.prompts.render(stage.prompt, inputs)
        if stage.outputs:
            content += (
                "\n\nRespond with a JSON object in a ```json code block with the keys: "
                + ", ".join(stage.outputs)
            )
        messages.append({"role": "user", "content": content})
        return messages

    async def _call_provider(self, options: CompletionOptions, context: ExecutionContext):
        if not self.stream:
            return await self.provider.complete(options)

        def _on_chunk(text: str) -> None:
            self.events.emit(EventType.STAGE_PROGRESS, context.run_id, options.stage, chunk=text)

        return await self.provider.stream_complete(options, _on_chunk)
