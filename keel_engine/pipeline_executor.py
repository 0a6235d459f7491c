# keel_engine/pipeline_executor.py
"""
Pipeline executor — drives a command's stage list to completion.

Responsibilities:
- Static validation before the first provider call
- Stage grouping: adjacent parallel stages run concurrently and are
  joined before the next group (parallel / conditional merge strategies)
- Input wiring from the initial inputs and completed stages' outputs
  (waterfall also exposes every earlier output by name)
- Per-stage cache check with single-flight computation
- Bounded retry (tenacity) filtered by ``retry_policy.retry_on``, with
  exponential backoff ``backoff_ms * 2 ** (attempt - 1)``
- Abort on an exhausted required stage, best-effort rollback stage
- Lifecycle events and structured logging bound to the run id

Per-stage state machine:
    pending -> cache_check -> cached
                           -> running -> success | retrying -> ... | failed
"""
import asyncio
import logging
import time
from dataclasses import replace
from typing import Any, Mapping, Optional, Protocol

import structlog
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from keel_engine.cache import StageOutputCache
from keel_engine.events import EventEmitter, EventType
from keel_engine.exceptions import ConfigurationError, StageAbort, StageFailure
from keel_engine.inputs import merged_outputs, resolve_inputs
from keel_engine.logging_config import new_run_id, run_id_var
from keel_engine.pipeline import (
    DEFAULT_CACHE_TTL_MS,
    CacheStrategy,
    MergeStrategy,
    PipelineResult,
    PipelineStage,
    PromptsPipeline,
    RetryPolicy,
    StageCacheConfig,
    StageOutput,
)
from keel_engine.scheduler import StageGroup, schedule
from keel_engine.stage_executor import ExecutionContext, StageExecutor
from keel_engine.validator import PipelineValidator

logger = logging.getLogger("keel.engine.pipeline")

ROLLBACK_STAGE_NAME = "rollback"


class SessionStore(Protocol):
    async def save(self, command_name: str, result: PipelineResult) -> None: ...


class PipelineExecutor:
    """
    Execute a PromptsPipeline.

    Parameters:
        stage_executor: Runs single stage attempts.
        cache: Stage output cache (None disables caching entirely).
        events: Event emitter shared with the stage executor.
        validator: Static validator (default PipelineValidator).
        session_store: Optional sink for final results.
        adaptive_min_duration_ms: Under the adaptive cache strategy,
            stages without cache config are cached once a successful
            run takes at least this long.
        default_cache_ttl_ms: TTL for stages cached without their own config.
    """

    def __init__(
        self,
        stage_executor: StageExecutor,
        cache: Optional[StageOutputCache] = None,
        events: Optional[EventEmitter] = None,
        validator: Optional[PipelineValidator] = None,
        session_store: Optional[SessionStore] = None,
        adaptive_min_duration_ms: int = 5000,
        default_cache_ttl_ms: int = DEFAULT_CACHE_TTL_MS,
    ):
        self.stage_executor = stage_executor
        self.cache = cache
        self.events = events or stage_executor.events
        self.validator = validator or PipelineValidator()
        self.session_store = session_store
        self.adaptive_min_duration_ms = adaptive_min_duration_ms
        self.default_cache_ttl_ms = default_cache_ttl_ms

    # ── public API ──────────────────────────────────────────────────────

    async def run(
        self,
        pipeline: PromptsPipeline,
        initial_inputs: Optional[Mapping[str, Any]] = None,
        context: Optional[ExecutionContext] = None,
        *,
        seeded_outputs: Optional[Mapping[str, StageOutput | Mapping[str, Any]]] = None,
        skip_validation: bool = False,
        lenient_inputs: bool = False,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> PipelineResult:
        """
        Run every stage of *pipeline* and return the full trace.

        Args:
            pipeline: Pipeline definition (not mutated).
            initial_inputs: Values visible to stages as ``input.<key>``.
            context: Per-run settings (command name, static agent, ...).
            seeded_outputs: Stage id -> outputs (or a ready StageOutput)
                treated as already completed (isolation mock inputs).
            skip_validation: Skip static validation.
            lenient_inputs: Unresolvable references become None.
            metadata: Copied into the result's metadata.

        Raises:
            ConfigurationError: Invalid pipeline or unresolved reference.
            asyncio.CancelledError: On external cancellation.
        """
        initial = dict(initial_inputs or {})
        context = context or ExecutionContext()
        run_id = context.run_id or new_run_id()
        context = replace(context, run_id=run_id, initial_inputs=initial)

        seeded = {
            stage_id: values if isinstance(values, StageOutput) else StageOutput(
                stage=stage_id, success=True, outputs=dict(values), metadata={"mocked": True},
            )
            for stage_id, values in (seeded_outputs or {}).items()
        }
        if not skip_validation:
            self.validator.ensure_valid(pipeline, available_stages=seeded.keys())

        start = time.monotonic()
        prior: dict[str, StageOutput] = dict(seeded)
        trace: list[StageOutput] = []
        abort: Optional[StageAbort] = None
        rollback_output: Optional[StageOutput] = None

        token = run_id_var.set(run_id)
        try:
            with structlog.contextvars.bound_contextvars(run_id=run_id, command=context.command_name):
                self.events.emit(
                    EventType.PIPELINE_START, run_id,
                    pipeline=pipeline.name, stages=pipeline.stage_ids,
                    merge_strategy=pipeline.merge_strategy.value,
                    cache_strategy=pipeline.cache_strategy.value,
                )
                logger.info(
                    "Pipeline '%s' started (run=%s, stages=%d, merge=%s)",
                    pipeline.name, run_id, len(pipeline.stages), pipeline.merge_strategy.value,
                )
                try:
                    for group in schedule(pipeline):
                        outputs = await self._run_group(pipeline, group, initial, prior, context, lenient_inputs)
                        for output in outputs:
                            trace.append(output)
                            prior[output.stage] = output
                        self._check_abort(group, outputs)
                except StageAbort as e:
                    abort = e
                    logger.error("Pipeline '%s' aborted at stage '%s': %s", pipeline.name, e.stage, e)
                    rollback_output = await self._run_rollback(pipeline, initial, prior, context)
                    if rollback_output is not None:
                        trace.append(rollback_output)
        except (asyncio.CancelledError, ConfigurationError) as e:
            reason = "cancelled" if isinstance(e, asyncio.CancelledError) else str(e)
            self.events.emit(EventType.PIPELINE_ERROR, run_id, error=reason, pipeline=pipeline.name)
            logger.warning("Pipeline '%s' did not complete: %s", pipeline.name, reason)
            raise
        finally:
            run_id_var.reset(token)

        duration_ms = int((time.monotonic() - start) * 1000)
        result = PipelineResult(
            success=abort is None,
            stages=trace,
            outputs=merged_outputs({o.stage: o for o in trace if not o.metadata.get("rollback")}),
            error=str(abort) if abort else None,
            aborted_stage=abort.stage if abort else None,
            rollback_ran=rollback_output is not None,
            duration_ms=duration_ms,
            run_id=run_id,
            metadata=dict(metadata or {}),
        )
        self.events.emit(
            EventType.PIPELINE_COMPLETE, run_id,
            pipeline=pipeline.name, success=result.success, duration_ms=duration_ms,
            aborted_stage=result.aborted_stage, rollback_ran=result.rollback_ran,
        )
        logger.info(
            "Pipeline '%s' finished: success=%s, %d stages, %dms",
            pipeline.name, result.success, len(trace), duration_ms,
        )
        await self._save_session(context.command_name, result)
        return result

    # ── groups and stages ───────────────────────────────────────────────

    async def _run_group(
        self,
        pipeline: PromptsPipeline,
        group: StageGroup,
        initial: dict[str, Any],
        prior: dict[str, StageOutput],
        context: ExecutionContext,
        lenient: bool,
    ) -> list[StageOutput]:
        if not group.concurrent:
            stage = group.stages[0]
            return [await self._run_stage(pipeline, stage, initial, prior, context, lenient)]

        logger.debug("Running parallel group %s", group.stage_ids)
        # Siblings read the same snapshot, never each other's outputs
        snapshot = dict(prior)
        try:
            async with asyncio.TaskGroup() as tg:
                tasks = [
                    tg.create_task(self._run_stage(pipeline, stage, initial, snapshot, context, lenient))
                    for stage in group.stages
                ]
        except BaseExceptionGroup as eg:
            # Stage failures never escape _run_stage; surface the first real error
            raise eg.exceptions[0] from None
        return [task.result() for task in tasks]

    @staticmethod
    def _check_abort(group: StageGroup, outputs: list[StageOutput]) -> None:
        for stage, output in zip(group.stages, outputs):
            if not output.success and stage.required:
                raise StageAbort(stage.stage_id, output)

    async def _run_stage(
        self,
        pipeline: PromptsPipeline,
        stage: PipelineStage,
        initial: dict[str, Any],
        prior: Mapping[str, StageOutput],
        context: ExecutionContext,
        lenient: bool,
    ) -> StageOutput:
        stage_id = stage.stage_id
        run_id = context.run_id
        self.events.emit(EventType.STAGE_START, run_id, stage_id, prompt=stage.prompt, required=stage.required)

        base = merged_outputs(prior) if pipeline.merge_strategy == MergeStrategy.WATERFALL else None
        inputs = resolve_inputs(stage, initial, prior, lenient=lenient, base=base)

        skip_reason = self._skip_reason(pipeline, stage, inputs, prior, initial)
        if skip_reason:
            logger.info("Stage '%s' skipped (%s)", stage_id, skip_reason)
            output = StageOutput.skipped_for(stage_id, skip_reason)
            self.events.emit(EventType.STAGE_COMPLETE, run_id, stage_id, skipped=True, reason=skip_reason)
            return output

        cache_config, adaptive = self._cache_config(pipeline, stage)
        if cache_config is None:
            output = await self._execute_with_retry(pipeline, stage, inputs, prior, context)
        else:
            keyed = stage if stage.cache is cache_config else replace(stage, cache=cache_config)
            fingerprint = await self.cache.fingerprint(keyed, inputs)
            cacheable = None
            if adaptive:
                cacheable = lambda out: out.duration_ms >= self.adaptive_min_duration_ms  # noqa: E731
            output, hit = await self.cache.get_or_compute(
                stage_id,
                fingerprint,
                cache_config.ttl_ms,
                lambda: self._execute_with_retry(pipeline, stage, inputs, prior, context),
                cacheable=cacheable,
            )
            if hit:
                logger.info("Stage '%s' served from cache (%s)", stage_id, fingerprint.digest)
                self.events.emit(EventType.CACHE_HIT, run_id, stage_id, cache_key=fingerprint.digest)

        if output.success:
            self.events.emit(
                EventType.STAGE_COMPLETE, run_id, stage_id,
                duration_ms=output.duration_ms, cached=output.cached, skipped=output.skipped,
                attempts=output.metadata.get("attempts", 0),
            )
        else:
            level = logging.ERROR if stage.required else logging.WARNING
            logger.log(level, "Stage '%s' failed: %s", stage_id, output.error)
            self.events.emit(
                EventType.STAGE_ERROR, run_id, stage_id,
                error=output.error, duration_ms=output.duration_ms,
                required=stage.required, failure_kind=output.metadata.get("failure_kind"),
            )
        return output

    def _skip_reason(
        self,
        pipeline: PromptsPipeline,
        stage: PipelineStage,
        inputs: Mapping[str, Any],
        prior: Mapping[str, StageOutput],
        initial: Mapping[str, Any],
    ) -> Optional[str]:
        if stage.conditional:
            if not self.stage_executor.check_condition(stage, inputs, prior, initial):
                return f"condition false: {stage.conditional}"
            return None
        if pipeline.merge_strategy == MergeStrategy.CONDITIONAL:
            skipped = sorted(
                s for s in stage.upstream_stages()
                if s in prior and prior[s].skipped and not prior[s].metadata.get("isolation_placeholder")
            )
            if skipped:
                return f"upstream skipped: {', '.join(skipped)}"
        return None

    def _cache_config(
        self,
        pipeline: PromptsPipeline,
        stage: PipelineStage,
    ) -> tuple[Optional[StageCacheConfig], bool]:
        """(effective cache config or None, cached only if slow enough)."""
        strategy = pipeline.cache_strategy
        if self.cache is None or strategy == CacheStrategy.NONE:
            return None, False
        if stage.cache is not None:
            return (stage.cache if stage.cache.enabled else None), False
        if strategy == CacheStrategy.PIPELINE:
            return StageCacheConfig(ttl_ms=self.default_cache_ttl_ms), False
        if strategy == CacheStrategy.ADAPTIVE:
            return StageCacheConfig(ttl_ms=self.default_cache_ttl_ms), True
        return None, False

    # ── retry ───────────────────────────────────────────────────────────

    async def _execute_with_retry(
        self,
        pipeline: PromptsPipeline,
        stage: PipelineStage,
        inputs: Mapping[str, Any],
        prior: Mapping[str, StageOutput],
        context: ExecutionContext,
    ) -> StageOutput:
        """
        Run the stage under the pipeline's retry policy.

        Only StageFailure kinds listed in ``retry_on`` are retried; the
        final failure is converted into a failed StageOutput.
        """
        policy = pipeline.retry_policy or RetryPolicy()
        stage_id = stage.stage_id
        attempts = 0
        start = time.monotonic()

        def _before_sleep(retry_state) -> None:
            exc = retry_state.outcome.exception()
            delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
            logger.warning(
                "Stage '%s' attempt %d/%d failed (%s): %s; retrying in %.2fs",
                stage_id, retry_state.attempt_number, policy.max_attempts,
                exc.kind.value, exc, delay,
            )
            self.events.emit(
                EventType.STAGE_RETRY, context.run_id, stage_id,
                attempt=retry_state.attempt_number, max_attempts=policy.max_attempts,
                failure_kind=exc.kind.value, delay_s=delay, error=str(exc),
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(policy.max_attempts, 1)),
            wait=wait_exponential(multiplier=policy.backoff_ms / 1000),
            retry=retry_if_exception(
                lambda e: isinstance(e, StageFailure) and policy.should_retry(e.kind)
            ),
            before_sleep=_before_sleep,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    output = await self.stage_executor.execute(stage, inputs, context, prior)
        except StageFailure as e:
            duration_ms = int((time.monotonic() - start) * 1000)
            metadata = {"failure_kind": e.kind.value, "attempts": attempts}
            missing = getattr(e, "missing", None)
            if missing:
                metadata["validation_failure"] = {"missing": missing}
            return StageOutput.failed_for(stage_id, str(e), duration_ms, **metadata)

        output.metadata["attempts"] = attempts
        return output

    # ── rollback / session ──────────────────────────────────────────────

    async def _run_rollback(
        self,
        pipeline: PromptsPipeline,
        initial: dict[str, Any],
        prior: Mapping[str, StageOutput],
        context: ExecutionContext,
    ) -> Optional[StageOutput]:
        """Invoke the rollback stage once; never raises."""
        target = pipeline.rollback_on_failure
        if not target:
            return None
        stage = pipeline.get_stage(target) or PipelineStage(stage=ROLLBACK_STAGE_NAME, prompt=target)
        stage = replace(stage, required=False)
        logger.info("Running rollback stage '%s'", stage.stage_id)
        self.events.emit(EventType.STAGE_START, context.run_id, stage.stage_id, rollback=True)

        start = time.monotonic()
        try:
            inputs = resolve_inputs(stage, initial, prior, lenient=True)
            output = await self.stage_executor.execute(stage, inputs, context, prior)
        except (StageFailure, ConfigurationError) as e:
            logger.error("Rollback stage '%s' failed: %s", stage.stage_id, e)
            output = StageOutput.failed_for(stage.stage_id, str(e), int((time.monotonic() - start) * 1000))

        output.metadata["rollback"] = True
        if output.success:
            self.events.emit(EventType.STAGE_COMPLETE, context.run_id, stage.stage_id,
                             rollback=True, duration_ms=output.duration_ms)
        else:
            self.events.emit(EventType.STAGE_ERROR, context.run_id, stage.stage_id,
                             rollback=True, error=output.error, duration_ms=output.duration_ms)
        return output

    async def _save_session(self, command_name: str, result: PipelineResult) -> None:
        if self.session_store is None:
            return
        try:
            await self.session_store.save(command_name, result)
        except Exception as e:
            logger.warning("Session store save failed (non-fatal): %s", e)
