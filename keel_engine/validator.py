# keel_engine/validator.py
"""
Static pipeline validation.

Everything that would otherwise surface as an unresolved reference or a
malformed policy mid-run is caught here, before the first provider call.
"""
import logging
from typing import Iterable

from keel_engine.exceptions import PipelineDefinitionError
from keel_engine.inputs import Condition
from keel_engine.pipeline import INPUT_NAMESPACE, PromptsPipeline
from keel_engine.scheduler import schedule

logger = logging.getLogger("keel.engine.validator")


class PipelineValidator:
    """Collects every issue instead of stopping at the first one."""

    def validate(self, pipeline: PromptsPipeline, available_stages: Iterable[str] = ()) -> list[str]:
        """
        Args:
            pipeline: Pipeline to check.
            available_stages: Stage ids whose outputs are injected from
                outside the run (isolation mock inputs).

        Returns:
            Human-readable issues; empty when the pipeline is valid.
        """
        issues: list[str] = []
        available = set(available_stages)

        if not pipeline.stages:
            return ["pipeline has no stages"]

        seen: set[str] = set()
        for index, stage in enumerate(pipeline.stages):
            label = stage.stage or f"#{index}"
            if not stage.stage:
                issues.append(f"stage #{index}: missing 'stage' name")
            if not stage.prompt:
                issues.append(f"stage '{label}': missing 'prompt'")
            if stage.stage in seen:
                issues.append(f"duplicate stage name '{stage.stage}'")
            seen.add(stage.stage)
            if stage.stage == INPUT_NAMESPACE:
                issues.append(f"stage name '{INPUT_NAMESPACE}' is reserved for initial inputs")
            if not isinstance(stage.required, bool):
                issues.append(f"stage '{label}': 'required' must be a boolean")
            if not isinstance(stage.parallel, bool):
                issues.append(f"stage '{label}': 'parallel' must be a boolean")
            if stage.timeout_ms is not None and stage.timeout_ms <= 0:
                issues.append(f"stage '{label}': timeout_ms must be positive")
            if stage.cache is not None:
                if stage.cache.ttl_ms <= 0:
                    issues.append(f"stage '{label}': cache ttl_ms must be positive")
                if stage.cache.cache_key_inputs is not None:
                    unknown = [k for k in stage.cache.cache_key_inputs if k not in stage.inputs]
                    if unknown:
                        issues.append(f"stage '{label}': cache_key_inputs not in inputs: {', '.join(unknown)}")
            if stage.conditional is not None:
                try:
                    Condition.parse(stage.conditional)
                except PipelineDefinitionError as e:
                    issues.append(f"stage '{label}': {e}")

        policy = pipeline.retry_policy
        if policy is not None:
            if policy.max_attempts < 1:
                issues.append("retry_policy.max_attempts must be >= 1")
            if policy.backoff_ms < 0:
                issues.append("retry_policy.backoff_ms must be >= 0")

        if issues:
            # Reference checks assume well-formed stage names
            return issues

        issues.extend(self._check_references(pipeline, available))
        return issues

    def ensure_valid(self, pipeline: PromptsPipeline, available_stages: Iterable[str] = ()) -> None:
        """
        Raises:
            PipelineDefinitionError: With every issue found.
        """
        issues = self.validate(pipeline, available_stages)
        if issues:
            logger.error("Pipeline '%s' failed validation: %s", pipeline.name, issues)
            raise PipelineDefinitionError(f"Pipeline '{pipeline.name}' is invalid", issues)

    @staticmethod
    def _check_references(pipeline: PromptsPipeline, available: set[str]) -> list[str]:
        issues = []
        group_of: dict[str, int] = {}
        for index, group in enumerate(schedule(pipeline)):
            for stage_id in group.stage_ids:
                group_of[stage_id] = index
        by_id = {s.stage_id: s for s in pipeline.stages}

        for stage in pipeline.stages:
            if stage.stage_id not in group_of:
                continue  # rollback target, runs on its own
            for name, reference in stage.inputs.items():
                if not isinstance(reference, str):
                    continue
                parts = reference.split(".")
                root = parts[0]
                if root == INPUT_NAMESPACE:
                    continue
                if root in available:
                    continue
                producer = by_id.get(root)
                if producer is None:
                    issues.append(f"stage '{stage.stage}': input '{name}' references unknown stage '{root}'")
                    continue
                if root not in group_of:
                    issues.append(f"stage '{stage.stage}': input '{name}' references rollback stage '{root}'")
                    continue
                if group_of[root] == group_of[stage.stage_id]:
                    issues.append(
                        f"stage '{stage.stage}': input '{name}' references parallel sibling '{root}'"
                    )
                elif group_of[root] > group_of[stage.stage_id]:
                    issues.append(f"stage '{stage.stage}': input '{name}' references later stage '{root}'")
                elif len(parts) > 1 and producer.outputs and parts[1] not in producer.outputs:
                    issues.append(
                        f"stage '{stage.stage}': input '{name}' references '{reference}' "
                        f"but '{root}' only declares outputs {list(producer.outputs)}"
                    )

        rollback = pipeline.rollback_on_failure
        if rollback is not None and not str(rollback).strip():
            issues.append("rollback_on_failure is empty")
        return issues
