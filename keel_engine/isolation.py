# keel_engine/isolation.py
"""
Isolated / partial pipeline execution for debugging and tests.

Runs a subset of a command's stages:
- Stage selectors match ``stage`` or ``stage.prompt``
- Unselected upstream stages are replaced by ``mock_inputs`` (keyed by
  stage name) or, without a mock, by a skipped placeholder whose
  references resolve to None
- Stages that depend on an unselected stage are downgraded to
  ``required=False`` unless ``force_required`` is set
- ``skip_validation`` also makes input resolution lenient
"""
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Mapping, Optional

from keel_engine.exceptions import ConfigurationError
from keel_engine.pipeline import PipelineResult, PipelineStage, PromptsPipeline, StageOutput
from keel_engine.pipeline_executor import PipelineExecutor
from keel_engine.stage_executor import ExecutionContext

logger = logging.getLogger("keel.engine.isolation")


class IsolationMode(str, Enum):
    ISOLATED = "isolated"  # one stage, validation skipped
    STAGES = "stages"
    PIPELINE = "pipeline"


@dataclass
class IsolationOptions:
    stages: Optional[list[str]] = None
    skip_validation: bool = False
    mock_inputs: Optional[dict[str, dict[str, Any]]] = None
    force_required: bool = False


@dataclass
class IsolationPlan:
    """What an isolated run would do."""
    mode: IsolationMode
    selected: list[str]
    skipped: list[str]
    mocked: list[str]
    downgraded: list[str]
    pipeline: PromptsPipeline
    seeded: dict[str, StageOutput] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "mode": self.mode.value,
            "selected": self.selected,
            "skipped": self.skipped,
            "mocked": self.mocked,
            "downgraded": self.downgraded,
        }


def match_selectors(pipeline: PromptsPipeline, selectors: list[str]) -> list[str]:
    """
    Map selectors onto stage ids in pipeline order.

    Raises:
        ConfigurationError: If a selector matches no stage.
    """
    wanted: set[str] = set()
    for selector in selectors:
        matches = [s.stage_id for s in pipeline.stages if selector in (s.stage, s.key)]
        if not matches:
            raise ConfigurationError(
                f"Unknown stage '{selector}'. Available: {', '.join(s.key for s in pipeline.stages)}"
            )
        wanted.update(matches)
    return [s.stage_id for s in pipeline.stages if s.stage_id in wanted]


class CommandIsolationExecutor:
    """Runs a constrained subset of a pipeline through a PipelineExecutor."""

    def __init__(self, pipeline_executor: PipelineExecutor):
        self.pipeline_executor = pipeline_executor

    def describe(self, pipeline: PromptsPipeline, options: Optional[IsolationOptions] = None) -> IsolationPlan:
        """Build the execution plan without running anything."""
        options = options or IsolationOptions()
        mocks = dict(options.mock_inputs or {})

        if options.stages is None:
            selected = list(pipeline.stage_ids)
            mode = IsolationMode.PIPELINE
        else:
            selected = match_selectors(pipeline, options.stages)
            if len(selected) == 1 and options.skip_validation:
                mode = IsolationMode.ISOLATED
            else:
                mode = IsolationMode.STAGES

        selected_set = set(selected)
        rollback = pipeline.rollback_on_failure
        skipped = [
            s.stage_id for s in pipeline.stages
            if s.stage_id not in selected_set and s.stage_id != rollback
        ]
        skipped_set = set(skipped)

        for name in mocks:
            if name in selected_set:
                logger.warning("Mock inputs for '%s' ignored: the stage runs in this isolation", name)
            elif name not in skipped_set:
                logger.warning("Mock inputs for unknown stage '%s' ignored", name)

        seeded: dict[str, StageOutput] = {}
        mocked: list[str] = []
        for stage_id in skipped:
            if stage_id in mocks:
                seeded[stage_id] = StageOutput(
                    stage=stage_id, success=True, outputs=dict(mocks[stage_id]), metadata={"mocked": True},
                )
                mocked.append(stage_id)
            else:
                placeholder = StageOutput.skipped_for(stage_id, "not selected for isolated run")
                placeholder.metadata["isolation_placeholder"] = True
                seeded[stage_id] = placeholder

        stages: list[PipelineStage] = []
        downgraded: list[str] = []
        for stage in pipeline.stages:
            if stage.stage_id in skipped_set:
                continue
            if (
                not options.force_required
                and stage.required
                and stage.upstream_stages() & skipped_set
            ):
                stage = replace(stage, required=False)
                downgraded.append(stage.stage_id)
            stages.append(stage)

        subset = replace(pipeline, stages=tuple(stages))
        if options.stages is not None and rollback in selected_set:
            # A selected rollback target runs as an ordinary stage
            subset = replace(subset, rollback_on_failure=None)
        return IsolationPlan(
            mode=mode,
            selected=selected,
            skipped=skipped,
            mocked=mocked,
            downgraded=downgraded,
            pipeline=subset,
            seeded=seeded,
        )

    async def run_isolated(
        self,
        pipeline: PromptsPipeline,
        options: Optional[IsolationOptions] = None,
        initial_inputs: Optional[Mapping[str, Any]] = None,
        context: Optional[ExecutionContext] = None,
    ) -> PipelineResult:
        """
        Execute the selected stages.

        Raises:
            ConfigurationError: Unknown selector, or (without
                skip_validation) an invalid subset pipeline.
        """
        options = options or IsolationOptions()
        plan = self.describe(pipeline, options)
        logger.info(
            "Isolated run of '%s' (mode=%s, stages=%s, mocked=%s, downgraded=%s)",
            pipeline.name, plan.mode.value, plan.selected, plan.mocked, plan.downgraded,
        )
        return await self.pipeline_executor.run(
            plan.pipeline,
            initial_inputs,
            context,
            seeded_outputs=plan.seeded,
            skip_validation=options.skip_validation,
            lenient_inputs=options.skip_validation,
            metadata={"isolation": plan.to_dict()},
        )
