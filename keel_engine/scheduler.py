# keel_engine/scheduler.py
"""Stage grouping — which stages run together."""
from dataclasses import dataclass
from typing import Iterable, Optional

from keel_engine.pipeline import MergeStrategy, PipelineStage, PromptsPipeline

# Strategies under which adjacent parallel stages share a group
CONCURRENT_STRATEGIES = (MergeStrategy.PARALLEL, MergeStrategy.CONDITIONAL)


@dataclass(frozen=True)
class StageGroup:
    """Stages joined before the next group starts."""
    stages: tuple[PipelineStage, ...]

    @property
    def concurrent(self) -> bool:
        return len(self.stages) > 1

    @property
    def stage_ids(self) -> list[str]:
        return [s.stage_id for s in self.stages]


def group_stages(
    stages: Iterable[PipelineStage],
    merge_strategy: MergeStrategy,
    exclude: Optional[str] = None,
) -> list[StageGroup]:
    """
    Split *stages* into execution groups.

    Maximal runs of adjacent ``parallel=True`` stages form one group under
    the parallel and conditional strategies. Sequential and waterfall run
    every stage on its own. *exclude* drops a stage (the rollback target).
    """
    groups: list[StageGroup] = []
    current: list[PipelineStage] = []
    concurrent = merge_strategy in CONCURRENT_STRATEGIES

    for stage in stages:
        if exclude and stage.stage_id == exclude:
            continue
        if concurrent and stage.parallel is True:
            current.append(stage)
            continue
        if current:
            groups.append(StageGroup(tuple(current)))
            current = []
        groups.append(StageGroup((stage,)))

    if current:
        groups.append(StageGroup(tuple(current)))
    return groups


def schedule(pipeline: PromptsPipeline) -> list[StageGroup]:
    """Groups for a whole pipeline, leaving out its rollback stage."""
    return group_stages(pipeline.stages, pipeline.merge_strategy, exclude=pipeline.rollback_on_failure)
