# keel_engine/pipeline.py
"""
Data models for the pipeline execution engine.

A command's ``prompts`` section is a PromptsPipeline: an ordered list of
PipelineStages whose named outputs feed later stages' inputs. Definitions
are immutable for the lifetime of a run; results are plain dataclasses.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

DEFAULT_CACHE_TTL_MS = 60 * 60 * 1000
INPUT_NAMESPACE = "input"


class CacheStrategy(str, Enum):
    """Pipeline-wide caching policy."""
    NONE = "none"
    STAGE = "stage"
    PIPELINE = "pipeline"
    ADAPTIVE = "adaptive"


class MergeStrategy(str, Enum):
    """How adjacent stages are scheduled relative to each other."""
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    CONDITIONAL = "conditional"
    WATERFALL = "waterfall"


class RetryReason(str, Enum):
    """Failure kinds a retry policy can opt into."""
    ERROR = "error"
    TIMEOUT = "timeout"
    VALIDATION_FAILED = "validation_failed"


class StageStatus(str, Enum):
    """Per-stage state machine positions."""
    PENDING = "pending"
    CACHE_CHECK = "cache_check"
    RUNNING = "running"
    RETRYING = "retrying"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    CACHED = "cached"


@dataclass(frozen=True)
class StageCacheConfig:
    """
    Per-stage cache settings.

    Attributes:
        enabled: Whether the stage participates in caching.
        ttl_ms: Entry lifetime; defaults to one hour.
        cache_key_inputs: Input names that form the key (None = all).
        file_dependencies: Paths whose content change invalidates the entry.
    """
    enabled: bool = True
    ttl_ms: int = DEFAULT_CACHE_TTL_MS
    cache_key_inputs: Optional[tuple[str, ...]] = None
    file_dependencies: tuple[str, ...] = ()


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded retry for stage failures.

    Delays grow exponentially: ``backoff_ms * 2 ** (attempt - 1)``.
    """
    max_attempts: int = 1
    backoff_ms: int = 0
    retry_on: tuple[RetryReason, ...] = (RetryReason.ERROR, RetryReason.TIMEOUT)

    def should_retry(self, kind: RetryReason) -> bool:
        return kind in self.retry_on

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the given (1-based) failed attempt."""
        if self.backoff_ms <= 0:
            return 0.0
        return self.backoff_ms * (2 ** max(attempt - 1, 0)) / 1000.0


@dataclass(frozen=True)
class PipelineStage:
    """
    One unit of a pipeline.

    Attributes:
        stage: Stage name, unique within the pipeline.
        prompt: Opaque prompt reference handed to the prompt source.
        inputs: Logical input name -> dotted reference
            (``input.<key>`` or ``<stage>.<output>``).
        outputs: Names this stage produces.
        required: Exhausted failure aborts the whole pipeline.
        parallel: May run concurrently with adjacent parallel stages.
        conditional: Expression deciding whether the stage runs.
        timeout_ms: Per-attempt timeout (None = executor default).
        cache: Optional cache configuration.
        agent: Optional static agent role for this stage.
    """
    stage: str
    prompt: str
    inputs: dict[str, str] = field(default_factory=dict)
    outputs: tuple[str, ...] = ()
    required: bool = True
    parallel: bool = False
    conditional: Optional[str] = None
    timeout_ms: Optional[int] = None
    cache: Optional[StageCacheConfig] = None
    agent: Optional[str] = None

    @property
    def stage_id(self) -> str:
        return self.stage

    @property
    def key(self) -> str:
        """``stage.prompt`` identifier, also accepted by stage selectors."""
        return f"{self.stage}.{self.prompt}"

    def input_references(self) -> list[tuple[str, str]]:
        """(input name, root) pairs for every reference in ``inputs``."""
        return [(name, ref.split(".", 1)[0]) for name, ref in self.inputs.items()]

    def upstream_stages(self) -> set[str]:
        return {root for _, root in self.input_references() if root != INPUT_NAMESPACE}


@dataclass(frozen=True)
class PromptsPipeline:
    """A command's stage list plus the policies that govern it."""
    stages: tuple[PipelineStage, ...]
    cache_strategy: CacheStrategy = CacheStrategy.STAGE
    merge_strategy: MergeStrategy = MergeStrategy.SEQUENTIAL
    retry_policy: Optional[RetryPolicy] = None
    rollback_on_failure: Optional[str] = None
    name: str = "pipeline"

    @property
    def stage_ids(self) -> list[str]:
        return [s.stage_id for s in self.stages]

    def get_stage(self, stage_id: str) -> Optional[PipelineStage]:
        for stage in self.stages:
            if stage.stage_id == stage_id:
                return stage
        return None


@dataclass
class StageOutput:
    """
    Result of one stage (executed, cached, skipped or failed).

    ``metadata`` carries markers such as ``cached``, ``skipped``,
    ``attempts``, ``agent`` and ``rollback``.
    """
    stage: str
    success: bool
    outputs: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    duration_ms: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def cached(self) -> bool:
        return bool(self.metadata.get("cached"))

    @property
    def skipped(self) -> bool:
        return bool(self.metadata.get("skipped"))

    @property
    def status(self) -> StageStatus:
        if self.skipped:
            return StageStatus.SKIPPED
        if self.cached:
            return StageStatus.CACHED
        return StageStatus.SUCCESS if self.success else StageStatus.FAILED

    @classmethod
    def skipped_for(cls, stage: str, reason: str) -> "StageOutput":
        return cls(stage=stage, success=True, metadata={"skipped": True, "reason": reason})

    @classmethod
    def failed_for(cls, stage: str, error: str, duration_ms: int = 0, **metadata: Any) -> "StageOutput":
        return cls(stage=stage, success=False, error=error, duration_ms=duration_ms, metadata=dict(metadata))

    def to_dict(self) -> dict:
        return {
            "stage": self.stage,
            "success": self.success,
            "status": self.status.value,
            "outputs": self.outputs,
            "error": self.error,
            "duration_ms": self.duration_ms,
            "metadata": self.metadata,
        }


@dataclass
class PipelineResult:
    """
    Final result of a pipeline run.

    Attributes:
        success: All executed required stages succeeded.
        stages: Full ordered trace, including skipped/cached/failed entries.
        outputs: Outputs of successful stages merged in execution order.
        error: Error message for failed runs.
        aborted_stage: Required stage that triggered the abort, if any.
        rollback_ran: Whether the rollback stage was invoked.
        duration_ms: Total wall-clock milliseconds.
        run_id: Correlation id of the run.
        metadata: Extra run information (isolation mode, ...).
    """
    success: bool
    stages: list[StageOutput] = field(default_factory=list)
    outputs: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    aborted_stage: Optional[str] = None
    rollback_ran: bool = False
    duration_ms: int = 0
    run_id: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    def get_stage(self, stage_id: str) -> Optional[StageOutput]:
        for output in self.stages:
            if output.stage == stage_id and not output.metadata.get("rollback"):
                return output
        return None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "stages": [s.to_dict() for s in self.stages],
            "outputs": self.outputs,
            "error": self.error,
            "aborted_stage": self.aborted_stage,
            "rollback_ran": self.rollback_ran,
            "duration_ms": self.duration_ms,
            "run_id": self.run_id,
            "metadata": self.metadata,
        }
