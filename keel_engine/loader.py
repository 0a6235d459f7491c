# keel_engine/loader.py
"""
Build PromptsPipeline objects from command definitions.

Accepts snake_case keys and the camelCase keys found in older command
files (``timeoutMs``, ``retryPolicy``, ``cacheKeyInputs`` ...).
"""
import logging
from pathlib import Path
from typing import Any, Optional

import yaml

from keel_engine.exceptions import PipelineDefinitionError
from keel_engine.pipeline import (
    DEFAULT_CACHE_TTL_MS,
    CacheStrategy,
    MergeStrategy,
    PipelineStage,
    PromptsPipeline,
    RetryPolicy,
    RetryReason,
    StageCacheConfig,
)

logger = logging.getLogger("keel.engine.loader")


def _get(data: dict, snake: str, camel: Optional[str] = None, default: Any = None) -> Any:
    if snake in data:
        return data[snake]
    if camel and camel in data:
        return data[camel]
    return default


def _enum(enum_cls, value, default, what: str):
    if value is None:
        return default
    try:
        return enum_cls(str(value).lower())
    except ValueError:
        allowed = ", ".join(e.value for e in enum_cls)
        raise PipelineDefinitionError(f"Unknown {what} {value!r} (expected one of: {allowed})")


def _cache_from_dict(data: Any) -> Optional[StageCacheConfig]:
    if data is None:
        return None
    if isinstance(data, bool):
        return StageCacheConfig(enabled=data)
    if not isinstance(data, dict):
        raise PipelineDefinitionError(f"cache must be a mapping or boolean, got {type(data).__name__}")
    key_inputs = _get(data, "cache_key_inputs", "cacheKeyInputs")
    return StageCacheConfig(
        enabled=bool(data.get("enabled", True)),
        ttl_ms=int(_get(data, "ttl_ms", "ttlMs", DEFAULT_CACHE_TTL_MS)),
        cache_key_inputs=tuple(key_inputs) if key_inputs is not None else None,
        file_dependencies=tuple(_get(data, "file_dependencies", "fileDependencies", ()) or ()),
    )


def _retry_from_dict(data: Any) -> Optional[RetryPolicy]:
    if data is None:
        return None
    if not isinstance(data, dict):
        raise PipelineDefinitionError("retry_policy must be a mapping")
    retry_on = _get(data, "retry_on", "retryOn")
    kinds = (
        tuple(_enum(RetryReason, r, None, "retry_on kind") for r in retry_on)
        if retry_on is not None
        else RetryPolicy.retry_on
    )
    return RetryPolicy(
        max_attempts=int(_get(data, "max_attempts", "maxAttempts", 1)),
        backoff_ms=int(_get(data, "backoff_ms", "backoffMs", 0)),
        retry_on=kinds,
    )


def stage_from_dict(data: dict) -> PipelineStage:
    """Build one PipelineStage."""
    if not isinstance(data, dict):
        raise PipelineDefinitionError(f"stage entry must be a mapping, got {type(data).__name__}")
    inputs = data.get("inputs") or {}
    if not isinstance(inputs, dict):
        raise PipelineDefinitionError(f"stage '{data.get('stage')}' inputs must be a mapping")
    outputs = data.get("outputs") or ()
    if isinstance(outputs, str):
        outputs = (outputs,)
    timeout = _get(data, "timeout_ms", "timeoutMs")
    return PipelineStage(
        stage=str(data.get("stage", "")),
        prompt=str(data.get("prompt", "")),
        inputs=dict(inputs),
        outputs=tuple(outputs),
        required=data.get("required", True),
        parallel=data.get("parallel", False),
        conditional=data.get("conditional"),
        timeout_ms=int(timeout) if timeout is not None else None,
        cache=_cache_from_dict(data.get("cache")),
        agent=data.get("agent"),
    )


def pipeline_from_dict(data: dict, name: Optional[str] = None) -> PromptsPipeline:
    """
    Build a PromptsPipeline from a command's ``prompts`` mapping.

    Raises:
        PipelineDefinitionError: On any shape or value error.
    """
    if not isinstance(data, dict):
        raise PipelineDefinitionError(f"pipeline definition must be a mapping, got {type(data).__name__}")
    if "prompts" in data and isinstance(data["prompts"], dict):
        name = name or data.get("name")
        data = data["prompts"]
    stages = data.get("stages")
    if stages is None:
        stages = data.get("pipeline", [])
    if not isinstance(stages, list):
        raise PipelineDefinitionError("'stages' must be a list")
    try:
        return PromptsPipeline(
            stages=tuple(stage_from_dict(s) for s in stages),
            cache_strategy=_enum(
                CacheStrategy, _get(data, "cache_strategy", "cacheStrategy"),
                CacheStrategy.STAGE, "cache_strategy",
            ),
            merge_strategy=_enum(
                MergeStrategy, _get(data, "merge_strategy", "mergeStrategy"),
                MergeStrategy.SEQUENTIAL, "merge_strategy",
            ),
            retry_policy=_retry_from_dict(_get(data, "retry_policy", "retryPolicy")),
            rollback_on_failure=_get(data, "rollback_on_failure", "rollbackOnFailure"),
            name=str(name or data.get("name") or "pipeline"),
        )
    except (TypeError, ValueError) as e:
        raise PipelineDefinitionError(f"Invalid pipeline definition: {e}") from e


def load_pipeline(path: str | Path) -> PromptsPipeline:
    """Parse a YAML command file into a PromptsPipeline."""
    path = Path(path)
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        raise PipelineDefinitionError(f"Failed to read pipeline {path}: {e}") from e
    pipeline = pipeline_from_dict(data or {}, name=path.stem)
    logger.debug("Loaded pipeline '%s' with %d stages from %s", pipeline.name, len(pipeline.stages), path)
    return pipeline
