"""
keel engine — multi-stage LLM pipeline execution.

Walks a command's declarative stage list, wires stage outputs into later
stage inputs, and applies per-stage caching, retry, timeout and rollback.
Agent selection for each stage is delegated to ``keel_agents``.
"""

__version__ = "0.3.0"

from keel_engine.config import EngineConfig
from keel_engine.exceptions import (
    ConfigurationError,
    EngineError,
    InputResolutionError,
    PipelineDefinitionError,
    ProviderError,
    RegistryError,
    StageAbort,
    StageFailure,
    StageTimeoutError,
    ValidationFailure,
)

__all__ = [
    "EngineConfig",
    "EngineError",
    "ConfigurationError",
    "PipelineDefinitionError",
    "InputResolutionError",
    "RegistryError",
    "StageFailure",
    "ProviderError",
    "StageTimeoutError",
    "ValidationFailure",
    "StageAbort",
]
