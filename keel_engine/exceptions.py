"""Engine-specific exceptions."""

from typing import Any, Optional

from keel_engine.pipeline import RetryReason


class EngineError(Exception):
    """Base exception for keel_engine."""
    pass


# ── Configuration (fatal, never retried) ────────────────────────────────

class ConfigurationError(EngineError):
    """Bad pipeline definition, unresolved reference or registry failure."""
    pass


class PipelineDefinitionError(ConfigurationError):
    """Pipeline definition failed to load or validate."""

    def __init__(self, message: str, issues: Optional[list[str]] = None):
        self.issues = list(issues or [])
        if self.issues:
            message = f"{message}: " + "; ".join(self.issues)
        super().__init__(message)


class InputResolutionError(ConfigurationError):
    """A stage input reference did not resolve to a prior output."""

    def __init__(self, stage: str, reference: str, reason: str):
        self.stage = stage
        self.reference = reference
        super().__init__(f"Stage '{stage}' input '{reference}': {reason}")


class RegistryError(ConfigurationError):
    """Capability registry load, validation or use-before-init failure."""
    pass


# ── Stage failures (retryable per retry_on) ─────────────────────────────

class StageFailure(EngineError):
    """A single stage attempt failed; the retry policy decides what next."""

    kind: RetryReason = RetryReason.ERROR

    def __init__(self, stage: str, message: str):
        self.stage = stage
        super().__init__(message)


class ProviderError(StageFailure):
    """Completion provider call failed (HTTP, connection, bad response)."""

    kind = RetryReason.ERROR


class StageTimeoutError(StageFailure, TimeoutError):
    """Stage exceeded its timeout_ms."""

    kind = RetryReason.TIMEOUT

    def __init__(self, stage: str, timeout_ms: int):
        self.timeout_ms = timeout_ms
        super().__init__(stage, f"Stage '{stage}' timed out after {timeout_ms}ms")


class ValidationFailure(StageFailure):
    """Stage output failed a post-condition (missing declared outputs)."""

    kind = RetryReason.VALIDATION_FAILED

    def __init__(self, stage: str, missing: list[str], message: str = ""):
        self.missing = list(missing)
        super().__init__(
            stage,
            message or f"Stage '{stage}' did not produce outputs: {', '.join(self.missing)}",
        )


# ── Abort ───────────────────────────────────────────────────────────────

class StageAbort(EngineError):
    """A required stage exhausted its retries; the pipeline halts."""

    def __init__(self, stage: str, output: Any = None):
        self.stage = stage
        self.output = output
        error = getattr(output, "error", None)
        super().__init__(f"Required stage '{stage}' failed" + (f": {error}" if error else ""))
