"""Engine configuration — all settings from environment (KEEL_*) or .env."""

from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings

DEFAULT_CAPABILITIES_PATH = str(
    Path(__file__).parent.parent / "keel_agents" / "data" / "capabilities.yaml"
)
PROVIDER_KINDS = ("litellm", "echo")


class EngineConfig(BaseSettings):
    """Runtime configuration for the keel engine (validated via Pydantic)."""

    model_config = {
        "env_prefix": "",
        "env_file": ".env",
        "extra": "ignore",
        "populate_by_name": True,
    }

    # LLM
    default_model: str = Field(default="gpt-4o-mini", alias="KEEL_DEFAULT_MODEL")
    default_temperature: float = Field(default=0.2, alias="KEEL_DEFAULT_TEMPERATURE")
    default_max_tokens: int = Field(default=4096, alias="KEEL_DEFAULT_MAX_TOKENS")
    provider_kind: str = Field(default="litellm", alias="KEEL_PROVIDER")
    provider_timeout_s: float = Field(default=300.0, alias="KEEL_PROVIDER_TIMEOUT")
    litellm_base_url: Optional[str] = Field(default=None, alias="LITELLM_BASE_URL")
    litellm_master_key: str = Field(default="", alias="LITELLM_MASTER_KEY")

    # Stages
    default_stage_timeout_ms: int = Field(default=300_000, alias="KEEL_STAGE_TIMEOUT_MS")

    # Cache
    cache_dir: Optional[str] = Field(default=None, alias="KEEL_CACHE_DIR")
    cache_max_entries: int = Field(default=100, alias="KEEL_CACHE_MAX_ENTRIES")
    cache_default_ttl_ms: int = Field(default=3_600_000, alias="KEEL_CACHE_TTL_MS")
    adaptive_cache_min_duration_ms: int = Field(default=5000, alias="KEEL_ADAPTIVE_CACHE_MIN_MS")

    # Events
    event_queue_size: int = Field(default=1000, alias="KEEL_EVENT_QUEUE_SIZE")

    # Agent resolution
    dynamic_agents_enabled: bool = Field(default=True, alias="KEEL_DYNAMIC_AGENTS")
    capabilities_path: str = Field(
        default=DEFAULT_CAPABILITIES_PATH, alias="KEEL_CAPABILITIES_PATH",
    )
    confidence_threshold: float = Field(default=0.6, alias="KEEL_CONFIDENCE_THRESHOLD")
    hard_confidence_floor: float = Field(default=0.25, alias="KEEL_HARD_CONFIDENCE_FLOOR")

    # Logging
    log_level: str = Field(default="INFO", alias="KEEL_LOG_LEVEL")

    @field_validator("default_temperature")
    @classmethod
    def validate_temperature(cls, v: float) -> float:
        if not 0.0 <= v <= 2.0:
            raise ValueError(f"Temperature must be 0.0-2.0, got {v}")
        return v

    @field_validator("default_max_tokens")
    @classmethod
    def validate_max_tokens(cls, v: int) -> int:
        if v < 1 or v > 200000:
            raise ValueError(f"max_tokens must be 1-200000, got {v}")
        return v

    @field_validator("provider_kind")
    @classmethod
    def validate_provider_kind(cls, v: str) -> str:
        v = v.lower()
        if v not in PROVIDER_KINDS:
            raise ValueError(f"provider must be one of {PROVIDER_KINDS}, got {v!r}")
        return v

    @field_validator(
        "provider_timeout_s",
        "default_stage_timeout_ms",
        "cache_max_entries",
        "cache_default_ttl_ms",
        "event_queue_size",
    )
    @classmethod
    def validate_positive(cls, v):
        if v <= 0:
            raise ValueError(f"value must be positive, got {v}")
        return v

    @field_validator("adaptive_cache_min_duration_ms")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError(f"adaptive_cache_min_duration_ms must be >= 0, got {v}")
        return v

    @field_validator("confidence_threshold", "hard_confidence_floor")
    @classmethod
    def validate_unit_interval(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"confidence values must be 0.0-1.0, got {v}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        v = v.upper()
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return v

    @model_validator(mode="after")
    def validate_floors(self) -> "EngineConfig":
        if self.hard_confidence_floor > self.confidence_threshold:
            raise ValueError(
                "hard_confidence_floor must not exceed confidence_threshold "
                f"({self.hard_confidence_floor} > {self.confidence_threshold})"
            )
        return self

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Create config from environment variables."""
        return cls()
