# keel_engine/wiring.py
"""
Engine assembly — every component built with explicit handles.

Build order:
  1. Logging
  2. Events (+ structured log subscriber, Prometheus metrics)
  3. Completion provider
  4. Capability registry + dynamic resolver (only when enabled)
  5. Stage cache
  6. Stage / pipeline / isolation executors

Usage:
    engine = build_engine(EngineConfig.from_env())
    result = await engine.pipeline_executor.run(pipeline, {"task": "..."})
"""
import logging
from dataclasses import dataclass
from typing import Optional

from keel_agents.analytics import SelectionAnalytics
from keel_agents.capabilities import AgentCapabilityRegistry
from keel_agents.resolver import DynamicAgentResolver, ResolverSettings
from keel_engine.cache import StageOutputCache
from keel_engine.config import EngineConfig
from keel_engine.events import EventEmitter, LoggingSubscriber
from keel_engine.isolation import CommandIsolationExecutor
from keel_engine.logging_config import configure_logging
from keel_engine.metrics import PipelineMetrics
from keel_engine.pipeline_executor import PipelineExecutor, SessionStore
from keel_engine.providers import CompletionProvider, build_provider
from keel_engine.sources import AgentSource, PromptSource
from keel_engine.stage_executor import StageExecutor

logger = logging.getLogger("keel.engine")


@dataclass
class EngineContainer:
    """Handles to every constructed component."""
    config: EngineConfig
    events: EventEmitter
    metrics: PipelineMetrics
    provider: CompletionProvider
    registry: Optional[AgentCapabilityRegistry]
    resolver: Optional[DynamicAgentResolver]
    analytics: SelectionAnalytics
    cache: StageOutputCache
    stage_executor: StageExecutor
    pipeline_executor: PipelineExecutor
    isolation_executor: CommandIsolationExecutor

    async def aclose(self) -> None:
        """Flush pending events and stop the dispatcher."""
        await self.events.aclose()


def build_resolver(
    config: EngineConfig,
    registry: Optional[AgentCapabilityRegistry] = None,
) -> tuple[AgentCapabilityRegistry, DynamicAgentResolver]:
    """
    Initialize the registry and wrap it in a resolver.

    Raises:
        RegistryError: If the capability file cannot be loaded or is invalid.
    """
    registry = registry or AgentCapabilityRegistry(path=config.capabilities_path)
    if not registry.is_initialized:
        registry.initialize()
    resolver = DynamicAgentResolver(
        registry,
        ResolverSettings(
            confidence_threshold=config.confidence_threshold,
            hard_floor=config.hard_confidence_floor,
        ),
    )
    health = resolver.validate_services()
    if not health.valid:
        logger.warning("Agent resolver degraded: %s", "; ".join(health.issues))
    return registry, resolver


def build_engine(
    config: Optional[EngineConfig] = None,
    *,
    provider: Optional[CompletionProvider] = None,
    prompts: Optional[PromptSource] = None,
    agents: Optional[AgentSource] = None,
    registry: Optional[AgentCapabilityRegistry] = None,
    session_store: Optional[SessionStore] = None,
    configure_logs: bool = False,
) -> EngineContainer:
    """
    Assemble an engine from *config* (default: environment).

    Args:
        config: Engine settings.
        provider: Completion provider override (tests, dry runs).
        prompts: Prompt source (default: prompt reference as template).
        agents: Agent instruction source.
        registry: Pre-built capability registry.
        session_store: Optional result sink.
        configure_logs: Also configure stdlib logging + structlog.
    """
    config = config or EngineConfig.from_env()
    if configure_logs:
        configure_logging(config.log_level)

    events = EventEmitter(max_queue=config.event_queue_size)
    events.subscribe(LoggingSubscriber())
    metrics = PipelineMetrics()
    events.subscribe(metrics)

    provider = provider or build_provider(config.provider_kind, config)

    resolver = None
    if config.dynamic_agents_enabled:
        registry, resolver = build_resolver(config, registry)
    else:
        logger.info("Dynamic agent selection disabled")
    analytics = SelectionAnalytics()

    cache = StageOutputCache(max_entries=config.cache_max_entries, persist_dir=config.cache_dir)

    stage_executor = StageExecutor(
        provider,
        events=events,
        prompts=prompts,
        agents=agents,
        resolver=resolver,
        analytics=analytics,
        default_timeout_ms=config.default_stage_timeout_ms,
        model=config.default_model,
        temperature=config.default_temperature,
        max_tokens=config.default_max_tokens,
        provider_timeout_s=config.provider_timeout_s,
    )
    pipeline_executor = PipelineExecutor(
        stage_executor,
        cache=cache,
        events=events,
        session_store=session_store,
        adaptive_min_duration_ms=config.adaptive_cache_min_duration_ms,
        default_cache_ttl_ms=config.cache_default_ttl_ms,
    )
    logger.info(
        "Engine ready (provider=%s, model=%s, dynamic_agents=%s, cache_dir=%s)",
        config.provider_kind, config.default_model, resolver is not None, config.cache_dir or "memory",
    )
    return EngineContainer(
        config=config,
        events=events,
        metrics=metrics,
        provider=provider,
        registry=registry,
        resolver=resolver,
        analytics=analytics,
        cache=cache,
        stage_executor=stage_executor,
        pipeline_executor=pipeline_executor,
        isolation_executor=CommandIsolationExecutor(pipeline_executor),
    )
