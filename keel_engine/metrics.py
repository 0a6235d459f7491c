"""
Prometheus metrics for pipeline runs.

PipelineMetrics is an event subscriber: attach it to an EventEmitter and
it updates counters/histograms from lifecycle events, so metrics never
sit on the executor's hot path.

Usage:
    metrics = PipelineMetrics()
    emitter.subscribe(metrics)
    print(metrics.render().decode())
"""
from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest

from keel_engine.events import EventType, PipelineEvent

_DURATION_BUCKETS = [0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0]


class PipelineMetrics:
    """All pipeline metrics in one place."""

    def __init__(self, reg: Optional[CollectorRegistry] = None):
        # Own registry by default (allows testing without global state pollution)
        self.registry = reg if reg is not None else CollectorRegistry()

        self.pipeline_runs = Counter(
            "keel_pipeline_runs_total",
            "Pipeline runs by outcome",
            ["status"],
            registry=self.registry,
        )
        self.pipeline_duration = Histogram(
            "keel_pipeline_duration_seconds",
            "Pipeline wall-clock duration in seconds",
            buckets=_DURATION_BUCKETS,
            registry=self.registry,
        )
        self.stage_executions = Counter(
            "keel_stage_executions_total",
            "Stage executions by outcome",
            ["stage", "status"],
            registry=self.registry,
        )
        self.stage_duration = Histogram(
            "keel_stage_duration_seconds",
            "Stage duration in seconds",
            ["stage"],
            buckets=_DURATION_BUCKETS,
            registry=self.registry,
        )
        self.stage_retries = Counter(
            "keel_stage_retries_total",
            "Stage retry attempts",
            ["stage"],
            registry=self.registry,
        )
        self.cache_hits = Counter(
            "keel_cache_hits_total",
            "Stage outputs served from cache",
            ["stage"],
            registry=self.registry,
        )
        self.stages_in_progress = Gauge(
            "keel_stages_in_progress",
            "Stages currently executing",
            registry=self.registry,
        )

    def __call__(self, event: PipelineEvent) -> None:
        stage = event.stage or "unknown"
        if event.type == EventType.PIPELINE_COMPLETE:
            self.pipeline_runs.labels(status="success" if event.data.get("success") else "failed").inc()
            self.pipeline_duration.observe(event.data.get("duration_ms", 0) / 1000)
        elif event.type == EventType.PIPELINE_ERROR:
            self.pipeline_runs.labels(status="error").inc()
        elif event.type == EventType.STAGE_START:
            self.stages_in_progress.inc()
        elif event.type == EventType.STAGE_COMPLETE:
            self.stages_in_progress.dec()
            if event.data.get("skipped"):
                status = "skipped"
            elif event.data.get("cached"):
                status = "cached"
            else:
                status = "success"
            self.stage_executions.labels(stage=stage, status=status).inc()
            self.stage_duration.labels(stage=stage).observe(event.data.get("duration_ms", 0) / 1000)
        elif event.type == EventType.STAGE_ERROR:
            self.stages_in_progress.dec()
            self.stage_executions.labels(stage=stage, status="failed").inc()
            self.stage_duration.labels(stage=stage).observe(event.data.get("duration_ms", 0) / 1000)
        elif event.type == EventType.STAGE_RETRY:
            self.stage_retries.labels(stage=stage).inc()
        elif event.type == EventType.CACHE_HIT:
            self.cache_hits.labels(stage=stage).inc()

    def render(self) -> bytes:
        """Exposition-format snapshot of this registry."""
        return generate_latest(self.registry)
