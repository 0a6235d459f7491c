# keel_agents/analytics.py
"""
Agent selection analytics.

Records every resolution made on behalf of a command so fallback rate,
manual-override rate and agent distribution can be reviewed later.
In-memory and bounded; the resolver itself never writes here (the stage
executor does), which keeps resolution side-effect free.
"""
import logging
import time
from collections import Counter, deque
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from keel_agents.context import TaskContext
from keel_agents.resolver import AgentSelection

logger = logging.getLogger("keel.agents.analytics")

MAX_EVENTS = 5000
HIGH_CONFIDENCE = 0.85
FALLBACK_RATE_WARNING = 0.15
OVERRIDE_RATE_WARNING = 0.2


@dataclass(frozen=True)
class SelectionEvent:
    """One recorded agent selection."""
    command_name: str
    selected_agent: str
    confidence: float
    fallback: bool
    reasons: tuple[str, ...]
    task_description: str
    timestamp: float
    run_id: str = ""
    manual_override: bool = False
    previous_agent: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SelectionMetrics:
    total_selections: int
    average_confidence: float
    fallback_rate: float
    manual_override_rate: float
    agent_distribution: dict[str, int]
    command_distribution: dict[str, int]
    reason_distribution: dict[str, int]
    time_range: tuple[float, float]


@dataclass(frozen=True)
class SuccessMetrics:
    accuracy: float
    completion_rate: float
    performance: float
    user_satisfaction: float
    insights: tuple[str, ...] = ()


class SelectionAnalytics:
    """Bounded in-memory log of agent selections."""

    def __init__(self, max_events: int = MAX_EVENTS, clock: Callable[[], float] = time.time):
        self._events: deque[SelectionEvent] = deque(maxlen=max_events)
        self._clock = clock

    def __len__(self) -> int:
        return len(self._events)

    def record(
        self,
        command_name: str,
        task: TaskContext,
        selection: AgentSelection,
        run_id: str = "",
        manual_override: bool = False,
        previous_agent: Optional[str] = None,
    ) -> SelectionEvent:
        event = SelectionEvent(
            command_name=command_name,
            selected_agent=selection.selected_agent,
            confidence=selection.confidence,
            fallback=selection.fallback,
            reasons=tuple(selection.reasons),
            task_description=task.text[:500],
            timestamp=self._clock(),
            run_id=run_id,
            manual_override=manual_override,
            previous_agent=previous_agent,
            metadata={
                "affected_files": len(task.affected_files),
                "dependencies": len(task.dependencies),
                "complexity": task.complexity,
            },
        )
        self._events.append(event)
        logger.debug(
            "Agent selection recorded: command=%s agent=%s confidence=%.2f fallback=%s",
            command_name, event.selected_agent, event.confidence, event.fallback,
        )
        return event

    def events(self, hours_back: Optional[float] = None) -> list[SelectionEvent]:
        if not hours_back:
            return list(self._events)
        cutoff = self._clock() - hours_back * 3600
        return [e for e in self._events if e.timestamp >= cutoff]

    def get_metrics(self, hours_back: float = 24) -> SelectionMetrics:
        now = self._clock()
        cutoff = now - hours_back * 3600
        recent = [e for e in self._events if e.timestamp >= cutoff]
        total = len(recent)

        reasons: Counter = Counter()
        for e in recent:
            reasons.update(e.reasons)

        return SelectionMetrics(
            total_selections=total,
            average_confidence=sum(e.confidence for e in recent) / total if total else 0.0,
            fallback_rate=sum(1 for e in recent if e.fallback) / total if total else 0.0,
            manual_override_rate=sum(1 for e in recent if e.manual_override) / total if total else 0.0,
            agent_distribution=dict(Counter(e.selected_agent for e in recent)),
            command_distribution=dict(Counter(e.command_name for e in recent)),
            reason_distribution=dict(reasons),
            time_range=(cutoff, now),
        )

    def get_success_metrics(self, hours_back: float = 168) -> SuccessMetrics:
        """Summary scores plus human-readable insights (default: 7 days)."""
        metrics = self.get_metrics(hours_back)
        total = metrics.total_selections
        high = sum(
            1 for e in self._events
            if e.timestamp >= metrics.time_range[0] and e.confidence >= HIGH_CONFIDENCE
        )
        accuracy = high / total if total else 0.0

        insights = []
        if metrics.fallback_rate > FALLBACK_RATE_WARNING:
            insights.append(
                f"High fallback rate ({metrics.fallback_rate:.1%}) indicates weak classification signals"
            )
        if metrics.manual_override_rate > OVERRIDE_RATE_WARNING:
            insights.append(f"High manual override rate ({metrics.manual_override_rate:.1%})")
        if total and accuracy < HIGH_CONFIDENCE:
            insights.append(f"Accuracy below target ({accuracy:.1%} < {HIGH_CONFIDENCE:.0%})")
        if metrics.agent_distribution:
            agent, count = max(metrics.agent_distribution.items(), key=lambda kv: (kv[1], kv[0]))
            insights.append(f"Most selected agent: {agent} ({count} times)")
        if metrics.command_distribution:
            command, count = max(metrics.command_distribution.items(), key=lambda kv: (kv[1], kv[0]))
            insights.append(f"Most used command: {command} ({count} times)")

        return SuccessMetrics(
            accuracy=accuracy,
            completion_rate=1 - metrics.fallback_rate,
            performance=metrics.average_confidence,
            user_satisfaction=1 - metrics.manual_override_rate,
            insights=tuple(insights),
        )

    def prune(self, older_than_hours: float = 168) -> int:
        """Drop events older than the cutoff; returns how many were removed."""
        cutoff = self._clock() - older_than_hours * 3600
        before = len(self._events)
        kept = [e for e in self._events if e.timestamp >= cutoff]
        self._events.clear()
        self._events.extend(kept)
        removed = before - len(kept)
        logger.info("Cleared %d old agent selection events (kept %d)", removed, len(kept))
        return removed
