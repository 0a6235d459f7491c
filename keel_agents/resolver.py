# keel_agents/resolver.py
"""
Dynamic agent resolution.

classify -> analyze -> score every registered capability -> rank
(score desc, priority desc, role asc) -> AgentSelection.

Fallback policy:
- top score >= confidence_threshold: confident pick, no fallback
- hard_floor <= top score < confidence_threshold: top candidate is kept,
  ``fallback`` is set and a heuristic ``fallback_agent`` is suggested
- top score < hard_floor, no candidates, or any internal failure: the
  heuristic fallback agent is selected outright

``resolve_agent`` never raises; agent selection is an optimization, so
every failure degrades to a fallback selection with reasons attached.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Optional

from keel_agents.capabilities import AgentCapabilityRegistry
from keel_agents.classifier import TaskClassification, TaskClassifier
from keel_agents.context import CodebaseContext, ContextAnalyzer, TaskContext
from keel_agents.matcher import AgentCapabilityMatcher, AgentScore

logger = logging.getLogger("keel.agents.resolver")

ALTERNATIVE_COUNT = 2
FAILURE_CONFIDENCE = 0.1

DEFAULT_FALLBACK_AGENT = "software-engineer-typescript"
_FALLBACK_RULES: tuple[tuple[re.Pattern, str], ...] = (
    (
        re.compile(r"(\.tf$|\.tfvars$|dockerfile|docker-compose|(^|/)(k8s|helm|charts|infra|terraform)/)", re.IGNORECASE),
        "platform-engineer",
    ),
    (re.compile(r"\.(tsx|jsx)$", re.IGNORECASE), "software-engineer-typescript-frontend-react"),
    (re.compile(r"\.(html|css|scss|vue|svelte)$", re.IGNORECASE), "software-engineer-typescript-frontend"),
    (
        re.compile(r"((^|/)(api|routes|controllers|services|migrations)/|\.sql$)", re.IGNORECASE),
        "software-engineer-typescript-backend",
    ),
)


@dataclass(frozen=True)
class ResolverSettings:
    """Tunable fallback thresholds."""
    confidence_threshold: float = 0.6
    hard_floor: float = 0.25
    default_agent: str = DEFAULT_FALLBACK_AGENT


@dataclass(frozen=True)
class AgentAlternative:
    agent: str
    score: float


@dataclass(frozen=True)
class AgentSelection:
    """Terminal artifact of a resolution; never mutated."""
    selected_agent: str
    confidence: float
    reasons: tuple[str, ...]
    alternatives: tuple[AgentAlternative, ...] = ()
    fallback: bool = False
    fallback_agent: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "selected_agent": self.selected_agent,
            "confidence": self.confidence,
            "reasons": list(self.reasons),
            "alternatives": [{"agent": a.agent, "score": a.score} for a in self.alternatives],
            "fallback": self.fallback,
            "fallback_agent": self.fallback_agent,
        }


@dataclass(frozen=True)
class DetailedAnalysis:
    """Intermediate artifacts of one resolution, for diagnostics."""
    classification: Optional[TaskClassification]
    codebase_context: Optional[CodebaseContext]
    scores: tuple[AgentScore, ...]
    selection: AgentSelection


@dataclass(frozen=True)
class ServiceHealth:
    valid: bool
    issues: tuple[str, ...] = ()
    stats: dict[str, Any] = field(default_factory=dict)


def heuristic_fallback_agent(task: TaskContext, default: str = DEFAULT_FALLBACK_AGENT) -> str:
    """Pick a generalist by file signals alone."""
    for regex, role in _FALLBACK_RULES:
        if any(regex.search(f.replace("\\", "/")) for f in task.affected_files):
            return role
    return default


class DynamicAgentResolver:
    """
    Orchestrates classifier, analyzer and matcher over a registry.

    Holds no per-call state, so one instance can serve concurrent stages.
    """

    def __init__(
        self,
        registry: AgentCapabilityRegistry,
        settings: Optional[ResolverSettings] = None,
        classifier: Optional[TaskClassifier] = None,
        analyzer: Optional[ContextAnalyzer] = None,
        matcher: Optional[AgentCapabilityMatcher] = None,
    ):
        self.registry = registry
        self.settings = settings or ResolverSettings()
        self.classifier = classifier or TaskClassifier()
        self.analyzer = analyzer or ContextAnalyzer()
        self.matcher = matcher or AgentCapabilityMatcher()

    # ── public API ──────────────────────────────────────────────────────

    def resolve_agent(self, task: TaskContext | dict | None) -> AgentSelection:
        return self.get_detailed_analysis(task).selection

    def get_detailed_analysis(self, task: TaskContext | dict | None) -> DetailedAnalysis:
        classification = None
        context = None
        scores: tuple[AgentScore, ...] = ()
        try:
            task = self._coerce(task)
            classification = self.classifier.classify(task)
            context = self.analyzer.analyze(task)
            text = " ".join([task.text, *task.dependencies])
            scores = tuple(self.matcher.score_all(self.registry.get_all(), classification, context, text))
            selection = self._select(task, classification, scores)
        except Exception as e:
            logger.warning("Agent resolution failed, using fallback: %s", e)
            safe_task = task if isinstance(task, TaskContext) else TaskContext()
            agent = heuristic_fallback_agent(safe_task, self.settings.default_agent)
            selection = AgentSelection(
                selected_agent=agent,
                confidence=FAILURE_CONFIDENCE,
                reasons=(f"Resolution failed ({type(e).__name__}: {e}); using fallback {agent}",),
                fallback=True,
                fallback_agent=agent,
            )
        return DetailedAnalysis(
            classification=classification,
            codebase_context=context,
            scores=scores,
            selection=selection,
        )

    def validate_services(self) -> ServiceHealth:
        """Health check over registry size and domain coverage."""
        issues = []
        stats = self.registry.stats()
        if not stats["initialized"]:
            issues.append("capability registry is not initialized")
        else:
            if stats["agents"] == 0:
                issues.append("capability registry has no agents")
            if stats["domains"] == 0:
                issues.append("capability registry covers no domains")
            if not self.registry.has_role(self.settings.default_agent):
                issues.append(f"default fallback agent '{self.settings.default_agent}' is not registered")
        return ServiceHealth(
            valid=not issues,
            issues=tuple(issues),
            stats={"registry_agents": stats["agents"], "registry_domains": stats["domains"]},
        )

    # ── internals ───────────────────────────────────────────────────────

    @staticmethod
    def _coerce(task: TaskContext | dict | None) -> TaskContext:
        if task is None:
            return TaskContext()
        if isinstance(task, dict):
            return TaskContext.from_dict(task)
        return task

    def _select(
        self,
        task: TaskContext,
        classification: TaskClassification,
        scores: tuple[AgentScore, ...],
    ) -> AgentSelection:
        heuristic = heuristic_fallback_agent(task, self.settings.default_agent)
        if not scores:
            return AgentSelection(
                selected_agent=heuristic,
                confidence=0.0,
                reasons=("No registered capabilities to score", f"Fallback to {heuristic}"),
                fallback=True,
                fallback_agent=heuristic,
            )

        top = scores[0]
        alternatives = tuple(
            AgentAlternative(agent=s.role, score=s.score)
            for s in scores[1:1 + ALTERNATIVE_COUNT]
        )
        reasons = [*top.reasons, *classification.reasons[:1]]
        confidence = top.score

        if confidence >= self.settings.confidence_threshold:
            selected, fallback, fallback_agent = top.role, False, None
            reasons.insert(0, f"Selected {top.role} with confidence {confidence:.2f}")
        elif confidence >= self.settings.hard_floor:
            selected, fallback, fallback_agent = top.role, True, heuristic
            reasons.insert(0, (
                f"Low confidence {confidence:.2f} < {self.settings.confidence_threshold:.2f}; "
                f"keeping {top.role}, suggesting {heuristic}"
            ))
        else:
            selected, fallback, fallback_agent = heuristic, True, heuristic
            reasons.insert(0, (
                f"Confidence {confidence:.2f} below hard floor {self.settings.hard_floor:.2f}; "
                f"falling back to {heuristic}"
            ))

        logger.debug(
            "Resolved %s (confidence=%.4f, fallback=%s) | runners-up: %s",
            selected, confidence, fallback, [(a.agent, a.score) for a in alternatives],
        )
        return AgentSelection(
            selected_agent=selected,
            confidence=confidence,
            reasons=tuple(reasons),
            alternatives=alternatives,
            fallback=fallback,
            fallback_agent=fallback_agent,
        )
