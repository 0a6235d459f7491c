# keel_agents/matcher.py
"""
Capability matching — weighted multi-signal score per candidate agent.

score = confidence * (
    0.45 * domain       # primary / secondary / related domain present
  + 0.25 * criteria     # observed selection-criteria tags the agent covers
  + 0.20 * expertise    # expertise keywords seen in signals or description
  + 0.10 * priority     # capability priority / 100, a normalizing tie-break
)

Every contributing signal is named in ``reasons``.
"""
import logging
import re
from dataclasses import dataclass

from keel_agents.capabilities import AgentCapability
from keel_agents.classifier import TaskClassification, TaskDomain
from keel_agents.context import CodebaseContext

logger = logging.getLogger("keel.agents.matcher")

WEIGHTS = {
    "domain": 0.45,
    "criteria": 0.25,
    "expertise": 0.20,
    "priority": 0.10,
}

PRIMARY_DOMAIN_MATCH = 1.0
SECONDARY_DOMAIN_MATCH = 0.6
RELATED_DOMAIN_MATCH = 0.3

# Expertise hits needed for a full expertise score
EXPERTISE_FOR_FULL_SCORE = 3

RELATED_DOMAINS: dict[TaskDomain, tuple[TaskDomain, ...]] = {
    TaskDomain.INFRASTRUCTURE: (TaskDomain.BACKEND,),
    TaskDomain.SECURITY: (TaskDomain.BACKEND, TaskDomain.CORE),
    TaskDomain.BACKEND: (TaskDomain.CORE, TaskDomain.INFRASTRUCTURE),
    TaskDomain.CORE: (TaskDomain.BACKEND, TaskDomain.FRONTEND, TaskDomain.FRONTEND_REACT),
    TaskDomain.FRONTEND: (TaskDomain.CORE,),
    TaskDomain.FRONTEND_REACT: (TaskDomain.FRONTEND, TaskDomain.CORE),
    TaskDomain.UI_UX: (TaskDomain.FRONTEND,),
}


@dataclass(frozen=True)
class AgentScore:
    """Intermediate score for one candidate."""
    capability: AgentCapability
    score: float
    reasons: tuple[str, ...] = ()
    components: tuple[tuple[str, float], ...] = ()

    @property
    def role(self) -> str:
        return self.capability.role

    def to_dict(self) -> dict:
        return {
            "role": self.role,
            "score": self.score,
            "reasons": list(self.reasons),
            "components": dict(self.components),
        }


def compute_domain_match(capability: AgentCapability, classification: TaskClassification) -> tuple[float, str]:
    """
    Args:
        capability: Candidate capability.
        classification: Classifier output.

    Returns:
        (0.0-1.0 match, reason or empty string)
    """
    domains = set(capability.domains)
    primary = classification.primary_domain
    if primary.value in domains:
        return PRIMARY_DOMAIN_MATCH, f"primary domain match: {primary.value}"
    for secondary in classification.secondary_domains:
        if secondary.value in domains:
            return SECONDARY_DOMAIN_MATCH, f"secondary domain match: {secondary.value}"
    for related in RELATED_DOMAINS.get(primary, ()):
        if related.value in domains:
            return RELATED_DOMAIN_MATCH, f"related domain: {related.value}"
    return 0.0, ""


def compute_criteria_overlap(capability: AgentCapability, context: CodebaseContext) -> tuple[float, list[str]]:
    """Fraction of observed criteria tags the capability declares."""
    observed = set(context.selection_criteria)
    if not observed:
        return 0.0, []
    matched = sorted(observed & set(capability.selection_criteria))
    return len(matched) / len(observed), matched


def compute_expertise_match(
    capability: AgentCapability,
    context: CodebaseContext,
    text: str,
) -> tuple[float, list[str]]:
    """Expertise keywords found in codebase signals or the task text."""
    if not capability.expertise:
        return 0.0, []
    signals = {s.lower() for s in context.signals}
    matched = []
    for keyword in capability.expertise:
        if keyword in signals:
            matched.append(keyword)
        elif text and re.search(r"(?<![\w-])" + re.escape(keyword) + r"(?![\w-])", text, re.IGNORECASE):
            matched.append(keyword)
    denominator = min(len(capability.expertise), EXPERTISE_FOR_FULL_SCORE)
    return min(len(matched) / denominator, 1.0), matched


class AgentCapabilityMatcher:
    """Scores capabilities against classifier and analyzer output."""

    def __init__(self, weights: dict[str, float] | None = None):
        self.weights = dict(WEIGHTS if weights is None else weights)

    def score(
        self,
        capability: AgentCapability,
        classification: TaskClassification,
        context: CodebaseContext,
        text: str = "",
    ) -> AgentScore:
        reasons: list[str] = []

        domain, domain_reason = compute_domain_match(capability, classification)
        if domain_reason:
            reasons.append(domain_reason)

        criteria, matched_criteria = compute_criteria_overlap(capability, context)
        if matched_criteria:
            reasons.append(f"selection criteria: {', '.join(matched_criteria)}")

        expertise, matched_expertise = compute_expertise_match(capability, context, text)
        if matched_expertise:
            reasons.append(f"expertise: {', '.join(matched_expertise)}")

        priority = max(0, min(capability.priority, 100)) / 100

        raw = (
            self.weights["domain"] * domain
            + self.weights["criteria"] * criteria
            + self.weights["expertise"] * expertise
            + self.weights["priority"] * priority
        )
        final = round(min(raw * classification.confidence, 1.0), 4)
        reasons.append(
            f"classification confidence {classification.confidence:.2f} x raw {raw:.2f}"
        )

        logger.debug(
            "Score %s: domain=%.2f criteria=%.2f expertise=%.2f priority=%.2f -> %.4f",
            capability.role, domain, criteria, expertise, priority, final,
        )
        return AgentScore(
            capability=capability,
            score=final,
            reasons=tuple(reasons),
            components=(
                ("domain", round(domain, 4)),
                ("criteria", round(criteria, 4)),
                ("expertise", round(expertise, 4)),
                ("priority", round(priority, 4)),
            ),
        )

    def score_all(
        self,
        capabilities: list[AgentCapability],
        classification: TaskClassification,
        context: CodebaseContext,
        text: str = "",
    ) -> list[AgentScore]:
        """Score and rank: score desc, priority desc, role asc."""
        scores = [self.score(c, classification, context, text) for c in capabilities]
        return sorted(scores, key=lambda s: (-s.score, -s.capability.priority, s.role))
