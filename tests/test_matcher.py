# tests/test_matcher.py
"""Tests for the weighted capability matcher."""
import pytest

pytestmark = pytest.mark.unit

from keel_agents.capabilities import AgentCapability
from keel_agents.classifier import Complexity, TaskClassification, TaskDomain
from keel_agents.context import CodebaseContext
from keel_agents.matcher import (
    WEIGHTS,
    AgentCapabilityMatcher,
    compute_criteria_overlap,
    compute_domain_match,
    compute_expertise_match,
)

PLATFORM = AgentCapability(
    role="platform-engineer",
    domains=("infrastructure",),
    expertise=("terraform", "kubernetes", "docker"),
    selection_criteria=("terraform-files", "docker-files"),
    priority=80,
)

INFRA_CONTEXT = CodebaseContext(
    selection_criteria=("terraform-files", "kubernetes-manifests"),
    technology_stack=("terraform",),
)


def _classification(primary, secondary=(), confidence=1.0):
    return TaskClassification(
        primary_domain=primary,
        complexity=Complexity.MEDIUM,
        confidence=confidence,
        secondary_domains=tuple(secondary),
    )


# ============================================================================
# 1. Signal components
# ============================================================================


class TestComponents:

    @pytest.mark.parametrize("primary,secondary,expected", [
        (TaskDomain.INFRASTRUCTURE, (), 1.0),
        (TaskDomain.CORE, (TaskDomain.INFRASTRUCTURE,), 0.6),
        (TaskDomain.BACKEND, (), 0.3),
        (TaskDomain.UI_UX, (), 0.0),
    ])
    def test_domain_match(self, primary, secondary, expected):
        value, reason = compute_domain_match(PLATFORM, _classification(primary, secondary))
        assert value == expected
        assert bool(reason) == (expected > 0)

    def test_criteria_overlap(self):
        value, matched = compute_criteria_overlap(PLATFORM, INFRA_CONTEXT)
        assert value == 0.5
        assert matched == ["terraform-files"]

    def test_criteria_without_observations(self):
        assert compute_criteria_overlap(PLATFORM, CodebaseContext()) == (0.0, [])

    def test_expertise_from_signals_and_text(self):
        value, matched = compute_expertise_match(PLATFORM, INFRA_CONTEXT, "Roll the app out to Kubernetes")
        assert matched == ["terraform", "kubernetes"]
        assert value == pytest.approx(2 / 3)

    def test_expertise_word_boundaries(self):
        _, matched = compute_expertise_match(PLATFORM, CodebaseContext(), "update docker-compose.yml")
        assert matched == []


# ============================================================================
# 2. Weighted score
# ============================================================================


class TestScore:

    def test_weights_sum_to_one(self):
        assert sum(WEIGHTS.values()) == pytest.approx(1.0)

    def test_weighted_sum_and_reasons(self):
        result = AgentCapabilityMatcher().score(
            PLATFORM, _classification(TaskDomain.INFRASTRUCTURE), INFRA_CONTEXT, "deploy to kubernetes"
        )
        # 0.45*1 + 0.25*0.5 + 0.20*(2/3) + 0.10*0.8
        assert result.score == pytest.approx(0.7883, abs=1e-4)
        assert result.role == "platform-engineer"
        assert result.reasons[:3] == (
            "primary domain match: infrastructure",
            "selection criteria: terraform-files",
            "expertise: terraform, kubernetes",
        )
        assert dict(result.components) == {"domain": 1.0, "criteria": 0.5, "expertise": 0.6667, "priority": 0.8}

    def test_scaled_by_confidence(self):
        matcher = AgentCapabilityMatcher()
        full = matcher.score(PLATFORM, _classification(TaskDomain.INFRASTRUCTURE), INFRA_CONTEXT)
        half = matcher.score(PLATFORM, _classification(TaskDomain.INFRASTRUCTURE, confidence=0.5), INFRA_CONTEXT)
        assert half.score == pytest.approx(full.score / 2, abs=1e-4)

    def test_reasons_never_empty(self):
        result = AgentCapabilityMatcher().score(PLATFORM, _classification(TaskDomain.UI_UX), CodebaseContext())
        assert result.reasons
        assert result.score == pytest.approx(0.08)

    def test_custom_weights(self):
        matcher = AgentCapabilityMatcher({"domain": 1.0, "criteria": 0.0, "expertise": 0.0, "priority": 0.0})
        result = matcher.score(PLATFORM, _classification(TaskDomain.BACKEND), INFRA_CONTEXT)
        assert result.score == pytest.approx(0.3)

    def test_to_dict(self):
        data = AgentCapabilityMatcher().score(
            PLATFORM, _classification(TaskDomain.INFRASTRUCTURE), INFRA_CONTEXT
        ).to_dict()
        assert data["role"] == "platform-engineer"
        assert set(data["components"]) == set(WEIGHTS)


class TestScoreAll:

    def test_ranked_by_score(self):
        frontend = AgentCapability(role="frontend-engineer", domains=("typescript-frontend-general",), priority=90)
        ranked = AgentCapabilityMatcher().score_all(
            [frontend, PLATFORM], _classification(TaskDomain.INFRASTRUCTURE), INFRA_CONTEXT
        )
        assert [s.role for s in ranked] == ["platform-engineer", "frontend-engineer"]

    def test_ties_broken_by_role(self):
        capabilities = [
            AgentCapability(role=role, domains=("security",), priority=50)
            for role in ("zeta", "alpha", "mid")
        ]
        ranked = AgentCapabilityMatcher().score_all(
            capabilities, _classification(TaskDomain.UI_UX), CodebaseContext()
        )
        assert [s.role for s in ranked] == ["alpha", "mid", "zeta"]
        assert len({s.score for s in ranked}) == 1
