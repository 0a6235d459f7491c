# tests/test_agent_resolver.py
"""
Tests for dynamic agent resolution.

Covers the worked examples (Terraform task, empty-signal task),
determinism, degenerate inputs, confidence monotonicity, the three
fallback bands, alternatives and service validation.
"""
from unittest.mock import MagicMock

import pytest

pytestmark = pytest.mark.unit

from keel_agents.capabilities import AgentCapability, AgentCapabilityRegistry
from keel_agents.context import TaskContext
from keel_agents.resolver import (
    DynamicAgentResolver,
    ResolverSettings,
    heuristic_fallback_agent,
)


TERRAFORM_TASK = TaskContext(
    description="Set up AWS infrastructure with Terraform",
    affected_files=["infra/main.tf", "infra/variables.tf"],
    dependencies=["terraform", "aws-cli"],
)


# ============================================================================
# 1. Worked examples
# ============================================================================


class TestWorkedExamples:
    """The two reference tasks resolve as documented."""

    def test_terraform_task_selects_platform_engineer(self, resolver):
        selection = resolver.resolve_agent(TERRAFORM_TASK)
        assert selection.selected_agent == "platform-engineer"
        assert selection.confidence > 0.6
        assert selection.fallback is False
        assert selection.fallback_agent is None

    def test_vague_task_falls_back(self, resolver):
        task = TaskContext(description="Do something", affected_files=["file.txt"], dependencies=[])
        selection = resolver.resolve_agent(task)
        assert selection.confidence < 0.3
        assert selection.fallback is True
        assert selection.selected_agent
        assert selection.reasons

    def test_dict_input_accepted(self, resolver):
        selection = resolver.resolve_agent({
            "description": "Set up AWS infrastructure with Terraform",
            "affectedFiles": ["infra/main.tf", "infra/variables.tf"],
            "dependencies": ["terraform", "aws-cli"],
        })
        assert selection.selected_agent == "platform-engineer"


# ============================================================================
# 2. Determinism and degenerate inputs
# ============================================================================


class TestDeterminism:
    """Identical inputs give identical selections."""

    def test_repeated_resolution_is_identical(self, resolver):
        first = resolver.resolve_agent(TERRAFORM_TASK)
        for _ in range(5):
            again = resolver.resolve_agent(TaskContext(
                description=TERRAFORM_TASK.description,
                affected_files=list(TERRAFORM_TASK.affected_files),
                dependencies=list(TERRAFORM_TASK.dependencies),
            ))
            assert again.selected_agent == first.selected_agent
            assert again.confidence == first.confidence
            assert again.alternatives == first.alternatives

    def test_separate_resolvers_agree(self, registry):
        a = DynamicAgentResolver(registry).resolve_agent(TERRAFORM_TASK)
        b = DynamicAgentResolver(registry).resolve_agent(TERRAFORM_TASK)
        assert a == b


class TestDegenerateInputs:
    """resolve_agent never raises and always explains itself."""

    @pytest.mark.parametrize("task", [
        None,
        {},
        TaskContext(),
        TaskContext(description=None, affected_files=None, dependencies=None),
        TaskContext(description="x" * 10_000),
        TaskContext(description="refactor", affected_files=[f"src/file_{i}.ts" for i in range(1000)]),
        TaskContext(description="Übersetzung der Benutzeroberfläche 日本語 🚀", affected_files=["ü/ñ.tsx"]),
    ])
    def test_defined_selection(self, resolver, task):
        selection = resolver.resolve_agent(task)
        assert selection.selected_agent
        assert selection.fallback is True
        assert selection.fallback_agent
        assert 0.0 <= selection.confidence <= 1.0
        assert len(selection.reasons) > 0

    def test_internal_failure_degrades_to_fallback(self, registry):
        classifier = MagicMock()
        classifier.classify.side_effect = RuntimeError("classifier exploded")
        resolver = DynamicAgentResolver(registry, classifier=classifier)
        selection = resolver.resolve_agent(TaskContext(description="deploy", affected_files=["infra/main.tf"]))
        assert selection.fallback is True
        assert selection.selected_agent == "platform-engineer"
        assert any("classifier exploded" in r for r in selection.reasons)

    def test_uninitialized_registry_degrades_to_fallback(self):
        resolver = DynamicAgentResolver(AgentCapabilityRegistry(capabilities=[]))
        selection = resolver.resolve_agent(TERRAFORM_TASK)
        assert selection.fallback is True
        assert selection.selected_agent


# ============================================================================
# 3. Confidence bands and ranking
# ============================================================================


class TestConfidenceBands:
    """Strong signals beat empty ones; thresholds drive fallback."""

    def test_monotonic_with_signal_strength(self, resolver):
        strong = resolver.resolve_agent(TERRAFORM_TASK)
        empty = resolver.resolve_agent(TaskContext())
        assert strong.confidence > empty.confidence
        assert empty.fallback is True

    def test_middle_band_keeps_top_candidate(self, registry):
        # Threshold above the Terraform score forces the middle band
        settings = ResolverSettings(confidence_threshold=0.99, hard_floor=0.1)
        selection = DynamicAgentResolver(registry, settings).resolve_agent(TERRAFORM_TASK)
        assert selection.selected_agent == "platform-engineer"
        assert selection.fallback is True
        assert selection.fallback_agent == "platform-engineer"

    def test_below_floor_uses_heuristic(self, registry):
        settings = ResolverSettings(confidence_threshold=1.0, hard_floor=1.0)
        task = TaskContext(description="Build the settings page", affected_files=["web/Settings.tsx"])
        selection = DynamicAgentResolver(registry, settings).resolve_agent(task)
        assert selection.fallback is True
        assert selection.selected_agent == "software-engineer-typescript-frontend-react"

    def test_alternatives_are_next_two(self, resolver):
        analysis = resolver.get_detailed_analysis(TERRAFORM_TASK)
        selection = analysis.selection
        assert len(selection.alternatives) == 2
        assert [a.agent for a in selection.alternatives] == [s.role for s in analysis.scores[1:3]]
        assert all(a.score <= selection.confidence for a in selection.alternatives)

    def test_tie_broken_by_priority_then_role(self):
        caps = [
            AgentCapability(role="b-agent", domains=("infrastructure",), selection_criteria=("x",), priority=50),
            AgentCapability(role="a-agent", domains=("infrastructure",), selection_criteria=("x",), priority=50),
            AgentCapability(role="c-agent", domains=("infrastructure",), selection_criteria=("x",), priority=90),
        ]
        registry = AgentCapabilityRegistry(capabilities=caps).initialize()
        settings = ResolverSettings(default_agent="a-agent")
        analysis = DynamicAgentResolver(registry, settings).get_detailed_analysis(
            TaskContext(description="terraform kubernetes docker")
        )
        assert [s.role for s in analysis.scores] == ["c-agent", "a-agent", "b-agent"]


class TestDetailedAnalysis:
    """get_detailed_analysis exposes intermediate artifacts."""

    def test_artifacts_present(self, resolver):
        analysis = resolver.get_detailed_analysis(TERRAFORM_TASK)
        assert analysis.classification.primary_domain.value == "infrastructure"
        assert "terraform-files" in analysis.codebase_context.selection_criteria
        assert analysis.scores[0].role == analysis.selection.selected_agent

    def test_selection_to_dict(self, resolver):
        data = resolver.resolve_agent(TERRAFORM_TASK).to_dict()
        assert data["selected_agent"] == "platform-engineer"
        assert isinstance(data["alternatives"], list)
        assert data["fallback"] is False


# ============================================================================
# 4. Heuristic fallback and health
# ============================================================================


class TestHeuristicFallback:

    @pytest.mark.parametrize("files,expected", [
        (["deploy/Dockerfile"], "platform-engineer"),
        (["k8s/app.yaml"], "platform-engineer"),
        (["src/App.tsx"], "software-engineer-typescript-frontend-react"),
        (["styles/site.css"], "software-engineer-typescript-frontend"),
        (["src/api/users.ts"], "software-engineer-typescript-backend"),
        (["README.md"], "software-engineer-typescript"),
        ([], "software-engineer-typescript"),
    ])
    def test_file_signals(self, files, expected):
        assert heuristic_fallback_agent(TaskContext(affected_files=files)) == expected


class TestValidateServices:

    def test_healthy_registry(self, resolver):
        health = resolver.validate_services()
        assert health.valid is True
        assert health.issues == ()
        assert health.stats["registry_agents"] == 8

    def test_uninitialized_registry_reported(self):
        health = DynamicAgentResolver(AgentCapabilityRegistry(capabilities=[])).validate_services()
        assert health.valid is False
        assert any("not initialized" in issue for issue in health.issues)

    def test_missing_default_agent_reported(self, registry):
        resolver = DynamicAgentResolver(registry, ResolverSettings(default_agent="nobody"))
        health = resolver.validate_services()
        assert health.valid is False
        assert any("nobody" in issue for issue in health.issues)
