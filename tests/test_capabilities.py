# tests/test_capabilities.py
"""Tests for the agent capability registry and single-level inheritance."""
import pytest

pytestmark = pytest.mark.unit

from keel_agents.capabilities import (
    AgentCapability,
    AgentCapabilityRegistry,
    load_capabilities,
    merge_inherited,
)
from keel_engine.exceptions import ConfigurationError, RegistryError


def _cap(role, domains=("infrastructure",), criteria=("terraform-files",), **kwargs):
    return AgentCapability(role=role, domains=tuple(domains), selection_criteria=tuple(criteria), **kwargs)


# ============================================================================
# 1. Packaged capability set
# ============================================================================


class TestPackagedRegistry:
    """The YAML shipped with keel_agents."""

    def test_roles(self, registry):
        assert registry.is_initialized
        assert registry.stats()["roles"] == sorted([
            "lead",
            "platform-engineer",
            "secops-engineer",
            "software-engineer-typescript",
            "software-engineer-typescript-backend",
            "software-engineer-typescript-frontend",
            "software-engineer-typescript-frontend-react",
            "ui-ux-designer",
        ])

    def test_child_gains_parent_fields(self, registry):
        backend = registry.get_by_role("software-engineer-typescript-backend")
        assert "typescript-core" in backend.domains
        assert "typescript" in backend.expertise
        assert "typescript-files" in backend.selection_criteria

    def test_inheritance_is_single_level(self, registry):
        react = registry.get_by_role("software-engineer-typescript-frontend-react")
        assert "html" in react.expertise  # from the direct parent
        assert "typescript" not in react.expertise  # grandparent is not followed
        assert "typescript-frontend-general" in react.domains

    def test_find_by_domain(self, registry):
        roles = {c.role for c in registry.find_by_domain("infrastructure")}
        assert {"platform-engineer", "secops-engineer", "lead"} <= roles

    def test_unknown_role(self, registry):
        assert registry.get_by_role("astronaut") is None
        assert registry.has_role("astronaut") is False


# ============================================================================
# 2. Validation
# ============================================================================


class TestRegistryValidation:
    """initialize() rejects malformed capability sets."""

    def test_duplicate_roles(self):
        with pytest.raises(RegistryError, match="Duplicate"):
            AgentCapabilityRegistry(capabilities=[_cap("a"), _cap("a")]).initialize()

    def test_empty_domains(self):
        with pytest.raises(RegistryError, match="no domains"):
            AgentCapabilityRegistry(capabilities=[_cap("a", domains=())]).initialize()

    def test_empty_criteria(self):
        with pytest.raises(RegistryError, match="selection criteria"):
            AgentCapabilityRegistry(capabilities=[_cap("a", criteria=())]).initialize()

    def test_empty_registry(self):
        with pytest.raises(RegistryError):
            AgentCapabilityRegistry(capabilities=[]).initialize()

    def test_child_may_rely_on_parent_domains(self):
        registry = AgentCapabilityRegistry(capabilities=[
            _cap("parent"),
            AgentCapability(role="child", domains=(), inherits="parent"),
        ]).initialize()
        assert registry.get_by_role("child").domains == ("infrastructure",)

    def test_use_before_initialize(self):
        registry = AgentCapabilityRegistry(capabilities=[_cap("a")])
        assert registry.has_role("a") is False
        with pytest.raises(RegistryError, match="before initialize"):
            registry.get_all()

    def test_registry_error_is_configuration_error(self):
        assert issubclass(RegistryError, ConfigurationError)


class TestMergeInherited:

    def test_unknown_parent(self):
        with pytest.raises(RegistryError, match="unknown role"):
            merge_inherited([_cap("child", inherits="ghost")])

    def test_merge_preserves_order_and_dedupes(self):
        parent = _cap("p", domains=("a", "b"), criteria=("x",), expertise=("e1",))
        child = _cap("c", domains=("b", "c"), criteria=("y",), expertise=("e2", "e1"), inherits="p")
        merged = {c.role: c for c in merge_inherited([parent, child])}
        assert merged["c"].domains == ("b", "c", "a")
        assert merged["c"].expertise == ("e2", "e1")
        assert merged["c"].selection_criteria == ("y", "x")
        assert merged["p"] == parent


# ============================================================================
# 3. Loading
# ============================================================================


class TestLoadCapabilities:

    def test_missing_file(self, tmp_path):
        with pytest.raises(RegistryError, match="not found"):
            load_capabilities(tmp_path / "nope.yaml")

    def test_malformed_yaml(self, tmp_path):
        path = tmp_path / "caps.yaml"
        path.write_text("capabilities: [unclosed", encoding="utf-8")
        with pytest.raises(RegistryError):
            load_capabilities(path)

    def test_wrong_shape(self, tmp_path):
        path = tmp_path / "caps.yaml"
        path.write_text("capabilities: {role: x}\n", encoding="utf-8")
        with pytest.raises(RegistryError, match="capabilities"):
            load_capabilities(path)

    def test_camel_case_and_bare_list(self, tmp_path):
        path = tmp_path / "caps.yaml"
        path.write_text(
            "- role: builder\n"
            "  domains: [typescript-core]\n"
            "  selectionCriteria: [typescript-files]\n"
            "  expertise: [TypeScript]\n",
            encoding="utf-8",
        )
        (cap,) = load_capabilities(path)
        assert cap.selection_criteria == ("typescript-files",)
        assert cap.expertise == ("typescript",)
        assert cap.priority == 50

    def test_bad_priority(self):
        with pytest.raises(RegistryError, match="priority"):
            AgentCapability.from_dict({"role": "x", "domains": ["security"], "priority": "high"})

    def test_missing_role(self):
        with pytest.raises(RegistryError, match="role"):
            AgentCapability.from_dict({"domains": ["security"]})

    def test_registry_from_path(self, tmp_path):
        path = tmp_path / "caps.yaml"
        path.write_text(
            "capabilities:\n"
            "  - role: solo\n"
            "    domains: [security]\n"
            "    selection_criteria: [security-config]\n",
            encoding="utf-8",
        )
        registry = AgentCapabilityRegistry(path=path).initialize()
        assert registry.stats()["agents"] == 1
        assert registry.find_by_domain("security")[0].role == "solo"
