# tests/test_wiring.py
"""Integration tests: a fully assembled engine running real pipelines."""
import pytest

pytestmark = pytest.mark.integration

from conftest import ScriptedProvider
from keel_agents.capabilities import AgentCapabilityRegistry
from keel_engine.config import EngineConfig
from keel_engine.exceptions import RegistryError
from keel_engine.isolation import IsolationOptions
from keel_engine.loader import pipeline_from_dict
from keel_engine.providers import EchoProvider
from keel_engine.wiring import build_engine, build_resolver

DEPLOY_COMMAND = {
    "name": "deploy-infra",
    "prompts": {
        "cache_strategy": "stage",
        "retry_policy": {"max_attempts": 2},
        "stages": [
            {
                "stage": "plan",
                "prompt": "Plan {{ task }}",
                "inputs": {
                    "task": "input.task",
                    "affected_files": "input.files",
                    "dependencies": "input.dependencies",
                },
                "outputs": ["plan"],
                "cache": {"ttl_ms": 3600000},
            },
            {"stage": "review", "prompt": "Review the plan", "inputs": {"plan": "plan.plan"}, "outputs": ["verdict"]},
        ],
    },
}

RUN_INPUTS = {
    "task": "Set up AWS infrastructure with Terraform",
    "files": ["infra/main.tf", "infra/variables.tf"],
    "dependencies": ["terraform", "aws-cli"],
}


@pytest.mark.asyncio
class TestBuildEngine:

    async def test_end_to_end_with_dynamic_agents(self, tmp_path):
        provider = ScriptedProvider()
        engine = build_engine(EngineConfig(cache_dir=str(tmp_path / "cache")), provider=provider)
        pipeline = pipeline_from_dict(DEPLOY_COMMAND)

        first = await engine.pipeline_executor.run(pipeline, RUN_INPUTS)
        second = await engine.pipeline_executor.run(pipeline, RUN_INPUTS)
        await engine.aclose()

        assert first.success and second.success
        assert first.get_stage("plan").metadata["agent"] == "platform-engineer"
        assert second.get_stage("plan").cached
        assert provider.calls["plan"] == 1
        assert provider.calls["review"] == 2
        assert len(list((tmp_path / "cache").glob("*.json"))) == 1
        assert engine.analytics.get_metrics().agent_distribution["platform-engineer"] >= 1
        assert b'keel_cache_hits_total{stage="plan"} 1.0' in engine.metrics.render()

    async def test_dynamic_agents_disabled(self):
        engine = build_engine(EngineConfig(dynamic_agents_enabled=False), provider=ScriptedProvider())
        assert engine.resolver is None
        result = await engine.pipeline_executor.run(pipeline_from_dict(DEPLOY_COMMAND), RUN_INPUTS)
        await engine.aclose()
        assert result.get_stage("plan").metadata["agent"] is None

    async def test_echo_provider_from_config(self):
        engine = build_engine(EngineConfig(provider_kind="echo", dynamic_agents_enabled=False))
        assert isinstance(engine.provider, EchoProvider)
        result = await engine.isolation_executor.run_isolated(
            pipeline_from_dict(DEPLOY_COMMAND),
            IsolationOptions(stages=["review"], mock_inputs={"plan": {"plan": "apply 3 resources"}}),
        )
        await engine.aclose()
        assert result.success
        assert "apply 3 resources" in result.outputs["verdict"]


class TestBuildResolver:

    def test_prebuilt_registry_reused(self, registry):
        config = EngineConfig(confidence_threshold=0.7, hard_confidence_floor=0.2)
        built_registry, resolver = build_resolver(config, registry)
        assert built_registry is registry
        assert resolver.settings.confidence_threshold == 0.7
        assert resolver.settings.hard_floor == 0.2

    def test_bad_capabilities_path(self, tmp_path):
        config = EngineConfig(capabilities_path=str(tmp_path / "missing.yaml"))
        with pytest.raises(RegistryError):
            build_resolver(config)

    def test_uninitialized_registry_initialized(self):
        registry = AgentCapabilityRegistry()
        build_resolver(EngineConfig(), registry)
        assert registry.is_initialized
