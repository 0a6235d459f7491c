"""
keel agents — dynamic agent resolution.

Scores registered agent capabilities against a task description and the
codebase signals around it, and picks the best executor for a stage with
a deterministic fallback when no signal is strong enough.
"""
from keel_agents.capabilities import AgentCapability, AgentCapabilityRegistry
from keel_agents.classifier import Complexity, TaskClassification, TaskClassifier, TaskDomain
from keel_agents.context import CodebaseContext, ContextAnalyzer, TaskContext
from keel_agents.matcher import AgentCapabilityMatcher, AgentScore
from keel_agents.resolver import (
    AgentAlternative,
    AgentSelection,
    DetailedAnalysis,
    DynamicAgentResolver,
    ResolverSettings,
    ServiceHealth,
)
from keel_agents.analytics import SelectionAnalytics

__all__ = [
    "AgentCapability",
    "AgentCapabilityRegistry",
    "TaskClassifier",
    "TaskClassification",
    "TaskDomain",
    "Complexity",
    "TaskContext",
    "CodebaseContext",
    "ContextAnalyzer",
    "AgentCapabilityMatcher",
    "AgentScore",
    "DynamicAgentResolver",
    "ResolverSettings",
    "AgentSelection",
    "AgentAlternative",
    "DetailedAnalysis",
    "ServiceHealth",
    "SelectionAnalytics",
]
