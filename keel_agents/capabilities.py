# keel_agents/capabilities.py
"""
Agent capability registry.

Loads the set of known executor capabilities (domains, expertise
keywords, selection criteria, priority) from YAML, applies single-level
``inherits`` merging once at build time, and serves read-only lookups.

Format (capabilities.yaml):
    capabilities:
      - role: platform-engineer
        priority: 80
        domains: [infrastructure]
        expertise: [terraform, kubernetes]
        selection_criteria: [terraform-files, cloud-config]
      - role: software-engineer-typescript-frontend-react
        inherits: software-engineer-typescript-frontend
        ...
"""
import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Iterable, Optional

import yaml

from keel_agents.classifier import parse_domain
from keel_engine.exceptions import RegistryError

logger = logging.getLogger("keel.agents.capabilities")

DEFAULT_CAPABILITIES_FILE = Path(__file__).parent / "data" / "capabilities.yaml"


@dataclass(frozen=True)
class AgentCapability:
    """What a single agent role is good at."""
    role: str
    domains: tuple[str, ...]
    expertise: tuple[str, ...] = ()
    selection_criteria: tuple[str, ...] = ()
    priority: int = 50
    description: str = ""
    inherits: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AgentCapability":
        if not isinstance(data, dict):
            raise RegistryError(f"Capability entry must be a mapping, got {type(data).__name__}")
        role = str(data.get("role", "")).strip()
        if not role:
            raise RegistryError("Capability entry is missing 'role'")
        criteria = data.get("selection_criteria", data.get("selectionCriteria")) or []
        try:
            priority = int(data.get("priority", 50))
        except (TypeError, ValueError):
            raise RegistryError(f"Capability '{role}' has a non-integer priority")
        return cls(
            role=role,
            domains=tuple(str(d) for d in data.get("domains") or []),
            expertise=tuple(str(e).lower() for e in data.get("expertise") or []),
            selection_criteria=tuple(str(c) for c in criteria),
            priority=priority,
            description=str(data.get("description", "")),
            inherits=data.get("inherits") or None,
        )


def _merge_unique(*groups: Iterable[str]) -> tuple[str, ...]:
    seen: dict[str, None] = {}
    for group in groups:
        for item in group:
            seen.setdefault(item, None)
    return tuple(seen)


def merge_inherited(capabilities: list[AgentCapability]) -> list[AgentCapability]:
    """
    Apply single-level inheritance.

    A child gains its parent's domains, expertise and selection criteria
    as declared in the file. The parent's own ``inherits`` is not
    followed, so the merge never recurses.

    Raises:
        RegistryError: If a child names an unknown parent.
    """
    by_role = {c.role: c for c in capabilities}
    merged = []
    for cap in capabilities:
        if not cap.inherits:
            merged.append(cap)
            continue
        parent = by_role.get(cap.inherits)
        if parent is None:
            raise RegistryError(f"Capability '{cap.role}' inherits unknown role '{cap.inherits}'")
        if parent.inherits:
            logger.debug(
                "'%s' inherits '%s' which inherits '%s'; only one level is merged",
                cap.role, parent.role, parent.inherits,
            )
        merged.append(replace(
            cap,
            domains=_merge_unique(cap.domains, parent.domains),
            expertise=_merge_unique(cap.expertise, parent.expertise),
            selection_criteria=_merge_unique(cap.selection_criteria, parent.selection_criteria),
        ))
    return merged


def load_capabilities(path: str | Path) -> list[AgentCapability]:
    """
    Load raw capabilities from a YAML file.

    Raises:
        RegistryError: If the file is missing or malformed.
    """
    path = Path(path)
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise RegistryError(f"Capabilities file not found: {path}")
    except (OSError, yaml.YAMLError) as e:
        raise RegistryError(f"Failed to read capabilities from {path}: {e}") from e

    if isinstance(data, dict):
        data = data.get("capabilities")
    if not isinstance(data, list):
        raise RegistryError(f"{path}: expected a 'capabilities' list")
    return [AgentCapability.from_dict(entry) for entry in data]


class AgentCapabilityRegistry:
    """
    Read-only store of AgentCapability objects.

    Parameters:
        capabilities: Explicit capability list (skips file loading).
        path: YAML file to load when no explicit list is given.
    """

    def __init__(
        self,
        capabilities: Optional[list[AgentCapability]] = None,
        path: str | Path | None = None,
    ):
        self._source = list(capabilities) if capabilities is not None else None
        self._path = Path(path) if path else DEFAULT_CAPABILITIES_FILE
        self._by_role: dict[str, AgentCapability] = {}
        self._by_domain: dict[str, tuple[AgentCapability, ...]] = {}
        self._initialized = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def initialize(self) -> "AgentCapabilityRegistry":
        """
        Load, merge and validate the capability set.

        Raises:
            RegistryError: On load failure, duplicate roles or empty
                domain / selection-criteria lists.
        """
        raw = self._source if self._source is not None else load_capabilities(self._path)
        if not raw:
            raise RegistryError("Capability registry is empty")

        seen: set[str] = set()
        for cap in raw:
            if cap.role in seen:
                raise RegistryError(f"Duplicate capability role: {cap.role}")
            seen.add(cap.role)

        merged = merge_inherited(raw)
        for cap in merged:
            if not cap.domains:
                raise RegistryError(f"Capability '{cap.role}' has no domains")
            if not cap.selection_criteria:
                raise RegistryError(f"Capability '{cap.role}' has no selection criteria")
            unknown = [d for d in cap.domains if parse_domain(d) is None]
            if unknown:
                logger.warning("Capability '%s' declares unknown domains: %s", cap.role, unknown)

        by_domain: dict[str, list[AgentCapability]] = {}
        for cap in merged:
            for domain in cap.domains:
                by_domain.setdefault(domain, []).append(cap)

        self._by_role = {cap.role: cap for cap in merged}
        self._by_domain = {d: tuple(caps) for d, caps in by_domain.items()}
        self._initialized = True
        logger.info(
            "Capability registry ready: %d agents across %d domains",
            len(self._by_role), len(self._by_domain),
        )
        return self

    def _require(self) -> None:
        if not self._initialized:
            raise RegistryError("Capability registry used before initialize()")

    def get_all(self) -> list[AgentCapability]:
        self._require()
        return list(self._by_role.values())

    def get_by_role(self, role: str) -> Optional[AgentCapability]:
        self._require()
        return self._by_role.get(role)

    def has_role(self, role: str) -> bool:
        return self._initialized and role in self._by_role

    def find_by_domain(self, domain: str) -> list[AgentCapability]:
        self._require()
        return list(self._by_domain.get(str(getattr(domain, "value", domain)), ()))

    def stats(self) -> dict[str, Any]:
        return {
            "initialized": self._initialized,
            "agents": len(self._by_role),
            "domains": len(self._by_domain),
            "roles": sorted(self._by_role),
        }
