# keel_agents/context.py
"""
Task context and codebase signal extraction.

TaskContext is the per-resolution input to the resolver. ContextAnalyzer
turns its file paths and dependency names into a CodebaseContext
(file-type histogram, architectural markers, import patterns,
infrastructure components, technology stack, selection-criteria tags).
The analyzer only looks at the strings it is given and never reads files.
"""
import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Any, Optional

logger = logging.getLogger("keel.agents.context")


@dataclass
class TaskContext:
    """Description of the work a stage is about to do."""
    description: Optional[str] = ""
    affected_files: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    complexity: Optional[str] = None
    primary_domain: Optional[str] = None
    secondary_domains: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        # Degenerate callers hand over None for any of the collections.
        self.affected_files = [str(f) for f in (self.affected_files or []) if f]
        self.dependencies = [str(d) for d in (self.dependencies or []) if d]
        self.secondary_domains = list(self.secondary_domains or [])
        self.metadata = dict(self.metadata or {})

    @property
    def text(self) -> str:
        return self.description if isinstance(self.description, str) else ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskContext":
        """Build from snake_case or camelCase keys."""
        return cls(
            description=data.get("description", ""),
            affected_files=data.get("affected_files", data.get("affectedFiles")),
            dependencies=data.get("dependencies"),
            complexity=data.get("complexity"),
            primary_domain=data.get("primary_domain", data.get("primaryDomain")),
            secondary_domains=data.get("secondary_domains", data.get("secondaryDomains")),
            metadata=data.get("metadata"),
        )


@dataclass(frozen=True)
class CodebaseContext:
    """Signals derived from a TaskContext's paths and dependencies."""
    affected_file_types: dict[str, int] = field(default_factory=dict)
    architectural_patterns: tuple[str, ...] = ()
    import_patterns: tuple[str, ...] = ()
    infrastructure_components: tuple[str, ...] = ()
    technology_stack: tuple[str, ...] = ()
    selection_criteria: tuple[str, ...] = ()

    @property
    def signals(self) -> set[str]:
        """Every observed tag, used for expertise matching."""
        return (
            set(self.architectural_patterns)
            | set(self.import_patterns)
            | set(self.infrastructure_components)
            | set(self.technology_stack)
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "affected_file_types": dict(self.affected_file_types),
            "architectural_patterns": list(self.architectural_patterns),
            "import_patterns": list(self.import_patterns),
            "infrastructure_components": list(self.infrastructure_components),
            "technology_stack": list(self.technology_stack),
            "selection_criteria": list(self.selection_criteria),
        }


# ── Pattern tables ──────────────────────────────────────────────────────

# Compound suffixes checked before the plain extension
_COMPOUND_SUFFIXES = (".d.ts", ".test.ts", ".spec.ts", ".test.tsx", ".tfvars.json")

_SPECIAL_FILENAMES = {
    "dockerfile": "dockerfile",
    "docker-compose.yml": "docker-compose",
    "docker-compose.yaml": "docker-compose",
    "makefile": "makefile",
    "jenkinsfile": "jenkinsfile",
    "chart.yaml": "helm-chart",
}

_LANGUAGE_BY_TYPE = {
    ".ts": "typescript",
    ".tsx": "typescript",
    ".d.ts": "typescript",
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".py": "python",
    ".go": "go",
    ".rs": "rust",
    ".java": "java",
    ".tf": "hcl",
    ".tfvars": "hcl",
    ".sql": "sql",
    ".css": "css",
    ".scss": "css",
    ".html": "html",
    ".sh": "shell",
}

# Path markers (directory names) -> architectural pattern
_ARCHITECTURE_MARKERS: dict[str, tuple[str, ...]] = {
    "clean-architecture": ("domain", "application", "usecases", "use-cases"),
    "cqrs": ("commands", "queries"),
    "ddd": ("aggregates", "entities", "value-objects", "valueobjects"),
    "event-driven": ("events", "handlers", "subscribers", "listeners"),
    "hexagonal": ("ports", "adapters"),
    "microservices": ("services", "gateway"),
    "mvc": ("controllers", "views", "models"),
}

# Minimum number of distinct markers before a pattern is reported
_ARCHITECTURE_MIN_MARKERS = {
    "clean-architecture": 2,
    "cqrs": 2,
    "hexagonal": 2,
    "mvc": 2,
}

# Dependency name -> framework / technology
_FRAMEWORKS = {
    "react": "react",
    "react-dom": "react",
    "next": "nextjs",
    "vue": "vue",
    "svelte": "svelte",
    "@angular/core": "angular",
    "express": "express",
    "fastify": "fastify",
    "@nestjs/core": "nestjs",
    "django": "django",
    "flask": "flask",
    "fastapi": "fastapi",
    "prisma": "prisma",
    "typeorm": "typeorm",
    "sqlalchemy": "sqlalchemy",
    "graphql": "graphql",
    "jest": "jest",
    "vitest": "vitest",
    "pytest": "pytest",
    "tailwindcss": "tailwind",
}

_INFRA_PATTERNS: dict[str, re.Pattern] = {
    "aws": re.compile(r"(^|[/\-_.@])(aws|boto3?|amazon|cdk)([/\-_.]|$)", re.IGNORECASE),
    "azure": re.compile(r"(^|[/\-_.@])(azure|azurerm)([/\-_.]|$)", re.IGNORECASE),
    "gcp": re.compile(r"(^|[/\-_.@])(gcp|google-cloud|gcloud)([/\-_.]|$)", re.IGNORECASE),
    "docker": re.compile(r"(dockerfile|docker-compose|(^|[/\-_.])docker([/\-_.]|$))", re.IGNORECASE),
    "kubernetes": re.compile(r"((^|/)(k8s|kubernetes|helm|charts)(/|$)|kubectl|(^|[/\-_.])kustomiz)", re.IGNORECASE),
    "terraform": re.compile(r"(\.tf$|\.tfvars$|(^|[/\-_.])terraform([/\-_.]|$))", re.IGNORECASE),
    "ci": re.compile(r"(\.github/workflows/|\.gitlab-ci|jenkinsfile|circleci|(^|/)ci(/|$))", re.IGNORECASE),
    "monitoring": re.compile(r"(prometheus|grafana|datadog|monitoring|alertmanager)", re.IGNORECASE),
    "logging": re.compile(r"(fluentd|fluent-bit|logstash|elasticsearch|loki)", re.IGNORECASE),
}

_YAML_MANIFEST_DIRS = ("k8s", "kubernetes", "manifests", "helm", "charts", "deploy")


# ── Analyzer ────────────────────────────────────────────────────────────

def classify_file_type(path: str) -> str:
    """Return the histogram key for a path (special name or extension)."""
    name = PurePosixPath(path.replace("\\", "/")).name.lower()
    if name in _SPECIAL_FILENAMES:
        return _SPECIAL_FILENAMES[name]
    if name.startswith("dockerfile"):
        return "dockerfile"
    for suffix in _COMPOUND_SUFFIXES:
        if name.endswith(suffix):
            return suffix
    suffix = PurePosixPath(name).suffix
    return suffix or "(none)"


def normalize_dependency(dep: str) -> str:
    """Strip version specifiers: ``react@18`` / ``django>=4`` -> name."""
    dep = dep.strip().lower()
    if dep.startswith("@"):
        scope, _, rest = dep[1:].partition("/")
        rest = re.split(r"[@<>=~^ ]", rest, maxsplit=1)[0]
        return f"@{scope}/{rest}" if rest else f"@{scope}"
    return re.split(r"[@<>=~^!\[ ;]", dep, maxsplit=1)[0]


class ContextAnalyzer:
    """Derive CodebaseContext from a TaskContext without touching disk."""

    def analyze(self, task: TaskContext) -> CodebaseContext:
        files = [f.replace("\\", "/") for f in task.affected_files]
        deps = [normalize_dependency(d) for d in task.dependencies]
        deps = [d for d in deps if d]

        histogram = Counter(classify_file_type(f) for f in files)
        patterns = self._architectural_patterns(files, deps)
        imports = self._import_patterns(deps)
        infra = self._infrastructure_components(files, deps)
        stack = self._technology_stack(histogram, deps)
        criteria = self._selection_criteria(files, histogram, deps, infra, stack)

        context = CodebaseContext(
            affected_file_types=dict(sorted(histogram.items())),
            architectural_patterns=tuple(patterns),
            import_patterns=tuple(imports),
            infrastructure_components=tuple(infra),
            technology_stack=tuple(stack),
            selection_criteria=tuple(criteria),
        )
        logger.debug(
            "Context: %d files, types=%s, infra=%s, criteria=%s",
            len(files), list(context.affected_file_types), infra, criteria,
        )
        return context

    # ── signal extractors ───────────────────────────────────────────────

    @staticmethod
    def _directories(files: list[str]) -> set[str]:
        dirs: set[str] = set()
        for f in files:
            dirs.update(part.lower() for part in PurePosixPath(f).parts[:-1])
        return dirs

    def _architectural_patterns(self, files: list[str], deps: list[str]) -> list[str]:
        dirs = self._directories(files)
        found = set()
        for pattern, markers in _ARCHITECTURE_MARKERS.items():
            hits = sum(1 for m in markers if m in dirs)
            if hits >= _ARCHITECTURE_MIN_MARKERS.get(pattern, 1):
                found.add(pattern)
        if any(f.lower().endswith(("docker-compose.yml", "docker-compose.yaml")) for f in files):
            found.add("microservices")
        if files and not found and len(dirs) <= 2 and len(files) >= 5:
            found.add("monolithic")
        found.update(_FRAMEWORKS[d] for d in deps if d in _FRAMEWORKS)
        return sorted(found)

    @staticmethod
    def _import_patterns(deps: list[str]) -> list[str]:
        patterns = set()
        for dep in deps:
            if dep.startswith("@"):
                patterns.add(dep.split("/", 1)[0])
            else:
                patterns.add(dep.split("/", 1)[0].replace("_", "-"))
        return sorted(patterns)

    @staticmethod
    def _infrastructure_components(files: list[str], deps: list[str]) -> list[str]:
        found = set()
        for component, regex in _INFRA_PATTERNS.items():
            if any(regex.search(item) for item in files) or any(regex.search(item) for item in deps):
                found.add(component)
        return sorted(found)

    @staticmethod
    def _technology_stack(histogram: Counter, deps: list[str]) -> list[str]:
        stack = {_LANGUAGE_BY_TYPE[t] for t in histogram if t in _LANGUAGE_BY_TYPE}
        stack.update(_FRAMEWORKS[d] for d in deps if d in _FRAMEWORKS)
        if "terraform" in deps:
            stack.add("hcl")
        return sorted(stack)

    def _selection_criteria(
        self,
        files: list[str],
        histogram: Counter,
        deps: list[str],
        infra: list[str],
        stack: list[str],
    ) -> list[str]:
        dirs = self._directories(files)
        lowered = [f.lower() for f in files]
        criteria = set()

        if histogram.keys() & {".ts", ".tsx", ".d.ts", ".test.ts", ".spec.ts", ".test.tsx"}:
            criteria.add("typescript-files")
        if ".py" in histogram:
            criteria.add("python-files")
        if "terraform" in infra:
            criteria.add("terraform-files")
        if "kubernetes" in infra or (
            histogram.keys() & {".yaml", ".yml"} and dirs & set(_YAML_MANIFEST_DIRS)
        ):
            criteria.add("kubernetes-manifests")
        if "docker" in infra:
            criteria.add("docker-files")
        if set(infra) & {"aws", "azure", "gcp"}:
            criteria.add("cloud-config")
        if "ci" in infra:
            criteria.add("ci-config")
        if "react" in stack or histogram.keys() & {".tsx", ".jsx", ".test.tsx"}:
            criteria.add("react-components")
        if histogram.keys() & {".css", ".scss", ".html", ".vue", ".svelte"}:
            criteria.add("frontend-assets")
        if histogram.keys() & {".fig", ".sketch", ".svg"} or dirs & {"design", "mockups", "wireframes"}:
            criteria.add("design-assets")
        if ".sql" in histogram or dirs & {"migrations", "migration"}:
            criteria.add("database-migrations")
        if dirs & {"routes", "controllers", "api", "handlers", "middleware"}:
            criteria.add("api-routes")
        if dirs & {"auth", "security", "iam", "policies"} or any("auth" in f for f in lowered):
            criteria.add("security-config")
        if any(re.search(r"(^|/)(tests?|__tests__)/|\.(test|spec)\.", f) for f in lowered):
            criteria.add("test-files")
        if any(d.startswith(("@types/", "typescript")) for d in deps):
            criteria.add("typescript-files")
        return sorted(criteria)
