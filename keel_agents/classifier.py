# keel_agents/classifier.py
"""
Task classification — maps a TaskContext onto a domain vocabulary.

Features:
- Word-boundary keyword matching over the description and dependency names
- File-pattern scoring over affected paths
- Primary domain + secondary domains with a 0.0-1.0 confidence
- Complexity tier (low / medium / high) from files, domains, length, deps
- Suggested agents per domain, with the lead prepended for broad tasks

``TaskClassifier.classify`` is a pure function of its input.
"""
import logging
import re
from dataclasses import dataclass, field
from enum import Enum

from keel_agents.context import TaskContext

logger = logging.getLogger("keel.agents.classifier")


class TaskDomain(str, Enum):
    """Domains a capability can cover."""
    INFRASTRUCTURE = "infrastructure"
    SECURITY = "security"
    BACKEND = "typescript-backend-general"
    CORE = "typescript-core"
    FRONTEND = "typescript-frontend-general"
    FRONTEND_REACT = "typescript-frontend-react"
    UI_UX = "ui-ux-designer"


class Complexity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


DEFAULT_DOMAIN = TaskDomain.CORE
NO_SIGNAL_CONFIDENCE = 0.2
EXPLICIT_DOMAIN_CONFIDENCE = 0.95
SECONDARY_DOMAIN_MIN_SCORE = 0.3

# Score composition: keywords dominate, file patterns corroborate
KEYWORD_WEIGHT = 0.6
FILE_PATTERN_WEIGHT = 0.4
KEYWORDS_FOR_FULL_SCORE = 3

DOMAIN_KEYWORDS: dict[TaskDomain, tuple[str, ...]] = {
    TaskDomain.INFRASTRUCTURE: (
        "terraform", "kubernetes", "docker", "aws", "gcp", "azure",
        "infrastructure", "deployment", "deploy", "ci/cd", "pipeline",
        "container", "k8s", "helm", "argo", "monitoring", "logging",
        "metrics", "prometheus", "grafana", "cloud", "iac",
    ),
    TaskDomain.SECURITY: (
        "security", "auth", "authentication", "authorization", "oauth",
        "jwt", "encryption", "ssl", "tls", "vulnerability", "threat",
        "compliance", "owasp", "cis", "gdpr", "hipaa", "penetration",
        "audit", "secrets",
    ),
    TaskDomain.BACKEND: (
        "api", "backend", "server", "database", "sql", "nosql", "mongodb",
        "postgresql", "mysql", "redis", "rest", "graphql", "trpc",
        "express", "nestjs", "fastify", "middleware", "routes",
        "controllers", "orm", "prisma", "typeorm", "migration", "dto",
        "zod", "endpoint",
    ),
    TaskDomain.CORE: (
        "typescript", "interface", "generic", "generics", "utility",
        "decorator", "module", "compiler", "strict", "tsconfig", "build",
        "bundle", "transpile", "lint", "eslint", "prettier", "refactor",
    ),
    TaskDomain.FRONTEND: (
        "frontend", "ui", "html", "css", "javascript", "dom", "responsive",
        "accessibility", "wcag", "svelte", "vue", "angular", "lit",
        "web components", "browser",
    ),
    TaskDomain.FRONTEND_REACT: (
        "react", "next.js", "nextjs", "component", "components", "hook",
        "hooks", "props", "jsx", "tsx", "redux", "zustand", "router",
        "react-hook-form", "tanstack query",
    ),
    TaskDomain.UI_UX: (
        "design", "ux", "mockup", "wireframe", "prototype", "figma",
        "sketch", "user experience", "usability", "interaction",
        "visual design", "branding", "typography", "color palette",
    ),
}

# Path regexes per domain; each matching file adds its weight
FILE_PATTERNS: dict[TaskDomain, tuple[tuple[re.Pattern, float], ...]] = {
    TaskDomain.INFRASTRUCTURE: (
        (re.compile(r"\.(tf|tfvars|hcl)$", re.IGNORECASE), 1.0),
        (re.compile(r"(^|/)dockerfile|docker-compose\.ya?ml$", re.IGNORECASE), 0.8),
        (re.compile(r"(^|/)(k8s|kubernetes|helm|charts|manifests)/.*\.ya?ml$", re.IGNORECASE), 0.9),
        (re.compile(r"\.github/workflows/|\.gitlab-ci\.ya?ml$|jenkinsfile", re.IGNORECASE), 0.6),
        (re.compile(r"(^|/)(infra|infrastructure|deploy|ops)/", re.IGNORECASE), 0.4),
    ),
    TaskDomain.SECURITY: (
        (re.compile(r"(^|/)(auth|security|iam|policies)/", re.IGNORECASE), 0.8),
        (re.compile(r"(auth|jwt|oauth|crypto|secret)[^/]*\.\w+$", re.IGNORECASE), 0.6),
        (re.compile(r"\.(pem|key|crt)$", re.IGNORECASE), 0.7),
    ),
    TaskDomain.BACKEND: (
        (re.compile(r"(^|/)(api|routes|controllers|services|middleware|server)/", re.IGNORECASE), 0.6),
        (re.compile(r"(^|/)(migrations|prisma|models|repositories)/|\.sql$|schema\.prisma$", re.IGNORECASE), 0.7),
        (re.compile(r"\.(controller|service|repository|dto|resolver)\.ts$", re.IGNORECASE), 0.8),
    ),
    TaskDomain.CORE: (
        (re.compile(r"\.d\.ts$|tsconfig[^/]*\.json$", re.IGNORECASE), 0.8),
        (re.compile(r"(^|/)(types|utils|lib|shared)/[^/]*\.ts$", re.IGNORECASE), 0.5),
        (re.compile(r"\.ts$", re.IGNORECASE), 0.2),
    ),
    TaskDomain.FRONTEND: (
        (re.compile(r"\.(html|css|scss|vue|svelte)$", re.IGNORECASE), 0.7),
        (re.compile(r"(^|/)(public|static|styles|assets)/", re.IGNORECASE), 0.4),
    ),
    TaskDomain.FRONTEND_REACT: (
        (re.compile(r"\.(tsx|jsx)$", re.IGNORECASE), 0.8),
        (re.compile(r"(^|/)(components|hooks|pages|app)/", re.IGNORECASE), 0.5),
    ),
    TaskDomain.UI_UX: (
        (re.compile(r"\.(fig|sketch|xd)$", re.IGNORECASE), 1.0),
        (re.compile(r"(^|/)(design|mockups|wireframes)/", re.IGNORECASE), 0.7),
    ),
}

SUGGESTED_AGENTS: dict[TaskDomain, tuple[str, ...]] = {
    TaskDomain.INFRASTRUCTURE: ("platform-engineer",),
    TaskDomain.SECURITY: ("secops-engineer",),
    TaskDomain.BACKEND: ("software-engineer-typescript-backend",),
    TaskDomain.CORE: ("software-engineer-typescript",),
    TaskDomain.FRONTEND: ("software-engineer-typescript-frontend",),
    TaskDomain.FRONTEND_REACT: ("software-engineer-typescript-frontend-react",),
    TaskDomain.UI_UX: ("ui-ux-designer",),
}
LEAD_AGENT = "lead"

_KEYWORD_RES: dict[TaskDomain, tuple[tuple[str, re.Pattern], ...]] = {
    domain: tuple(
        (kw, re.compile(r"(?<![\w-])" + re.escape(kw) + r"(?![\w-])", re.IGNORECASE))
        for kw in keywords
    )
    for domain, keywords in DOMAIN_KEYWORDS.items()
}


@dataclass(frozen=True)
class TaskClassification:
    """Classifier output."""
    primary_domain: TaskDomain
    complexity: Complexity
    confidence: float
    secondary_domains: tuple[TaskDomain, ...] = ()
    suggested_agents: tuple[str, ...] = ()
    reasons: tuple[str, ...] = ()
    domain_scores: dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "primary_domain": self.primary_domain.value,
            "complexity": self.complexity.value,
            "confidence": self.confidence,
            "secondary_domains": [d.value for d in self.secondary_domains],
            "suggested_agents": list(self.suggested_agents),
            "reasons": list(self.reasons),
            "domain_scores": dict(self.domain_scores),
        }


def parse_domain(value) -> TaskDomain | None:
    """Accept a TaskDomain or its string value; unknown values give None."""
    if isinstance(value, TaskDomain):
        return value
    try:
        return TaskDomain(str(value))
    except ValueError:
        return None


def keyword_hits(text: str, domain: TaskDomain) -> list[str]:
    """Distinct keywords of *domain* present in *text* (word-bounded)."""
    if not text:
        return []
    return [kw for kw, regex in _KEYWORD_RES[domain] if regex.search(text)]


def file_pattern_score(files: list[str], domain: TaskDomain) -> float:
    """Sum of matching pattern weights over *files*, capped at 1.0."""
    total = 0.0
    for path in files:
        best = 0.0
        for regex, weight in FILE_PATTERNS[domain]:
            if regex.search(path):
                best = max(best, weight)
        total += best
        if total >= 1.0:
            return 1.0
    return round(total, 4)


def compute_complexity(task: TaskContext, domain_count: int) -> tuple[Complexity, float]:
    """
    Complexity from four capped factors.

    Returns:
        (tier, raw score in 0.0-1.0)
    """
    file_factor = min(len(task.affected_files) / 10, 1.0) * 0.3
    domain_factor = min(domain_count / 3, 1.0) * 0.3
    length_factor = min(len(task.text) / 1000, 1.0) * 0.2
    dep_factor = min(len(task.dependencies) / 5, 1.0) * 0.2
    score = round(file_factor + domain_factor + length_factor + dep_factor, 4)
    if score < 0.3:
        return Complexity.LOW, score
    if score < 0.7:
        return Complexity.MEDIUM, score
    return Complexity.HIGH, score


class TaskClassifier:
    """Keyword and file-pattern classifier over the domain vocabulary."""

    def classify(self, task: TaskContext) -> TaskClassification:
        # Dependency names count as text signals too ("aws-cli", "react")
        haystack = " ".join([task.text, *task.dependencies])
        files = [f.replace("\\", "/") for f in task.affected_files]

        scores: dict[TaskDomain, float] = {}
        reasons: list[str] = []
        for domain in TaskDomain:
            hits = keyword_hits(haystack, domain)
            kw_score = min(len(hits) / KEYWORDS_FOR_FULL_SCORE, 1.0) * KEYWORD_WEIGHT
            fp_score = file_pattern_score(files, domain) * FILE_PATTERN_WEIGHT
            score = round(kw_score + fp_score, 4)
            if score > 0:
                scores[domain] = score
                detail = f"{domain.value}: {score:.2f}"
                if hits:
                    detail += f" (keywords: {', '.join(hits[:5])})"
                if fp_score:
                    detail += f" (file patterns: {fp_score:.2f})"
                reasons.append(detail)

        explicit = parse_domain(task.primary_domain) if task.primary_domain else None
        if explicit is not None:
            primary = explicit
            confidence = EXPLICIT_DOMAIN_CONFIDENCE
            reasons.insert(0, f"Primary domain provided by caller: {primary.value}")
        elif scores:
            # Deterministic: highest score, then vocabulary order
            order = list(TaskDomain)
            primary = max(scores, key=lambda d: (scores[d], -order.index(d)))
            confidence = min(scores[primary], 1.0)
            reasons.insert(0, f"Primary domain {primary.value} scored {confidence:.2f}")
        else:
            primary = DEFAULT_DOMAIN
            confidence = NO_SIGNAL_CONFIDENCE
            reasons.append(f"No domain signals found; defaulting to {primary.value}")

        secondary = [
            d for d in TaskDomain
            if d != primary and scores.get(d, 0.0) >= SECONDARY_DOMAIN_MIN_SCORE
        ]
        for value in task.secondary_domains:
            d = parse_domain(value)
            if d is not None and d != primary and d not in secondary:
                secondary.append(d)

        complexity, complexity_score = compute_complexity(task, 1 + len(secondary))
        if task.complexity:
            try:
                complexity = Complexity(str(task.complexity).lower())
            except ValueError:
                reasons.append(f"Ignoring unknown complexity hint {task.complexity!r}")
        reasons.append(f"Complexity {complexity.value} ({complexity_score:.2f})")

        suggested = list(SUGGESTED_AGENTS[primary])
        for d in secondary:
            suggested.extend(a for a in SUGGESTED_AGENTS[d] if a not in suggested)
        if complexity == Complexity.HIGH or secondary:
            suggested.insert(0, LEAD_AGENT)

        logger.debug(
            "Classified as %s (confidence=%.2f, complexity=%s, secondary=%s)",
            primary.value, confidence, complexity.value, [d.value for d in secondary],
        )
        return TaskClassification(
            primary_domain=primary,
            complexity=complexity,
            confidence=round(confidence, 4),
            secondary_domains=tuple(secondary),
            suggested_agents=tuple(suggested),
            reasons=tuple(reasons),
            domain_scores={d.value: s for d, s in scores.items()},
        )
