# keel_engine/inputs.py
"""
Stage input resolution and conditional expressions.

References are dotted paths:
    input.<key>[.<nested>...]      -> the run's initial inputs
    <stage>.<output>[.<nested>...] -> a completed stage's outputs

Conditionals are deliberately small (no eval):
    true | false
    <ref>                  truthy check
    not <ref> | !<ref>     falsy check
    <ref> <op> <literal>   op in == != > >= < <=
"""
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from keel_engine.exceptions import InputResolutionError, PipelineDefinitionError
from keel_engine.pipeline import INPUT_NAMESPACE, PipelineStage, StageOutput

logger = logging.getLogger("keel.engine.inputs")

_MISSING = object()

_REF = r"[A-Za-z_][\w\-]*(?:\.[\w\-]+)*"
_REF_RE = re.compile(rf"^{_REF}$")
_NOT_RE = re.compile(rf"^(?:not\s+|!\s*)(?P<ref>{_REF})$")
_COMPARISON_RE = re.compile(
    rf"^(?P<ref>{_REF})\s*(?P<op>==|!=|>=|<=|>|<)\s*(?P<literal>.+)$"
)

_OPERATORS = {
    "==": lambda a, b: a == b or (a is not None and str(a) == str(b)),
    "!=": lambda a, b: not (a == b or (a is not None and str(a) == str(b))),
    ">": lambda a, b: a > b,
    ">=": lambda a, b: a >= b,
    "<": lambda a, b: a < b,
    "<=": lambda a, b: a <= b,
}


# ── Path walking ────────────────────────────────────────────────────────

def walk_path(value: Any, path: list[str]) -> Any:
    """Follow *path* through nested dicts/lists; returns _MISSING on a miss."""
    for part in path:
        if isinstance(value, Mapping):
            if part not in value:
                return _MISSING
            value = value[part]
        elif isinstance(value, (list, tuple)) and part.lstrip("-").isdigit():
            index = int(part)
            if not -len(value) <= index < len(value):
                return _MISSING
            value = value[index]
        else:
            return _MISSING
    return value


def resolve_reference(
    reference: str,
    initial: Mapping[str, Any],
    prior: Mapping[str, StageOutput],
    *,
    stage: str = "",
    lenient: bool = False,
) -> Any:
    """
    Resolve one dotted reference.

    Skipped or failed (non-required) producers resolve to None.

    Raises:
        InputResolutionError: Unknown root, producer not yet complete, or
            a missing key on a successful producer (unless *lenient*).
    """
    parts = reference.split(".")
    root, path = parts[0], parts[1:]

    if root == INPUT_NAMESPACE:
        value = walk_path(initial, path) if path else dict(initial)
        if value is _MISSING:
            if lenient:
                return None
            raise InputResolutionError(stage, reference, "not present in initial inputs")
        return value

    producer = prior.get(root)
    if producer is None:
        if lenient:
            return None
        raise InputResolutionError(stage, reference, f"stage '{root}' has not completed")
    if not producer.success or producer.skipped:
        logger.debug("Input %s of '%s' comes from %s stage '%s'", reference, stage,
                     "skipped" if producer.skipped else "failed", root)
        return None

    value = walk_path(producer.outputs, path) if path else dict(producer.outputs)
    if value is _MISSING:
        if lenient:
            return None
        raise InputResolutionError(stage, reference, f"stage '{root}' produced no such output")
    return value


def resolve_inputs(
    stage: PipelineStage,
    initial: Mapping[str, Any],
    prior: Mapping[str, StageOutput],
    *,
    lenient: bool = False,
    base: Optional[Mapping[str, Any]] = None,
) -> dict[str, Any]:
    """Resolve every entry in ``stage.inputs``, overlaying *base* if given."""
    resolved: dict[str, Any] = dict(base or {})
    for name, reference in stage.inputs.items():
        if not isinstance(reference, str):
            resolved[name] = reference  # literal value
            continue
        resolved[name] = resolve_reference(
            reference, initial, prior, stage=stage.stage_id, lenient=lenient,
        )
    return resolved


def merged_outputs(prior: Mapping[str, StageOutput]) -> dict[str, Any]:
    """Outputs of all successful, non-skipped stages merged in order."""
    merged: dict[str, Any] = {}
    for output in prior.values():
        if output.success and not output.skipped:
            merged.update(output.outputs)
    return merged


# ── Conditionals ────────────────────────────────────────────────────────

def _parse_literal(raw: str) -> Any:
    raw = raw.strip()
    if len(raw) >= 2 and raw[0] == raw[-1] and raw[0] in "'\"":
        return raw[1:-1]
    lowered = raw.lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    if lowered in ("null", "none"):
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return raw  # bareword string


@dataclass(frozen=True)
class Condition:
    """Parsed conditional expression."""
    expression: str
    reference: Optional[str] = None
    operator: Optional[str] = None
    literal: Any = None
    negate: bool = False
    constant: Optional[bool] = None

    @classmethod
    def parse(cls, expression: str) -> "Condition":
        """
        Raises:
            PipelineDefinitionError: If the expression is not supported.
        """
        expr = (expression or "").strip()
        if expr.lower() in ("true", "false"):
            return cls(expression=expr, constant=expr.lower() == "true")
        m = _NOT_RE.match(expr)
        if m:
            return cls(expression=expr, reference=m.group("ref"), negate=True)
        m = _COMPARISON_RE.match(expr)
        if m:
            return cls(
                expression=expr,
                reference=m.group("ref"),
                operator=m.group("op"),
                literal=_parse_literal(m.group("literal")),
            )
        if _REF_RE.match(expr):
            return cls(expression=expr, reference=expr)
        raise PipelineDefinitionError(f"Unsupported conditional expression: {expression!r}")

    def _lookup(
        self,
        inputs: Mapping[str, Any],
        prior: Mapping[str, StageOutput],
        initial: Mapping[str, Any],
    ) -> Any:
        parts = self.reference.split(".")
        if parts[0] in inputs:
            value = walk_path(inputs[parts[0]], parts[1:])
        elif parts[0] == INPUT_NAMESPACE:
            value = walk_path(initial, parts[1:])
        elif parts[0] in prior:
            producer = prior[parts[0]]
            if not producer.success or producer.skipped:
                return None
            value = walk_path(producer.outputs, parts[1:])
        else:
            return None
        return None if value is _MISSING else value

    def evaluate(
        self,
        inputs: Mapping[str, Any],
        prior: Optional[Mapping[str, StageOutput]] = None,
        initial: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        if self.constant is not None:
            return self.constant
        value = self._lookup(inputs, prior or {}, initial or {})
        if self.operator is None:
            return not value if self.negate else bool(value)
        try:
            return bool(_OPERATORS[self.operator](value, self.literal))
        except TypeError:
            logger.debug("Condition %r compared incompatible types; treating as false", self.expression)
            return False


def evaluate_condition(
    expression: str,
    inputs: Mapping[str, Any],
    prior: Optional[Mapping[str, StageOutput]] = None,
    initial: Optional[Mapping[str, Any]] = None,
) -> bool:
    """Parse and evaluate *expression* in one go."""
    return Condition.parse(expression).evaluate(inputs, prior, initial)
