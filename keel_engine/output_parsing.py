# keel_engine/output_parsing.py
"""
Stage output parsing.

Models answer with prose around a JSON object; this module finds the
object (fenced ```json block, any fenced block, then the first balanced
``{...}``), picks the stage's declared output names from it, and raises
ValidationFailure for whatever is still missing.
"""
import json
import logging
import re
from typing import Any, Optional, Sequence

from keel_engine.exceptions import ValidationFailure

logger = logging.getLogger("keel.engine.output_parsing")

_ANSI_RE = re.compile(r"\x1b\[[0-9;]*[a-zA-Z]")
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_FENCE_RE = re.compile(r"```(?P<lang>[\w-]*)[ \t]*\n?(?P<body>.*?)```", re.DOTALL)
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")


def sanitize(content: str) -> str:
    """Strip ANSI escapes and control characters (keeps newlines/tabs)."""
    return _CONTROL_RE.sub("", _ANSI_RE.sub("", content or ""))


def _balanced_object(text: str) -> Optional[str]:
    """First balanced {...} span, string-literal aware."""
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for index in range(start, len(text)):
            char = text[index]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
            elif char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    return text[start:index + 1]
        start = text.find("{", start + 1)
    return None


def _loads(candidate: str) -> Optional[dict]:
    for attempt in (candidate, _TRAILING_COMMA_RE.sub(r"\1", candidate)):
        try:
            value = json.loads(attempt)
        except ValueError:
            continue
        if isinstance(value, dict):
            return value
    return None


def extract_json_object(content: str) -> Optional[dict[str, Any]]:
    """Best-effort extraction of one JSON object from model output."""
    text = sanitize(content).strip()
    if not text:
        return None

    fences = list(_FENCE_RE.finditer(text))
    # json-tagged fences first, then any fence, then the raw text
    ordered = [m for m in fences if m.group("lang").lower() == "json"]
    ordered += [m for m in fences if m.group("lang").lower() != "json"]
    for match in ordered:
        body = match.group("body").strip()
        parsed = _loads(body)
        if parsed is None:
            span = _balanced_object(body)
            parsed = _loads(span) if span else None
        if parsed is not None:
            return parsed

    parsed = _loads(text)
    if parsed is not None:
        return parsed
    span = _balanced_object(text)
    return _loads(span) if span else None


def parse_stage_outputs(
    content: str,
    expected: Sequence[str],
    stage: str = "",
) -> dict[str, Any]:
    """
    Map model output onto the stage's declared output names.

    With no declared outputs the parsed object (or ``{"response": text}``)
    is returned as-is. With exactly one declared output and no JSON
    object in the content, the raw text becomes that output.

    Raises:
        ValidationFailure: If declared outputs are missing.
    """
    parsed = extract_json_object(content)
    if not expected:
        return parsed if parsed is not None else {"response": (content or "").strip()}

    if parsed is None:
        if len(expected) == 1 and (content or "").strip():
            return {expected[0]: sanitize(content).strip()}
        raise ValidationFailure(stage, list(expected), f"Stage '{stage}' output contained no JSON object")

    outputs = {name: parsed[name] for name in expected if name in parsed}
    missing = [name for name in expected if name not in outputs]
    if missing and len(expected) == 1 and len(parsed) == 1:
        # Single output under a different key: take the lone value
        outputs[expected[0]] = next(iter(parsed.values()))
        missing = []
    if missing:
        logger.warning("Stage '%s' missing outputs %s (got keys %s)", stage, missing, sorted(parsed))
        raise ValidationFailure(stage, missing)
    return outputs
