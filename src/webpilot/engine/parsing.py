"""Parsing for untrusted language model output.

Gateway responses are expected to contain JSON but frequently arrive wrapped
in markdown fences, surrounded by prose, or truncated.  Callers never treat a
bad response as an exception path: they produce a :class:`Parsed` value when
the response was usable and a :class:`Fallback` value (carrying the
rule-based substitute) when it was not.
"""

from __future__ import annotations

import dataclasses
import json
import logging
from typing import Any, Generic, TypeVar, Union

logger = logging.getLogger("webpilot.engine.parsing")

T = TypeVar("T")


@dataclasses.dataclass(frozen=True)
class Parsed(Generic[T]):
    """The gateway response was parsed into a usable value."""

    value: T

    @property
    def is_fallback(self) -> bool:
        return False


@dataclasses.dataclass(frozen=True)
class Fallback(Generic[T]):
    """The gateway response was unusable; ``value`` is the rule-based substitute."""

    value: T
    reason: str = ""

    @property
    def is_fallback(self) -> bool:
        return True


Outcome = Union[Parsed[T], Fallback[T]]


def strip_code_fences(text: str) -> str:
    """Remove a surrounding markdown code fence (```json ... ```) if present."""
    cleaned = (text or "").strip()
    if not cleaned.startswith("```"):
        return cleaned

    lines = cleaned.split("\n")
    # Opening fence, possibly with a language tag
    if lines and lines[0].strip().startswith("```"):
        lines = lines[1:]
    if lines and lines[-1].strip() == "```":
        lines = lines[:-1]
    cleaned = "\n".join(lines).strip()
    # Single-line form: ```json {...}```
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3].rstrip()
    return cleaned


def _balanced_span(text: str, opener: str) -> str | None:
    """Return the first balanced ``opener``...closer span, honouring strings."""
    closer = "]" if opener == "[" else "}"
    start = text.find(opener)
    while start != -1:
        depth = 0
        in_string = False
        escape = False
        for idx in range(start, len(text)):
            char = text[idx]
            if escape:
                escape = False
                continue
            if char == "\\":
                escape = True
                continue
            if char == '"':
                in_string = not in_string
                continue
            if in_string:
                continue
            if char == opener:
                depth += 1
            elif char == closer:
                depth -= 1
                if depth == 0:
                    return text[start : idx + 1]
        # Unbalanced from this opener (truncated output); try the next one
        start = text.find(opener, start + 1)
    return None


def extract_json(text: str, expect: str = "any") -> Any:
    """Parse JSON out of a free-form model response.

    Strips code fences, then tries a direct parse, then falls back to the
    first balanced array or object embedded in prose.

    Args:
        text: Raw gateway response.
        expect: ``"array"``, ``"object"`` or ``"any"``.  Controls which
            embedded span is searched for first.

    Raises:
        ValueError: if no JSON value can be recovered.
    """
    cleaned = strip_code_fences(text)
    if not cleaned:
        raise ValueError("Empty response")

    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass

    if expect == "array":
        openers = ["[", "{"]
    elif expect == "object":
        openers = ["{", "["]
    else:
        openers = sorted(["[", "{"], key=lambda o: (cleaned.find(o) == -1, cleaned.find(o)))

    for opener in openers:
        span = _balanced_span(cleaned, opener)
        if span is None:
            continue
        try:
            return json.loads(span)
        except json.JSONDecodeError:
            continue

    raise ValueError(f"No JSON found in response: {cleaned[:120]!r}")
