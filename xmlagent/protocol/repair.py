"""Bounded repair pass for malformed tool-argument JSON.

Models frequently emit almost-JSON: fenced in markdown, with trailing commas,
with Python literals or single quotes. Repairs are an explicit, ordered list.
They run only when strict parsing fails and the caller opted in, each repair
is applied at most once, and parsing is retried after every step. If no
prefix of the list yields valid JSON, the original error is raised unchanged.
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Callable

_FENCE_RE = re.compile(r"^\s*```[A-Za-z0-9_-]*\s*\n?(.*?)\n?\s*```\s*$", re.DOTALL)
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")
_PY_LITERALS = {"True": "true", "False": "false", "None": "null"}
_PY_LITERAL_RE = re.compile(r"\b(True|False|None)\b")


@dataclass(frozen=True)
class Repair:
    """A named text transformation."""

    name: str
    apply: Callable[[str], str]


def strip_code_fence(text: str) -> str:
    match = _FENCE_RE.match(text)
    return match.group(1) if match else text


def strip_trailing_commas(text: str) -> str:
    return _TRAILING_COMMA_RE.sub(r"\1", text)


def python_literals(text: str) -> str:
    return _PY_LITERAL_RE.sub(lambda m: _PY_LITERALS[m.group(1)], text)


def single_quotes(text: str) -> str:
    # Only safe when the payload has no double quotes at all.
    if '"' in text:
        return text
    return text.replace("'", '"')


REPAIRS: tuple[Repair, ...] = (
    Repair("strip_code_fence", strip_code_fence),
    Repair("strip_trailing_commas", strip_trailing_commas),
    Repair("python_literals", python_literals),
    Repair("single_quotes", single_quotes),
)


def parse_json(text: str, *, repair: bool = False) -> tuple[Any, tuple[str, ...]]:
    """Parse JSON, optionally running the repair pass.

    Returns:
        Tuple of (parsed value, names of repairs that were applied)

    Raises:
        json.JSONDecodeError from the strict parse when nothing helps
    """
    try:
        return json.loads(text), ()
    except json.JSONDecodeError as first_error:
        if not repair:
            raise
        original = first_error

    candidate = text
    applied: list[str] = []
    for step in REPAIRS:
        updated = step.apply(candidate)
        if updated == candidate:
            continue
        candidate = updated
        applied.append(step.name)
        try:
            return json.loads(candidate), tuple(applied)
        except json.JSONDecodeError:
            continue
    raise original
