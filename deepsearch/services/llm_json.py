"""Strict parsing of JSON emitted by LLMs into a Parsed | Fallback result."""
from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Callable, Generic, TypeVar, Union

from deepsearch.errors import ParseError

T = TypeVar("T")

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)


@dataclass(frozen=True)
class Parsed(Generic[T]):
    value: T


@dataclass(frozen=True)
class Fallback:
    reason: str


ParseOutcome = Union[Parsed[T], Fallback]


def strip_code_fences(text: str) -> str:
    cleaned = (text or "").strip()
    match = _FENCE_RE.search(cleaned)
    if match:
        return match.group(1).strip()
    return cleaned


def loads_llm_json(text: str) -> Any:
    """Parse model output as JSON after removing markdown fences. Raises ParseError."""
    cleaned = strip_code_fences(text)
    if not cleaned:
        raise ParseError("empty response")
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise ParseError(f"invalid JSON: {e.msg} at position {e.pos}") from e


def parse_llm_json(text: str, build: Callable[[Any], T]) -> ParseOutcome[T]:
    """Decode and validate in one step. ``build`` raises ParseError (or ValueError) on bad shape."""
    try:
        payload = loads_llm_json(text)
        return Parsed(build(payload))
    except (ParseError, ValueError, TypeError) as e:
        return Fallback(str(e))
