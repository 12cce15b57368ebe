"""
Pull a JSON payload out of free-form model text.

Models asked for JSON in free-text mode usually wrap it in a ```json fence,
sometimes add prose around it, and occasionally emit invalid JSON. Every
structured call site falls back to this module, so the rules live in one place.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterator, Optional

_FENCE_RE = re.compile(r"```[ \t]*([A-Za-z0-9_-]*)[^\n]*\n(.*?)```", re.DOTALL)


class ExtractionErrorKind(str, Enum):
    NO_JSON_FOUND = "NoJsonFound"
    PARSE_ERROR = "ParseError"


@dataclass(frozen=True)
class ExtractionError:
    kind: ExtractionErrorKind
    message: str


@dataclass(frozen=True)
class ExtractionResult:
    result: Any = None
    error: Optional[ExtractionError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _fenced_blocks(text: str) -> Iterator[str]:
    """json-labelled fences first, then unlabelled ones; other languages are skipped."""
    labelled: list[str] = []
    unlabelled: list[str] = []
    for match in _FENCE_RE.finditer(text):
        lang = match.group(1).strip().lower()
        body = match.group(2).strip()
        if not body:
            continue
        if lang in ("json", "json5", "jsonc"):
            labelled.append(body)
        elif not lang:
            unlabelled.append(body)
    yield from labelled
    yield from unlabelled


def _balanced_span(text: str) -> Optional[str]:
    """First balanced {...} or [...] span, ignoring brackets inside strings."""
    start = None
    for idx, ch in enumerate(text):
        if ch in "{[":
            start = idx
            break
    if start is None:
        return None

    stack: list[str] = []
    in_string = False
    escaped = False
    pairs = {"{": "}", "[": "]"}
    for idx in range(start, len(text)):
        ch = text[idx]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in pairs:
            stack.append(pairs[ch])
        elif ch in "}]":
            if not stack or stack.pop() != ch:
                return None
            if not stack:
                return text[start : idx + 1]
    return None


def extract_json_from_markdown(raw_text: Any) -> ExtractionResult:
    """
    Locate and parse the first well-formed JSON payload in `raw_text`.

    Order: fenced ```json blocks, unlabelled fences, the whole text, then the
    first balanced object/array span. Never raises.
    """
    if not isinstance(raw_text, str) or not raw_text.strip():
        return ExtractionResult(
            error=ExtractionError(ExtractionErrorKind.NO_JSON_FOUND, "Model returned no text to parse")
        )

    text = raw_text.strip()
    last_error: Optional[str] = None
    saw_candidate = False

    candidates = list(_fenced_blocks(text))
    candidates.append(text)
    span = _balanced_span(text)
    if span is not None:
        candidates.append(span)

    for candidate in candidates:
        if not candidate or candidate[0] not in "{[":
            continue
        saw_candidate = True
        try:
            return ExtractionResult(result=json.loads(candidate))
        except json.JSONDecodeError as exc:
            last_error = f"{exc.msg} (line {exc.lineno}, column {exc.colno})"

    if not saw_candidate:
        return ExtractionResult(
            error=ExtractionError(
                ExtractionErrorKind.NO_JSON_FOUND,
                "No JSON object or array found in model output",
            )
        )
    return ExtractionResult(
        error=ExtractionError(
            ExtractionErrorKind.PARSE_ERROR,
            f"Failed to parse JSON from model output: {last_error}",
        )
    )


__all__ = [
    "ExtractionErrorKind",
    "ExtractionError",
    "ExtractionResult",
    "extract_json_from_markdown",
]
