"""
Recover structured data from free-form model output.

Strategies run in order, each only when the previous one produced nothing
acceptable:

  1. the whole input as JSON
  2. the first fenced code block, with or without a language tag
  3. each top-level balanced ``{...}`` span, then each ``[...]`` span, left to
     right (string-aware counting), so bracketed prose before the payload is
     skipped; a span that fails to parse is retried after a light repair
     (trailing commas dropped, bare identifier keys quoted)
  4. the same repair applied to the widest best-effort span

Parsed values are only ever plain ``dict`` / ``list`` / scalars produced by the
JSON decoder. Keys such as ``__proto__`` or ``__class__`` stay ordinary dict
keys; nothing is ever set as an attribute.
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable, Iterable, Iterator
from typing import Any

from .contracts import ExtractionResult
from .errors import ExtractionError

Validator = Callable[[Any], bool]

_FENCE_RE = re.compile(r"```[ \t]*[A-Za-z0-9_+.-]*[ \t]*\r?\n?(.*?)```", re.DOTALL)
_IDENT_RE = re.compile(r"[A-Za-z_$][A-Za-z0-9_$]*")

_CLOSERS = {"{": "}", "[": "]"}

ERR_EMPTY = "Empty input"
ERR_NOT_FOUND = "Could not extract valid JSON from response"
ERR_VALIDATION = "Extracted JSON failed validation"


class _Rejected(ValueError):
    pass


def _reject_constant(name: str) -> Any:
    raise _Rejected(f"Non-finite constant {name} is not allowed")


def _loads(text: str) -> Any:
    return json.loads(text, parse_constant=_reject_constant)


def _try_parse(candidate: str | None) -> tuple[bool, Any]:
    if candidate is None:
        return False, None
    candidate = candidate.strip()
    if not candidate:
        return False, None
    try:
        return True, _loads(candidate)
    except (ValueError, RecursionError):
        return False, None


def _first_opener(text: str) -> int:
    positions = [p for p in (text.find("{"), text.find("[")) if p >= 0]
    return min(positions) if positions else -1


def find_balanced_span(text: str, start: int | None = None) -> tuple[int, int] | None:
    """Return ``(start, end)`` of the balanced object/array opening at ``start``
    (default: the first opener), or None."""
    if start is None:
        start = _first_opener(text)
    if start < 0 or start >= len(text) or text[start] not in _CLOSERS:
        return None

    stack: list[str] = []
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
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
        elif ch in _CLOSERS:
            stack.append(_CLOSERS[ch])
        elif ch in ("}", "]"):
            if not stack or stack[-1] != ch:
                return None
            stack.pop()
            if not stack:
                return start, i + 1
    return None


def balanced_spans(text: str) -> Iterator[str]:
    """Top-level balanced spans, left to right. Spans nested in an earlier one are skipped."""
    i = 0
    while i < len(text):
        if text[i] in _CLOSERS:
            span = find_balanced_span(text, i)
            if span is not None:
                yield text[span[0] : span[1]]
                i = span[1]
                continue
        i += 1


def _best_effort_span(text: str) -> str | None:
    start = _first_opener(text)
    if start < 0:
        return None
    end = max(text.rfind("}"), text.rfind("]"))
    if end <= start:
        return None
    return text[start : end + 1]


def repair_json(span: str) -> str:
    """Drop trailing commas and quote bare keys, leaving string literals untouched."""
    out: list[str] = []
    in_string = False
    escaped = False
    last_significant = ""
    i = 0
    n = len(span)
    while i < n:
        ch = span[i]
        if in_string:
            out.append(ch)
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            i += 1
            continue

        if ch == '"':
            in_string = True
            out.append(ch)
            last_significant = ch
            i += 1
            continue

        if ch == ",":
            j = i + 1
            while j < n and span[j].isspace():
                j += 1
            if j < n and span[j] in "}]":
                i += 1
                continue

        if last_significant in ("{", ","):
            m = _IDENT_RE.match(span, i)
            if m is not None:
                k = m.end()
                while k < n and span[k].isspace():
                    k += 1
                if k < n and span[k] == ":":
                    out.append(f'"{m.group(0)}"')
                    last_significant = '"'
                    i = m.end()
                    continue

        out.append(ch)
        if not ch.isspace():
            last_significant = ch
        i += 1
    return "".join(out)


def _candidates(text: str) -> Iterator[str | None]:
    yield text

    fence = _FENCE_RE.search(text)
    yield fence.group(1) if fence else None

    # Objects first: bracketed citations such as "[2]" are valid arrays.
    spans = sorted(balanced_spans(text), key=lambda s: s[0] != "{")
    for span in spans:
        yield span
        repaired = repair_json(span)
        if repaired != span:
            yield repaired
    best = _best_effort_span(text)
    yield repair_json(best) if best is not None else None


def extract_json(text: str | None, validator: Validator | None = None) -> ExtractionResult[Any]:
    if text is None or not text.strip():
        return ExtractionResult.fail(ERR_EMPTY)

    rejected = False
    for candidate in _candidates(text):
        parsed_ok, value = _try_parse(candidate)
        if not parsed_ok:
            continue
        if validator is not None and not validator(value):
            rejected = True
            continue
        return ExtractionResult.ok(value)

    return ExtractionResult.fail(ERR_VALIDATION if rejected else ERR_NOT_FOUND)


def require_json(text: str | None, validator: Validator | None = None) -> Any:
    """Like :func:`extract_json` but raises :class:`ExtractionError` on failure."""
    result = extract_json(text, validator)
    if not result.success:
        raise ExtractionError(result.error or ERR_NOT_FOUND)
    return result.data


def has_required_fields(obj: Any, fields: Iterable[str]) -> bool:
    if not isinstance(obj, dict):
        return False
    return all(f in obj for f in fields)


def is_json_object(obj: Any) -> bool:
    return isinstance(obj, dict)
