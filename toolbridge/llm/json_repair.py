"""
Recovery of malformed tool-call argument strings.

Backends routinely emit argument text that is almost, but not quite, a JSON
object: the same object repeated back to back, an object wrapped in prose, a
truncated object missing its closing brace.  ``normalize_arguments`` runs an
ordered list of pure ``RecoveryStrategy`` functions over the text and returns
the first success as ``Recovered``, or ``Unrecoverable`` when every strategy
misses.  It never raises.

Strategy order:

  1. ``direct``               -- already valid JSON, returned unchanged.
  2. ``collapse_duplicates``  -- ``{..}{..}`` repeats collapse to one object.
  3. ``first_valid_object``   -- first balanced ``{...}`` span that parses.
  4. ``object_patterns``      -- object-shaped regular expressions.
  5. ``key_values``           -- rebuild an object from ``"key": value`` pairs.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Union

from toolbridge.llm.diagnostics import (
    EVENT_REPAIR_ATTEMPT,
    EVENT_REPAIR_FAILED,
    EVENT_REPAIR_RECOVERED,
    RepairEvent,
    RepairObserver,
    emit,
    preview,
)

logger = logging.getLogger(__name__)

_DECODER = json.JSONDecoder()
_INVALID = object()


# ---------------------------------------------------------------------------
# Result variants
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Recovered:
    """Recovery succeeded; *value* parses as JSON."""

    value: str
    strategy: str


@dataclass(frozen=True)
class Unrecoverable:
    """Every strategy missed.  *raw* is the untouched input."""

    raw: str
    attempted: tuple[str, ...] = ()


RepairResult = Union[Recovered, Unrecoverable]


@dataclass(frozen=True)
class RecoveryStrategy:
    """A named, stateless ``str -> str | None`` recovery step."""

    name: str
    func: Callable[[str], "str | None"]

    def __call__(self, text: str) -> str | None:
        return self.func(text)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _loads(text: str) -> Any:
    """``json.loads`` that returns ``_INVALID`` instead of raising."""
    try:
        return json.loads(text)
    except (ValueError, RecursionError):
        return _INVALID


def balanced_object_end(text: str, start: int) -> int | None:
    """
    Offset just past the ``}`` closing the object opened at *start*.

    Braces inside JSON string literals are ignored.  Returns ``None`` when
    the object never closes.
    """
    depth = 0
    in_string = False
    escaped = False
    for pos in range(start, len(text)):
        ch = text[pos]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return pos + 1
    return None


def _object_spans(text: str) -> list[tuple[int, int]]:
    """``(start, end)`` offsets of consecutive top-level ``{...}`` spans."""
    spans: list[tuple[int, int]] = []
    pos = 0
    while True:
        start = text.find("{", pos)
        if start == -1:
            break
        end = balanced_object_end(text, start)
        if end is None:
            break
        spans.append((start, end))
        pos = end
    return spans


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


def parse_direct(text: str) -> str | None:
    if _loads(text) is _INVALID:
        return None
    return text


def collapse_duplicates(text: str) -> str | None:
    spans = _object_spans(text)
    if len(spans) < 2:
        return None

    parts: list[str] = []
    cursor = 0
    previous: str | None = None
    collapsed = False
    for start, end in spans:
        gap = text[cursor:start]
        span = text[start:end]
        if span == previous and not gap.strip():
            collapsed = True
        else:
            parts.append(gap)
            parts.append(span)
            previous = span
        cursor = end
    parts.append(text[cursor:])

    if not collapsed:
        return None
    candidate = "".join(parts).strip()
    if _loads(candidate) is _INVALID:
        return None
    return candidate


def first_valid_object(text: str) -> str | None:
    for match in re.finditer(r"\{", text):
        start = match.start()
        try:
            obj, end = _DECODER.raw_decode(text, start)
        except (ValueError, RecursionError):
            continue
        if isinstance(obj, dict):
            return text[start:end]
    return None


_OBJECT_PATTERNS = (
    # "key": <anything up to , or }> lists
    re.compile(
        r'\{\s*"[^"]+"\s*:\s*[^,}]+(?:\s*,\s*"[^"]+"\s*:\s*[^,}]+)*\s*\}'
    ),
    # single "key": <typed scalar>
    re.compile(
        r'\{\s*"[^"]+"\s*:\s*(?:"[^"]*"|-?\d+(?:\.\d+)?|true|false|null)\s*\}'
    ),
)


def object_patterns(text: str) -> str | None:
    for pattern in _OBJECT_PATTERNS:
        for match in pattern.finditer(text):
            candidate = match.group(0)
            if isinstance(_loads(candidate), dict):
                return candidate
    return None


_KEY_VALUE = re.compile(
    r'"((?:[^"\\]|\\.)+)"\s*:\s*'
    r'(?:"((?:[^"\\]|\\.)*)"'
    r"|(-?\d+(?:\.\d+)?(?:[eE][+-]?\d+)?)"
    r"|(true|false|null))"
)

_LITERALS = {"true": True, "false": False, "null": None}


def _decode_string(raw: str) -> str:
    value = _loads(f'"{raw}"')
    return raw if value is _INVALID else value


def _parse_number(raw: str) -> int | float:
    if "." in raw:
        return float(raw)
    try:
        return int(raw)
    except ValueError:
        return float(raw)


def reconstruct_key_values(text: str) -> str | None:
    extracted: dict[str, Any] = {}
    for match in _KEY_VALUE.finditer(text):
        key = _decode_string(match.group(1))
        string_value, number_value, literal = match.group(2, 3, 4)
        if string_value is not None:
            extracted[key] = _decode_string(string_value)
        elif number_value is not None:
            extracted[key] = _parse_number(number_value)
        else:
            extracted[key] = _LITERALS[literal]
    if not extracted:
        return None
    return json.dumps(extracted, separators=(",", ":"), ensure_ascii=False)


DEFAULT_STRATEGIES: tuple[RecoveryStrategy, ...] = (
    RecoveryStrategy("direct", parse_direct),
    RecoveryStrategy("collapse_duplicates", collapse_duplicates),
    RecoveryStrategy("first_valid_object", first_valid_object),
    RecoveryStrategy("object_patterns", object_patterns),
    RecoveryStrategy("key_values", reconstruct_key_values),
)


# ---------------------------------------------------------------------------
# Cascade
# ---------------------------------------------------------------------------


def normalize_arguments(
    text: str,
    *,
    strategies: tuple[RecoveryStrategy, ...] = DEFAULT_STRATEGIES,
    observer: RepairObserver | None = None,
    backend: str | None = None,
    call_id: str | None = None,
) -> RepairResult:
    """
    Run *strategies* over *text* in order; the first non-``None`` wins.

    Returns ``Recovered`` or ``Unrecoverable``.  A strategy that raises is
    logged and counted as a miss.
    """
    attempted: list[str] = []
    text_preview = preview(text)

    for strategy in strategies:
        attempted.append(strategy.name)
        try:
            value = strategy(text)
        except Exception:
            logger.exception("Recovery strategy %s raised", strategy.name)
            value = None

        emit(
            RepairEvent(
                event_type=EVENT_REPAIR_ATTEMPT,
                strategy=strategy.name,
                outcome="miss" if value is None else "hit",
                backend=backend,
                call_id=call_id,
                preview=text_preview,
            ),
            observer,
        )
        if value is None:
            continue

        emit(
            RepairEvent(
                event_type=EVENT_REPAIR_RECOVERED,
                strategy=strategy.name,
                outcome="recovered",
                backend=backend,
                call_id=call_id,
                preview=text_preview,
            ),
            observer,
            # A direct parse is not a repair.
            level=logging.DEBUG if strategy.name == "direct" else logging.INFO,
        )
        return Recovered(value=value, strategy=strategy.name)

    emit(
        RepairEvent(
            event_type=EVENT_REPAIR_FAILED,
            outcome="failed",
            backend=backend,
            call_id=call_id,
            preview=text_preview,
        ),
        observer,
        level=logging.WARNING,
    )
    return Unrecoverable(raw=text, attempted=tuple(attempted))


def repair_json(text: str) -> str | None:
    """Convenience wrapper: the recovered string, or ``None``."""
    result = normalize_arguments(text)
    if isinstance(result, Recovered):
        return result.value
    return None
