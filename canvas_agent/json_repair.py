"""
json_repair.py - Tolerant JSON reconstruction for streamed tool arguments

Tool arguments arrive as input_json_delta fragments and are only parsed once
the block stops. Models occasionally emit raw newlines inside strings, stray
quotes, single quotes, trailing commas, or simply get cut off by max_tokens.

parse() tries progressively more aggressive repairs and stops at the first
one that yields a JSON object or array:

    1. direct json.loads
    2. escape raw control characters inside string spans
    3. extract the largest {...} / [...] span, then 1-2 again
    4. normalize single quotes, drop trailing commas
    5. truncate to the last complete member and close open brackets

The string-aware passes are small state machines (in_string / escaped flags)
rather than regex chains. parse() never raises; None means "give up".
"""

import json
import re
from typing import Any

MAX_TRUNCATION_ATTEMPTS = 20

_ESCAPES = {
    "\n": "\\n",
    "\r": "\\r",
    "\t": "\\t",
    "\b": "\\b",
    "\f": "\\f",
}

_CLOSERS = {"{": "}", "[": "]"}

_OBJECT_SPAN = re.compile(r"\{.*\}", re.DOTALL)
_ARRAY_SPAN = re.compile(r"\[.*\]", re.DOTALL)


def parse(text: str | None) -> dict | list | None:
    if text is None or not text.strip():
        return None

    result = _try_escaped(text)
    if result is not None:
        return result

    for span in _candidate_spans(text):
        result = _try_escaped(span)
        if result is not None:
            return result

    source = _largest_span(text) or text
    normalized = normalize_quotes(escape_control_chars(source))
    result = _loads(normalized)
    if result is not None:
        return result

    return _truncate_and_close(normalized)


# =============================================================================
# Attempts
# =============================================================================

def _loads(text: str) -> dict | list | None:
    try:
        value: Any = json.loads(text)
    except (ValueError, RecursionError):
        return None
    return value if isinstance(value, (dict, list)) else None


def _try_escaped(text: str) -> dict | list | None:
    result = _loads(text)
    if result is not None:
        return result
    return _loads(escape_control_chars(text))


def _candidate_spans(text: str) -> list[str]:
    spans = []
    for pattern in (_OBJECT_SPAN, _ARRAY_SPAN):
        match = pattern.search(text)
        if match and match.group(0) != text:
            spans.append(match.group(0))
    spans.sort(key=len, reverse=True)
    return spans


def _largest_span(text: str) -> str | None:
    starts = [i for i in (text.find("{"), text.find("[")) if i >= 0]
    if not starts:
        return None
    return text[min(starts):]


# =============================================================================
# State-machine passes
# =============================================================================

def _closes_string(text: str, pos: int) -> bool:
    """Whether a quote ending just before pos plausibly terminates a string."""
    while pos < len(text) and text[pos] in " \t\r\n":
        pos += 1
    return pos >= len(text) or text[pos] in ",:}]"


def escape_control_chars(text: str) -> str:
    """
    Escape raw control characters and stray quotes inside string literals.

    A double quote inside a string only closes it when followed (after
    whitespace) by one of , : } ] or end of input; otherwise it is escaped.
    """
    out = []
    in_string = False
    escaped = False
    for i, ch in enumerate(text):
        if not in_string:
            out.append(ch)
            if ch == '"':
                in_string = True
            continue

        if escaped:
            out.append(ch)
            escaped = False
        elif ch == "\\":
            out.append(ch)
            escaped = True
        elif ch == '"':
            if _closes_string(text, i + 1):
                out.append(ch)
                in_string = False
            else:
                out.append('\\"')
        elif ch in _ESCAPES:
            out.append(_ESCAPES[ch])
        elif ord(ch) < 0x20:
            out.append(f"\\u{ord(ch):04x}")
        else:
            out.append(ch)
    return "".join(out)


def normalize_quotes(text: str) -> str:
    """Single-quoted strings become double-quoted; trailing commas are dropped."""
    out = []
    quote = None  # active string delimiter
    escaped = False
    i = 0
    while i < len(text):
        ch = text[i]
        if quote is None:
            if ch == '"':
                quote = '"'
                out.append(ch)
            elif ch == "'":
                quote = "'"
                out.append('"')
            elif ch == "," and _only_closer_follows(text, i + 1):
                pass
            else:
                out.append(ch)
        elif escaped:
            if quote == "'" and ch == "'":
                out[-1] = "'"
            else:
                out.append(ch)
            escaped = False
        elif ch == "\\":
            out.append(ch)
            escaped = True
        elif ch == quote:
            out.append('"')
            quote = None
        elif ch == '"':
            out.append('\\"')
        else:
            out.append(ch)
        i += 1
    return "".join(out)


def _only_closer_follows(text: str, pos: int) -> bool:
    while pos < len(text) and text[pos] in " \t\r\n":
        pos += 1
    return pos < len(text) and text[pos] in "}]"


def _truncate_and_close(text: str) -> dict | list | None:
    """
    Cut at the last point where a member was complete and close what is open.

    Cut points are commas between members and closing brackets, each with a
    snapshot of the bracket stack at that point. When the text stops outside
    a string with brackets still open, its end is a cut point too, which
    keeps a final member that was complete but never followed by a comma.
    Later cuts keep more data, so they are tried first.
    """
    start = min((i for i in (text.find("{"), text.find("[")) if i >= 0), default=-1)
    if start < 0:
        return None

    stack: list[str] = []
    cuts: list[tuple[int, tuple[str, ...]]] = []
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
            stack.append(ch)
        elif ch in "}]":
            if not stack:
                break
            stack.pop()
            cuts.append((i + 1, tuple(stack)))
            if not stack:
                break
        elif ch == "," and stack:
            cuts.append((i, tuple(stack)))

    if stack and not in_string:
        cuts.append((len(text), tuple(stack)))

    for end, open_stack in reversed(cuts[-MAX_TRUNCATION_ATTEMPTS:]):
        candidate = text[start:end].rstrip().rstrip(",")
        candidate += "".join(_CLOSERS[b] for b in reversed(open_stack))
        result = _loads(candidate)
        if result is not None:
            return result
    return None
