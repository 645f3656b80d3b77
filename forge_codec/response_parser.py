"""LLM response cleanup: fence stripping and best-effort JSON extraction.

Generated file bodies sometimes arrive wrapped in a markdown fence, and
structured (JSON) answers sometimes arrive with prose around them.  These
helpers undo both.

All functions are pure string processors: no I/O, no side effects.
"""

from __future__ import annotations

import json
import re

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Match a fence line: ``` optionally followed by a lang tag
_FENCE_OPEN_RE = re.compile(r"^```[a-zA-Z0-9_+.-]*\s*$")
_FENCE_CLOSE_RE = re.compile(r"^```\s*$")

_CODEBLOCK_RE = re.compile(r"^```(?:json)?\s*\n?(.*?)\n?\s*```$", re.DOTALL)


# ---------------------------------------------------------------------------
# Fences
# ---------------------------------------------------------------------------


def strip_outer_fence(text: str) -> str:
    """Remove a markdown fence that wraps the *whole* of *text*.

    Only strips when the first non-blank line opens a fence and the last
    non-blank line closes one.  Fences in the middle of a file (a README
    with code samples, say) are left alone.
    """
    if not text:
        return text
    lines = text.split("\n")
    first = next((i for i, ln in enumerate(lines) if ln.strip()), None)
    if first is None:
        return text
    last = max(i for i, ln in enumerate(lines) if ln.strip())
    if last == first:
        return text
    if not _FENCE_OPEN_RE.match(lines[first].strip()):
        return text
    if not _FENCE_CLOSE_RE.match(lines[last].strip()):
        return text
    return "\n".join(lines[first + 1 : last])


def ensure_trailing_newline(text: str) -> str:
    """Append a trailing newline if *text* doesn't already end with one.

    Returns empty string unchanged.
    """
    if not text:
        return text
    if text.endswith("\n"):
        return text
    return text + "\n"


# ---------------------------------------------------------------------------
# JSON extraction
# ---------------------------------------------------------------------------


def strip_codeblock(text: str) -> str:
    """Remove optional ```json ... ``` wrapper, surrounding prose, and whitespace.

    LLMs sometimes emit prose preamble before the JSON object.  After
    stripping markdown fences we fall back to extracting the outermost
    ``{…}`` (or ``[…]``) so a response like::

        Here is the review.
        {"files_to_fix": [...]}

    still parses correctly.
    """
    text = text.strip()
    m = _CODEBLOCK_RE.match(text)
    if m:
        return m.group(1).strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else text[3:]
    if text.endswith("```"):
        text = text[:-3]
    text = text.strip()

    if text.startswith("{") or text.startswith("["):
        return text

    extracted = extract_json_bracket(text)
    return extracted if extracted is not None else text


def extract_json_bracket(text: str) -> str | None:
    """Extract the first balanced JSON object/array using bracket counting.

    Handles trailing prose or a second JSON value after the closing
    bracket, and brackets inside string literals.  Tries whichever
    delimiter (``{`` or ``[``) appears first.
    """
    obj_start = text.find("{")
    arr_start = text.find("[")
    if obj_start == -1 and arr_start == -1:
        return None
    if obj_start != -1 and arr_start != -1:
        if arr_start <= obj_start:
            pairs = [("[", "]"), ("{", "}")]
        else:
            pairs = [("{", "}"), ("[", "]")]
    elif arr_start != -1:
        pairs = [("[", "]")]
    else:
        pairs = [("{", "}")]

    for open_ch, close_ch in pairs:
        start = text.find(open_ch)
        depth = 0
        in_string = False
        escape = False
        for i in range(start, len(text)):
            ch = text[i]
            if escape:
                escape = False
                continue
            if ch == "\\" and in_string:
                escape = True
                continue
            if ch == '"':
                in_string = not in_string
                continue
            if in_string:
                continue
            if ch == open_ch:
                depth += 1
            elif ch == close_ch:
                depth -= 1
                if depth == 0:
                    return text[start:i + 1]
    return None


def safe_json_parse(text: str) -> dict | list | None:
    """Best-effort JSON parse with multiple fallback strategies.

    1. Direct parse of stripped text.
    2. Strip codeblock wrapper then parse.
    3. Bracket-counting extraction then parse.

    Returns ``None`` when nothing parses.
    """
    text = text.strip()
    try:
        return json.loads(text)
    except ValueError:
        pass

    stripped = strip_codeblock(text)
    try:
        return json.loads(stripped)
    except ValueError:
        pass

    for candidate in (extract_json_bracket(text), extract_json_bracket(stripped)):
        if candidate:
            try:
                return json.loads(candidate)
            except ValueError:
                continue
    return None


__all__ = [
    "ensure_trailing_newline",
    "extract_json_bracket",
    "safe_json_parse",
    "strip_codeblock",
    "strip_outer_fence",
]
