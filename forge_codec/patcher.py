"""Patch engine: apply model-written unified diffs to file content.

``apply_patch()`` applies a unified diff string to file content with fuzzy
hunk matching (exact position, then ± ``fuzz`` lines, then the same scan
ignoring trailing whitespace) and raises :class:`PatchConflict` when a hunk
cannot be placed.

``changed_line_count()`` measures how far a rewrite strays from the
original; the surgical-fix policy uses it.

All operations work on strings (not files): the caller owns storage.
"""

from __future__ import annotations

import difflib
import re

from pydantic import BaseModel, ConfigDict, Field

from forge_codec.errors import DiffParseError, PatchConflict

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_FUZZ: int = 3  # max ± line offset for fuzzy matching

_HUNK_HEADER_RE = re.compile(
    r"^@@\s+-(\d+)(?:,(\d+))?\s+\+(\d+)(?:,(\d+))?\s+@@",
)


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class Hunk(BaseModel):
    """A single hunk parsed from a unified diff."""

    model_config = ConfigDict(frozen=True)

    old_start: int = Field(..., ge=0, description="1-based start line in old file (0 for empty file)")
    old_count: int = Field(..., ge=0)
    new_start: int = Field(..., ge=0)
    new_count: int = Field(..., ge=0)
    old_lines: list[str] = Field(default_factory=list, description="Old-side lines in source order")
    new_lines: list[str] = Field(default_factory=list, description="New-side lines in source order")
    additions: int = 0
    removals: int = 0


class PatchResult(BaseModel):
    """Result of applying a patch to content."""

    model_config = ConfigDict(frozen=True)

    path: str = ""
    hunks_applied: int = Field(default=0, ge=0)
    post_content: str = ""
    insertions: int = Field(default=0, ge=0)
    deletions: int = Field(default=0, ge=0)


# ---------------------------------------------------------------------------
# Diff parser
# ---------------------------------------------------------------------------


def parse_unified_diff(diff_text: str) -> list[Hunk]:
    """Parse a unified diff string into a list of ``Hunk`` objects.

    ``---``/``+++`` headers and ``diff --git``/``index`` preamble are
    skipped.  Returns an empty list for an empty diff.
    Raises ``DiffParseError`` on a malformed hunk header.
    """
    if not diff_text or not diff_text.strip():
        return []

    hunks: list[Hunk] = []
    lines = diff_text.split("\n")
    i = 0
    while i < len(lines) and not lines[i].startswith("@@"):
        i += 1

    while i < len(lines):
        header = lines[i]
        if not header.startswith("@@"):
            i += 1
            continue
        m = _HUNK_HEADER_RE.match(header)
        if not m:
            raise DiffParseError(diff_text, "unified_diff")

        old_start = int(m.group(1))
        old_count = int(m.group(2)) if m.group(2) is not None else 1
        new_start = int(m.group(3))
        new_count = int(m.group(4)) if m.group(4) is not None else 1
        i += 1

        old_seq: list[str] = []
        new_seq: list[str] = []
        additions = removals = 0
        while i < len(lines):
            ln = lines[i]
            if ln.startswith("@@") or ln.startswith("--- ") or ln.startswith("+++ "):
                break
            if ln.startswith("-"):
                old_seq.append(ln[1:])
                removals += 1
            elif ln.startswith("+"):
                new_seq.append(ln[1:])
                additions += 1
            elif ln.startswith(" ") or ln == "":
                content = ln[1:]
                old_seq.append(content)
                new_seq.append(content)
            elif ln.startswith("\\"):
                pass  # "\ No newline at end of file"
            else:
                break
            i += 1

        # A trailing blank line is the diff's own terminator, not context.
        while old_seq and new_seq and old_seq[-1] == "" and new_seq[-1] == "" and (
            len(old_seq) > old_count or len(new_seq) > new_count
        ):
            old_seq.pop()
            new_seq.pop()

        hunks.append(Hunk(
            old_start=old_start,
            old_count=old_count,
            new_start=new_start,
            new_count=new_count,
            old_lines=old_seq,
            new_lines=new_seq,
            additions=additions,
            removals=removals,
        ))

    return hunks


# ---------------------------------------------------------------------------
# Hunk matching
# ---------------------------------------------------------------------------


def _match_hunk(lines: list[str], hunk: Hunk, start: int, fuzz: int) -> int | None:
    """Find the 0-based line index where *hunk* matches in *lines*.

    Tries *start* first, then scans ±*fuzz* lines around it; repeats the
    scan comparing with trailing whitespace removed.  Returns ``None`` if
    no match is found.
    """
    pattern = hunk.old_lines
    if not pattern:
        return min(max(0, start), len(lines))

    def _matches_at(pos: int, loose: bool) -> bool:
        if pos < 0 or pos + len(pattern) > len(lines):
            return False
        for j, expected in enumerate(pattern):
            actual = lines[pos + j]
            if loose:
                if actual.rstrip() != expected.rstrip():
                    return False
            elif actual != expected:
                return False
        return True

    for loose in (False, True):
        if _matches_at(start, loose):
            return start
        for offset in range(1, fuzz + 1):
            if _matches_at(start - offset, loose):
                return start - offset
            if _matches_at(start + offset, loose):
                return start + offset
    return None


# ---------------------------------------------------------------------------
# Patch application
# ---------------------------------------------------------------------------


def apply_patch(
    content: str,
    diff_text: str,
    *,
    path: str = "",
    fuzz: int = DEFAULT_FUZZ,
) -> PatchResult:
    """Apply a unified diff to *content* and return a ``PatchResult``.

    Parameters
    ----------
    content:
        The original file content as a string.
    diff_text:
        A unified diff string to apply.
    path:
        File path for context in error messages and result.
    fuzz:
        Maximum line offset for fuzzy hunk matching.

    Raises
    ------
    DiffParseError
        When the diff itself is malformed.
    PatchConflict
        When a hunk cannot be matched at or near its expected position.
    """
    hunks = parse_unified_diff(diff_text)
    if not hunks:
        return PatchResult(path=path, post_content=content)

    lines = content.split("\n") if content else []
    offset = 0
    insertions = deletions = 0

    for idx, hunk in enumerate(hunks):
        expected_pos = max(0, hunk.old_start - 1) + offset
        match_pos = _match_hunk(lines, hunk, expected_pos, fuzz)
        if match_pos is None:
            actual = lines[expected_pos:expected_pos + len(hunk.old_lines)]
            raise PatchConflict(
                file_path=path,
                hunk_index=idx,
                expected="\n".join(hunk.old_lines),
                actual="\n".join(actual),
            )
        lines[match_pos:match_pos + len(hunk.old_lines)] = hunk.new_lines
        offset += len(hunk.new_lines) - len(hunk.old_lines)
        insertions += hunk.additions
        deletions += hunk.removals

    return PatchResult(
        path=path,
        hunks_applied=len(hunks),
        post_content="\n".join(lines),
        insertions=insertions,
        deletions=deletions,
    )


def changed_line_count(old_content: str, new_content: str) -> int:
    """Return the number of lines added plus removed between two versions."""
    count = 0
    for line in difflib.unified_diff(
        old_content.splitlines(), new_content.splitlines(), lineterm="", n=0,
    ):
        if line.startswith(("---", "+++", "@@")):
            continue
        if line.startswith(("+", "-")):
            count += 1
    return count


__all__ = [
    "DEFAULT_FUZZ",
    "Hunk",
    "PatchResult",
    "apply_patch",
    "changed_line_count",
    "parse_unified_diff",
]
