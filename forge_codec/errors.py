"""Codec error hierarchy.

Every error carries typed fields (not just a message string),
supports ``to_dict()`` for serialisation into event payloads,
and has a readable ``__str__`` for logging.
"""

from __future__ import annotations


class CodecError(Exception):
    """Base error for all streaming-codec and patch failures."""

    def __init__(self, message: str, *, detail: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    def to_dict(self) -> dict:
        return {"error": type(self).__name__, "message": self.message, **self.detail}

    def __str__(self) -> str:
        return self.message


class StreamParseError(CodecError):
    """The streamed response violated the file-block grammar.

    Raised once, at finalisation, carrying every problem recorded while
    the stream was being consumed.
    """

    def __init__(self, problems: list[str]) -> None:
        self.problems = list(problems)
        summary = "; ".join(self.problems[:3])
        if len(self.problems) > 3:
            summary += f" (+{len(self.problems) - 3} more)"
        super().__init__(
            f"Malformed file stream: {summary}",
            detail={"problems": self.problems},
        )


class DiffParseError(CodecError):
    """Failed to parse a unified diff."""

    def __init__(self, raw_output: str, parser_name: str) -> None:
        self.raw_output = raw_output
        self.parser_name = parser_name
        super().__init__(
            f"Parser '{parser_name}' failed to parse output ({len(raw_output)} chars)",
            detail={"parser_name": parser_name, "raw_output_length": len(raw_output)},
        )


class PatchConflict(CodecError):
    """A diff hunk does not match the target file content."""

    def __init__(
        self, file_path: str, hunk_index: int, expected: str, actual: str
    ) -> None:
        self.file_path = file_path
        self.hunk_index = hunk_index
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Patch conflict in '{file_path}' at hunk {hunk_index}",
            detail={
                "file_path": file_path,
                "hunk_index": hunk_index,
                "expected": expected,
                "actual": actual,
            },
        )
