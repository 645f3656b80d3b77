"""SCOF: shell-heredoc streaming file-output format.

The model writes files as heredoc blocks::

    # Creating new file: src/App.tsx
    # File Purpose: Root application component
    cat > src/App.tsx << 'EOF'
    ...full file contents...
    EOF

    # Applying diff to file: src/main.tsx
    cat << 'EOF' | patch src/main.tsx
    --- a/src/main.tsx
    +++ b/src/main.tsx
    @@ -1,2 +1,3 @@
    ...
    EOF

Install commands (``bun add zustand``) may appear between blocks.

Parsing is line-oriented.  Whatever follows the last newline of a chunk
is carried in ``SCOFParsingState.pending_line`` until the next chunk, so
the events produced are identical however the response is split.  Grammar
violations are recorded as they are met and raised together by
:meth:`SCOFFormat.finalize`; ``parse_streaming_chunks`` never raises on
malformed input.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Callable

from forge_codec.contracts import FileFormat, FileOutput
from forge_codec.errors import StreamParseError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Grammar
# ---------------------------------------------------------------------------

_FULL_OPEN_RE = re.compile(
    r"""^cat\s*>\s*(?P<path>[^\s<'"]+)\s*<<-?\s*(?P<q>['"]?)(?P<delim>\w+)(?P=q)\s*$""",
)
_DIFF_OPEN_RE = re.compile(
    r"""^cat\s*<<-?\s*(?P<q>['"]?)(?P<delim>\w+)(?P=q)\s*\|\s*patch\s+(?:-p\d+\s+)?(?P<path>[^\s'"]+)\s*$""",
)
_PURPOSE_RE = re.compile(r"^#\s*File Purpose:\s*(?P<purpose>.*?)\s*$", re.IGNORECASE)
_INSTALL_RE = re.compile(
    r"^(?:bun|npm|pnpm|yarn)\s+(?:add|install|i|remove|uninstall|rm)\b.*$",
)
_FENCE_RE = re.compile(r"^\s*```")

FileOpenCallback = Callable[[str], None]
FileChunkCallback = Callable[[str, str, FileFormat], None]
FileCloseCallback = Callable[[str], None]


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------


@dataclass
class OpenFileBlock:
    """The heredoc block currently being read."""

    path: str
    format: FileFormat
    delimiter: str
    purpose: str = ""
    lines: list[str] = field(default_factory=list)
    in_fence: bool = False
    discard: bool = False  # duplicate block: consumed but never emitted


@dataclass
class SCOFParsingState:
    pending_line: str = ""
    pending_purpose: str = ""
    current_file: OpenFileBlock | None = None
    extracted_install_commands: list[str] = field(default_factory=list)
    seen_paths: set[str] = field(default_factory=set)
    problems: list[str] = field(default_factory=list)
    finalized: bool = False


@dataclass
class StreamingState:
    """Per-stream parser state.  One stream, one state, arrival order only."""

    accumulator: str = ""
    completed_files: dict[str, FileOutput] = field(default_factory=dict)
    parsing_state: SCOFParsingState = field(default_factory=SCOFParsingState)


# ---------------------------------------------------------------------------
# Codec
# ---------------------------------------------------------------------------


def _noop(*_args) -> None:
    return None


class SCOFFormat:
    """Encoder/decoder for the heredoc file-block format."""

    def format_instructions(self) -> str:
        """Return the output-format section appended to generation prompts."""
        return _FORMAT_INSTRUCTIONS

    # -- streaming ---------------------------------------------------------

    def parse_streaming_chunks(
        self,
        chunk: str,
        state: StreamingState,
        on_file_open: FileOpenCallback | None = None,
        on_file_chunk: FileChunkCallback | None = None,
        on_file_close: FileCloseCallback | None = None,
    ) -> StreamingState:
        """Consume one fragment of the streamed response.

        Callbacks fire synchronously, in stream order.  When ``on_file_close``
        runs, ``state.completed_files[path]`` already holds the final file.
        """
        ps = state.parsing_state
        if ps.finalized:
            raise RuntimeError("parse_streaming_chunks called after finalize")
        if not chunk:
            return state

        state.accumulator += chunk
        buffered = ps.pending_line + chunk
        *complete, ps.pending_line = buffered.split("\n")
        for raw_line in complete:
            self._consume_line(
                raw_line, state,
                on_file_open or _noop, on_file_chunk or _noop, on_file_close or _noop,
            )
        return state

    def finalize(
        self,
        state: StreamingState,
        on_file_open: FileOpenCallback | None = None,
        on_file_chunk: FileChunkCallback | None = None,
        on_file_close: FileCloseCallback | None = None,
    ) -> StreamingState:
        """Flush the trailing partial line and validate the stream.

        Raises
        ------
        StreamParseError
            When any block was duplicated, malformed, or left unterminated.
        """
        ps = state.parsing_state
        if ps.finalized:
            return state
        if ps.pending_line:
            line, ps.pending_line = ps.pending_line, ""
            self._consume_line(
                line, state,
                on_file_open or _noop, on_file_chunk or _noop, on_file_close or _noop,
            )
        if ps.current_file is not None:
            ps.problems.append(f"unterminated file block for '{ps.current_file.path}'")
            ps.current_file = None
        ps.finalized = True
        if ps.problems:
            raise StreamParseError(ps.problems)
        return state

    def _consume_line(
        self,
        raw_line: str,
        state: StreamingState,
        on_file_open: FileOpenCallback,
        on_file_chunk: FileChunkCallback,
        on_file_close: FileCloseCallback,
    ) -> None:
        ps = state.parsing_state
        line = raw_line.rstrip("\r")
        block = ps.current_file

        if block is not None:
            if block.format == "full_content":
                closes = line.strip() == block.delimiter and not block.in_fence
            else:
                # Diff hunks are partial: fences may be unbalanced and
                # context lines carry a leading space.
                closes = line.rstrip() == block.delimiter
            if closes:
                ps.current_file = None
                if block.discard:
                    return
                contents = "\n".join(block.lines)
                state.completed_files[block.path] = FileOutput(
                    file_path=block.path,
                    file_contents=contents,
                    file_purpose=block.purpose,
                    format=block.format,
                )
                on_file_close(block.path)
                return
            if block.format == "full_content" and _FENCE_RE.match(line):
                block.in_fence = not block.in_fence
            if block.discard:
                return
            delta = line if not block.lines else "\n" + line
            block.lines.append(line)
            on_file_chunk(block.path, delta, block.format)
            return

        stripped = line.strip()
        if not stripped:
            return

        m = _FULL_OPEN_RE.match(stripped)
        fmt: FileFormat = "full_content"
        if m is None:
            m = _DIFF_OPEN_RE.match(stripped)
            fmt = "unified_diff"
        if m is not None:
            self._open_block(m.group("path"), fmt, m.group("delim"), state, on_file_open)
            return

        pm = _PURPOSE_RE.match(stripped)
        if pm:
            ps.pending_purpose = pm.group("purpose")
            return

        if _INSTALL_RE.match(stripped):
            command = " ".join(stripped.split())
            if command not in ps.extracted_install_commands:
                ps.extracted_install_commands.append(command)

    def _open_block(
        self,
        path: str,
        fmt: FileFormat,
        delimiter: str,
        state: StreamingState,
        on_file_open: FileOpenCallback,
    ) -> None:
        ps = state.parsing_state
        path = _normalise_path(path)
        purpose, ps.pending_purpose = ps.pending_purpose, ""
        if path in ps.seen_paths:
            ps.problems.append(f"duplicate file block for '{path}'")
            logger.warning("SCOF: duplicate block for %s, ignoring its contents", path)
            ps.current_file = OpenFileBlock(
                path=path, format=fmt, delimiter=delimiter, discard=True,
            )
            return
        ps.seen_paths.add(path)
        ps.current_file = OpenFileBlock(
            path=path, format=fmt, delimiter=delimiter, purpose=purpose,
        )
        on_file_open(path)

    # -- whole-response helpers ---------------------------------------------

    def deserialize(self, text: str) -> list[FileOutput]:
        """Parse a complete (non-streamed) response into its files.

        Raises ``StreamParseError`` under the same rules as streaming.
        """
        state = StreamingState()
        self.parse_streaming_chunks(text, state)
        self.finalize(state)
        return list(state.completed_files.values())

    def serialize(self, files: list[FileOutput]) -> str:
        """Render *files* as full-content blocks (used to show code to the model)."""
        parts: list[str] = []
        for f in files:
            header = f"# Creating new file: {f.file_path}\n"
            if f.file_purpose:
                header += f"# File Purpose: {f.file_purpose}\n"
            parts.append(
                f"{header}cat > {f.file_path} << 'EOF'\n{f.file_contents}\nEOF\n"
            )
        return "\n".join(parts)


def _normalise_path(path: str) -> str:
    path = path.strip().strip("'\"")
    while path.startswith("./"):
        path = path[2:]
    return path


_FORMAT_INSTRUCTIONS = """\
<OUTPUT FORMAT>
Write every file as a shell heredoc block. Never wrap the blocks in markdown fences.

For a new file, or when replacing a file entirely:
```
# Creating new file: <path>
# File Purpose: <one line describing what the file does>
cat > <path> << 'EOF'
<complete file contents>
EOF
```

For a small edit to an existing file, send a unified diff:
```
# Applying diff to file: <path>
# File Purpose: <one line describing what the file does>
cat << 'EOF' | patch <path>
--- a/<path>
+++ b/<path>
@@ -<start>,<count> +<start>,<count> @@
 context line
-removed line
+added line
EOF
```

Rules:
- Each file appears at most once per response.
- Every block ends with a line containing only EOF.
- Paths are relative to the project root.
- Put dependency installs on their own line outside any block, e.g. `bun add zustand`.
- Diff context lines must match the current file exactly; if unsure, send the full file.
</OUTPUT FORMAT>"""


__all__ = [
    "OpenFileBlock",
    "SCOFFormat",
    "SCOFParsingState",
    "StreamingState",
]
