"""Streaming file-output codec: heredoc block parser, diff patcher, response cleanup.

Public API
----------
Codec::

    SCOFFormat, StreamingState, SCOFParsingState

Contracts (Pydantic models)::

    FileOutput, FileFormat

Patching::

    apply_patch, parse_unified_diff, changed_line_count, PatchResult

Errors::

    CodecError, StreamParseError, DiffParseError, PatchConflict
"""

from forge_codec.contracts import FileFormat, FileOutput
from forge_codec.errors import (
    CodecError,
    DiffParseError,
    PatchConflict,
    StreamParseError,
)
from forge_codec.patcher import (
    PatchResult,
    apply_patch,
    changed_line_count,
    parse_unified_diff,
)
from forge_codec.scof import SCOFFormat, SCOFParsingState, StreamingState

__all__ = [
    "CodecError",
    "DiffParseError",
    "FileFormat",
    "FileOutput",
    "PatchConflict",
    "PatchResult",
    "SCOFFormat",
    "SCOFParsingState",
    "StreamParseError",
    "StreamingState",
    "apply_patch",
    "changed_line_count",
    "parse_unified_diff",
]
