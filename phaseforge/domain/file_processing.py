"""Merge model-written file blocks against the existing codebase."""

from __future__ import annotations

import logging

from forge_codec import SCOFFormat
from forge_codec.contracts import FileOutput
from forge_codec.errors import CodecError
from forge_codec.patcher import apply_patch
from forge_codec.response_parser import strip_outer_fence
from phaseforge.schemas import PhaseConcept

logger = logging.getLogger(__name__)


def find_file_purpose(
    path: str,
    phase: PhaseConcept | None,
    existing: dict[str, FileOutput],
    declared: str = "",
) -> str:
    """Resolve a file's purpose: phase plan first, then the known file, then the block header."""
    if phase is not None:
        for planned in phase.files:
            if planned.path == path and planned.purpose:
                return planned.purpose
    known = existing.get(path)
    if known is not None and known.file_purpose:
        return known.file_purpose
    return declared


def process_generated_file_contents(
    generated: FileOutput,
    original: FileOutput | None,
    *,
    purpose: str = "",
    strict: bool = False,
) -> FileOutput:
    """Return the final ``full_content`` version of *generated*.

    ``full_content`` blocks lose a wrapping code fence.  ``unified_diff``
    blocks are patched onto *original*; when the diff cannot be applied the
    original is kept unchanged and the failure is logged, unless *strict*
    is set, in which case the ``CodecError`` propagates.
    """
    file_purpose = purpose or generated.file_purpose or (original.file_purpose if original else "")

    if generated.format == "full_content":
        return FileOutput(
            file_path=generated.file_path,
            file_contents=strip_outer_fence(generated.file_contents),
            file_purpose=file_purpose,
            format="full_content",
        )

    base = original.file_contents if original is not None else ""
    try:
        result = apply_patch(base, strip_outer_fence(generated.file_contents), path=generated.file_path)
    except CodecError as exc:
        if strict:
            raise
        logger.error(
            "Diff for %s could not be applied, keeping original: %s",
            generated.file_path, exc,
        )
        return FileOutput(
            file_path=generated.file_path,
            file_contents=base,
            file_purpose=file_purpose,
            format="full_content",
        )
    return FileOutput(
        file_path=generated.file_path,
        file_contents=result.post_content,
        file_purpose=file_purpose,
        format="full_content",
    )


def serialize_files(files: list[FileOutput]) -> str:
    """Render files the way the model is asked to write them."""
    return SCOFFormat().serialize(files)


def line_count(contents: str) -> int:
    if not contents:
        return 0
    return len(contents.rstrip("\n").split("\n"))
