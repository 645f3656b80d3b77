"""Codec contracts: Pydantic models shared by the streaming parser and its callers.

All models are frozen: a ``FileOutput`` is final once the codec emits its
close event, and consumers replace rather than mutate it.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

FileFormat = Literal["full_content", "unified_diff"]


class FileOutput(BaseModel):
    """One generated (or fixed) file as produced by the model."""

    model_config = ConfigDict(frozen=True)

    file_path: str = Field(..., min_length=1)
    file_contents: str = ""
    file_purpose: str = ""
    format: FileFormat = "full_content"


__all__ = [
    "FileFormat",
    "FileOutput",
]
