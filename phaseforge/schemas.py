"""Pydantic request/response models for model-facing operations.

Models whose instances the model produces (``PhaseConcept``,
``CodeReviewOutput``, ``ScreenshotAnalysisResult`` ...) are validated by
the inference layer; the rest are inputs assembled by the host.
"""

from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from forge_codec.contracts import FileOutput


# ---------------------------------------------------------------------------
# Phases
# ---------------------------------------------------------------------------


class PhaseFile(BaseModel):
    """A file the phase plan intends to touch."""

    model_config = ConfigDict(frozen=True)

    path: str = Field(..., min_length=1)
    purpose: str = ""
    change_type: Literal["create", "edit", "delete"] = "create"


class PhaseConcept(BaseModel):
    """One deployable milestone, as planned by PhaseGeneration."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)
    description: str = ""
    files: list[PhaseFile] = Field(default_factory=list)
    install_commands: list[str] = Field(default_factory=list)
    last_phase: bool = False


# ---------------------------------------------------------------------------
# Code review
# ---------------------------------------------------------------------------


class CodeReviewFinding(BaseModel):
    """Everything needed to fix one file without looking at any other file."""

    model_config = ConfigDict(frozen=True)

    file: str = Field(..., min_length=1)
    issues: list[str] = Field(default_factory=list)
    priority: Literal["Critical", "High", "Medium"] = "High"
    fix_scope: str = ""
    context: str = ""
    validation: str = ""
    coordination_required: bool = False
    coordinates_with: list[str] = Field(default_factory=list)


class CodeReviewOutput(BaseModel):
    model_config = ConfigDict(frozen=True)

    files_to_fix: list[CodeReviewFinding] = Field(default_factory=list)
    stale_errors: list[str] = Field(default_factory=list)
    commands: list[str] = Field(default_factory=list)

    def parallel_ready(self) -> list[CodeReviewFinding]:
        """Findings that can be fixed concurrently and independently."""
        return [f for f in self.files_to_fix if not f.coordination_required]

    def coordination_required(self) -> list[CodeReviewFinding]:
        return [f for f in self.files_to_fix if f.coordination_required]


# ---------------------------------------------------------------------------
# Fix outcomes
# ---------------------------------------------------------------------------


class FileFixed(BaseModel):
    """A fixer produced a complete replacement for the file."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["fixed"] = "fixed"
    file: FileOutput
    tier: int = Field(default=2, ge=1, le=2)


class FixDeclined(BaseModel):
    """The fix was not surgical; the file is left untouched."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["declined"] = "declined"
    file_path: str
    explanation: str = ""
    tier: int = 3


FixOutcome = Annotated[Union[FileFixed, FixDeclined], Field(discriminator="kind")]


# ---------------------------------------------------------------------------
# Screenshots
# ---------------------------------------------------------------------------


class Viewport(BaseModel):
    model_config = ConfigDict(frozen=True)

    width: int = 1280
    height: int = 800


class ScreenshotData(BaseModel):
    model_config = ConfigDict(frozen=True)

    url: str = ""
    screenshot: str = ""  # data URL or bare base64 PNG
    viewport: Viewport = Field(default_factory=Viewport)


class UICompliance(BaseModel):
    model_config = ConfigDict(frozen=True)

    matches_blueprint: bool = True
    compliance_score: int = Field(default=10, ge=1, le=10)
    deviations: list[str] = Field(default_factory=list)


class ScreenshotAnalysisResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    has_issues: bool = False
    critical_issues: list[str] = Field(default_factory=list)
    high_priority_issues: list[str] = Field(default_factory=list)
    medium_priority_issues: list[str] = Field(default_factory=list)
    ui_compliance: UICompliance = Field(default_factory=UICompliance)
    suggestions: list[str] = Field(default_factory=list)
    broken_image_urls: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------


class ImageAttachment(BaseModel):
    model_config = ConfigDict(frozen=True)

    mime_type: str = "image/png"
    base64_data: str
    filename: str = ""

    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.base64_data}"


class UserContext(BaseModel):
    """Pending user input that steers the next phase."""

    model_config = ConfigDict(frozen=True)

    suggestions: list[str] = Field(default_factory=list)
    images: list[ImageAttachment] = Field(default_factory=list)


class ConversationMessage(BaseModel):
    """One entry of the conversation history.

    ``content`` is plain text, a list of Anthropic-style content parts
    (text/image/tool blocks), or ``None`` for tool-only assistant turns.
    ``preserved_count`` is set only on compaction summaries: the number of
    verbatim messages that followed the summary when it was made.
    """

    model_config = ConfigDict(frozen=True)

    role: Literal["system", "user", "assistant"]
    content: str | list[dict] | None = None
    tool_calls: list[dict] | None = None
    conversation_id: str = ""
    preserved_count: int | None = None


class ConversationalResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_response: str
    conversation_id: str = ""


__all__ = [
    "CodeReviewFinding",
    "CodeReviewOutput",
    "ConversationMessage",
    "ConversationalResponse",
    "FileFixed",
    "FixDeclined",
    "FixOutcome",
    "ImageAttachment",
    "PhaseConcept",
    "PhaseFile",
    "ScreenshotAnalysisResult",
    "ScreenshotData",
    "UICompliance",
    "UserContext",
    "Viewport",
]
