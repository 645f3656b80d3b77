"""Codebase snapshot shared read-only by the operations of one cycle."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from forge_codec.contracts import FileOutput
from phaseforge.schemas import PhaseConcept


class GenerationContext(BaseModel):
    """Read-mostly project state.

    Frozen: the owning loop replaces the snapshot with :meth:`with_files`
    once every fix task of a phase has resolved.
    """

    model_config = ConfigDict(frozen=True)

    query: str = ""
    blueprint: dict = Field(default_factory=dict)
    template_details: dict = Field(default_factory=dict)
    dependencies: dict[str, str] = Field(default_factory=dict)
    all_files: list[FileOutput] = Field(default_factory=list)
    completed_phases: list[PhaseConcept] = Field(default_factory=list)

    def file_map(self) -> dict[str, FileOutput]:
        return {f.file_path: f for f in self.all_files}

    def get_file(self, path: str) -> FileOutput | None:
        for f in self.all_files:
            if f.file_path == path:
                return f
        return None

    def with_files(
        self,
        files: list[FileOutput],
        *,
        deleted: list[str] | None = None,
        completed_phase: PhaseConcept | None = None,
    ) -> "GenerationContext":
        """Return a new snapshot with *files* upserted (by path) and *deleted* removed."""
        merged = self.file_map()
        for path in deleted or []:
            merged.pop(path, None)
        for f in files:
            merged[f.file_path] = f
        update: dict = {"all_files": list(merged.values())}
        if completed_phase is not None:
            update["completed_phases"] = [*self.completed_phases, completed_phase]
        return self.model_copy(update=update)
