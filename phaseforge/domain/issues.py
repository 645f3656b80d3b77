"""Issue snapshot consumed by every operation.

An ``IssueReport`` is rebuilt by the host each iteration from the
sandbox's runtime error feed and its lint/typecheck run.  It is frozen:
operations read it, never amend it.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class RuntimeErrorEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    stack: str | None = None
    timestamp: str = ""
    file_path: str | None = None
    line: int | None = None


class CodeIssue(BaseModel):
    """A single lint or typecheck finding."""

    model_config = ConfigDict(frozen=True)

    message: str
    file_path: str
    line: int | None = None
    column: int | None = None
    severity: Literal["error", "warning", "info"] = "error"
    rule_id: str | None = None
    source: Literal["lint", "typecheck"] = "lint"


class StaticAnalysisSection(BaseModel):
    model_config = ConfigDict(frozen=True)

    issues: list[CodeIssue] = Field(default_factory=list)


class StaticAnalysis(BaseModel):
    model_config = ConfigDict(frozen=True)

    lint: StaticAnalysisSection = Field(default_factory=StaticAnalysisSection)
    typecheck: StaticAnalysisSection = Field(default_factory=StaticAnalysisSection)


class IssueReport(BaseModel):
    """Runtime errors plus static-analysis findings for one iteration."""

    model_config = ConfigDict(frozen=True)

    runtime_errors: list[RuntimeErrorEntry] = Field(default_factory=list)
    static_analysis: StaticAnalysis = Field(default_factory=StaticAnalysis)

    @classmethod
    def empty(cls) -> "IssueReport":
        return cls()

    def has_runtime_errors(self) -> bool:
        return bool(self.runtime_errors)

    def has_static_issues(self) -> bool:
        return bool(self.static_analysis.lint.issues or self.static_analysis.typecheck.issues)

    def has_issues(self) -> bool:
        return self.has_runtime_errors() or self.has_static_issues()

    def all_code_issues(self) -> list[CodeIssue]:
        return [*self.static_analysis.lint.issues, *self.static_analysis.typecheck.issues]

    def issues_for_file(self, file_path: str) -> list[str]:
        """Return human-readable issue lines that point at *file_path*."""
        out = [
            _format_code_issue(i) for i in self.all_code_issues() if i.file_path == file_path
        ]
        for err in self.runtime_errors:
            if err.file_path == file_path or (err.stack and file_path in err.stack):
                out.append(f"Runtime error: {err.message}")
        return out


# ---------------------------------------------------------------------------
# Prompt formatting
# ---------------------------------------------------------------------------

_RENDER_LOOP_MARKERS = ("infinite loop", "re-renders", "Maximum update depth")


def _format_code_issue(issue: CodeIssue) -> str:
    loc = issue.file_path
    if issue.line is not None:
        loc += f":{issue.line}"
        if issue.column is not None:
            loc += f":{issue.column}"
    rule = f" [{issue.rule_id}]" if issue.rule_id else ""
    return f"{loc} ({issue.severity}){rule}: {issue.message}"


def has_render_loop_errors(issues: IssueReport) -> bool:
    return any(
        marker in err.message for err in issues.runtime_errors for marker in _RENDER_LOOP_MARKERS
    )


def issues_prompt_formatter(issues: IssueReport) -> str:
    """Serialise *issues* into the ``<issues>`` section of a prompt."""
    parts: list[str] = []

    if issues.runtime_errors:
        lines = []
        for i, err in enumerate(issues.runtime_errors, 1):
            entry = f"{i}. {err.message}"
            if err.file_path:
                entry += f" (in {err.file_path}{f':{err.line}' if err.line else ''})"
            if err.stack:
                stack = "\n".join(err.stack.splitlines()[:8])
                entry += f"\n   Stack:\n   {stack}"
            lines.append(entry)
        parts.append("<runtime_errors>\n" + "\n".join(lines) + "\n</runtime_errors>")
    else:
        parts.append("<runtime_errors>None reported</runtime_errors>")

    for name, section in (
        ("lint_issues", issues.static_analysis.lint),
        ("typecheck_issues", issues.static_analysis.typecheck),
    ):
        if section.issues:
            body = "\n".join(f"- {_format_code_issue(i)}" for i in section.issues)
            parts.append(f"<{name}>\n{body}\n</{name}>")
        else:
            parts.append(f"<{name}>None</{name}>")

    return "\n\n".join(parts)
