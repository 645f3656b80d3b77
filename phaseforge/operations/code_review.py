"""CodeReview: turn the issue snapshot into independent per-file fix specs."""

from __future__ import annotations

import logging
import posixpath
import re
from collections import Counter

from pydantic import BaseModel, ConfigDict, Field

from phaseforge.domain.issues import IssueReport, issues_prompt_formatter
from phaseforge.operations.base import AgentOperation, OperationOptions
from phaseforge.prompts import (
    COMMON_PITFALLS,
    REACT_RENDER_LOOP_PREVENTION,
    project_context_messages,
    replace_template_variables,
    user_message,
    verify_prompt,
)
from phaseforge.schemas import CodeReviewFinding, CodeReviewOutput

logger = logging.getLogger(__name__)


class CodeReviewInputs(BaseModel):
    model_config = ConfigDict(frozen=True)

    issues: IssueReport = Field(default_factory=IssueReport)


SYSTEM_PROMPT = f"""\
You are a senior software engineer performing a systematic code review.

<REVIEW_METHODOLOGY>
PASS 1, CRASH PREVENTION: runtime errors that stop the app loading, import/export
failures, render loops, unguarded undefined access, TypeScript errors that block
the build.
PASS 2, LOGIC VALIDATION: for flagged files and core business logic, check that
requirements, state transitions, user flows and calculations are correct.
PASS 3, QUALITY SCAN: only issues that visibly break the UI. Ignore style.
</REVIEW_METHODOLOGY>

<STALE_ERROR_FILTER>
Reported errors may be stale. Before listing one, confirm it still matches the
current code. List errors that no longer apply in stale_errors instead.
</STALE_ERROR_FILTER>

<PARALLEL_FIX_CONTRACT>
Every entry of files_to_fix is handed to a different engineer who sees ONLY that
file. Each entry must therefore be self-contained:
- file: the single file to change.
- issues: what is wrong, quoted precisely.
- fix_scope: exactly what to change in this file.
- context: any fact about other files the fixer needs, stated inline.
- validation: how to tell the fix worked.
If a fix needs coordinated changes in several files, set coordination_required
and list the other files in coordinates_with.
Never list a file that does not exist in the codebase.
</PARALLEL_FIX_CONTRACT>

{COMMON_PITFALLS}

{REACT_RENDER_LOOP_PREVENTION}"""

USER_PROMPT = """\
Review the current codebase and the reported issues below.

<REPORTED_ISSUES>
{{issues}}
</REPORTED_ISSUES>

Put dependency install commands that are needed (e.g. "bun add zod") in commands.
Prioritise Critical > High > Medium."""


def _path_pattern(path: str, from_file: str, unique_basename: bool) -> re.Pattern:
    """Match *path* as *from_file* could refer to it in prose or an import.

    Covers the project path, ``@/`` aliases, the relative import specifier
    from *from_file*'s directory (extension optional) and, when no other
    project file shares it, the bare file name.
    """
    stem, _ = posixpath.splitext(path)
    aliases = [path]
    if path.startswith("src/"):
        aliases += [f"@/{path[4:]}", f"@/{stem[4:]}"]
    rel = posixpath.relpath(stem, posixpath.dirname(from_file) or ".")
    if not rel.startswith("../"):
        rel = f"./{rel}"
    aliases += [rel + path[len(stem):], rel]
    if unique_basename:
        aliases.append(posixpath.basename(path))
    body = "|".join(re.escape(a) for a in aliases)
    return re.compile(rf"(?<![\w./-])(?:{body})(?![\w./-])")


def _mentioned_paths(finding: CodeReviewFinding, known_paths: list[str]) -> list[str]:
    text = "\n".join([finding.fix_scope, finding.context, *finding.issues])
    basenames = Counter(posixpath.basename(p) for p in known_paths)
    return [
        p for p in known_paths
        if p != finding.file
        and _path_pattern(p, finding.file, basenames[posixpath.basename(p)] == 1).search(text)
    ]


def enforce_self_containment(review: CodeReviewOutput, known_paths: list[str]) -> CodeReviewOutput:
    """Drop findings for unknown files and flag cross-file ones.

    A finding for a file missing from the codebase is recorded in
    ``stale_errors``.  A finding whose text mentions another project file
    is marked ``coordination_required`` and so leaves ``parallel_ready()``.
    """
    known = set(known_paths)
    findings: list[CodeReviewFinding] = []
    stale = list(review.stale_errors)

    for finding in review.files_to_fix:
        if finding.file not in known:
            logger.info("Dropping review finding for unknown file %s", finding.file)
            stale.append(f"{finding.file}: file not in codebase ({'; '.join(finding.issues)[:200]})")
            continue
        others = _mentioned_paths(finding, known_paths)
        if others:
            merged = list(dict.fromkeys([*finding.coordinates_with, *others]))
            if not finding.coordination_required or merged != finding.coordinates_with:
                logger.info("Finding for %s references %s; needs coordination", finding.file, others)
            finding = finding.model_copy(update={
                "coordination_required": True,
                "coordinates_with": merged,
            })
        findings.append(finding)

    return review.model_copy(update={"files_to_fix": findings, "stale_errors": stale})


class CodeReview(AgentOperation[CodeReviewInputs, CodeReviewOutput]):
    async def execute(self, inputs: CodeReviewInputs, options: OperationOptions) -> CodeReviewOutput:
        issues = inputs.issues
        logger.info(
            "Reviewing code: %d runtime errors, %d static issues",
            len(issues.runtime_errors), len(issues.all_code_issues()),
        )
        prompt = verify_prompt(replace_template_variables(USER_PROMPT, {
            "issues": issues_prompt_formatter(issues) or "No issues reported.",
        }))
        messages = [
            *project_context_messages(SYSTEM_PROMPT, options.context),
            user_message(prompt),
        ]

        result = await options.inference(
            messages=messages,
            action="code_review",
            schema=CodeReviewOutput,
            reasoning_effort=None if issues.has_issues() else "low",
        )
        review = enforce_self_containment(
            result.object, [f.file_path for f in options.context.all_files],
        )
        logger.info(
            "Review: %d findings (%d parallel-ready), %d stale",
            len(review.files_to_fix), len(review.parallel_ready()), len(review.stale_errors),
        )
        return review


__all__ = ["CodeReview", "CodeReviewInputs", "enforce_self_containment"]
