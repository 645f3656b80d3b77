"""Fix fan-out and the reference phase cycle.

``regenerate_files`` runs one FileRegeneration per parallel-ready review
finding concurrently and reports each path independently.
``run_phase_cycle`` wires the operations together the way a host agent
drives them: plan, implement, join realtime fixes, apply, then optionally
review and regenerate.  The context snapshot is replaced only after every
task of a step has resolved.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable

from forge_codec.contracts import FileOutput
from phaseforge.domain.context import GenerationContext
from phaseforge.domain.issues import IssueReport
from phaseforge.operations.base import OperationOptions
from phaseforge.operations.code_review import CodeReview, CodeReviewInputs
from phaseforge.operations.file_regeneration import FileRegeneration, finding_issues
from phaseforge.operations.phase_generation import PhaseGeneration, PhaseGenerationInputs
from phaseforge.operations.phase_implementation import (
    FixJoinResult,
    PhaseImplementation,
    PhaseImplementationInputs,
    join_file_fixes,
)
from phaseforge.operations.realtime_fixer import FixRequest, RealtimeCodeFixer
from phaseforge.schemas import CodeReviewOutput, FileFixed, PhaseConcept, UserContext

logger = logging.getLogger(__name__)


@dataclass
class RegenerationReport:
    """Outcome of regenerating the files named by a review, keyed by path."""

    fixed: dict[str, FileOutput] = field(default_factory=dict)
    declined: dict[str, str] = field(default_factory=dict)
    failed: dict[str, str] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)


@dataclass
class PhaseCycleResult:
    phase: PhaseConcept
    context: GenerationContext
    commands: list[str] = field(default_factory=list)
    fix_report: FixJoinResult = field(default_factory=FixJoinResult)
    review: CodeReviewOutput | None = None
    regeneration: RegenerationReport | None = None


async def regenerate_files(
    review: CodeReviewOutput,
    options: OperationOptions,
    *,
    regenerator: FileRegeneration | None = None,
) -> RegenerationReport:
    """Regenerate every parallel-ready finding concurrently.

    Findings that need coordination, or name a file missing from the
    context, are skipped.  One failing regeneration never affects another.
    """
    regenerator = regenerator or FileRegeneration()
    report = RegenerationReport()
    report.skipped.extend(f.file for f in review.coordination_required())

    # One regeneration per path: findings for the same file share a request.
    issues_by_path: dict[str, list[str]] = {}
    for finding in review.parallel_ready():
        issues_by_path.setdefault(finding.file, []).extend(finding_issues(finding))

    requests: list[FixRequest] = []
    for path, issues in issues_by_path.items():
        file = options.context.get_file(path)
        if file is None:
            report.skipped.append(path)
            continue
        requests.append(FixRequest(file=file, issues=issues))

    if not requests:
        return report

    logger.info("Regenerating %d files in parallel", len(requests))
    outcomes = await asyncio.gather(
        *(regenerator.execute(r, options) for r in requests),
        return_exceptions=True,
    )
    for request, outcome in zip(requests, outcomes):
        path = request.file.file_path
        if isinstance(outcome, BaseException):
            logger.error("Regeneration of %s failed: %s", path, outcome)
            report.failed[path] = f"{type(outcome).__name__}: {outcome}"
        elif isinstance(outcome, FileFixed):
            report.fixed[path] = outcome.file
        else:
            report.declined[path] = outcome.explanation

    logger.info(
        "Regeneration: %d fixed, %d declined, %d failed, %d skipped",
        len(report.fixed), len(report.declined), len(report.failed), len(report.skipped),
    )
    return report


def apply_file_outputs(
    context: GenerationContext,
    files: list[FileOutput],
    *,
    deleted: list[str] | None = None,
    completed_phase: PhaseConcept | None = None,
) -> GenerationContext:
    """Return the next context snapshot with *files* applied."""
    logger.info("Applying %d files (%d deleted)", len(files), len(deleted or []))
    return context.with_files(files, deleted=deleted, completed_phase=completed_phase)


async def run_phase_cycle(
    options: OperationOptions,
    *,
    issues: IssueReport | None = None,
    user_context: UserContext | None = None,
    is_first_phase: bool = False,
    review: bool = False,
    fix_timeout: float | None = None,
    fixer_factory: Callable[[], RealtimeCodeFixer] = RealtimeCodeFixer,
) -> PhaseCycleResult:
    """Plan and implement one phase, then optionally review and regenerate."""
    issues = issues or IssueReport()

    phase = await PhaseGeneration().execute(
        PhaseGenerationInputs(
            issues=issues,
            user_context=user_context,
            is_user_suggested_phase=bool(user_context and user_context.suggestions),
        ),
        options,
    )

    impl = await PhaseImplementation(fixer_factory=fixer_factory).execute(
        PhaseImplementationInputs(
            phase=phase,
            issues=issues,
            is_first_phase=is_first_phase,
            user_context=user_context,
        ),
        options,
    )
    fix_report = await join_file_fixes(impl.fixed_file_promises, timeout=fix_timeout)
    deleted = [f.path for f in phase.files if f.change_type == "delete"]
    context = apply_file_outputs(
        options.context, fix_report.final_files(), deleted=deleted, completed_phase=phase,
    )
    result = PhaseCycleResult(phase=phase, context=context, commands=impl.commands, fix_report=fix_report)

    if review and issues.has_issues():
        cycle_options = options.with_context(context)
        result.review = await CodeReview().execute(CodeReviewInputs(issues=issues), cycle_options)
        result.regeneration = await regenerate_files(result.review, cycle_options)
        result.context = apply_file_outputs(context, list(result.regeneration.fixed.values()))
        result.commands = list(dict.fromkeys([*result.commands, *result.review.commands]))

    return result


__all__ = [
    "PhaseCycleResult",
    "RegenerationReport",
    "apply_file_outputs",
    "regenerate_files",
    "run_phase_cycle",
]
