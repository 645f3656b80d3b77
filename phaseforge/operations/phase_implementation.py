"""PhaseImplementation: stream a phase's files and fix them as they close.

Files are parsed out of the streamed reply as they are written.  Each
closed file is merged against its pre-phase version and, when long enough,
handed to a :class:`RealtimeCodeFixer` task that runs while the stream
continues.  The operation returns as soon as the stream ends; callers
collect the fixed files with :func:`join_file_fixes`.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from pydantic import BaseModel, ConfigDict, Field

from forge_codec import SCOFFormat, StreamingState
from forge_codec.contracts import FileFormat, FileOutput
from forge_codec.response_parser import strip_outer_fence
from phaseforge.config import settings
from phaseforge.domain.file_processing import (
    find_file_purpose,
    line_count,
    process_generated_file_contents,
)
from phaseforge.domain.issues import IssueReport, issues_prompt_formatter
from phaseforge.errors import OperationError
from phaseforge.inference import StreamOptions
from phaseforge.operations.base import AgentOperation, OperationOptions, maybe_await
from phaseforge.operations.realtime_fixer import RealtimeCodeFixer
from phaseforge.prompts import (
    COMMON_PITFALLS,
    PROTECTED_FILES,
    REACT_RENDER_LOOP_PREVENTION,
    format_user_suggestions,
    project_context_messages,
    replace_template_variables,
    serialize_phase,
    user_message,
    verify_prompt,
)
from phaseforge.schemas import PhaseConcept, UserContext
from phaseforge.utils.image_urls import get_image_url_guidance

logger = logging.getLogger(__name__)

FileGeneratingCallback = Callable[[str, str], Any]
FileChunkCallback = Callable[[str, str, FileFormat], Any]
FileClosedCallback = Callable[[FileOutput, str], Any]


class PhaseImplementationInputs(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    phase: PhaseConcept
    issues: IssueReport = Field(default_factory=IssueReport)
    is_first_phase: bool = False
    should_auto_fix: bool = True
    user_context: UserContext | None = None
    file_generating: FileGeneratingCallback | None = None
    file_chunk_generated: FileChunkCallback | None = None
    file_closed: FileClosedCallback | None = None


@dataclass
class FileFixTask:
    """Pending final version of one generated file.

    ``generated`` is the merged file before any realtime fix; it is what
    the caller keeps when the fix fails.
    """

    file_path: str
    generated: FileOutput
    future: asyncio.Future


@dataclass
class PhaseImplementationOutputs:
    fixed_file_promises: list[FileFixTask] = field(default_factory=list)
    deployment_needed: bool = False
    commands: list[str] = field(default_factory=list)


@dataclass
class FixJoinResult:
    """Per-path report of a joined set of fix tasks."""

    fixed: dict[str, FileOutput] = field(default_factory=dict)
    failed: dict[str, str] = field(default_factory=dict)
    timed_out: list[str] = field(default_factory=list)
    fallbacks: dict[str, FileOutput] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed and not self.timed_out

    def final_files(self) -> list[FileOutput]:
        """Fixed files plus the unfixed version of every failed or timed-out one."""
        return [*self.fixed.values(), *self.fallbacks.values()]


async def join_file_fixes(tasks: list[FileFixTask], timeout: float | None = None) -> FixJoinResult:
    """Wait for every fix task, tolerating individual failures.

    Tasks still pending when *timeout* expires are cancelled and reported
    in ``timed_out``.  Results are keyed by path, never completion order.
    """
    result = FixJoinResult()
    if not tasks:
        return result

    futures = [t.future for t in tasks]
    _, pending = await asyncio.wait(futures, timeout=timeout)
    for fut in pending:
        fut.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)

    for task in tasks:
        fut = task.future
        if fut in pending:
            result.timed_out.append(task.file_path)
            result.fallbacks[task.file_path] = task.generated
            logger.warning("Realtime fix for %s timed out", task.file_path)
            continue
        if fut.cancelled():
            result.failed[task.file_path] = "cancelled"
            result.fallbacks[task.file_path] = task.generated
            continue
        exc = fut.exception()
        if exc is not None:
            result.failed[task.file_path] = f"{type(exc).__name__}: {exc}"
            result.fallbacks[task.file_path] = task.generated
            logger.error("Realtime fix for %s failed: %s", task.file_path, exc)
            continue
        result.fixed[task.file_path] = fut.result()
    return result


def _resolved(value: FileOutput) -> asyncio.Future:
    fut = asyncio.get_running_loop().create_future()
    fut.set_result(value)
    return fut


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

SYSTEM_PROMPT = f"""\
<ROLE>
You are an expert senior full-stack engineer who writes production-quality,
visually polished React/TypeScript applications. You implement one phase of
a larger build at a time.
</ROLE>

<ZERO_TOLERANCE_RULES>
- Declare every variable before use.
- Guard every property access on data that may be undefined.
- Never call setState during render; every useEffect that sets state has a
  dependency array.
- Import only packages listed in <DEPENDENCIES>.
- Export every component exactly as other files import it.
</ZERO_TOLERANCE_RULES>

<IMPLEMENTATION_STANDARDS>
- Implement every file listed in <CURRENT_PHASE>.
- Fix reported runtime errors before adding features.
- Keep previous phases working.
- Prefer full file contents; send a diff only for small edits to large files.
- If this is the first phase, replace the template boilerplate with the real app.
</IMPLEMENTATION_STANDARDS>

{REACT_RENDER_LOOP_PREVENTION}

{COMMON_PITFALLS}

{PROTECTED_FILES}

{get_image_url_guidance()}"""

USER_PROMPT = """\
**Phase Implementation**

<INSTRUCTIONS>
Implement this phase. Fix runtime errors first (render loops, then undefined
access, then import errors, then logic bugs). Write dependencies before the
files that import them.
</INSTRUCTIONS>

<CURRENT_PHASE>
{{phaseText}}

{{issues}}

{{userSuggestions}}
</CURRENT_PHASE>

{{formatInstructions}}"""

LAST_PHASE_PROMPT = """\
**Finalization and Review Phase**

<REVIEW_PROTOCOL>
Find and fix showstopper bugs before the final deployment, in this order:
runtime errors and crashes, logic that contradicts the blueprint, rendering
failures, state management bugs, invalid imports.

Regenerate a file only for critical issues or small styling fixes. No
refactors. If runtime errors exist, fix only those.
</REVIEW_PROTOCOL>

<CURRENT_PHASE>
{{phaseText}}
</CURRENT_PHASE>

{{issues}}

{{formatInstructions}}"""

README_PROMPT = """\
<TASK>
Write a README.md for this project.
</TASK>

<REQUIREMENTS>
- Title, description and key features from the blueprint.
- Technology stack from the dependencies.
- Setup and development instructions using bun.
- A deployment section.
- No images. Output only raw markdown, with no explanation and no code fence.
</REQUIREMENTS>"""

_SPECIAL_PHASE_PROMPTS = {
    "Finalization and Review": LAST_PHASE_PROMPT,
}


def build_user_prompt(
    phase: PhaseConcept,
    issues: IssueReport,
    suggestions: list[str] | None,
    format_instructions: str,
) -> str:
    base = _SPECIAL_PHASE_PROMPTS.get(phase.name, USER_PROMPT)
    prompt = replace_template_variables(base, {
        "phaseText": serialize_phase(phase),
        "issues": issues_prompt_formatter(issues),
        "userSuggestions": format_user_suggestions(suggestions),
        "formatInstructions": format_instructions,
    })
    return verify_prompt(prompt)


# ---------------------------------------------------------------------------
# Operation
# ---------------------------------------------------------------------------


class PhaseImplementation(AgentOperation[PhaseImplementationInputs, PhaseImplementationOutputs]):
    """Generate the files of one phase in a single streamed call.

    Parameters
    ----------
    fixer_factory:
        Builds the realtime fixer for each long file; tests substitute a fake.
    """

    def __init__(self, fixer_factory: Callable[[], RealtimeCodeFixer] = RealtimeCodeFixer) -> None:
        self._fixer_factory = fixer_factory
        self._codec = SCOFFormat()

    async def execute(
        self, inputs: PhaseImplementationInputs, options: OperationOptions,
    ) -> PhaseImplementationOutputs:
        phase = inputs.phase
        context = options.context
        existing = context.file_map()
        user_ctx = inputs.user_context or UserContext()
        realtime_fix = inputs.should_auto_fix and settings.REALTIME_CODE_FIXER_ENABLED
        action = "first_phase_implementation" if inputs.is_first_phase else "phase_implementation"

        logger.info(
            "Implementing phase %r (%d planned files, realtime fix=%s)",
            phase.name, len(phase.files), realtime_fix,
        )

        messages = [
            *project_context_messages(SYSTEM_PROMPT, context),
            user_message(
                build_user_prompt(
                    phase, inputs.issues, user_ctx.suggestions, self._codec.format_instructions(),
                ),
                user_ctx.images,
            ),
        ]

        state = StreamingState()
        tasks: list[FileFixTask] = []
        events: list[tuple] = []

        def _on_open(path: str) -> None:
            block = state.parsing_state.current_file
            events.append(("open", path, block.purpose if block is not None else ""))

        def _on_chunk(path: str, chunk: str, fmt: FileFormat) -> None:
            events.append(("chunk", path, chunk, fmt))

        def _on_close(path: str) -> None:
            events.append(("close", path))

        async def _dispatch() -> None:
            pending, events[:] = list(events), []
            for event in pending:
                kind, path = event[0], event[1]
                if kind == "open":
                    logger.info("Generating %s", path)
                    if inputs.file_generating is not None:
                        await maybe_await(inputs.file_generating(
                            path, find_file_purpose(path, phase, existing, event[2]),
                        ))
                elif kind == "chunk":
                    if inputs.file_chunk_generated is not None:
                        await maybe_await(inputs.file_chunk_generated(path, event[2], event[3]))
                else:
                    await self._close_file(path, state, inputs, options, existing, realtime_fix, tasks)

        async def _on_stream_chunk(chunk: str) -> None:
            self._codec.parse_streaming_chunks(chunk, state, _on_open, _on_chunk, _on_close)
            await _dispatch()

        try:
            await options.inference(
                messages=messages,
                action=action,
                stream=StreamOptions(on_chunk=_on_stream_chunk, chunk_size=settings.PHASE_STREAM_CHUNK_SIZE),
            )
            try:
                self._codec.finalize(state, _on_open, _on_chunk, _on_close)
            finally:
                await _dispatch()
        except BaseException:
            for task in tasks:
                task.future.cancel()
            raise

        commands = list(state.parsing_state.extracted_install_commands)
        logger.info(
            "Phase %r streamed %d files (%d being fixed), %d install commands",
            phase.name, len(tasks), sum(1 for t in tasks if not t.future.done()), len(commands),
        )
        return PhaseImplementationOutputs(
            fixed_file_promises=tasks,
            deployment_needed=bool(tasks),
            commands=commands,
        )

    async def _close_file(
        self,
        path: str,
        state: StreamingState,
        inputs: PhaseImplementationInputs,
        options: OperationOptions,
        existing: dict[str, FileOutput],
        realtime_fix: bool,
        tasks: list[FileFixTask],
    ) -> None:
        completed = state.completed_files.get(path)
        if completed is None:
            logger.error("Closed file %s missing from stream state", path)
            return

        purpose = find_file_purpose(path, inputs.phase, existing, completed.file_purpose)
        generated = process_generated_file_contents(completed, existing.get(path), purpose=purpose)

        if realtime_fix and line_count(generated.file_contents) > settings.REALTIME_FIX_MIN_LINES:
            fixer = self._fixer_factory()
            future = asyncio.create_task(fixer.run(
                generated, options,
                issues=inputs.issues.issues_for_file(path),
                phase=inputs.phase,
            ))
        else:
            future = _resolved(generated)
        tasks.append(FileFixTask(file_path=path, generated=generated, future=future))

        if inputs.file_closed is not None:
            await maybe_await(inputs.file_closed(generated, f"Completed generation of {path}"))


async def generate_readme(options: OperationOptions) -> FileOutput:
    """Write ``README.md`` from the project context.

    Raises ``OperationError`` when the model returns nothing usable.
    """
    logger.info("Generating README.md")
    messages = [
        *project_context_messages(SYSTEM_PROMPT, options.context, include_codebase=False),
        user_message(README_PROMPT),
    ]
    result = await options.inference(messages=messages, action="readme_generation")
    contents = strip_outer_fence(result.text or "").strip()
    if not contents:
        raise OperationError("readme_generation", "model returned empty README content")
    return FileOutput(
        file_path="README.md",
        file_contents=contents + "\n",
        file_purpose="Project documentation and setup instructions",
        format="full_content",
    )


__all__ = [
    "FileFixTask",
    "FixJoinResult",
    "PhaseImplementation",
    "PhaseImplementationInputs",
    "PhaseImplementationOutputs",
    "build_user_prompt",
    "generate_readme",
    "join_file_fixes",
]
