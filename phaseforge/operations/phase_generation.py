"""PhaseGeneration: plan the next deployable milestone."""

from __future__ import annotations

import logging

from pydantic import BaseModel, ConfigDict, Field

from phaseforge.config import ReasoningEffort, get_agent_config
from phaseforge.domain.issues import IssueReport, has_render_loop_errors, issues_prompt_formatter
from phaseforge.operations.base import AgentOperation, OperationOptions
from phaseforge.prompts import (
    COMMON_PITFALLS,
    PROTECTED_FILES,
    REACT_RENDER_LOOP_PREVENTION,
    format_user_suggestions,
    project_context_messages,
    replace_template_variables,
    user_message,
    verify_prompt,
)
from phaseforge.schemas import PhaseConcept, UserContext
from phaseforge.utils.image_urls import get_image_url_guidance

logger = logging.getLogger(__name__)


class PhaseGenerationInputs(BaseModel):
    model_config = ConfigDict(frozen=True)

    issues: IssueReport = Field(default_factory=IssueReport)
    user_context: UserContext | None = None
    is_user_suggested_phase: bool = False


SYSTEM_PROMPT = f"""\
<ROLE>
You are a meticulous senior software architect with a strong eye for UI/UX.
You plan development as a sequence of phases, each a deployable milestone.
</ROLE>

<PHASE_DEFINITION>
A valid phase:
- can be previewed without runtime errors,
- implements 1-3 user-facing features with real visual polish,
- builds on previous phases without regressions,
- touches at most 15 files.

Naming: "[Feature] Implementation", "Fix [Error Type] in [Component]", "[Area] UI/UX Enhancement".
</PHASE_DEFINITION>

<PHASE_PLANNING_PROTOCOL>
STEP 1: ERROR TRIAGE (required when runtime errors are present)
  Group errors by root cause (render loops, undefined access, import errors, type errors),
  identify the files behind each group, and make this phase a fix phase named
  "Fix [Error Type] in [Components]". List fix files first, features after.

STEP 2: DEPENDENCY ORDERING
  For each file, note what it imports and what imports it. Every dependency must
  exist or be created in this phase. Order files leaf-first (types, utils, hooks,
  components, pages).

STEP 3: INCREMENTAL FEATURE SELECTION
  Pick the smallest deployable feature that adds value. It must work on its own,
  need only packages in <DEPENDENCIES>, and be completable in this phase.

STEP 4: SELF-CHECK before answering
  [ ] dependencies satisfied or being created
  [ ] runtime errors addressed if present
  [ ] feature demonstrable on its own
  [ ] file count <= 15
  [ ] every file has a concise purpose
  [ ] files ordered dependencies-first
  If any item fails, shrink or split the phase.
</PHASE_PLANNING_PROTOCOL>

<USER_SUGGESTION_PROTOCOL>
Classify suggestions by urgency. A critical bug makes this phase fix-focused.
Large feature requests are split into incremental phases. Group related
suggestions; do not implement everything at once.
</USER_SUGGESTION_PROTOCOL>

{PROTECTED_FILES}

{get_image_url_guidance()}"""

NEXT_PHASE_USER_PROMPT = """\
**GENERATE THE NEXT PHASE**

{{generateInstructions}}

<PHASE_GENERATION_GUIDELINES>
1. Review completed phases and the current code.
2. Runtime errors, if any, are the primary focus. Priority: render loops,
   undefined property access, import/export errors, type errors.
3. Validate that each reported error still exists in the code before planning a fix.
4. Compare the blueprint with what is implemented; plan what remains.
5. Set last_phase only when the app is 90-95% complete.
6. Use change_type "create", "edit" or "delete" for each file.
7. Never plan image files; use image URLs.
</PHASE_GENERATION_GUIDELINES>

<issues>
{{issues}}
</issues>

{{userSuggestions}}"""


def _issues_with_guidelines(issues: IssueReport) -> str:
    serialized = issues_prompt_formatter(issues)
    if not issues.has_runtime_errors():
        return serialized
    parts = [COMMON_PITFALLS]
    if has_render_loop_errors(issues):
        parts.append(REACT_RENDER_LOOP_PREVENTION)
    parts.append(serialized)
    return "\n\n".join(parts)


def build_user_prompt(
    issues: IssueReport,
    suggestions: list[str] | None,
    is_user_suggested_phase: bool,
) -> str:
    instructions = (
        "User requested changes/modifications. Thoroughly review user suggestions "
        "and generate the next phase accordingly."
        if is_user_suggested_phase
        else "Generate the next phase of the application."
    )
    prompt = replace_template_variables(NEXT_PHASE_USER_PROMPT, {
        "generateInstructions": instructions,
        "issues": _issues_with_guidelines(issues),
        "userSuggestions": format_user_suggestions(suggestions),
    })
    return verify_prompt(prompt)


def escalated_effort(base: ReasoningEffort) -> ReasoningEffort:
    """One tier up from *base*, as used when high-priority work is pending."""
    return "medium" if base == "low" else "high"


class PhaseGeneration(AgentOperation[PhaseGenerationInputs, PhaseConcept]):
    """Decide the next phase.  Inference errors propagate; there is no local retry."""

    async def execute(self, inputs: PhaseGenerationInputs, options: OperationOptions) -> PhaseConcept:
        user_ctx = inputs.user_context or UserContext()
        logger.info(
            "Generating next phase (%d suggestions, %d images, %d runtime errors)",
            len(user_ctx.suggestions), len(user_ctx.images), len(inputs.issues.runtime_errors),
        )

        messages = [
            *project_context_messages(SYSTEM_PROMPT, options.context),
            user_message(
                build_user_prompt(inputs.issues, user_ctx.suggestions, inputs.is_user_suggested_phase),
                user_ctx.images,
            ),
        ]

        has_high_priority_work = bool(user_ctx.suggestions) or inputs.issues.has_runtime_errors()
        effort = (
            escalated_effort(get_agent_config("phase_generation").reasoning_effort)
            if has_high_priority_work
            else None
        )

        result = await options.inference(
            messages=messages,
            action="phase_generation",
            schema=PhaseConcept,
            reasoning_effort=effort,
        )
        phase: PhaseConcept = result.object
        logger.info(
            "Planned phase %r: %d files, last_phase=%s", phase.name, len(phase.files), phase.last_phase,
        )
        return phase
