"""Surgical single-file fixer.

The fixer asks the model for a corrected copy of one file in heredoc
block form, merges it against the original and then judges the change:
anything larger than a surgical edit, or anything that drops an export
other files may import, is declined and the file stays as it was.

``RealtimeCodeFixer`` runs during PhaseImplementation on freshly
generated files; :class:`phaseforge.operations.file_regeneration.FileRegeneration`
reuses the same machinery with review-driven prompts.
"""

from __future__ import annotations

import logging
import re

from pydantic import BaseModel, ConfigDict, Field

from forge_codec import SCOFFormat, changed_line_count
from forge_codec.contracts import FileOutput
from forge_codec.errors import CodecError, StreamParseError
from phaseforge.config import settings
from phaseforge.domain.file_processing import process_generated_file_contents
from phaseforge.operations.base import AgentOperation, OperationOptions
from phaseforge.prompts import (
    COMMON_PITFALLS,
    REACT_RENDER_LOOP_PREVENTION,
    project_context_messages,
    replace_template_variables,
    serialize_phase,
    verify_prompt,
)
from phaseforge.schemas import ConversationMessage, FileFixed, FixDeclined, FixOutcome, PhaseConcept

logger = logging.getLogger(__name__)

TRIVIAL_FIX_LINES = 5

_EXPORT_DECL_RE = re.compile(
    r"^\s*export\s+(?:default\s+)?(?:declare\s+)?(?:async\s+)?"
    r"(?:function\*?|class|const|let|var|interface|type|enum)\s+(\w+)",
    re.MULTILINE,
)
_EXPORT_LIST_RE = re.compile(r"^\s*export\s*(?:type\s*)?\{([^}]*)\}", re.MULTILINE)
_EXPORT_DEFAULT_RE = re.compile(r"^\s*export\s+default\b", re.MULTILINE)
_TIER_RE = re.compile(r"tier\s*:?\s*([123])", re.IGNORECASE)
NO_ISSUES_MARKER = "NO_ISSUES_FOUND"


class FixRequest(BaseModel):
    """One file to fix, with whatever is known about what is wrong with it."""

    model_config = ConfigDict(frozen=True)

    file: FileOutput
    issues: list[str] = Field(default_factory=list)
    phase: PhaseConcept | None = None


# ---------------------------------------------------------------------------
# Surgical policy
# ---------------------------------------------------------------------------


def exported_names(contents: str) -> set[str]:
    """Names a JS/TS module exports (``"default"`` for a default export)."""
    names = set(_EXPORT_DECL_RE.findall(contents))
    for group in _EXPORT_LIST_RE.findall(contents):
        for item in group.split(","):
            item = item.strip()
            if not item:
                continue
            # "a as b" exports b
            names.add(item.split(" as ")[-1].strip())
    if _EXPORT_DEFAULT_RE.search(contents):
        names.add("default")
    return names


def evaluate_fix(original: FileOutput, fixed: FileOutput, issue_count: int) -> FixOutcome:
    """Accept *fixed* as a tier 1/2 fix or decline it as tier 3.

    A fix is declined when it changes more than ``SURGICAL_MAX_CHANGED_LINES``
    lines per reported issue (at least one issue is assumed) or when it
    removes an exported name.
    """
    changed = changed_line_count(original.file_contents, fixed.file_contents)
    budget = settings.SURGICAL_MAX_CHANGED_LINES * max(1, issue_count)
    if changed > budget:
        return FixDeclined(
            file_path=original.file_path,
            explanation=f"Fix touches {changed} lines (limit {budget}); not a surgical change.",
        )

    removed = exported_names(original.file_contents) - exported_names(fixed.file_contents)
    if removed:
        return FixDeclined(
            file_path=original.file_path,
            explanation=f"Fix removes exported names: {', '.join(sorted(removed))}.",
        )

    return FileFixed(file=fixed, tier=1 if changed < TRIVIAL_FIX_LINES else 2)


def declared_tier(text: str) -> int:
    """Tier the model stated for a blockless reply; a clean bill of health is tier 1."""
    if NO_ISSUES_MARKER in text:
        return 1
    m = _TIER_RE.search(text)
    return int(m.group(1)) if m else 3


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

SYSTEM_PROMPT = f"""\
<ROLE>
You are a senior React/TypeScript engineer reviewing a file that was just
written. You fix real bugs with the smallest possible change.
</ROLE>

<FIX_SAFETY_TIERS>
Tier 1 (safe): under 5 lines, e.g. a missing null check, import or dependency array entry.
Tier 2 (validated): under 20 lines, no interface or export changes.
Tier 3 (not surgical): larger rewrites or interface changes. Do NOT write the file;
explain the problem in one paragraph and state "Tier 3".
</FIX_SAFETY_TIERS>

<RULES>
- Only fix bugs that would crash, fail to compile or render wrongly.
- Never rename, remove or change the signature of anything the file exports.
- Keep formatting, naming and structure as they are.
- If the file has no real bugs, reply with exactly: {NO_ISSUES_MARKER}
</RULES>

{COMMON_PITFALLS}

{REACT_RENDER_LOOP_PREVENTION}"""

USER_PROMPT = """\
<FILE_TO_REVIEW path="{{filePath}}">
{{fileContents}}
</FILE_TO_REVIEW>

<FILE_PURPOSE>
{{filePurpose}}
</FILE_PURPOSE>

{{phase}}

<REPORTED_ISSUES>
{{issues}}
</REPORTED_ISSUES>

{{formatInstructions}}

Return the whole corrected file as one block for {{filePath}}, or no block at all."""


# ---------------------------------------------------------------------------
# Operation
# ---------------------------------------------------------------------------


class SurgicalFixer(AgentOperation[FixRequest, FixOutcome]):
    """Shared attempt loop: prompt, decode, merge, judge.

    Malformed replies (undecodable blocks, a block for another path, a diff
    that does not apply) are retried with a correction message.  Inference
    errors propagate.  A reply without any block is the model declining.
    """

    action = "realtime_code_fixer"
    system_prompt = SYSTEM_PROMPT
    user_prompt = USER_PROMPT

    def __init__(self) -> None:
        self._codec = SCOFFormat()

    def retry_limit(self) -> int:
        return settings.REALTIME_FIX_RETRY_LIMIT

    def build_user_prompt(self, inputs: FixRequest) -> str:
        issues = "\n".join(f"- {i}" for i in inputs.issues) or "None reported; look for bugs yourself."
        prompt = replace_template_variables(self.user_prompt, {
            "filePath": inputs.file.file_path,
            "fileContents": inputs.file.file_contents,
            "filePurpose": inputs.file.file_purpose or "(not stated)",
            "phase": (
                f"<CURRENT_PHASE>\n{serialize_phase(inputs.phase)}\n</CURRENT_PHASE>"
                if inputs.phase else ""
            ),
            "issues": issues,
            "formatInstructions": self._codec.format_instructions(),
        })
        return verify_prompt(prompt)

    async def execute(self, inputs: FixRequest, options: OperationOptions) -> FixOutcome:
        path = inputs.file.file_path
        messages = [
            *project_context_messages(self.system_prompt, options.context, include_codebase=False),
            ConversationMessage(role="user", content=self.build_user_prompt(inputs)),
        ]
        limit = max(1, self.retry_limit())
        problems: list[str] = []

        for attempt in range(1, limit + 1):
            result = await options.inference(messages=messages, action=self.action)
            text = result.text

            try:
                blocks = self._codec.deserialize(text)
            except StreamParseError as exc:
                problems.append(str(exc))
            else:
                if not blocks:
                    logger.info("%s: model declined to change %s", type(self).__name__, path)
                    return FixDeclined(
                        file_path=path,
                        explanation=text.strip(),
                        tier=declared_tier(text),
                    )
                block = next((b for b in blocks if b.file_path == path), None)
                if block is None:
                    problems.append(
                        f"reply contained blocks for {[b.file_path for b in blocks]} but not {path}"
                    )
                else:
                    try:
                        merged = process_generated_file_contents(
                            block, inputs.file, purpose=inputs.file.file_purpose, strict=True,
                        )
                    except CodecError as exc:
                        problems.append(str(exc))
                    else:
                        outcome = evaluate_fix(inputs.file, merged, len(inputs.issues))
                        logger.info(
                            "%s: %s -> %s (tier %d, attempt %d)",
                            type(self).__name__, path, outcome.kind, outcome.tier, attempt,
                        )
                        return outcome

            logger.warning(
                "%s: unusable reply for %s (attempt %d/%d): %s",
                type(self).__name__, path, attempt, limit, problems[-1],
            )
            messages = [
                *messages,
                ConversationMessage(role="assistant", content=text or "(empty)"),
                ConversationMessage(role="user", content=(
                    f"That reply could not be used: {problems[-1]}\n"
                    f"Send the complete corrected {path} as a single full-content block."
                )),
            ]

        return FixDeclined(
            file_path=path,
            explanation=f"No usable fix after {limit} attempt(s): {problems[-1]}",
        )


class RealtimeCodeFixer(SurgicalFixer):
    """Reviews one freshly generated file while the rest of the phase streams."""

    async def run(
        self,
        file: FileOutput,
        options: OperationOptions,
        *,
        issues: list[str] | None = None,
        phase: PhaseConcept | None = None,
    ) -> FileOutput:
        """Fix *file* and return the version to keep (the original when declined)."""
        outcome = await self.execute(FixRequest(file=file, issues=issues or [], phase=phase), options)
        if isinstance(outcome, FileFixed):
            return outcome.file
        return file


__all__ = [
    "FixRequest",
    "NO_ISSUES_MARKER",
    "RealtimeCodeFixer",
    "SurgicalFixer",
    "declared_tier",
    "evaluate_fix",
    "exported_names",
]
