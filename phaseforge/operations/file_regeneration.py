"""FileRegeneration: fix one file from CodeReview findings."""

from __future__ import annotations

import logging

from phaseforge.config import settings
from phaseforge.operations.base import OperationOptions
from phaseforge.operations.realtime_fixer import FixRequest, SurgicalFixer
from phaseforge.schemas import CodeReviewFinding, FileFixed, FixOutcome
from phaseforge.utils.image_urls import get_image_url_guidance

logger = logging.getLogger(__name__)


SYSTEM_PROMPT = f"""\
You are a senior principal engineer performing SURGICAL code fixes.

<FIX_MANDATE>
Fix ONLY the reported issues and preserve everything else.
Before touching any code:
1. Confirm the issue is actually present in the current file.
2. Identify the blast radius: what calls, imports or renders this code.
3. Plan the smallest edit that fixes it.
</FIX_MANDATE>

<FIX_SAFETY_TIERS>
Tier 1 (always safe): null checks, missing dependency array entries, typos; under 5 lines.
Tier 2 (validated): state logic, conditionals, calculations; under 20 lines and no
interface changes.
Tier 3 (not surgical): signature or export changes, multi-file coordination, new
dependencies, architectural changes. Do NOT write the file. Explain why and state "Tier 3".
</FIX_SAFETY_TIERS>

<SAFETY_CONSTRAINTS>
- Never modify imports, exports or function signatures unless that is the issue.
- Do not add dependencies.
- Skip issues that no longer match the current code.
</SAFETY_CONSTRAINTS>

{get_image_url_guidance()}"""

USER_PROMPT = """\
<CURRENT_FILE path="{{filePath}}">
{{fileContents}}
</CURRENT_FILE>

<FILE_PURPOSE>
{{filePurpose}}
</FILE_PURPOSE>

<SPECIFIC_ISSUES_TO_FIX>
{{issues}}
</SPECIFIC_ISSUES_TO_FIX>

{{phase}}

{{formatInstructions}}

Validate each issue against the current file first. If at least one fix is
surgical, return the complete corrected {{filePath}} as one full-content block.
Otherwise return no block and explain which tier applies."""


def finding_issues(finding: CodeReviewFinding) -> list[str]:
    """Flatten a review finding into the issue list sent to the fixer."""
    issues = list(finding.issues)
    if finding.fix_scope:
        issues.append(f"Fix scope: {finding.fix_scope}")
    if finding.context:
        issues.append(f"Context: {finding.context}")
    if finding.validation:
        issues.append(f"Validation: {finding.validation}")
    return issues


class FileRegeneration(SurgicalFixer):
    """Surgical fixer driven by review findings, with a larger attempt budget."""

    action = "file_regeneration"
    system_prompt = SYSTEM_PROMPT
    user_prompt = USER_PROMPT

    def retry_limit(self) -> int:
        return settings.FILE_REGENERATION_RETRY_LIMIT

    async def execute(self, inputs: FixRequest, options: OperationOptions) -> FixOutcome:
        logger.info("Regenerating %s (%d issues)", inputs.file.file_path, len(inputs.issues))
        outcome = await super().execute(inputs, options)
        if isinstance(outcome, FileFixed) and outcome.file.format != "full_content":
            outcome = outcome.model_copy(
                update={"file": outcome.file.model_copy(update={"format": "full_content"})}
            )
        return outcome


__all__ = ["FileRegeneration", "finding_issues"]
