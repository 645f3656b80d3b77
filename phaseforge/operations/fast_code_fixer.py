"""FastCodeFixer: one-shot fix pass over the whole codebase.

Runs in two steps.  Broken Unsplash image URLs are replaced first with no
model involved; then a single inference call rewrites the files that have
reported issues.  Files the model writes without a reported issue are
ignored.
"""

from __future__ import annotations

import json
import logging

from pydantic import BaseModel, ConfigDict, Field

from forge_codec import SCOFFormat
from forge_codec.contracts import FileOutput
from phaseforge.domain.file_processing import process_generated_file_contents, serialize_files
from phaseforge.domain.issues import CodeIssue
from phaseforge.operations.base import AgentOperation, OperationOptions
from phaseforge.prompts import REACT_RENDER_LOOP_PREVENTION, replace_template_variables, verify_prompt
from phaseforge.schemas import ConversationMessage
from phaseforge.utils.image_urls import auto_fix_image_urls

logger = logging.getLogger(__name__)


class FastCodeFixerInputs(BaseModel):
    model_config = ConfigDict(frozen=True)

    issues: list[CodeIssue] = Field(default_factory=list)


SYSTEM_PROMPT = f"""\
You are a senior engineer on an incident response team, making rapid,
deterministic bug fixes.

<FIX_APPROACH>
High-confidence fix categories, in order:
1. Null safety: "Cannot read property 'x' of undefined" -> optional chaining and defaults.
2. Render loops: "Maximum update depth exceeded" -> dependency arrays, stable selectors.
3. Import errors: wrong relative paths, default vs named imports.
4. Syntax errors: typos, invalid Tailwind classes.
5. Type errors: obvious type mismatches.
Skip anything that needs architectural changes.
</FIX_APPROACH>

<OUTPUT_RULES>
- Only write files that have issues explicitly reported against them.
- Write each fixed file completely; do not touch anything unrelated to its issues.
- Never rename or remove exports.
</OUTPUT_RULES>

{REACT_RENDER_LOOP_PREVENTION}"""

USER_PROMPT = """\
<CLIENT_REQUEST>
{{query}}
</CLIENT_REQUEST>

<CODEBASE>
{{codebase}}
</CODEBASE>

<REPORTED_ISSUES>
{{issues}}
</REPORTED_ISSUES>

Fix the reported issues using the high-confidence patterns only.

{{formatInstructions}}"""


class FastCodeFixer(AgentOperation[FastCodeFixerInputs, list[FileOutput]]):
    """Return the files that changed, image pre-pass and model fixes combined."""

    def __init__(self) -> None:
        self._codec = SCOFFormat()

    async def execute(self, inputs: FastCodeFixerInputs, options: OperationOptions) -> list[FileOutput]:
        all_files = options.context.all_files
        logger.info(
            "Fast code fixer: %d files, %d reported issues", len(all_files), len(inputs.issues),
        )

        prepassed, image_result = await auto_fix_image_urls(all_files, client=options.http_client)
        if image_result.urls_replaced:
            logger.info(
                "Replaced %d broken image URLs in %d files before inference",
                image_result.urls_replaced, image_result.files_fixed,
            )
        by_path = {f.file_path: f for f in prepassed}
        changed: dict[str, FileOutput] = {
            f.file_path: f
            for f, original in zip(prepassed, all_files)
            if f.file_contents != original.file_contents
        }

        issues_text = (
            json.dumps([i.model_dump(exclude_none=True) for i in inputs.issues], indent=2)
            if inputs.issues
            else "No specific issues reported."
        )
        prompt = verify_prompt(replace_template_variables(USER_PROMPT, {
            "query": options.context.query,
            "codebase": serialize_files(prepassed),
            "issues": issues_text,
            "formatInstructions": self._codec.format_instructions(),
        }))
        result = await options.inference(
            messages=[
                ConversationMessage(role="system", content=SYSTEM_PROMPT),
                ConversationMessage(role="user", content=prompt),
            ],
            action="fast_code_fixer",
        )

        reported = {i.file_path for i in inputs.issues}
        for block in self._codec.deserialize(result.text):
            if block.file_path not in reported:
                logger.warning("Fast code fixer wrote %s, which had no reported issue; skipping", block.file_path)
                continue
            changed[block.file_path] = process_generated_file_contents(block, by_path.get(block.file_path))

        logger.info("Fast code fixer produced %d changed files", len(changed))
        return list(changed.values())


__all__ = ["FastCodeFixer", "FastCodeFixerInputs"]
