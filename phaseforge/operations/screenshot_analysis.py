"""ScreenshotAnalysis: visual compliance check with a broken-image safety net.

The model compares a screenshot of the running preview against the
blueprint.  Independently of what it reports, every image URL in the
codebase is checked over HTTP and any broken one is added to the high
priority issues, since the model cannot reliably see a missing image.
"""

from __future__ import annotations

import json
import logging

from pydantic import BaseModel, ConfigDict

from phaseforge.config import settings
from phaseforge.errors import OperationError
from phaseforge.operations.base import AgentOperation, OperationOptions
from phaseforge.prompts import image_message_from_data_url, replace_template_variables, verify_prompt
from phaseforge.schemas import ConversationMessage, ScreenshotAnalysisResult, ScreenshotData
from phaseforge.utils.image_urls import extract_image_urls, extract_unsplash_urls, validate_image_urls

logger = logging.getLogger(__name__)


class ScreenshotAnalysisInputs(BaseModel):
    model_config = ConfigDict(frozen=True)

    screenshot_data: ScreenshotData


SYSTEM_PROMPT = """\
You are a UI/UX quality assurance specialist analysing application screenshots
against their blueprint.

<ANALYSIS_FRAMEWORK>
1. Layout structure: are the specified sections present and positioned correctly?
2. Component rendering: do buttons, forms, lists and images render completely?
3. Visual quality: spacing, alignment, contrast, typography.
4. Blueprint compliance: compare every visible element with the blueprint.
5. Broken images: empty boxes, alt text or broken-image icons where a picture belongs.
</ANALYSIS_FRAMEWORK>

<CLASSIFICATION>
critical_issues: blocks usage or severely degrades the experience.
high_priority_issues: significantly hurts UX quality or contradicts the blueprint.
medium_priority_issues: polish.
compliance_score: 10 is a perfect match with the blueprint, 1 is severely broken.
Be specific: "Game board offset left instead of centred", not "layout issues".
Ignore aesthetic preferences the blueprint does not mention.
</CLASSIFICATION>"""

USER_PROMPT = """\
Analyse this screenshot against the blueprint requirements.

<BLUEPRINT>
{{blueprint}}
</BLUEPRINT>

<PAGE>
URL: {{url}}
Viewport: {{viewport}}
</PAGE>

Report the issues you can see, the blueprint compliance and concrete suggestions."""


def fold_broken_images(
    analysis: ScreenshotAnalysisResult, broken_urls: list[str],
) -> ScreenshotAnalysisResult:
    """Add every broken URL the model did not already mention to the high-priority issues."""
    text = "\n".join([
        *analysis.critical_issues, *analysis.high_priority_issues, *analysis.medium_priority_issues,
    ])
    # Prose may end a URL with punctuation
    mentioned = {u.rstrip(".,;:") for u in [*extract_image_urls(text), *extract_unsplash_urls(text)]}
    mentioned.update(analysis.broken_image_urls)
    new = [u for u in broken_urls if u not in mentioned]
    if not new:
        return analysis
    return analysis.model_copy(update={
        "has_issues": True,
        "high_priority_issues": [
            *analysis.high_priority_issues,
            *(f"Broken image URL (fails to load): {u}" for u in new),
        ],
        "broken_image_urls": [*analysis.broken_image_urls, *new],
    })


class ScreenshotAnalysis(AgentOperation[ScreenshotAnalysisInputs, ScreenshotAnalysisResult]):
    async def execute(
        self, inputs: ScreenshotAnalysisInputs, options: OperationOptions,
    ) -> ScreenshotAnalysisResult:
        shot = inputs.screenshot_data
        if not shot.screenshot:
            raise OperationError("screenshot_analysis", "no screenshot data provided")

        logger.info(
            "Analysing screenshot of %s (%dx%d)", shot.url or "preview",
            shot.viewport.width, shot.viewport.height,
        )
        prompt = verify_prompt(replace_template_variables(USER_PROMPT, {
            "blueprint": json.dumps(options.context.blueprint, indent=2),
            "url": shot.url or "(unknown)",
            "viewport": f"{shot.viewport.width}x{shot.viewport.height}",
        }))
        result = await options.inference(
            messages=[
                ConversationMessage(role="system", content=SYSTEM_PROMPT),
                image_message_from_data_url(prompt, shot.screenshot),
            ],
            action="screenshot_analysis",
            schema=ScreenshotAnalysisResult,
            retry_limit=settings.SCREENSHOT_ANALYSIS_RETRY_LIMIT,
        )
        analysis: ScreenshotAnalysisResult = result.object

        urls: list[str] = []
        for f in options.context.all_files:
            urls.extend(extract_image_urls(f.file_contents))
            urls.extend(extract_unsplash_urls(f.file_contents))
        urls = list(dict.fromkeys(urls))
        if urls:
            results = await validate_image_urls(urls, client=options.http_client)
            broken = [u for u, r in results.items() if not r.is_valid]
            if broken:
                logger.warning("Screenshot analysis: %d of %d image URLs are broken", len(broken), len(urls))
                analysis = fold_broken_images(analysis, broken)

        logger.info(
            "Screenshot analysis: has_issues=%s, score=%d, %d critical",
            analysis.has_issues, analysis.ui_compliance.compliance_score, len(analysis.critical_issues),
        )
        return analysis


__all__ = ["ScreenshotAnalysis", "ScreenshotAnalysisInputs", "fold_broken_images"]
