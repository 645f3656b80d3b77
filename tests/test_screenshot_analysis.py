"""Tests for ScreenshotAnalysis and its broken-image safety net."""

import httpx
import pytest

from phaseforge.errors import OperationError
from phaseforge.operations.screenshot_analysis import (
    ScreenshotAnalysis,
    ScreenshotAnalysisInputs,
    fold_broken_images,
)
from phaseforge.schemas import ScreenshotAnalysisResult, ScreenshotData, Viewport

from conftest import FakeInference, make_files, make_options

BROKEN = "https://images.unsplash.com/photo-1544367567-0f2fcb009e0b?w=800&h=600"
LOGO = "https://cdn.example.com/logo.png"
SHOT = ScreenshotData(url="https://preview.local/", screenshot="data:image/png;base64,iVBORw0KGgo=", viewport=Viewport(width=1440, height=900))

CLEAN = {
    "has_issues": False,
    "critical_issues": [],
    "high_priority_issues": [],
    "medium_priority_issues": [],
    "ui_compliance": {"matches_blueprint": True, "compliance_score": 9, "deviations": []},
    "suggestions": [],
}


class TestFoldBrokenImages:
    def test_adds_high_priority_issue(self):
        out = fold_broken_images(ScreenshotAnalysisResult(), [BROKEN])
        assert out.has_issues
        assert out.high_priority_issues == [f"Broken image URL (fails to load): {BROKEN}"]
        assert out.broken_image_urls == [BROKEN]

    def test_already_mentioned_url_not_repeated(self):
        analysis = ScreenshotAnalysisResult(has_issues=True, critical_issues=[f"Hero image {BROKEN} is missing"])
        assert fold_broken_images(analysis, [BROKEN]) is analysis

    def test_url_mentioned_at_end_of_sentence_not_repeated(self):
        analysis = ScreenshotAnalysisResult(has_issues=True, high_priority_issues=[f"Hero fails to load {BROKEN}."])
        assert fold_broken_images(analysis, [BROKEN]) is analysis

    def test_prefix_of_mentioned_url_still_added(self):
        longer = f"{BROKEN}&fit=crop"
        analysis = ScreenshotAnalysisResult(has_issues=True, critical_issues=[f"Hero image {longer} is missing"])
        out = fold_broken_images(analysis, [BROKEN])
        assert out.broken_image_urls == [BROKEN]
        assert out.high_priority_issues == [f"Broken image URL (fails to load): {BROKEN}"]

    def test_no_broken_urls(self):
        analysis = ScreenshotAnalysisResult()
        assert fold_broken_images(analysis, []) is analysis


class TestScreenshotAnalysis:
    @pytest.mark.asyncio
    async def test_broken_images_folded_into_result(self):
        files = make_files(**{"src/Hero.tsx": f'<img src="{BROKEN}" /><img src="{LOGO}" />'})
        seen = []

        def handler(request):
            seen.append(str(request.url))
            return httpx.Response(200 if str(request.url) == LOGO else 404)

        fake = FakeInference(CLEAN)
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            result = await ScreenshotAnalysis().execute(
                ScreenshotAnalysisInputs(screenshot_data=SHOT),
                make_options(files, inference=fake, http_client=client),
            )

        assert sorted(seen) == sorted([BROKEN, LOGO])
        assert result.has_issues
        assert result.broken_image_urls == [BROKEN]
        assert result.ui_compliance.compliance_score == 9

        call = fake.calls[0]
        assert call["action"] == "screenshot_analysis"
        assert call["schema"] is ScreenshotAnalysisResult
        assert call["retry_limit"] == 3
        image_part = call["messages"][-1].content[0]
        assert image_part["source"]["data"] == "iVBORw0KGgo="
        assert "Viewport: 1440x900" in call["messages"][-1].content[-1]["text"]

    @pytest.mark.asyncio
    async def test_no_image_urls_no_requests(self):
        result = await ScreenshotAnalysis().execute(
            ScreenshotAnalysisInputs(screenshot_data=SHOT),
            make_options(make_files(**{"src/A.tsx": "<div />"}), inference=FakeInference(CLEAN)),
        )
        assert not result.has_issues

    @pytest.mark.asyncio
    async def test_missing_screenshot_rejected(self):
        fake = FakeInference(CLEAN)
        with pytest.raises(OperationError):
            await ScreenshotAnalysis().execute(
                ScreenshotAnalysisInputs(screenshot_data=ScreenshotData()), make_options(inference=fake),
            )
        assert fake.calls == []
