"""Tests for FastCodeFixer."""

import httpx
import pytest

from phaseforge.domain.issues import CodeIssue
from phaseforge.operations.fast_code_fixer import FastCodeFixer, FastCodeFixerInputs

from conftest import FakeInference, make_files, make_options, scof_block

BROKEN = "https://images.unsplash.com/photo-1544367567-0f2fcb009e0b?w=800&h=600"


def _http(status=404):
    return httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(status)))


class TestFastCodeFixer:
    @pytest.mark.asyncio
    async def test_only_reported_files_accepted(self):
        files = make_files(**{
            "src/App.tsx": "export default function App() { return data.items.length; }",
            "src/util.ts": "export const x = 1;",
        })
        fake = FakeInference(
            scof_block("src/App.tsx", "export default function App() { return data?.items?.length ?? 0; }")
            + scof_block("src/util.ts", "export const x = 2;")
        )
        issues = [CodeIssue(message="Cannot read properties of undefined", file_path="src/App.tsx", line=1)]

        async with _http() as client:
            changed = await FastCodeFixer().execute(
                FastCodeFixerInputs(issues=issues), make_options(files, inference=fake, http_client=client),
            )

        assert [f.file_path for f in changed] == ["src/App.tsx"]
        assert "?? 0" in changed[0].file_contents
        assert changed[0].file_purpose == "src/App.tsx purpose"
        call = fake.calls[0]
        assert call["action"] == "fast_code_fixer"
        prompt = call["messages"][-1].content
        assert '"file_path": "src/App.tsx"' in prompt
        assert "<CODEBASE>" in prompt

    @pytest.mark.asyncio
    async def test_image_prepass_changes_are_returned(self):
        files = make_files(**{"src/Hero.tsx": f'<img src="{BROKEN}" alt="hero" />'})
        fake = FakeInference("No code changes needed.")

        async with _http(404) as client:
            changed = await FastCodeFixer().execute(
                FastCodeFixerInputs(), make_options(files, inference=fake, http_client=client),
            )

        assert len(changed) == 1
        assert "https://picsum.photos/800/600?random=1544367567" in changed[0].file_contents
        prompt = fake.calls[0]["messages"][-1].content
        assert "No specific issues reported." in prompt
        assert "picsum.photos" in prompt

    @pytest.mark.asyncio
    async def test_model_fix_applies_on_top_of_prepass(self):
        files = make_files(**{"src/Hero.tsx": f'<img src="{BROKEN}" alt="hero" />\nexport const a = b;'})
        diff = (
            "cat << 'EOF' | patch src/Hero.tsx\n"
            "@@ -2,1 +2,1 @@\n"
            "-export const a = b;\n"
            "+export const a = 1;\n"
            "EOF\n"
        )
        issues = [CodeIssue(message="'b' is not defined", file_path="src/Hero.tsx", line=2)]

        async with _http(404) as client:
            changed = await FastCodeFixer().execute(
                FastCodeFixerInputs(issues=issues),
                make_options(files, inference=FakeInference(diff), http_client=client),
            )

        body = changed[0].file_contents
        assert "picsum.photos" in body
        assert body.endswith("export const a = 1;")

    @pytest.mark.asyncio
    async def test_nothing_to_change(self):
        files = make_files(**{"src/A.tsx": "export const a = 1;"})
        changed = await FastCodeFixer().execute(
            FastCodeFixerInputs(), make_options(files, inference=FakeInference("")),
        )
        assert changed == []
