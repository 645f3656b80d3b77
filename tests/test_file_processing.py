"""Tests for phaseforge.domain.file_processing."""

import pytest

from forge_codec import FileOutput, PatchConflict
from phaseforge.domain.file_processing import (
    find_file_purpose,
    line_count,
    process_generated_file_contents,
    serialize_files,
)
from phaseforge.schemas import PhaseConcept, PhaseFile

ORIGINAL = FileOutput(file_path="src/a.ts", file_contents="a\nb\nc", file_purpose="Helpers")
DIFF = "@@ -1,3 +1,3 @@\n a\n-b\n+B\n c\n"


class TestProcessGeneratedFileContents:
    def test_full_content_strips_fence(self):
        gen = FileOutput(file_path="src/a.ts", file_contents="```ts\nconst a = 1;\n```")
        out = process_generated_file_contents(gen, None, purpose="Constants")
        assert out.file_contents == "const a = 1;"
        assert out.file_purpose == "Constants"
        assert out.format == "full_content"

    def test_diff_applied_to_original(self):
        gen = FileOutput(file_path="src/a.ts", file_contents=DIFF, format="unified_diff")
        out = process_generated_file_contents(gen, ORIGINAL)
        assert out.file_contents == "a\nB\nc"
        assert out.format == "full_content"
        assert out.file_purpose == "Helpers"

    def test_failed_diff_keeps_original(self):
        gen = FileOutput(file_path="src/a.ts", file_contents="@@ -1,1 +1,1 @@\n-zzz\n+y\n", format="unified_diff")
        out = process_generated_file_contents(gen, ORIGINAL)
        assert out.file_contents == ORIGINAL.file_contents

    def test_failed_diff_strict_raises(self):
        gen = FileOutput(file_path="src/a.ts", file_contents="@@ -1,1 +1,1 @@\n-zzz\n+y\n", format="unified_diff")
        with pytest.raises(PatchConflict):
            process_generated_file_contents(gen, ORIGINAL, strict=True)


class TestFindFilePurpose:
    def test_phase_plan_wins(self):
        phase = PhaseConcept(name="P", files=[PhaseFile(path="src/a.ts", purpose="From plan")])
        assert find_file_purpose("src/a.ts", phase, {"src/a.ts": ORIGINAL}, "declared") == "From plan"

    def test_existing_then_declared(self):
        assert find_file_purpose("src/a.ts", None, {"src/a.ts": ORIGINAL}, "declared") == "Helpers"
        assert find_file_purpose("src/new.ts", None, {}, "declared") == "declared"


def test_line_count():
    assert line_count("") == 0
    assert line_count("a") == 1
    assert line_count("a\nb\n") == 2


def test_serialize_files_uses_heredoc_blocks():
    text = serialize_files([ORIGINAL])
    assert "cat > src/a.ts << 'EOF'" in text
    assert "# File Purpose: Helpers" in text
