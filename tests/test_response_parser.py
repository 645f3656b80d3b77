"""Tests for forge_codec.response_parser -- fence stripping and JSON extraction."""

import json

from forge_codec.response_parser import (
    ensure_trailing_newline,
    extract_json_bracket,
    safe_json_parse,
    strip_codeblock,
    strip_outer_fence,
)


def test_clean_json_passthrough():
    t = '{"files_to_fix": [], "commands": []}'
    assert json.loads(strip_codeblock(t))["commands"] == []


def test_code_fence():
    t = '```json\n{"ok": true}\n```'
    assert json.loads(strip_codeblock(t))["ok"] is True


def test_prose_preamble_then_json():
    t = (
        "I reviewed the codebase and found two problems.\n\n"
        '{"files_to_fix": [{"file": "src/App.tsx"}], "commands": []}'
    )
    parsed = json.loads(strip_codeblock(t))
    assert parsed["files_to_fix"][0]["file"] == "src/App.tsx"


def test_array_extraction():
    t = 'Some preamble\n[{"a": 1}]'
    assert json.loads(strip_codeblock(t))[0]["a"] == 1


def test_bracket_extraction_ignores_braces_in_strings():
    t = 'x {"msg": "use {braces}", "n": 1} trailing {"other": 2}'
    assert extract_json_bracket(t) == '{"msg": "use {braces}", "n": 1}'


def test_bracket_extraction_none():
    assert extract_json_bracket("no json here") is None


def test_safe_json_parse_fallbacks():
    assert safe_json_parse('  {"x": 42}  ') == {"x": 42}
    assert safe_json_parse('Here:\n```json\n{"x": 1}\n```\nThanks') == {"x": 1}
    assert safe_json_parse("not json at all") is None


# ---------------------------------------------------------------------------
# Fences
# ---------------------------------------------------------------------------


class TestStripOuterFence:
    def test_wrapped_file(self):
        assert strip_outer_fence("```tsx\nconst a = 1;\n```") == "const a = 1;"

    def test_surrounding_blank_lines(self):
        assert strip_outer_fence("\n```\nx\ny\n```\n") == "x\ny"

    def test_inner_fences_untouched(self):
        text = "# Title\n\n```bash\nnpm i\n```\n\nDone"
        assert strip_outer_fence(text) == text

    def test_unwrapped(self):
        assert strip_outer_fence("plain") == "plain"
        assert strip_outer_fence("") == ""


def test_ensure_trailing_newline():
    assert ensure_trailing_newline("a") == "a\n"
    assert ensure_trailing_newline("a\n") == "a\n"
    assert ensure_trailing_newline("") == ""
