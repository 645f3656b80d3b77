"""Tests for forge_codec.scof -- the heredoc streaming file-output codec."""

import pytest

from forge_codec import SCOFFormat, StreamingState, StreamParseError

from conftest import scof_block


class Recorder:
    """Collects codec events as ``(kind, path, ...)`` tuples."""

    def __init__(self):
        self.events: list[tuple] = []

    def on_open(self, path):
        self.events.append(("open", path))

    def on_chunk(self, path, delta, fmt):
        self.events.append(("chunk", path, delta, fmt))

    def on_close(self, path):
        self.events.append(("close", path))

    def kinds(self, kind):
        return [e for e in self.events if e[0] == kind]


def _run(chunks, finalize=True):
    codec = SCOFFormat()
    state = StreamingState()
    rec = Recorder()
    for chunk in chunks:
        codec.parse_streaming_chunks(chunk, state, rec.on_open, rec.on_chunk, rec.on_close)
    if finalize:
        codec.finalize(state, rec.on_open, rec.on_chunk, rec.on_close)
    return state, rec


RESPONSE = (
    "Sure, here are the files.\n"
    + scof_block("src/App.tsx", "export default function App() {\n  return <Main />;\n}", "Root component")
    + "bun add zustand\n"
    + "# Applying diff to file: src/main.tsx\n"
    + "cat << 'EOF' | patch src/main.tsx\n"
    + "--- a/src/main.tsx\n+++ b/src/main.tsx\n@@ -1,1 +1,1 @@\n-old\n+new\n"
    + "EOF\n"
)


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------


class TestStreaming:
    def test_block_split_across_three_chunks(self):
        chunks = [
            "# Creating new file: a.tsx\ncat > a.tsx << 'EOF'\nexport ",
            "const x=1;\nE",
            "OF\n",
        ]
        state, rec = _run(chunks)

        assert rec.kinds("open") == [("open", "a.tsx")]
        assert rec.kinds("close") == [("close", "a.tsx")]
        assert state.completed_files["a.tsx"].file_contents == "export const x=1;"
        assert state.completed_files["a.tsx"].format == "full_content"

    def test_chunk_deltas_reassemble_contents(self):
        state, rec = _run([RESPONSE])
        deltas = "".join(e[2] for e in rec.kinds("chunk") if e[1] == "src/App.tsx")
        assert deltas == state.completed_files["src/App.tsx"].file_contents

    def test_events_identical_for_every_split_point(self):
        _, whole = _run([RESPONSE])
        for i in range(len(RESPONSE) + 1):
            _, split = _run([RESPONSE[:i], RESPONSE[i:]])
            assert split.events == whole.events, f"split at {i}"

    def test_events_identical_for_single_char_chunks(self):
        _, whole = _run([RESPONSE])
        _, tiny = _run(list(RESPONSE))
        assert tiny.events == whole.events

    def test_open_close_order(self):
        _, rec = _run([RESPONSE])
        order = [(e[0], e[1]) for e in rec.events if e[0] != "chunk"]
        assert order == [
            ("open", "src/App.tsx"),
            ("close", "src/App.tsx"),
            ("open", "src/main.tsx"),
            ("close", "src/main.tsx"),
        ]

    def test_completed_file_available_when_close_fires(self):
        codec = SCOFFormat()
        state = StreamingState()
        seen = []

        def on_close(path):
            seen.append(state.completed_files[path].file_contents)

        codec.parse_streaming_chunks(scof_block("x.ts", "let a = 1;"), state, on_file_close=on_close)
        assert seen == ["let a = 1;"]

    def test_purpose_and_diff_format(self):
        state, _ = _run([RESPONSE])
        assert state.completed_files["src/App.tsx"].file_purpose == "Root component"
        diff = state.completed_files["src/main.tsx"]
        assert diff.format == "unified_diff"
        assert diff.file_contents.startswith("--- a/src/main.tsx")

    def test_install_commands_extracted_once(self):
        state, _ = _run([RESPONSE + "bun add zustand\nnpm install  react-router\n"])
        assert state.parsing_state.extracted_install_commands == [
            "bun add zustand",
            "npm install react-router",
        ]

    def test_accumulator_holds_raw_text(self):
        state, _ = _run([RESPONSE[:10], RESPONSE[10:]])
        assert state.accumulator == RESPONSE

    def test_delimiter_inside_fence_is_content(self):
        body = "# Notes\n```\nEOF\n```\nend"
        state, rec = _run([scof_block("README.md", body)])
        assert state.completed_files["README.md"].file_contents == body
        assert len(rec.kinds("close")) == 1

    def test_unbalanced_fence_in_diff_context(self):
        diff = (
            "cat << 'EOF' | patch README.md\n"
            "@@ -3,3 +3,4 @@\n"
            " ```bash\n"
            " bun install\n"
            "+bun run build\n"
            " bun dev\n"
            "EOF\n"
        )
        files = SCOFFormat().deserialize(diff + scof_block("src/a.ts", "export const a = 1;"))
        assert [f.file_path for f in files] == ["README.md", "src/a.ts"]
        assert files[0].format == "unified_diff"
        assert files[0].file_contents.endswith(" bun dev")
        assert files[1].file_contents == "export const a = 1;"

    def test_indented_delimiter_in_diff_context_is_content(self):
        diff = (
            "cat << 'EOF' | patch scripts/gen.sh\n"
            "@@ -1,3 +1,3 @@\n"
            " cat > out.txt << 'EOF'\n"
            "-old\n"
            "+new\n"
            " EOF\n"
            "EOF\n"
        )
        (patch,) = SCOFFormat().deserialize(diff)
        assert patch.file_contents.splitlines()[-1] == " EOF"
        assert "+new" in patch.file_contents

    def test_leading_dot_slash_normalised(self):
        state, rec = _run(["cat > ./src/a.ts << 'EOF'\nx\nEOF\n"])
        assert "src/a.ts" in state.completed_files
        assert rec.kinds("open") == [("open", "src/a.ts")]

    def test_crlf_line_endings(self):
        state, _ = _run(["cat > a.ts << 'EOF'\r\nline1\r\nline2\r\nEOF\r\n"])
        assert state.completed_files["a.ts"].file_contents == "line1\nline2"

    def test_final_line_without_newline_flushed_by_finalize(self):
        state, rec = _run(["cat > a.ts << 'EOF'\nx\nEOF"])
        assert rec.kinds("close") == [("close", "a.ts")]
        assert state.completed_files["a.ts"].file_contents == "x"

    def test_empty_chunk_is_noop(self):
        codec = SCOFFormat()
        state = StreamingState()
        codec.parse_streaming_chunks("", state)
        assert state.accumulator == ""


# ---------------------------------------------------------------------------
# Malformed streams
# ---------------------------------------------------------------------------


class TestMalformed:
    def test_unterminated_block_raises_at_finalize(self):
        with pytest.raises(StreamParseError) as exc:
            _run(["cat > a.ts << 'EOF'\nconst a = 1;\n"])
        assert "unterminated" in exc.value.problems[0]
        assert "a.ts" in str(exc.value)

    def test_unterminated_block_does_not_raise_while_streaming(self):
        state, rec = _run(["cat > a.ts << 'EOF'\nconst a = 1;\n"], finalize=False)
        assert rec.kinds("close") == []
        assert state.completed_files == {}

    def test_duplicate_block_keeps_first_and_raises(self):
        text = scof_block("a.ts", "first") + scof_block("a.ts", "second")
        codec = SCOFFormat()
        state = StreamingState()
        rec = Recorder()
        codec.parse_streaming_chunks(text, state, rec.on_open, rec.on_chunk, rec.on_close)

        assert state.completed_files["a.ts"].file_contents == "first"
        assert len(rec.kinds("open")) == 1
        assert len(rec.kinds("close")) == 1
        with pytest.raises(StreamParseError, match="duplicate"):
            codec.finalize(state)

    def test_parse_after_finalize_rejected(self):
        codec = SCOFFormat()
        state = StreamingState()
        codec.finalize(state)
        with pytest.raises(RuntimeError):
            codec.parse_streaming_chunks("x\n", state)

    def test_finalize_twice_is_noop(self):
        codec = SCOFFormat()
        state = StreamingState()
        codec.finalize(state)
        assert codec.finalize(state) is state

    def test_to_dict_lists_problems(self):
        err = StreamParseError(["a", "b", "c", "d"])
        assert err.to_dict()["problems"] == ["a", "b", "c", "d"]
        assert "(+1 more)" in str(err)


# ---------------------------------------------------------------------------
# Whole-response helpers
# ---------------------------------------------------------------------------


class TestWholeResponse:
    def test_deserialize(self):
        files = SCOFFormat().deserialize(RESPONSE)
        assert [f.file_path for f in files] == ["src/App.tsx", "src/main.tsx"]

    def test_deserialize_no_blocks(self):
        assert SCOFFormat().deserialize("No changes are needed.") == []

    def test_serialize_then_deserialize(self):
        codec = SCOFFormat()
        files = codec.deserialize(RESPONSE)[:1]
        again = codec.deserialize(codec.serialize(files))
        assert again == files

    def test_format_instructions_mention_delimiter(self):
        text = SCOFFormat().format_instructions()
        assert "cat > <path> << 'EOF'" in text
        assert "patch <path>" in text
