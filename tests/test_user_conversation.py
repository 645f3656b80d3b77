"""Tests for UserConversationProcessor and history compaction."""

import pytest

from phaseforge.domain.issues import RuntimeErrorEntry
from phaseforge.errors import InferenceError, OperationError, RateLimitExceededError, SecurityError
from phaseforge.inference import InferenceResult
from phaseforge.operations.user_conversation import (
    FALLBACK_USER_RESPONSE,
    SUMMARY_FOOTER,
    SUMMARY_HEADER,
    ConversationState,
    UserConversationInputs,
    UserConversationProcessor,
    build_user_message_with_context,
    compact_context,
    compaction_threshold,
    is_compaction_summary,
    strip_system_context,
)
from phaseforge.schemas import ConversationMessage, ImageAttachment

from conftest import FakeInference, make_files, make_options


def _history(n: int, prefix: str = "message") -> list[ConversationMessage]:
    return [
        ConversationMessage(role="user" if i % 2 == 0 else "assistant", content=f"{prefix} {i}")
        for i in range(n)
    ]


# ---------------------------------------------------------------------------
# Compaction
# ---------------------------------------------------------------------------


class TestCompaction:
    def test_threshold(self):
        assert compaction_threshold() == 80

    def test_below_threshold_unchanged(self):
        messages = _history(79)
        assert compact_context(messages) is messages

    def test_hundred_messages_compact_to_forty_one(self):
        messages = _history(100)
        out = compact_context(messages)

        assert len(out) == 41
        summary = out[0]
        assert is_compaction_summary(summary)
        assert summary.role == "user"
        assert summary.preserved_count == 40
        assert summary.conversation_id.startswith("compactified-")
        assert out[1:] == messages[60:]

        lines = summary.content.split("\n")
        assert lines[0] == SUMMARY_HEADER
        assert lines[1] == "[60 older messages condensed for context efficiency]"
        assert lines[3] == "User: message 0"
        assert lines[4] == "assistant (you): message 1"
        assert lines[-2:] == ["---", SUMMARY_FOOTER]

    def test_compaction_is_idempotent(self):
        once = compact_context(_history(100))
        assert compact_context(once) == once

    def test_idempotent_when_summary_alone_exceeds_threshold(self, monkeypatch):
        monkeypatch.setattr("phaseforge.config.settings.MAX_LLM_MESSAGES", 5)
        once = compact_context(_history(10))
        assert len(once) == 5
        assert compact_context(once) is once

    def test_earlier_summary_folded_forward(self, monkeypatch):
        monkeypatch.setattr("phaseforge.config.settings.MAX_LLM_MESSAGES", 5)
        once = compact_context(_history(10))
        grown = [*once, *_history(3, "later")]
        twice = compact_context(grown)

        assert is_compaction_summary(twice[0])
        assert sum(1 for m in twice if is_compaction_summary(m)) == 1
        body = twice[0].content
        assert "User: message 0" in body
        assert body.count(SUMMARY_HEADER) == 1

    def test_summary_lines_for_rich_content(self):
        messages = [
            ConversationMessage(role="user", content=[
                {"type": "image", "source": {"type": "base64", "media_type": "image/png", "data": "x"}},
                {"type": "text", "text": "like this"},
            ]),
            ConversationMessage(role="assistant", content=[{"type": "tool_use", "name": "queue_request", "input": {}}]),
            ConversationMessage(role="user", content="<system_context>\nsecret\n</system_context>\nhello"),
            *_history(77),
        ]
        summary = compact_context(messages)[0].content
        assert "User: like this [1 image(s) attached]" in summary
        assert "assistant (you): [Used tools: queue_request]" in summary
        assert "User: hello" in summary
        assert "secret" not in summary


def test_strip_system_context():
    text = build_user_message_with_context("hi there", [], [], for_inference=False)
    assert strip_system_context(text) == "hi there"


def test_history_copy_is_redacted():
    errors = [RuntimeErrorEntry(message="Boom", file_path="src/App.tsx", line=3)]
    live = build_user_message_with_context("hi", errors, ["phase_implemented"], for_inference=True)
    stored = build_user_message_with_context("hi", errors, ["phase_implemented"], for_inference=False)
    assert "1. Boom (src/App.tsx:3)" in live
    assert "phase_implemented" in live
    assert "Boom" not in stored
    assert stored.count("redacted") == 2


# ---------------------------------------------------------------------------
# Processor
# ---------------------------------------------------------------------------


class RecordingAgent:
    def __init__(self):
        self.queued = []

    def queue_user_request(self, request):
        self.queued.append(request)


class TestUserConversationProcessor:
    @pytest.mark.asyncio
    async def test_streams_reply_and_builds_history(self):
        events = []
        fake = FakeInference("Sure, I can explain how the store works.")
        past = _history(4)
        processor = UserConversationProcessor()

        out = await processor.execute(
            UserConversationInputs(
                user_message="How does the store work?",
                past_messages=past,
                errors=[RuntimeErrorEntry(message="Boom", file_path="src/App.tsx", line=3)],
                conversation_response_callback=lambda *a: events.append(a),
            ),
            make_options(make_files(**{"src/store.ts": "export {}"}), inference=fake),
        )

        assert out.conversation_response.user_response == "Sure, I can explain how the store works."
        assert "".join(e[0] for e in events) == out.conversation_response.user_response
        assert all(e[1] == out.conversation_response.conversation_id and e[2] is True for e in events)
        assert processor.state == ConversationState.AWAITING_USER_INPUT

        assert out.messages[:4] == past
        stored_user = out.messages[4]
        assert stored_user.role == "user"
        assert "redacted" in stored_user.content
        assert out.messages[-1].role == "assistant"
        assert out.messages[-1].content == "Sure, I can explain how the store works."

        call = fake.calls[0]
        assert call["action"] == "conversational_response"
        assert call["tools"] is None
        assert "<PROJECT_FILES>\n- src/store.ts: src/store.ts purpose" in call["messages"][0].content
        assert "1. Boom (src/App.tsx:3)" in call["messages"][-1].content

    @pytest.mark.asyncio
    async def test_long_history_compacted_for_inference_only(self):
        fake = FakeInference("ok")
        past = _history(100)
        out = await UserConversationProcessor().execute(
            UserConversationInputs(user_message="hi", past_messages=past), make_options(inference=fake),
        )
        sent = fake.calls[0]["messages"]
        assert len(sent) == 1 + 41 + 1
        assert is_compaction_summary(sent[1])
        assert out.messages[:100] == past

    @pytest.mark.asyncio
    async def test_images_sent_and_noted_in_history(self):
        fake = FakeInference("Nice mockup.")
        out = await UserConversationProcessor().execute(
            UserConversationInputs(user_message="Like this", images=[ImageAttachment(base64_data="QUJD")]),
            make_options(inference=fake),
        )
        sent = fake.calls[0]["messages"][-1].content
        assert sent[0]["type"] == "image"
        assert out.messages[0].content.endswith("[1 image(s) attached]")

    @pytest.mark.asyncio
    async def test_tool_call_hooks_and_history(self):
        agent = RecordingAgent()
        events = []
        tool_messages = [
            ConversationMessage(role="assistant", content=[
                {"type": "tool_use", "id": "t1", "name": "queue_request", "input": {}},
            ]),
            ConversationMessage(role="user", content=[
                {"type": "tool_result", "tool_use_id": "t1", "content": "{}"},
            ]),
            ConversationMessage(role="assistant", content="**<Internal Memo>**\nProject Updates: code_review"),
        ]

        async def respond(**kwargs):
            (tool,) = kwargs["tools"]
            result = await tool.run({"modification_request": "Make the header blue"})
            assert result.status == "success"
            return InferenceResult(text="Queued: header colour.", tool_messages=tool_messages)

        out = await UserConversationProcessor().execute(
            UserConversationInputs(
                user_message="Make the header blue",
                conversation_response_callback=lambda *a: events.append(a),
            ),
            make_options(inference=FakeInference(respond), agent=agent),
        )

        assert agent.queued == ["Make the header blue"]
        tool_events = [e[3] for e in events if e[3] is not None]
        assert [t["status"] for t in tool_events] == ["start", "success"]
        assert tool_events[0]["name"] == "queue_request"
        assert tool_events[0]["args"] == {"modification_request": "Make the header blue"}

        roles = [m.role for m in out.messages]
        assert roles == ["user", "assistant", "user", "assistant"]
        assert all("Internal Memo" not in str(m.content) for m in out.messages)
        assert out.conversation_response.user_response == "Queued: header colour."

    @pytest.mark.asyncio
    async def test_failure_yields_fallback(self):
        past = _history(2)
        processor = UserConversationProcessor()
        out = await processor.execute(
            UserConversationInputs(user_message="hello?", past_messages=past),
            make_options(inference=FakeInference(InferenceError("upstream 500", action="conversational_response"))),
        )
        assert out.conversation_response.user_response == FALLBACK_USER_RESPONSE
        assert out.messages[:2] == past
        assert out.messages[2].content == "hello?"
        assert out.messages[3].content == FALLBACK_USER_RESPONSE
        assert processor.state == ConversationState.AWAITING_USER_INPUT

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        RateLimitExceededError("slow down", action="conversational_response", status_code=429),
        SecurityError("refused", action="conversational_response", status_code=403),
    ])
    async def test_rate_limit_and_security_errors_propagate(self, error):
        processor = UserConversationProcessor()
        with pytest.raises(type(error)):
            await processor.execute(
                UserConversationInputs(user_message="hi"), make_options(inference=FakeInference(error)),
            )
        assert processor.state == ConversationState.AWAITING_USER_INPUT

    @pytest.mark.asyncio
    async def test_busy_processor_rejects_second_turn(self):
        processor = UserConversationProcessor()
        processor.state = ConversationState.ANSWERING
        fake = FakeInference("unused")
        with pytest.raises(OperationError, match="busy"):
            await processor.execute(UserConversationInputs(user_message="hi"), make_options(inference=fake))
        assert fake.calls == []


class TestStateMachine:
    def test_illegal_transition(self):
        processor = UserConversationProcessor()
        processor.state = ConversationState.RESPONDING
        with pytest.raises(OperationError):
            processor._transition(ConversationState.CLASSIFYING)

    def test_same_state_is_noop(self):
        processor = UserConversationProcessor()
        processor._transition(ConversationState.AWAITING_USER_INPUT)
        assert processor.state == ConversationState.AWAITING_USER_INPUT


class TestProjectUpdates:
    def test_known_update_becomes_memo(self):
        (memo,) = UserConversationProcessor().process_project_update("phase_implemented")
        assert memo.role == "assistant"
        assert "Internal Memo" in memo.content
        assert "Project Updates: phase_implemented" in memo.content

    def test_unknown_update_ignored(self):
        assert UserConversationProcessor().process_project_update("heartbeat") == []
        assert not UserConversationProcessor.is_project_update_type(None)
