"""UserConversationProcessor: the chat side of a build.

The processor answers the user while the build runs in the background.
Change requests go to the orchestrating agent through the
``queue_request`` tool; project updates come back as internal memos the
model can narrate.  Older history is compacted into a single summary
message before every call so long sessions stay within the message cap.
"""

from __future__ import annotations

import enum
import logging
import math
import re
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable

from pydantic import BaseModel, ConfigDict, Field

from phaseforge.config import settings
from phaseforge.domain.issues import RuntimeErrorEntry
from phaseforge.errors import OperationError, RateLimitExceededError, SecurityError
from phaseforge.inference import StreamOptions
from phaseforge.operations.base import AgentOperation, OperationOptions, maybe_await
from phaseforge.prompts import serialize_file_list, user_message
from phaseforge.schemas import ConversationalResponse, ConversationMessage, ImageAttachment
from phaseforge.tools import ToolDefinition, build_tools

logger = logging.getLogger(__name__)

FALLBACK_USER_RESPONSE = (
    "I understand you'd like to make some changes to your project. "
    "I'll work on that in the next phase."
)

PROJECT_UPDATE_TYPES = (
    "phase_implementing",
    "phase_implemented",
    "code_review",
    "file_regenerating",
    "file_regenerated",
    "deployment_completed",
    "command_executing",
)

COMPACTION_RATIO = 0.8
PRESERVE_RECENT_RATIO = 0.4
MAX_SUMMARY_LINE_LENGTH = 400
SUMMARY_HEADER = "<Compactified Conversation History>"
SUMMARY_FOOTER = "[Recent conversation continues below in full detail...]"
INTERNAL_MEMO_MARKER = "Internal Memo"

_SYSTEM_CONTEXT_RE = re.compile(r"<system_context>.*?</system_context>\n?", re.DOTALL | re.IGNORECASE)

ResponseCallback = Callable[..., Any]


def new_conversation_id() -> str:
    return f"conv-{uuid.uuid4().hex[:16]}"


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


class ConversationState(str, enum.Enum):
    AWAITING_USER_INPUT = "awaiting_user_input"
    CLASSIFYING = "classifying"
    ANSWERING = "answering"
    TOOL_CALLING = "tool_calling"
    RESPONDING = "responding"


_TRANSITIONS: dict[ConversationState, set[ConversationState]] = {
    ConversationState.AWAITING_USER_INPUT: {ConversationState.CLASSIFYING},
    ConversationState.CLASSIFYING: {
        ConversationState.ANSWERING,
        ConversationState.TOOL_CALLING,
        ConversationState.RESPONDING,
    },
    ConversationState.ANSWERING: {ConversationState.TOOL_CALLING, ConversationState.RESPONDING},
    ConversationState.TOOL_CALLING: {ConversationState.ANSWERING, ConversationState.RESPONDING},
    ConversationState.RESPONDING: {ConversationState.AWAITING_USER_INPUT},
}


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

SYSTEM_PROMPT = """\
You are the conversational interface of an AI app-building platform.

<YOUR_ROLE>
- Answer questions about the project.
- Queue code changes for the development agent with the queue_request tool.
- Search the web when you need facts (only if the web_search tool is offered).
Speak in the first person ("I'll fix that"), friendly and concise.
You cannot write code yourself. Never put code in your replies.
</YOUR_ROLE>

<REQUEST_HANDLING_PROTOCOL>
1. Classify the message: question, change request, bug report, or ambiguous.
2. Questions: answer directly. Ambiguous requests: ask one clarifying question.
3. Change requests and bug reports: call queue_request with
   "[ACTION] [WHAT] [WHERE] [WHY if critical]", e.g.
   "Fix maximum update depth error in GameBoard component - URGENT".
   Include user-provided details (colours, copy, URLs) verbatim.
4. Only say a request is queued after the tool result for THIS turn says so.
</REQUEST_HANDLING_PROTOCOL>

<SYSTEM_CONTEXT>
User messages start with a <system_context> block holding the timestamp,
current runtime errors and project updates. Use it, but never repeat the tag.
Messages marked Internal Memo are progress notes from the build; they are not
from the user.
</SYSTEM_CONTEXT>"""

USER_PROMPT = """\
<system_context>
## Timestamp:
{timestamp}

## Project runtime errors:
{errors}

## Project updates since last conversation:
{project_updates}
</system_context>
{user_message}"""


def serialize_runtime_errors(errors: list[RuntimeErrorEntry]) -> str:
    if not errors:
        return "None"
    lines = []
    for i, err in enumerate(errors, 1):
        where = f" ({err.file_path}{':' + str(err.line) if err.line else ''})" if err.file_path else ""
        lines.append(f"{i}. {err.message}{where}")
    return "\n".join(lines)


def build_user_message_with_context(
    text: str,
    errors: list[RuntimeErrorEntry],
    project_updates: list[str],
    *,
    for_inference: bool,
) -> str:
    """Prefix *text* with the ``<system_context>`` block.

    The history copy (``for_inference=False``) has errors and updates
    redacted to keep stored history small.
    """
    return USER_PROMPT.format(
        timestamp=datetime.now(timezone.utc).isoformat(),
        errors=serialize_runtime_errors(errors) if for_inference else "redacted",
        project_updates=(
            ("\n\n".join(project_updates) if project_updates else "None")
            if for_inference else "redacted"
        ),
        user_message=text,
    )


def strip_system_context(text: str) -> str:
    return _SYSTEM_CONTEXT_RE.sub("", text).strip()


# ---------------------------------------------------------------------------
# Compaction
# ---------------------------------------------------------------------------


def compaction_threshold() -> int:
    return math.floor(COMPACTION_RATIO * settings.MAX_LLM_MESSAGES)


def is_compaction_summary(message: ConversationMessage) -> bool:
    return (
        message.preserved_count is not None
        and isinstance(message.content, str)
        and message.content.startswith(SUMMARY_HEADER)
    )


def _summary_body(message: ConversationMessage) -> list[str]:
    """Role-labelled lines of an earlier summary, without its header and footer."""
    lines = str(message.content).split("\n")
    return [
        line for line in lines[2:]
        if line and line not in ("---", SUMMARY_FOOTER)
    ]


def _summarise_message(message: ConversationMessage) -> str:
    role = {"assistant": "assistant (you)", "user": "User"}.get(message.role, message.role)
    content = message.content

    if isinstance(content, str):
        text = content
    elif isinstance(content, list):
        text = " ".join(str(p.get("text", "")) for p in content if p.get("type") == "text")
        images = sum(1 for p in content if p.get("type") in ("image", "image_url"))
        if images:
            text += f" [{images} image(s) attached]"
        tool_uses = [str(p.get("name", "unknown_tool")) for p in content if p.get("type") == "tool_use"]
        if tool_uses and not text.strip():
            text = f"[Used tools: {', '.join(tool_uses)}]"
        elif any(p.get("type") == "tool_result" for p in content) and not text.strip():
            text = "[Tool results]"
    elif message.tool_calls:
        names = [
            str(tc.get("name") or (tc.get("function") or {}).get("name") or "unknown_tool")
            for tc in message.tool_calls
        ]
        text = f"[Used tools: {', '.join(names)}]"
    else:
        text = "[Empty message]"

    text = strip_system_context(text)
    if len(text) > MAX_SUMMARY_LINE_LENGTH:
        text = text[:MAX_SUMMARY_LINE_LENGTH] + "..."
    text = re.sub(r"\s+", " ", text).strip()
    return f"{role}: {text}" if text else ""


def compact_context(messages: list[ConversationMessage]) -> list[ConversationMessage]:
    """Collapse the oldest 60 % of *messages* into one summary message.

    Runs only once the history reaches ``floor(0.8 * MAX_LLM_MESSAGES)``.
    The newest ``ceil(0.4 * n)`` messages are kept verbatim.  A summary at
    the head of the history is folded into the new one, and a history that
    is already compacted with nothing appended is returned unchanged.
    """
    n = len(messages)
    if n < compaction_threshold():
        return messages
    if n and is_compaction_summary(messages[0]) and messages[0].preserved_count == n - 1:
        return messages

    preserve = math.ceil(n * PRESERVE_RECENT_RATIO)
    to_compact = n - preserve
    if to_compact <= 0:
        return messages[-preserve:]

    old, recent = messages[:to_compact], messages[to_compact:]
    lines = [SUMMARY_HEADER, f"[{to_compact} older messages condensed for context efficiency]", ""]
    for msg in old:
        if is_compaction_summary(msg):
            lines.extend(_summary_body(msg))
            continue
        line = _summarise_message(msg)
        if line:
            lines.append(line)
    lines += ["", "---", SUMMARY_FOOTER]

    summary = ConversationMessage(
        role="user",
        content="\n".join(lines),
        conversation_id=f"compactified-{int(time.time() * 1000)}",
        preserved_count=len(recent),
    )
    logger.warning(
        "Compacted conversation history: %d -> %d messages (threshold %d)",
        n, len(recent) + 1, compaction_threshold(),
    )
    return [summary, *recent]


# ---------------------------------------------------------------------------
# Operation
# ---------------------------------------------------------------------------


class UserConversationInputs(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    user_message: str
    past_messages: list[ConversationMessage] = Field(default_factory=list)
    conversation_response_callback: ResponseCallback | None = None
    errors: list[RuntimeErrorEntry] = Field(default_factory=list)
    project_updates: list[str] = Field(default_factory=list)
    images: list[ImageAttachment] = Field(default_factory=list)


class UserConversationOutputs(BaseModel):
    model_config = ConfigDict(frozen=True)

    conversation_response: ConversationalResponse
    messages: list[ConversationMessage]


class UserConversationProcessor(AgentOperation[UserConversationInputs, UserConversationOutputs]):
    """One processor per conversation; turns are handled one at a time."""

    def __init__(self) -> None:
        self.state = ConversationState.AWAITING_USER_INPUT

    def _transition(self, target: ConversationState) -> None:
        if target == self.state:
            return
        if target not in _TRANSITIONS[self.state]:
            raise OperationError(
                "user_conversation",
                f"illegal state transition {self.state.value} -> {target.value}",
                detail={"from": self.state.value, "to": target.value},
            )
        logger.debug("Conversation state %s -> %s", self.state.value, target.value)
        self.state = target

    async def execute(
        self, inputs: UserConversationInputs, options: OperationOptions,
    ) -> UserConversationOutputs:
        if self.state != ConversationState.AWAITING_USER_INPUT:
            raise OperationError("user_conversation", f"busy ({self.state.value}); one turn at a time")
        self._transition(ConversationState.CLASSIFYING)
        logger.info(
            "Processing user message (%d chars, %d images)",
            len(inputs.user_message), len(inputs.images),
        )
        try:
            return await self._respond(inputs, options)
        except (RateLimitExceededError, SecurityError):
            raise
        except Exception:
            logger.exception("Error processing user message; replying with fallback")
            self._transition(ConversationState.RESPONDING)
            return UserConversationOutputs(
                conversation_response=ConversationalResponse(user_response=FALLBACK_USER_RESPONSE),
                messages=[
                    *inputs.past_messages,
                    ConversationMessage(
                        role="user", content=inputs.user_message, conversation_id=new_conversation_id(),
                    ),
                    ConversationMessage(
                        role="assistant", content=FALLBACK_USER_RESPONSE,
                        conversation_id=new_conversation_id(),
                    ),
                ],
            )
        finally:
            self.state = ConversationState.AWAITING_USER_INPUT

    async def _respond(
        self, inputs: UserConversationInputs, options: OperationOptions,
    ) -> UserConversationOutputs:
        callback = inputs.conversation_response_callback
        reply_id = new_conversation_id()

        async def _notify(text: str, is_streaming: bool, tool: dict | None = None) -> None:
            if callback is not None:
                await maybe_await(callback(text, reply_id, is_streaming, tool))

        inference_text = build_user_message_with_context(
            inputs.user_message, inputs.errors, inputs.project_updates, for_inference=True,
        )
        history_text = build_user_message_with_context(
            inputs.user_message, inputs.errors, inputs.project_updates, for_inference=False,
        )
        if inputs.images:
            history_text += f"\n\n[{len(inputs.images)} image(s) attached]"

        history = [
            *inputs.past_messages,
            ConversationMessage(role="user", content=history_text, conversation_id=new_conversation_id()),
        ]

        tools = self._wrap_tools(build_tools(options.agent) if options.agent is not None else [], _notify)
        compacted = compact_context(inputs.past_messages)

        system_prompt = SYSTEM_PROMPT
        if options.context.all_files:
            system_prompt += (
                "\n\n<PROJECT_FILES>\n" + serialize_file_list(options.context.all_files) + "\n</PROJECT_FILES>"
            )
        inference_message = user_message(inference_text, inputs.images).model_copy(
            update={"conversation_id": new_conversation_id()},
        )

        streamed: list[str] = []

        async def _on_chunk(chunk: str) -> None:
            if self.state != ConversationState.ANSWERING:
                self._transition(ConversationState.ANSWERING)
            streamed.append(chunk)
            await _notify(chunk, True)

        result = await options.inference(
            messages=[
                ConversationMessage(role="system", content=system_prompt),
                *compacted,
                inference_message,
            ],
            action="conversational_response",
            tools=tools or None,
            stream=StreamOptions(on_chunk=_on_chunk, chunk_size=settings.CONVERSATION_STREAM_CHUNK_SIZE),
        )
        self._transition(ConversationState.RESPONDING)

        for msg in result.tool_messages:
            if (
                msg.role == "assistant"
                and isinstance(msg.content, str)
                and INTERNAL_MEMO_MARKER in msg.content
            ):
                continue
            history.append(msg.model_copy(update={"conversation_id": new_conversation_id()}))
        history.append(ConversationMessage(
            role="assistant", content=result.text, conversation_id=new_conversation_id(),
        ))

        response_text = "".join(streamed) or result.text
        logger.info("Conversation reply ready (%d chars, history %d)", len(response_text), len(history))
        return UserConversationOutputs(
            conversation_response=ConversationalResponse(user_response=response_text, conversation_id=reply_id),
            messages=history,
        )

    def _wrap_tools(self, tools: list[ToolDefinition], notify: Callable) -> list[ToolDefinition]:
        wrapped = []
        for tool in tools:
            name = tool.name

            async def _start(args: dict, _name: str = name) -> None:
                self._transition(ConversationState.TOOL_CALLING)
                await notify("", False, {"name": _name, "status": "start", "args": args})

            async def _complete(args: dict, _name: str = name) -> None:
                await notify("", False, {"name": _name, "status": "success", "args": args})

            async def _error(args: dict, _name: str = name) -> None:
                await notify("", False, {"name": _name, "status": "error", "args": args})

            wrapped.append(tool.model_copy(update={
                "on_start": _start, "on_complete": _complete, "on_error": _error,
            }))
        return wrapped

    # -- project updates ----------------------------------------------------

    @staticmethod
    def is_project_update_type(update_type: Any) -> bool:
        return update_type in PROJECT_UPDATE_TYPES

    def process_project_update(self, update_type: str) -> list[ConversationMessage]:
        """Internal memo announcing *update_type*, or nothing for irrelevant updates."""
        if not self.is_project_update_type(update_type):
            return []
        logger.info("Recording project update %s", update_type)
        return [ConversationMessage(
            role="assistant",
            content=f"**<{INTERNAL_MEMO_MARKER}>**\nProject Updates: {update_type}\n</{INTERNAL_MEMO_MARKER}>",
            conversation_id=new_conversation_id(),
        )]


__all__ = [
    "FALLBACK_USER_RESPONSE",
    "PROJECT_UPDATE_TYPES",
    "ConversationState",
    "UserConversationInputs",
    "UserConversationOutputs",
    "UserConversationProcessor",
    "compact_context",
    "compaction_threshold",
    "is_compaction_summary",
    "strip_system_context",
]
