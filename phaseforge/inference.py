"""Inference boundary: the one seam through which operations call a model.

``execute_inference`` resolves the model for an action, streams text to
the caller in fixed-size chunks, validates structured output against a
Pydantic schema (re-asking the model on mismatch), runs the tool-call
loop, and translates transport failures into the ``PhaseForgeError``
hierarchy.  Transient provider errors are retried inside
:mod:`phaseforge.clients.llm_client`; nothing here retries a call that
has already streamed output.

Operations receive this function through ``OperationOptions.inference``
so tests and hosts can substitute their own.
"""

from __future__ import annotations

import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from forge_codec.response_parser import safe_json_parse
from phaseforge.clients import llm_client
from phaseforge.clients.llm_client import LLMAPIError
from phaseforge.config import (
    ReasoningEffort,
    get_agent_config,
    get_model_for_role,
    get_thinking_budget,
    settings,
)
from phaseforge.errors import (
    ConfigurationError,
    InferenceError,
    RateLimitExceededError,
    SchemaValidationError,
    SecurityError,
)
from phaseforge.schemas import ConversationMessage
from phaseforge.tools import ToolDefinition

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[str], Awaitable[None] | None]


@dataclass
class StreamOptions:
    """Deliver streamed text to *on_chunk* in pieces of *chunk_size* characters."""

    on_chunk: ChunkCallback
    chunk_size: int = 256


class InferenceResult(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    text: str = ""
    object: Any = None
    tool_messages: list[ConversationMessage] = Field(default_factory=list)
    usage: dict = Field(default_factory=dict)


InferenceFn = Callable[..., Awaitable[InferenceResult]]


# ---------------------------------------------------------------------------
# Provider resolution & message shaping
# ---------------------------------------------------------------------------


def _resolve_provider() -> tuple[str, str]:
    """Return ``(provider, api_key)``; raise ``ConfigurationError`` if none usable."""
    provider = (settings.LLM_PROVIDER or "").lower()
    if not provider:
        provider = "anthropic" if settings.ANTHROPIC_API_KEY else "openai"
    key = settings.ANTHROPIC_API_KEY if provider == "anthropic" else settings.OPENAI_API_KEY
    if provider not in ("anthropic", "openai"):
        raise ConfigurationError(f"Unknown LLM_PROVIDER {provider!r}")
    if not key:
        raise ConfigurationError(
            f"No API key configured for provider {provider!r}",
            detail={"provider": provider},
        )
    return provider, key


def _split_messages(messages: list[ConversationMessage]) -> tuple[str, list[dict]]:
    """Join system messages into one prompt; shape the rest for the API.

    Consecutive same-role messages are merged, since the Messages API
    requires alternating turns.
    """
    system_parts: list[str] = []
    api_messages: list[dict] = []
    for msg in messages:
        if msg.role == "system":
            if isinstance(msg.content, str) and msg.content:
                system_parts.append(msg.content)
            continue
        if msg.content is None or msg.content == "" or msg.content == []:
            continue
        content = msg.content if isinstance(msg.content, list) else [{"type": "text", "text": msg.content}]
        if api_messages and api_messages[-1]["role"] == msg.role:
            api_messages[-1]["content"] = [*api_messages[-1]["content"], *content]
        else:
            api_messages.append({"role": msg.role, "content": list(content)})
    return "\n\n".join(system_parts), api_messages


def _schema_instruction(schema: type[BaseModel]) -> str:
    return (
        "\n\n<RESPONSE_FORMAT>\n"
        "Respond with a single JSON object that validates against this JSON Schema. "
        "Output only the JSON, with no commentary before or after it.\n"
        f"{json.dumps(schema.model_json_schema(), indent=2)}\n"
        "</RESPONSE_FORMAT>"
    )


def _translate(exc: Exception, action: str) -> InferenceError:
    if isinstance(exc, LLMAPIError):
        code = exc.status_code
        if code == 429:
            return RateLimitExceededError(str(exc), action=action, status_code=code)
        if code == 403:
            return SecurityError(str(exc), action=action, status_code=code)
        return InferenceError(str(exc), action=action, status_code=code)
    return InferenceError(f"{type(exc).__name__}: {exc}", action=action)


# ---------------------------------------------------------------------------
# Chunked delivery
# ---------------------------------------------------------------------------


class _ChunkBuffer:
    def __init__(self, stream: StreamOptions | None) -> None:
        self._stream = stream
        self._buf = ""

    async def push(self, text: str) -> None:
        if self._stream is None:
            return
        self._buf += text
        size = max(1, self._stream.chunk_size)
        while len(self._buf) >= size:
            piece, self._buf = self._buf[:size], self._buf[size:]
            await self._emit(piece)

    async def flush(self) -> None:
        if self._stream is not None and self._buf:
            piece, self._buf = self._buf, ""
            await self._emit(piece)

    async def _emit(self, piece: str) -> None:
        out = self._stream.on_chunk(piece)
        if inspect.isawaitable(out):
            await out


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


async def execute_inference(
    *,
    messages: list[ConversationMessage],
    action: str,
    schema: type[BaseModel] | None = None,
    stream: StreamOptions | None = None,
    reasoning_effort: ReasoningEffort | None = None,
    retry_limit: int = 1,
    tools: list[ToolDefinition] | None = None,
    max_tool_rounds: int | None = None,
) -> InferenceResult:
    """Run one model call (plus any tool rounds) for *action*.

    Parameters
    ----------
    messages:
        Prompt messages; ``system`` entries become the system prompt.
    action:
        Key into ``AGENT_CONFIG`` selecting model role and defaults.
    schema:
        When given, the reply must be JSON validating against it; the
        validated instance is returned as ``InferenceResult.object``.
    stream:
        Optional chunked delivery of the reply text as it arrives.
    reasoning_effort:
        Overrides the action's default reasoning tier.
    retry_limit:
        Total attempts allowed for schema-invalid output.
    tools:
        Tools the model may call; handled in a loop of at most
        *max_tool_rounds* rounds.

    Raises
    ------
    ConfigurationError
        No usable provider/API key.
    RateLimitExceededError, SecurityError, InferenceError
        Provider failure after transport retries.
    SchemaValidationError
        Output still invalid after *retry_limit* attempts.
    """
    cfg = get_agent_config(action)
    provider, api_key = _resolve_provider()
    if tools and provider != "anthropic":
        raise ConfigurationError("Tool calling requires the anthropic provider")

    model = get_model_for_role(cfg.role) if provider == "anthropic" else settings.OPENAI_MODEL
    effort = reasoning_effort or cfg.reasoning_effort
    # Tool rounds replay assistant content, which must not carry thinking blocks.
    thinking = 0 if tools else get_thinking_budget(model, effort)

    system_prompt, api_messages = _split_messages(messages)
    if schema is not None:
        system_prompt += _schema_instruction(schema)

    rounds = max_tool_rounds or settings.MAX_TOOL_ROUNDS
    attempts = max(1, retry_limit)
    errors: list[str] = []
    usage = {"input_tokens": 0, "output_tokens": 0}

    logger.info(
        "Inference %s → %s (effort=%s, thinking=%d, schema=%s, tools=%d)",
        action, model, effort, thinking,
        schema.__name__ if schema else None, len(tools or []),
    )

    for attempt in range(1, attempts + 1):
        buffer = _ChunkBuffer(stream)
        tool_messages: list[ConversationMessage] = []
        texts: list[str] = []
        convo = list(api_messages)

        try:
            for _ in range(rounds):
                resp = await llm_client.chat_streaming(
                    api_key, model, system_prompt, convo,
                    max_tokens=cfg.max_tokens,
                    provider=provider,
                    tools=[t.to_api() for t in tools] if tools else None,
                    thinking_budget=thinking,
                    on_text=buffer.push if stream is not None else None,
                    max_retries=settings.INFERENCE_MAX_RETRIES,
                )
                for key in usage:
                    usage[key] += resp.get("usage", {}).get(key, 0)
                if resp.get("text"):
                    texts.append(resp["text"])

                tool_uses = [b for b in resp.get("content", []) if b.get("type") == "tool_use"]
                if not tools or not tool_uses or resp.get("stop_reason") != "tool_use":
                    break

                convo.append({"role": "assistant", "content": resp["content"]})
                tool_messages.append(ConversationMessage(
                    role="assistant",
                    content=resp["content"],
                    tool_calls=[
                        {"id": b.get("id"), "name": b.get("name"), "arguments": b.get("input", {})}
                        for b in tool_uses
                    ],
                ))
                results = await _run_tools(tools, tool_uses)
                convo.append({"role": "user", "content": results})
                tool_messages.append(ConversationMessage(role="user", content=results))
            else:
                logger.warning("Inference %s: tool loop hit %d rounds", action, rounds)
            await buffer.flush()
        except (LLMAPIError, httpx.HTTPError) as exc:
            raise _translate(exc, action) from exc

        text = "".join(texts)
        if schema is None:
            return InferenceResult(text=text, tool_messages=tool_messages, usage=usage)

        parsed = safe_json_parse(text)
        if parsed is None:
            errors.append(f"attempt {attempt}: response was not JSON")
        else:
            try:
                obj = schema.model_validate(parsed)
                return InferenceResult(text=text, object=obj, tool_messages=tool_messages, usage=usage)
            except ValidationError as exc:
                errors.append(f"attempt {attempt}: {exc.error_count()} validation error(s): {exc}")

        logger.warning("Inference %s: invalid %s output (attempt %d/%d)", action, schema.__name__, attempt, attempts)
        if attempt < attempts:
            api_messages = [
                *api_messages,
                {"role": "assistant", "content": [{"type": "text", "text": text or "(empty)"}]},
                {"role": "user", "content": [{"type": "text", "text": (
                    "Your previous reply did not match the required JSON schema: "
                    f"{errors[-1][:1500]}\nReply again with only the corrected JSON object."
                )}]},
            ]

    raise SchemaValidationError(schema.__name__, attempts, errors)


async def _run_tools(tools: list[ToolDefinition], tool_uses: list[dict]) -> list[dict]:
    by_name = {t.name: t for t in tools}
    results: list[dict] = []
    for use in tool_uses:
        tool = by_name.get(use.get("name", ""))
        if tool is None:
            payload = {"status": "error", "message": f"Unknown tool '{use.get('name')}'"}
        else:
            payload = (await tool.run(use.get("input") or {})).model_dump()
        results.append({
            "type": "tool_result",
            "tool_use_id": use.get("id", ""),
            "content": json.dumps(payload),
        })
    return results
