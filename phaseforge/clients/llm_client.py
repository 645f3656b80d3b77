"""LLM client -- multi-provider chat wrapper (Anthropic + OpenAI)."""

import asyncio
import json as _json
import logging
from typing import Awaitable, Callable

import httpx

logger = logging.getLogger(__name__)

# ── Shared HTTP client (connection pooling) ─────────────────────────────────

_client: httpx.AsyncClient | None = None


def _get_client() -> httpx.AsyncClient:
    """Return (or create) the shared httpx client for LLM API calls."""
    global _client
    if _client is None:
        _client = httpx.AsyncClient(timeout=300.0)
    return _client


async def close_client() -> None:
    """Close the shared LLM HTTP client.  Called during host shutdown."""
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None


class LLMAPIError(ValueError):
    """Provider returned an error response (or a stream broke mid-output)."""

    def __init__(self, provider: str, status_code: int | None, message: str) -> None:
        self.provider = provider
        self.status_code = status_code
        code = status_code if status_code is not None else "stream"
        super().__init__(f"{provider} API {code}: {message}")

# ---------------------------------------------------------------------------
# Retry configuration
# ---------------------------------------------------------------------------

MAX_RETRIES = 4
RETRY_BACKOFF_BASE = 2.0  # seconds: exponential: 2, 4, 8, 16
_RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 529})


def _compute_wait(retry_after: str | None, attempt: int, backoff_base: float) -> float:
    """Return seconds to wait before retrying.

    Prefers the ``retry-after`` header.  Falls back to exponential
    backoff capped at 90 seconds.
    """
    if retry_after:
        try:
            return min(float(retry_after), 120.0)
        except (ValueError, TypeError):
            pass
    return min(backoff_base ** (attempt + 1), 90.0)


async def _retry_on_transient(
    coro_factory,
    *,
    max_retries: int = MAX_RETRIES,
    backoff_base: float = RETRY_BACKOFF_BASE,
):
    """Retry a coroutine factory on transient HTTP / timeout errors.

    ``coro_factory`` is a zero-arg callable that returns a new awaitable each
    time (so we can retry fresh).
    """
    for attempt in range(max_retries + 1):
        try:
            return await coro_factory()
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            if attempt >= max_retries:
                raise
            wait = _compute_wait(None, attempt, backoff_base)
            logger.warning(
                "LLM request %s (attempt %d/%d), retrying in %.1fs",
                type(exc).__name__, attempt + 1, max_retries + 1, wait,
            )
            await asyncio.sleep(wait)
        except _RetryableStatus as exc:
            if attempt >= max_retries:
                raise exc.error from None
            wait = _compute_wait(exc.retry_after, attempt, backoff_base)
            logger.warning(
                "LLM request %d (attempt %d/%d), retrying in %.1fs",
                exc.error.status_code, attempt + 1, max_retries + 1, wait,
            )
            await asyncio.sleep(wait)
    raise AssertionError("unreachable")  # pragma: no cover


class _RetryableStatus(Exception):
    """Internal wrapper: a retryable status code with its ``retry-after``."""

    def __init__(self, error: LLMAPIError, retry_after: str | None) -> None:
        super().__init__(str(error))
        self.error = error
        self.retry_after = retry_after


def _raise_for_status(provider: str, status_code: int, headers, body: bytes | str) -> None:
    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="replace")
    try:
        err_msg = _json.loads(body).get("error", {}).get("message", body)
    except (ValueError, AttributeError):
        err_msg = body
    error = LLMAPIError(provider, status_code, err_msg)
    if status_code in _RETRYABLE_STATUS_CODES:
        raise _RetryableStatus(error, headers.get("retry-after"))
    raise error

# ---------------------------------------------------------------------------
# Anthropic
# ---------------------------------------------------------------------------

ANTHROPIC_MESSAGES_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_API_VERSION = "2023-06-01"


def _anthropic_headers(api_key: str) -> dict:
    """Return standard Anthropic API headers."""
    return {
        "x-api-key": api_key,
        "anthropic-version": ANTHROPIC_API_VERSION,
        "Content-Type": "application/json",
    }


def _anthropic_body(
    model: str,
    system_prompt: str,
    messages: list[dict],
    max_tokens: int,
    tools: list[dict] | None,
    thinking_budget: int,
) -> dict:
    body: dict = {
        "model": model,
        "max_tokens": max_tokens,
        "system": system_prompt,
        "messages": messages,
    }
    if tools:
        body["tools"] = tools
    if thinking_budget > 0:
        body["thinking"] = {"type": "enabled", "budget_tokens": thinking_budget}
        # max_tokens must accommodate thinking + output
        body["max_tokens"] = max(max_tokens, thinking_budget + 4096)
    return body


# ---------------------------------------------------------------------------
# Anthropic: streaming
# ---------------------------------------------------------------------------


async def chat_anthropic_streaming(
    api_key: str,
    model: str,
    system_prompt: str,
    messages: list[dict],
    max_tokens: int = 4096,
    tools: list[dict] | None = None,
    thinking_budget: int = 0,
    on_text: Callable[[str], Awaitable[None]] | None = None,
    max_retries: int = MAX_RETRIES,
) -> dict:
    """Stream a chat request to Anthropic, calling *on_text* for every text delta.

    ``tool_use`` blocks are reassembled from their ``input_json_delta``
    fragments.

    Once any text has been handed to *on_text* the call is no longer
    retried: a broken connection then raises ``LLMAPIError`` with
    ``status_code=None`` instead of replaying output the caller already saw.
    """

    async def _call():
        body = _anthropic_body(model, system_prompt, messages, max_tokens, tools, thinking_budget)
        body["stream"] = True

        text_parts: list[str] = []
        blocks: dict[int, dict] = {}
        block_parts: dict[int, list[str]] = {}
        input_tokens = 0
        output_tokens = 0
        stop_reason = "end_turn"

        client = _get_client()
        try:
            async with client.stream(
                "POST",
                ANTHROPIC_MESSAGES_URL,
                headers=_anthropic_headers(api_key),
                json=body,
            ) as response:
                if response.status_code >= 400:
                    error_body = await response.aread()
                    _raise_for_status("Anthropic", response.status_code, response.headers, error_body)

                async for raw_line in response.aiter_lines():
                    if not raw_line.startswith("data: "):
                        continue
                    data = _json.loads(raw_line[6:])
                    event_type = data.get("type", "")

                    if event_type == "message_start":
                        usage = data.get("message", {}).get("usage", {})
                        input_tokens = usage.get("input_tokens", 0)

                    elif event_type == "content_block_start":
                        idx = data.get("index", len(blocks))
                        blocks[idx] = dict(data.get("content_block", {}))
                        block_parts[idx] = []

                    elif event_type == "content_block_delta":
                        delta = data.get("delta", {})
                        if delta.get("type") == "text_delta":
                            txt = delta.get("text", "")
                            text_parts.append(txt)
                            block_parts.setdefault(data.get("index", 0), []).append(txt)
                            if on_text:
                                await on_text(txt)
                        elif delta.get("type") == "input_json_delta":
                            block_parts.setdefault(data.get("index", 0), []).append(
                                delta.get("partial_json", ""),
                            )

                    elif event_type == "message_delta":
                        output_tokens = data.get("usage", {}).get("output_tokens", 0)
                        stop_reason = data.get("delta", {}).get("stop_reason") or stop_reason

                    elif event_type == "error":
                        err = data.get("error", {})
                        raise LLMAPIError("Anthropic", None, err.get("message", "stream error"))
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            if text_parts:
                raise LLMAPIError(
                    "Anthropic", None, f"stream interrupted after output: {type(exc).__name__}",
                ) from exc
            raise

        # Thinking blocks are dropped; tool loops run without thinking.
        content: list[dict] = []
        for idx in sorted(blocks):
            block = blocks[idx]
            joined = "".join(block_parts.get(idx, []))
            if block.get("type") == "tool_use":
                content.append({**block, "input": _json.loads(joined or "{}")})
            elif block.get("type") == "text":
                content.append({"type": "text", "text": joined})
        text = "".join(text_parts)

        return {
            "text": text,
            "usage": {"input_tokens": input_tokens, "output_tokens": output_tokens},
            "stop_reason": stop_reason,
            "content": content,
        }

    return await _retry_on_transient(_call, max_retries=max_retries)


# ---------------------------------------------------------------------------
# OpenAI
# ---------------------------------------------------------------------------

OPENAI_CHAT_URL = "https://api.openai.com/v1/chat/completions"


def _openai_headers(api_key: str) -> dict:
    """Return standard OpenAI API headers."""
    return {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
    }


def _to_openai_content(content):
    """Convert Anthropic-style content blocks into OpenAI message parts."""
    if not isinstance(content, list):
        return content
    parts: list[dict] = []
    for block in content:
        if block.get("type") == "text":
            parts.append({"type": "text", "text": block.get("text", "")})
        elif block.get("type") == "image":
            src = block.get("source", {})
            url = src.get("url") or f"data:{src.get('media_type', 'image/png')};base64,{src.get('data', '')}"
            parts.append({"type": "image_url", "image_url": {"url": url}})
    return parts


async def chat_openai(
    api_key: str,
    model: str,
    system_prompt: str,
    messages: list[dict],
    max_tokens: int = 4096,
    max_retries: int = MAX_RETRIES,
) -> dict:
    """Send a chat request to the OpenAI Chat Completions API."""
    oai_messages = [{"role": "system", "content": system_prompt}]
    oai_messages.extend(
        {"role": m["role"], "content": _to_openai_content(m["content"])} for m in messages
    )
    body: dict = {
        "model": model,
        "messages": oai_messages,
        "max_completion_tokens": max_tokens,
    }

    async def _call():
        client = _get_client()
        response = await client.post(
            OPENAI_CHAT_URL,
            headers=_openai_headers(api_key),
            json=body,
        )
        if response.status_code >= 400:
            _raise_for_status("OpenAI", response.status_code, response.headers, response.text)

        data = response.json()
        choices = data.get("choices", [])
        if not choices:
            raise LLMAPIError("OpenAI", response.status_code, "Empty response")
        content = choices[0].get("message", {}).get("content")
        if not content:
            raise LLMAPIError("OpenAI", response.status_code, "No content in response")

        usage = data.get("usage", {})
        return {
            "text": content,
            "usage": {
                "input_tokens": usage.get("prompt_tokens", 0),
                "output_tokens": usage.get("completion_tokens", 0),
            },
            "stop_reason": choices[0].get("finish_reason", "stop"),
            "content": [{"type": "text", "text": content}],
        }

    return await _retry_on_transient(_call, max_retries=max_retries)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


async def chat_streaming(
    api_key: str,
    model: str,
    system_prompt: str,
    messages: list[dict],
    max_tokens: int = 4096,
    provider: str = "anthropic",
    tools: list[dict] | None = None,
    thinking_budget: int = 0,
    on_text: Callable[[str], Awaitable[None]] | None = None,
    max_retries: int = MAX_RETRIES,
) -> dict:
    """Send a chat request to *provider*, streaming text to *on_text*.

    Messages use the Anthropic block format.  Returns
    ``{"text", "usage", "stop_reason", "content"}`` where ``content`` holds
    the raw content blocks (``tool_use`` included).  OpenAI falls back to a single non-streamed call whose full text is
    delivered to *on_text* once.
    """
    if provider == "openai":
        result = await chat_openai(api_key, model, system_prompt, messages, max_tokens, max_retries)
        if on_text and result["text"]:
            await on_text(result["text"])
        return result
    return await chat_anthropic_streaming(
        api_key, model, system_prompt, messages, max_tokens,
        tools=tools, thinking_budget=thinking_budget, on_text=on_text,
        max_retries=max_retries,
    )
