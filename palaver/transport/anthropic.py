"""Streaming transport for the Anthropic Messages API over httpx.

Converts internal Messages to the Messages API shape (model -> assistant,
function_call -> tool_use, function_response -> tool_result, thoughts
dropped) and turns the SSE stream back into ModelChunks.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

import httpx

from palaver.config import Settings
from palaver.core.abort import AbortSignal, run_abortable
from palaver.core.errors import TransportError
from palaver.core.models import FunctionCall, GenerateConfig, Message, Part, Role
from palaver.transport.base import ModelChunk, ModelResponse

logger = logging.getLogger(__name__)

_API_VERSION = "2023-06-01"

# Messages API stop_reason -> finish reason reported on chunks
_FINISH_REASONS = {
    "end_turn": "STOP",
    "stop_sequence": "STOP",
    "tool_use": "TOOL_USE",
    "max_tokens": "MAX_TOKENS",
    "refusal": "SAFETY",
    "pause_turn": "OTHER",
}

# In-stream error types mapped to the HTTP status they would have carried
_STREAM_ERROR_STATUS = {
    "rate_limit_error": 429,
    "overloaded_error": 529,
    "api_error": 500,
}


# ------------------------------------------------------------------
# Request conversion
# ------------------------------------------------------------------


def _part_to_block(part: Part) -> dict[str, Any] | None:
    if part.thought:
        return None
    if part.function_call is not None:
        return {
            "type": "tool_use",
            "id": part.function_call.id,
            "name": part.function_call.name,
            "input": part.function_call.args,
        }
    if part.function_response is not None:
        response = part.function_response.response
        block: dict[str, Any] = {
            "type": "tool_result",
            "tool_use_id": part.function_response.id,
            "content": _tool_result_text(response),
        }
        if "error" in response:
            block["is_error"] = True
        return block
    if part.text:
        return {"type": "text", "text": part.text}
    return None


def _tool_result_text(response: dict[str, Any]) -> str:
    if "error" in response:
        return str(response["error"])
    output = response.get("output", response)
    return output if isinstance(output, str) else json.dumps(output, ensure_ascii=False)


def to_api_messages(history: list[Message]) -> list[dict[str, Any]]:
    """Convert history to Messages API format.

    Consecutive messages with the same role are merged because the API
    requires alternation, and tool_result blocks lead each user message.
    """
    messages: list[dict[str, Any]] = []
    for message in history:
        blocks = [b for b in (_part_to_block(p) for p in message.parts) if b is not None]
        if not blocks:
            continue
        role = "assistant" if message.role == Role.MODEL else "user"
        if messages and messages[-1]["role"] == role:
            messages[-1]["content"].extend(blocks)
        else:
            messages.append({"role": role, "content": blocks})

    for message in messages:
        if message["role"] == "user":
            message["content"].sort(key=lambda b: b["type"] != "tool_result")
    return messages


def _system_prompt(system_instruction: str | None, config: GenerateConfig) -> str:
    system = config.system_instruction or system_instruction or ""
    if config.response_schema is not None:
        schema = json.dumps(config.response_schema, indent=2)
        system = (
            f"{system}\n\nRespond with a single JSON object and nothing else. "
            f"It must match this JSON schema:\n{schema}"
        ).strip()
    return system


# ------------------------------------------------------------------
# SSE parsing
# ------------------------------------------------------------------


@dataclass
class _ToolBlock:
    id: str
    name: str
    json_buffer: list[str] = field(default_factory=list)

    def to_part(self) -> Part:
        raw = "".join(self.json_buffer).strip()
        try:
            args = json.loads(raw) if raw else {}
        except json.JSONDecodeError:
            logger.warning("Unparsable tool input for %s: %s", self.name, raw[:200])
            args = {}
        call_id = self.id or f"{self.name}-{uuid.uuid4().hex[:12]}"
        return Part(function_call=FunctionCall(id=call_id, name=self.name, args=args))


class _StreamParser:
    """Folds Anthropic SSE events into ModelChunks.

    Skips ping keepalives. stop_reason arrives in message_delta, and an
    HTTP 200 stream may still carry an error event, which is raised.
    """

    def __init__(self) -> None:
        self._tool_blocks: dict[int, _ToolBlock] = {}

    def feed(self, data: dict[str, Any]) -> ModelChunk | None:
        event_type = data.get("type")

        if event_type == "ping":
            return None

        if event_type == "error":
            error = data.get("error", {})
            error_type = error.get("type", "unknown")
            raise TransportError(
                f"{error_type}: {error.get('message', '')}",
                status=_STREAM_ERROR_STATUS.get(error_type),
                error_type=error_type,
            )

        if event_type == "message_start":
            usage = data.get("message", {}).get("usage") or {}
            return ModelChunk(prompt_token_count=_prompt_tokens(usage))

        if event_type == "content_block_start":
            block = data.get("content_block", {})
            if block.get("type") == "tool_use":
                self._tool_blocks[data.get("index", 0)] = _ToolBlock(
                    id=block.get("id", ""), name=block.get("name", "")
                )
            return None

        if event_type == "content_block_delta":
            delta = data.get("delta", {})
            delta_type = delta.get("type")
            if delta_type == "text_delta":
                return ModelChunk(parts=[Part(text=delta.get("text", ""))])
            if delta_type == "thinking_delta":
                return ModelChunk(parts=[Part(text=delta.get("thinking", ""), thought=True)])
            if delta_type == "input_json_delta":
                tool = self._tool_blocks.get(data.get("index", 0))
                if tool is not None:
                    tool.json_buffer.append(delta.get("partial_json", ""))
            return None

        if event_type == "content_block_stop":
            tool = self._tool_blocks.pop(data.get("index", 0), None)
            if tool is not None:
                return ModelChunk(parts=[tool.to_part()])
            return None

        if event_type == "message_delta":
            stop_reason = data.get("delta", {}).get("stop_reason") or ""
            return ModelChunk(finish_reason=_FINISH_REASONS.get(stop_reason, "OTHER"))

        return None


def _prompt_tokens(usage: dict[str, Any]) -> int | None:
    if "input_tokens" not in usage:
        return None
    return (
        usage.get("input_tokens", 0)
        + usage.get("cache_creation_input_tokens", 0)
        + usage.get("cache_read_input_tokens", 0)
    )


def _error_from_response(response: httpx.Response, body: bytes) -> TransportError:
    try:
        error_data = json.loads(body)
        error_type = error_data.get("error", {}).get("type", "unknown")
        error_msg = error_data.get("error", {}).get("message", "unknown error")
    except (ValueError, AttributeError):
        error_type = "http_error"
        error_msg = body.decode(errors="replace")[:500]

    retry_after: float | None = None
    header = response.headers.get("retry-after")
    if header:
        try:
            retry_after = float(header)
        except ValueError:
            retry_after = None

    return TransportError(
        f"Anthropic API error ({response.status_code}): {error_type} - {error_msg}",
        status=response.status_code,
        retry_after=retry_after,
        error_type=error_type,
    )


# ------------------------------------------------------------------
# Transport
# ------------------------------------------------------------------


class AnthropicTransport:
    """ModelTransport over the Anthropic Messages API.

    Call start() before use, or pass a ready httpx.AsyncClient.
    """

    def __init__(self, settings: Settings, http: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._http = http

    async def start(self) -> None:
        """Initialize the httpx client with auth and timeout settings."""
        if self._http is not None:
            return
        settings = self._settings
        headers: dict[str, str] = {
            "anthropic-version": _API_VERSION,
            "content-type": "application/json",
        }
        if settings.anthropic_api_key:
            headers["x-api-key"] = settings.anthropic_api_key
        else:
            logger.warning("ANTHROPIC_API_KEY is not set -- API calls will fail")

        timeout = httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )
        limits = httpx.Limits(max_connections=20, max_keepalive_connections=10)
        self._http = httpx.AsyncClient(
            base_url=settings.api_base_url,
            headers=headers,
            timeout=timeout,
            limits=limits,
        )
        logger.info("Anthropic transport initialized (%s)", settings.api_base_url)

    async def close(self) -> None:
        if self._http:
            await self._http.aclose()
            self._http = None

    def _client(self) -> httpx.AsyncClient:
        if not self._http:
            raise RuntimeError("httpx client not initialized -- call start() first")
        return self._http

    def _build_payload(
        self,
        model: str,
        system_instruction: str | None,
        tools: list[dict[str, Any]],
        history: list[Message],
        config: GenerateConfig,
        stream: bool,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": model,
            "max_tokens": config.max_tokens or self._settings.max_tokens,
            "messages": to_api_messages(history),
        }
        system = _system_prompt(system_instruction, config)
        if system:
            payload["system"] = system
        temperature = config.temperature if config.temperature is not None else self._settings.temperature
        payload["temperature"] = temperature
        if tools:
            # History may hold tool_use blocks, so tools stay declared even when disabled
            payload["tools"] = tools
            if not config.tools_enabled:
                payload["tool_choice"] = {"type": "none"}
        if stream:
            payload["stream"] = True
        return payload

    async def generate_content_stream(
        self,
        model: str,
        system_instruction: str | None,
        tools: list[dict[str, Any]],
        history: list[Message],
        config: GenerateConfig,
        signal: AbortSignal | None = None,
    ) -> AsyncIterator[ModelChunk]:
        """Open the stream, raising TransportError on a non-200 status."""
        http = self._client()
        payload = self._build_payload(model, system_instruction, tools, history, config, stream=True)
        request = http.build_request("POST", "/v1/messages", json=payload)
        response = await run_abortable(http.send(request, stream=True), signal)

        if response.status_code != 200:
            try:
                body = await response.aread()
            finally:
                await response.aclose()
            raise _error_from_response(response, body)

        return self._iter_stream(response, signal)

    async def _iter_stream(
        self, response: httpx.Response, signal: AbortSignal | None
    ) -> AsyncIterator[ModelChunk]:
        parser = _StreamParser()
        lines = response.aiter_lines()
        try:
            while True:
                try:
                    line = await run_abortable(lines.__anext__(), signal)
                except StopAsyncIteration:
                    break
                # Only data: lines carry payloads; event: lines are redundant
                if not line.startswith("data: "):
                    continue
                chunk = parser.feed(json.loads(line[6:]))
                if chunk is not None:
                    yield chunk
        finally:
            await response.aclose()

    async def generate_content(
        self,
        model: str,
        system_instruction: str | None,
        tools: list[dict[str, Any]],
        history: list[Message],
        config: GenerateConfig,
        signal: AbortSignal | None = None,
    ) -> ModelResponse:
        http = self._client()
        payload = self._build_payload(model, system_instruction, tools, history, config, stream=False)
        response = await run_abortable(http.post("/v1/messages", json=payload), signal)
        if response.status_code != 200:
            raise _error_from_response(response, response.content)

        data = response.json()
        parts: list[Part] = []
        for block in data.get("content", []):
            block_type = block.get("type")
            if block_type == "text":
                parts.append(Part(text=block.get("text", "")))
            elif block_type == "thinking":
                parts.append(Part(text=block.get("thinking", ""), thought=True))
            elif block_type == "tool_use":
                parts.append(
                    Part(
                        function_call=FunctionCall(
                            id=block.get("id", ""),
                            name=block.get("name", ""),
                            args=block.get("input", {}),
                        )
                    )
                )
        stop_reason = data.get("stop_reason") or ""
        return ModelResponse(
            parts=parts,
            finish_reason=_FINISH_REASONS.get(stop_reason, "OTHER"),
            prompt_token_count=_prompt_tokens(data.get("usage") or {}),
        )
