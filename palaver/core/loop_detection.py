"""Detects runaway repetition in a request sequence.

Three checks, all scoped to one prompt id:

- identical tool calls: the same (name, args) hash issued N times in a row;
- repeated content: a 50-char window of streamed text recurring N times
  close together (markdown structure such as code fences, tables, lists,
  headings and dividers resets tracking);
- LLM-assisted: once a sequence is long, periodically ask the model
  whether the conversation is stuck.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Any

from palaver.config import Settings
from palaver.core.abort import AbortSignal
from palaver.core.errors import AbortError
from palaver.core.models import EventType, Message, Role, StreamEvent, ToolCallRequest, user_message
from palaver.events import LOOP_DETECTED, NullTelemetry, TelemetryEvent, TelemetrySink

logger = logging.getLogger(__name__)

CONTENT_CHUNK_SIZE = 50
MAX_HISTORY_LENGTH = 1000

LLM_LOOP_CHECK_HISTORY_COUNT = 20
DEFAULT_LLM_CHECK_INTERVAL = 3
MIN_LLM_CHECK_INTERVAL = 5
MAX_LLM_CHECK_INTERVAL = 15
LLM_CONFIDENCE_THRESHOLD = 0.9

LOOP_CHECK_PROMPT = """\
You are a sophisticated AI diagnostic agent specializing in identifying when \
a conversational AI is stuck in an unproductive state. Analyze the conversation \
history above to determine if the assistant has ceased to make meaningful progress.

An unproductive state is characterized by one or more of the following patterns \
over the last 5 or more assistant turns:

Repetitive Actions: The assistant repeats the same tool calls or conversational \
responses a decent number of times. This includes simple loops (e.g., \
tool_A, tool_A, tool_A) and alternating patterns (e.g., tool_A, tool_B, \
tool_A, tool_B, ...).

Cognitive Loop: The assistant seems unable to determine the next logical step. \
It might express confusion, repeatedly ask the same questions, or generate \
responses that don't logically follow from the previous turns.

Crucially, differentiate between a true unproductive state and legitimate, \
incremental progress. For example, a series of edit calls that each modify a \
different part of the same file is progress, not a loop."""

LOOP_CHECK_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "reasoning": {
            "type": "string",
            "description": "Your reasoning on if the conversation is looping without forward progress.",
        },
        "confidence": {
            "type": "number",
            "description": "A number between 0.0 and 1.0 representing your confidence that the conversation is in an unproductive state.",
        },
    },
    "required": ["reasoning", "confidence"],
}

_TABLE_RE = re.compile(r"(^|\n)\s*(\|.*\||[|+-]{3,})")
_LIST_ITEM_RE = re.compile(r"(^|\n)\s*[*+-]\s|(^|\n)\s*\d+\.\s")
_HEADING_RE = re.compile(r"(^|\n)#+\s")
_BLOCKQUOTE_RE = re.compile(r"(^|\n)>\s")
_DIVIDER_RE = re.compile(r"^[+\-_=*\u2500-\u257F]+$")

JsonGenerator = Callable[[list[Message], dict[str, Any], AbortSignal | None], Awaitable[dict[str, Any]]]
HistoryProvider = Callable[[], list[Message]]


class LoopType(StrEnum):
    CONSECUTIVE_IDENTICAL_TOOL_CALLS = "consecutive_identical_tool_calls"
    CHANTING_IDENTICAL_SENTENCES = "chanting_identical_sentences"
    LLM_DETECTED_LOOP = "llm_detected_loop"


def _sha256(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


class LoopDetector:
    """Per-session loop detection over the turn event stream."""

    def __init__(
        self,
        settings: Settings,
        session_id: str,
        history_provider: HistoryProvider | None = None,
        json_generator: JsonGenerator | None = None,
        telemetry: TelemetrySink | None = None,
    ) -> None:
        self.tool_call_threshold = settings.tool_call_loop_threshold
        self.content_threshold = settings.content_loop_threshold
        self.llm_check_after_turns = settings.llm_loop_check_after_turns
        self._session_id = session_id
        self._history_provider = history_provider
        self._json_generator = json_generator
        self._telemetry = telemetry or NullTelemetry()

        self.prompt_id = ""
        self.disabled = False
        self.loop_detected = False

        # Tool-call tracking
        self._last_tool_call_key: str | None = None
        self._tool_call_repetition_count = 0

        # Content tracking
        self._stream_content_history = ""
        self._content_stats: dict[str, list[int]] = {}
        self._last_content_index = 0
        self._in_code_block = False

        # LLM-assisted tracking
        self._turns_in_current_prompt = 0
        self._llm_check_interval = DEFAULT_LLM_CHECK_INTERVAL
        self._last_check_turn = 0

    def disable_for_session(self) -> None:
        self.disabled = True
        logger.info("Loop detection disabled for session %s", self._session_id)

    def reset(self, prompt_id: str) -> None:
        self.prompt_id = prompt_id
        self._reset_tool_call_count()
        self._reset_content_tracking()
        self._reset_llm_check_tracking()
        self.loop_detected = False

    def add_and_check(self, event: StreamEvent) -> bool:
        """Feed one turn event; True once a loop has been detected."""
        if self.disabled:
            return False
        if self.loop_detected:
            return True

        if event.type == EventType.TOOL_CALL_REQUEST:
            # Tool calls separate content; do not match text across them
            self._reset_content_tracking()
            if self._check_tool_call_loop(event.value):
                self._report(LoopType.CONSECUTIVE_IDENTICAL_TOOL_CALLS)
        elif event.type == EventType.CONTENT:
            if self._check_content_loop(event.value or ""):
                self._report(LoopType.CHANTING_IDENTICAL_SENTENCES)
        return self.loop_detected

    async def turn_started(self, signal: AbortSignal | None = None) -> bool:
        """Count a turn and run the LLM check when one is due."""
        if self.disabled:
            return False
        self._turns_in_current_prompt += 1
        if (
            self._turns_in_current_prompt >= self.llm_check_after_turns
            and self._turns_in_current_prompt - self._last_check_turn >= self._llm_check_interval
        ):
            self._last_check_turn = self._turns_in_current_prompt
            if await self._check_for_loop_with_llm(signal):
                self._report(LoopType.LLM_DETECTED_LOOP)
        return self.loop_detected

    # ------------------------------------------------------------------
    # Tool calls
    # ------------------------------------------------------------------

    def _check_tool_call_loop(self, request: ToolCallRequest) -> bool:
        key = _sha256(f"{request.name}:{json.dumps(request.args, sort_keys=True, default=str)}")
        if self._last_tool_call_key == key:
            self._tool_call_repetition_count += 1
        else:
            self._last_tool_call_key = key
            self._tool_call_repetition_count = 1
        return self._tool_call_repetition_count >= self.tool_call_threshold

    def _reset_tool_call_count(self) -> None:
        self._last_tool_call_key = None
        self._tool_call_repetition_count = 0

    # ------------------------------------------------------------------
    # Content
    # ------------------------------------------------------------------

    def _check_content_loop(self, content: str) -> bool:
        num_fences = content.count("```")
        has_table = bool(_TABLE_RE.search(content))
        has_list_item = bool(_LIST_ITEM_RE.search(content))
        has_heading = bool(_HEADING_RE.search(content))
        has_blockquote = bool(_BLOCKQUOTE_RE.search(content))
        is_divider = bool(_DIVIDER_RE.match(content.strip())) if content.strip() else False

        if num_fences or has_table or has_list_item or has_heading or has_blockquote or is_divider:
            self._reset_content_tracking()

        was_in_code_block = self._in_code_block
        if num_fences % 2 == 1:
            self._in_code_block = not self._in_code_block
        if was_in_code_block or self._in_code_block or is_divider:
            return False

        self._stream_content_history += content
        self._truncate_and_update()
        return self._analyze_content_chunks_for_loop()

    def _truncate_and_update(self) -> None:
        excess = len(self._stream_content_history) - MAX_HISTORY_LENGTH
        if excess <= 0:
            return
        self._stream_content_history = self._stream_content_history[excess:]
        self._last_content_index = max(0, self._last_content_index - excess)
        for key in list(self._content_stats):
            adjusted = [i - excess for i in self._content_stats[key] if i - excess >= 0]
            if adjusted:
                self._content_stats[key] = adjusted
            else:
                del self._content_stats[key]

    def _analyze_content_chunks_for_loop(self) -> bool:
        while self._last_content_index + CONTENT_CHUNK_SIZE <= len(self._stream_content_history):
            start = self._last_content_index
            chunk = self._stream_content_history[start:start + CONTENT_CHUNK_SIZE]
            if self._is_loop_detected_for_chunk(chunk, _sha256(chunk)):
                return True
            self._last_content_index += 1
        return False

    def _is_loop_detected_for_chunk(self, chunk: str, key: str) -> bool:
        indices = self._content_stats.get(key)
        if indices is None:
            self._content_stats[key] = [self._last_content_index]
            return False

        # Guard against hash collisions
        first = indices[0]
        if self._stream_content_history[first:first + CONTENT_CHUNK_SIZE] != chunk:
            return False

        indices.append(self._last_content_index)
        if len(indices) < self.content_threshold:
            return False

        recent = indices[-self.content_threshold:]
        average_distance = (recent[-1] - recent[0]) / (self.content_threshold - 1)
        return average_distance <= CONTENT_CHUNK_SIZE * 1.5

    def _reset_content_tracking(self) -> None:
        self._stream_content_history = ""
        self._content_stats = {}
        self._last_content_index = 0

    # ------------------------------------------------------------------
    # LLM-assisted check
    # ------------------------------------------------------------------

    async def _check_for_loop_with_llm(self, signal: AbortSignal | None) -> bool:
        if self._history_provider is None or self._json_generator is None:
            return False

        recent = self._history_provider()[-LLM_LOOP_CHECK_HISTORY_COUNT:]
        # Never start on a dangling tool response
        while recent and recent[0].role == Role.USER and recent[0].has_function_response:
            recent = recent[1:]
        contents = [*recent, user_message(LOOP_CHECK_PROMPT)]

        try:
            result = await self._json_generator(contents, LOOP_CHECK_SCHEMA, signal)
        except AbortError:
            raise
        except Exception as e:
            logger.warning("LLM loop check failed: %s", e)
            return False

        try:
            confidence = float(result.get("confidence", 0.0))
        except (TypeError, ValueError):
            return False

        if confidence >= LLM_CONFIDENCE_THRESHOLD:
            reasoning = result.get("reasoning")
            if reasoning:
                logger.warning("Loop suspected by model: %s", reasoning)
            return True

        confidence = min(max(confidence, 0.0), 1.0)
        self._llm_check_interval = round(
            MIN_LLM_CHECK_INTERVAL + (MAX_LLM_CHECK_INTERVAL - MIN_LLM_CHECK_INTERVAL) * (1 - confidence)
        )
        return False

    def _reset_llm_check_tracking(self) -> None:
        self._turns_in_current_prompt = 0
        self._llm_check_interval = DEFAULT_LLM_CHECK_INTERVAL
        self._last_check_turn = 0

    def _report(self, loop_type: LoopType) -> None:
        self.loop_detected = True
        logger.warning("Loop detected in prompt %s: %s", self.prompt_id, loop_type)
        self._telemetry.record(
            TelemetryEvent(
                type=LOOP_DETECTED,
                session_id=self._session_id,
                data={"loop_type": str(loop_type), "prompt_id": self.prompt_id},
            )
        )
