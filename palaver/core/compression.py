"""History compression.

When the prompt grows past a fraction of the model's context window, the
oldest ~70% of the curated history is replaced by a model-written state
snapshot. The split never separates a function call from its response,
and a rebuilt history that would be larger than the original is thrown
away instead of committed.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from palaver.core.abort import AbortSignal
from palaver.core.models import (
    ChatCompressionInfo,
    CompressionStatus,
    Message,
    Role,
    model_message,
    serialized_length,
    user_message,
)
from palaver.core.tokens import estimate_tokens, token_limit
from palaver.events import CHAT_COMPRESSION, NullTelemetry, TelemetryEvent, TelemetrySink

logger = logging.getLogger(__name__)

COMPRESSION_TOKEN_THRESHOLD = 0.7
# Fraction of the history (by characters) kept verbatim
COMPRESSION_PRESERVE_THRESHOLD = 0.3

SUMMARY_INSTRUCTION = "First, reason in your scratchpad. Then, generate the <state_snapshot>."
SUMMARY_ACKNOWLEDGEMENT = "Got it. Thanks for the additional context!"

COMPRESSION_SYSTEM_PROMPT = """\
You are the component that summarizes internal chat history into a given structure.

When the conversation history grows too large, you will be invoked to distill \
the entire history into a concise, structured XML snapshot. This snapshot is \
CRITICAL, as it will become the agent's *only* memory of the past. The agent \
will resume its work based solely on this snapshot. All crucial details, plans, \
errors, and user directives MUST be preserved.

First, think through the entire history in a private <scratchpad>. Review the \
user's overall goal, the agent's actions, tool outputs, file modifications, and \
any unresolved questions. Identify every piece of information that is essential \
for future actions.

After your reasoning is complete, generate the final <state_snapshot> XML object. \
Be incredibly dense with information. Omit any irrelevant conversational filler.

The structure MUST be as follows:

<state_snapshot>
    <overall_goal>
        <!-- A single, concise sentence describing the user's high-level objective. -->
    </overall_goal>

    <key_knowledge>
        <!-- Crucial facts, conventions, and constraints the agent must remember. -->
    </key_knowledge>

    <file_system_state>
        <!-- Files that have been created, read, modified, or deleted, with notes. -->
    </file_system_state>

    <recent_actions>
        <!-- A summary of the last few significant agent actions and their outcomes. -->
    </recent_actions>

    <current_plan>
        <!-- The agent's step-by-step plan. Mark completed steps. -->
    </current_plan>
</state_snapshot>"""

# Async summarizer: (contents, system_instruction, model, signal) -> summary text
Summarizer = Callable[[list[Message], str, str, AbortSignal | None], Awaitable[str]]


def find_compress_split_point(contents: list[Message], fraction: float) -> int:
    """Index of the oldest message to keep when compressing.

    Messages before the returned index are summarized. len(contents)
    means everything may be summarized; 0 means nothing can be.

    Raises ValueError if fraction is not strictly between 0 and 1.
    """
    if fraction <= 0 or fraction >= 1:
        raise ValueError("Fraction must be between 0 and 1")

    char_counts = [serialized_length(m) for m in contents]
    target = sum(char_counts) * fraction

    last_split_point = 0
    cumulative = 0
    for i, message in enumerate(contents):
        if message.role == Role.USER and not message.has_function_response:
            if cumulative >= target:
                return i
            last_split_point = i
        cumulative += char_counts[i]

    # No candidate past the target: everything can go only if the history
    # does not end on a pending function call.
    if contents and contents[-1].role == Role.MODEL and not contents[-1].has_function_call:
        return len(contents)
    return last_split_point


@dataclass
class CompressionResult:
    info: ChatCompressionInfo
    # Set only when status is COMPRESSED
    new_history: list[Message] | None = None


class HistoryCompressor:
    """Decides whether and where to compress, and builds the new history.

    Holds the one-shot failure flag: after a non-forced attempt inflates
    the history, later non-forced attempts are skipped until reset().
    """

    def __init__(
        self,
        summarizer: Summarizer,
        threshold: float = COMPRESSION_TOKEN_THRESHOLD,
        preserve_fraction: float = COMPRESSION_PRESERVE_THRESHOLD,
        telemetry: TelemetrySink | None = None,
        session_id: str | None = None,
    ) -> None:
        self._summarizer = summarizer
        self.threshold = threshold
        self.preserve_fraction = preserve_fraction
        self._telemetry = telemetry or NullTelemetry()
        self._session_id = session_id
        self.has_failed_compression_attempt = False

    def reset(self) -> None:
        self.has_failed_compression_attempt = False

    async def compress(
        self,
        curated_history: list[Message],
        prompt_id: str,
        model: str,
        force: bool = False,
        last_prompt_token_count: int = 0,
        signal: AbortSignal | None = None,
    ) -> CompressionResult:
        if not curated_history or (self.has_failed_compression_attempt and not force):
            return CompressionResult(ChatCompressionInfo(0, 0, CompressionStatus.NOOP))

        original_token_count = estimate_tokens(curated_history)
        if last_prompt_token_count > 0:
            original_token_count = last_prompt_token_count

        if not force and original_token_count < self.threshold * token_limit(model):
            return CompressionResult(
                ChatCompressionInfo(original_token_count, original_token_count, CompressionStatus.NOOP)
            )

        split_point = find_compress_split_point(curated_history, 1 - self.preserve_fraction)
        to_compress = curated_history[:split_point]
        to_keep = curated_history[split_point:]

        summary = await self._summarizer(
            [*to_compress, user_message(SUMMARY_INSTRUCTION)],
            COMPRESSION_SYSTEM_PROMPT,
            model,
            signal,
        )
        new_history = [
            user_message(summary or ""),
            model_message(SUMMARY_ACKNOWLEDGEMENT),
            *to_keep,
        ]
        new_token_count = estimate_tokens(new_history)

        self._telemetry.record(
            TelemetryEvent(
                type=CHAT_COMPRESSION,
                session_id=self._session_id,
                data={
                    "prompt_id": prompt_id,
                    "tokens_before": original_token_count,
                    "tokens_after": new_token_count,
                },
            )
        )

        if new_token_count > original_token_count:
            if not force:
                self.has_failed_compression_attempt = True
            logger.warning(
                "Compression inflated history (%d -> %d tokens), keeping original",
                original_token_count,
                new_token_count,
            )
            return CompressionResult(
                ChatCompressionInfo(
                    original_token_count,
                    new_token_count,
                    CompressionStatus.COMPRESSION_FAILED_INFLATED_TOKEN_COUNT,
                )
            )

        logger.info(
            "Compressed %d message(s): %d -> %d tokens",
            split_point,
            original_token_count,
            new_token_count,
        )
        return CompressionResult(
            ChatCompressionInfo(original_token_count, new_token_count, CompressionStatus.COMPRESSED),
            new_history=new_history,
        )
