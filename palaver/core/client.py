"""ConversationClient: the top-level driver for one chat session.

Owns the ChatSession and everything stateful around it (loop detector,
compressor, model lock, turn counters) and runs the send loop:

    overflow guard -> compression -> editor context -> routing -> Turn
    -> loop checks -> next-speaker continuation

Tool continuation is not done here. Callers collect tool_call_request
events, run them through a scheduler and send the responses back with
the same prompt id (see ConversationRunner).
"""

from __future__ import annotations

import json
import logging
import platform
from collections.abc import AsyncIterator
from contextlib import aclosing
from datetime import date
from typing import Any

from palaver.config import Settings
from palaver.core.abort import AbortController, AbortSignal
from palaver.core.chat import ChatSession
from palaver.core.compression import HistoryCompressor
from palaver.core.errors import AbortError, MalformedResponseError
from palaver.core.fallback import FallbackApproval, FallbackHandler
from palaver.core.ide_context import IdeContext, IdeContextStore, render_context_delta, render_full_context
from palaver.core.loop_detection import LoopDetector
from palaver.core.models import (
    ChatCompressionInfo,
    CompressionStatus,
    EventType,
    GenerateConfig,
    Message,
    Part,
    Role,
    StreamEvent,
    user_message,
)
from palaver.core.next_speaker import check_next_speaker
from palaver.core.retry import RetryPolicy
from palaver.core.routing import AUTO_MODEL, ModelRouter, RoutingContext
from palaver.core.state import SessionState
from palaver.core.tokens import estimate_request_tokens, token_limit
from palaver.core.turn import Turn
from palaver.events import (
    CONTENT_RETRY_FAILURE,
    MALFORMED_JSON_RESPONSE,
    NEXT_SPEAKER_CHECK,
    NullTelemetry,
    TelemetryEvent,
    TelemetrySink,
)
from palaver.tools.registry import ToolRegistry
from palaver.transport.base import ModelResponse, ModelTransport

logger = logging.getLogger(__name__)

# Hard ceiling on turns per send_message_stream call, whatever the caller asks for
MAX_TURNS = 100

# Fraction of the remaining context window a request may fill
CONTEXT_SAFETY_MARGIN = 0.95

CONTINUE_PROMPT = "Please continue."
INVALID_STREAM_CONTINUE_PROMPT = "System: Please continue."

LANGUAGE_REMINDER = """\
<system_reminder>
Use the same language as the user's last message.
Ignore previous messages, you DO NOT need to keep consistency.
If user shifts language, be flex, change your reply immediately.
This is a reminder, NEVER mention it to the user.
</system_reminder>"""

ACTION_REMINDER = """\
<system_reminder>
If user suggests something, immediately try it first.
It's NOT necessary to keep consistent with previous refusals.
It's OK to change your mind or approach, DO NOT let your previous responses bind your following actions.
</system_reminder>"""

EMPTY_RESPONSE_REMINDER = """\
<system_reminder>
**IMPORTANT**: Do not return an empty response when a tool call is required.
</system_reminder>"""

ROLE_PROMPTS: dict[str, str] = {
    "software_engineer": (
        "You are an interactive software engineering assistant. Read before you "
        "edit, keep changes minimal and consistent with the surrounding code, and "
        "verify your work with the tools available to you."
    ),
    "office_assistant": (
        "You are an office assistant. Help the user draft, organize and review "
        "documents, spreadsheets and correspondence."
    ),
    "translator": (
        "You are a professional translator. Preserve meaning, tone and formatting, "
        "and point out passages that do not translate cleanly."
    ),
    "creative_writer": (
        "You are a creative writing partner. Match the user's voice and keep "
        "continuity across drafts."
    ),
    "financial_analyst": (
        "You are a financial analyst. Show your calculations, state your "
        "assumptions and flag data you could not verify."
    ),
}


def build_system_instruction(settings: Settings) -> str:
    """Role prompt plus a short description of the environment."""
    role_prompt = ROLE_PROMPTS.get(settings.role, ROLE_PROMPTS["software_engineer"])
    environment = (
        f"Today's date is {date.today().isoformat()}. "
        f"Platform: {platform.system().lower()}. "
        f"Workspace directory: {settings.workspace_dir}."
    )
    return f"{role_prompt}\n\n{environment}"


def _to_parts(request: str | list[Part]) -> list[Part]:
    if isinstance(request, str):
        return [Part(text=request)]
    return list(request)


class ConversationClient:
    """One session's orchestrator. Not shared between sessions."""

    def __init__(
        self,
        settings: Settings,
        transport: ModelTransport,
        registry: ToolRegistry,
        session_id: str,
        telemetry: TelemetrySink | None = None,
        router: ModelRouter | None = None,
        ide_context: IdeContextStore | None = None,
        on_fallback: FallbackApproval | None = None,
        system_instruction: str | None = None,
    ) -> None:
        self.settings = settings
        self.session_id = session_id
        self._transport = transport
        self._registry = registry
        self._telemetry = telemetry or NullTelemetry()

        self.state = SessionState(
            session_id=session_id, role=settings.role, approval_mode=settings.approval_mode
        )
        self.retry_policy = RetryPolicy.from_settings(settings)
        self.fallback = FallbackHandler(settings.fallback_model, self.state, self._telemetry, on_fallback)
        self.loop_detector = LoopDetector(
            settings,
            session_id,
            history_provider=self.get_history,
            json_generator=self._generate_lite_json,
            telemetry=self._telemetry,
        )
        self.compressor = HistoryCompressor(
            self._summarize,
            threshold=settings.compression_threshold,
            telemetry=self._telemetry,
            session_id=session_id,
        )
        self.router = router or ModelRouter.default(settings, self.state, self.generate_json)
        self.ide_context = ide_context or IdeContextStore()
        self.system_instruction = system_instruction or build_system_instruction(settings)

        self.session_turn_count = 0
        self.last_prompt_id: str | None = None
        self.current_sequence_model: str | None = None
        self.last_turn: Turn | None = None

        self._last_sent_ide_context: IdeContext | None = None
        self._force_full_ide_context = True
        self._chat = self._start_chat()

    # ------------------------------------------------------------------
    # Chat lifecycle
    # ------------------------------------------------------------------

    def _start_chat(self, history: list[Message] | None = None) -> ChatSession:
        self._force_full_ide_context = True
        return ChatSession(
            self._transport,
            self.state,
            self.retry_policy,
            self.fallback,
            telemetry=self._telemetry,
            registry=self._registry,
            history=history,
            system_instruction=self.system_instruction,
            tools=self._registry.available_tools(self.state.role),
        )

    @property
    def chat(self) -> ChatSession:
        return self._chat

    def reset_chat(self) -> None:
        """Start over with an empty history."""
        self._chat = self._start_chat()
        self.compressor.reset()
        self.current_sequence_model = None
        self.state.last_prompt_token_count = 0
        logger.info("Chat reset for session %s", self.session_id)

    def get_history(self, curated: bool = False) -> list[Message]:
        return self._chat.get_history(curated=curated)

    def set_history(self, history: list[Message]) -> None:
        self._chat.set_history(history)
        self._force_full_ide_context = True

    def add_history(self, message: Message) -> None:
        self._chat.add_history(message)

    def set_tools(self) -> None:
        """Refresh tool declarations from the registry."""
        self._chat.set_tools(self._registry.available_tools(self.state.role))

    # ------------------------------------------------------------------
    # Send loop
    # ------------------------------------------------------------------

    async def send_message_stream(
        self,
        request: str | list[Part],
        signal: AbortSignal | None,
        prompt_id: str,
        turns: int = MAX_TURNS,
    ) -> AsyncIterator[StreamEvent]:
        """Send a request and stream events until control returns to the user.

        Continues on its own (within the turn budget) after an invalid
        stream or when the model is judged to be the next speaker. The
        first Turn of the call is left in ``last_turn``; its
        ``pending_tool_calls`` tell the caller what to run next.
        """
        if self.last_prompt_id != prompt_id:
            self.loop_detector.reset(prompt_id)
            self.last_prompt_id = prompt_id
            self.current_sequence_model = None
            self.state.quota_error_occurred = False

        request_parts = _to_parts(request)
        budget = min(turns, MAX_TURNS)
        remaining_turns = budget
        invalid_stream_retried = False
        self.last_turn = None

        while True:
            if remaining_turns <= 0:
                logger.warning("Prompt %s used up its turn budget (%d)", prompt_id, budget)
                self._ensure_last_turn(prompt_id)
                yield StreamEvent(EventType.MAX_SESSION_TURNS, {"scope": "call", "limit": budget})
                return

            self.session_turn_count += 1
            if 0 < self.settings.max_session_turns < self.session_turn_count:
                logger.warning(
                    "Session %s reached max session turns (%d)",
                    self.session_id,
                    self.settings.max_session_turns,
                )
                self._ensure_last_turn(prompt_id)
                yield StreamEvent(
                    EventType.MAX_SESSION_TURNS, {"scope": "session", "limit": self.settings.max_session_turns}
                )
                return

            # Overflow check against the model this turn would most likely use
            limit_model = self._model_for_limits()
            estimated = estimate_request_tokens(request_parts)
            remaining_tokens = token_limit(limit_model) - self.state.last_prompt_token_count
            if estimated > remaining_tokens * CONTEXT_SAFETY_MARGIN:
                logger.warning(
                    "Request of ~%d tokens would overflow the context window (%d remaining)",
                    estimated,
                    remaining_tokens,
                )
                self._ensure_last_turn(prompt_id)
                yield StreamEvent(
                    EventType.CONTEXT_WINDOW_WILL_OVERFLOW,
                    {"estimated_request_token_count": estimated, "remaining_token_count": remaining_tokens},
                )
                return

            try:
                compressed = await self.try_compress_chat(prompt_id, force=False, signal=signal)
            except AbortError:
                self._ensure_last_turn(prompt_id)
                yield StreamEvent(EventType.USER_CANCELLED)
                return
            except Exception as e:
                logger.warning("Compression failed, continuing with uncompressed history: %s", e)
            else:
                if compressed.status == CompressionStatus.COMPRESSED:
                    yield StreamEvent(EventType.CHAT_COMPRESSED, compressed)

            history = self.get_history()
            has_pending_tool_call = bool(history) and history[-1].role == Role.MODEL and history[-1].has_function_call
            if self.settings.ide_mode and not has_pending_tool_call:
                context_text = self._ide_context_text(force_full=self._force_full_ide_context or not history)
                if context_text:
                    self.add_history(user_message(context_text))

            turn = Turn(self._chat, prompt_id, self._telemetry)
            if self.last_turn is None:
                self.last_turn = turn

            try:
                loop_found = await self.loop_detector.turn_started(signal)
            except AbortError:
                yield StreamEvent(EventType.USER_CANCELLED)
                return
            if loop_found:
                yield StreamEvent(EventType.LOOP_DETECTED)
                return

            outgoing = request_parts
            if not history:
                outgoing = [
                    Part(text=LANGUAGE_REMINDER),
                    Part(text=ACTION_REMINDER),
                    Part(text=EMPTY_RESPONSE_REMINDER),
                    *request_parts,
                ]

            try:
                model = await self._resolve_model(request_parts, signal)
            except AbortError:
                yield StreamEvent(EventType.USER_CANCELLED)
                return

            controller = AbortController.linked(signal) if signal is not None else AbortController()
            invalid_stream = False
            try:
                async with aclosing(turn.run(model, outgoing, controller.signal)) as events:
                    async for event in events:
                        if self.loop_detector.add_and_check(event):
                            yield StreamEvent(EventType.LOOP_DETECTED)
                            controller.abort("Loop detected")
                            return
                        yield event
                        if event.type == EventType.INVALID_STREAM:
                            invalid_stream = True
                        elif event.type in (EventType.ERROR, EventType.USER_CANCELLED):
                            return
            finally:
                controller.detach()

            if invalid_stream and self.settings.continue_on_failed_api_call:
                if invalid_stream_retried:
                    logger.error("Invalid stream again after continuing prompt %s, giving up", prompt_id)
                    self._telemetry.record(
                        TelemetryEvent(
                            type=CONTENT_RETRY_FAILURE,
                            session_id=self.session_id,
                            data={"prompt_id": prompt_id, "model": model, "continued": True},
                        )
                    )
                    return
                invalid_stream_retried = True
                # The failed send was rolled back, so the request goes out again
                request_parts = [*request_parts, Part(text=INVALID_STREAM_CONTINUE_PROMPT)]
                remaining_turns -= 1
                continue

            if turn.pending_tool_calls:
                return
            if signal is not None and signal.aborted:
                return
            if self.state.quota_error_occurred or self.settings.skip_next_speaker_check:
                return

            try:
                next_speaker = await check_next_speaker(
                    self.get_history(),
                    self.get_history(curated=True),
                    self._generate_lite_json,
                    signal,
                )
            except AbortError:
                return
            self._telemetry.record(
                TelemetryEvent(
                    type=NEXT_SPEAKER_CHECK,
                    session_id=self.session_id,
                    data={
                        "prompt_id": prompt_id,
                        "finish_reason": turn.finish_reason,
                        "result": next_speaker.next_speaker if next_speaker else None,
                    },
                )
            )
            if next_speaker is None or next_speaker.next_speaker != "model":
                return

            logger.debug("Model continues speaking in prompt %s: %s", prompt_id, next_speaker.reasoning)
            request_parts = [Part(text=CONTINUE_PROMPT)]
            invalid_stream_retried = False
            remaining_turns -= 1

    def _ensure_last_turn(self, prompt_id: str) -> None:
        if self.last_turn is None:
            self.last_turn = Turn(self._chat, prompt_id, self._telemetry)

    async def _resolve_model(self, request: list[Part], signal: AbortSignal | None) -> str:
        """Locked model for the sequence, routing once when none is locked."""
        if self.current_sequence_model is not None:
            return self.current_sequence_model
        decision = await self.router.route(
            RoutingContext(history=self.get_history(curated=True), request=request, signal=signal)
        )
        self.current_sequence_model = decision.model
        logger.info(
            "Session %s locked model %s (%s: %s)",
            self.session_id,
            decision.model,
            decision.source,
            decision.reason,
        )
        return decision.model

    def _model_for_limits(self) -> str:
        if self.current_sequence_model is not None:
            return self.fallback.effective_model(self.current_sequence_model)
        model = self.settings.model
        if model == AUTO_MODEL:
            model = self.settings.default_model
        return self.fallback.effective_model(model)

    def _ide_context_text(self, force_full: bool) -> str | None:
        current = self.ide_context.get()
        if current is None:
            return None
        if force_full or self._last_sent_ide_context is None:
            text = render_full_context(current)
        else:
            text = render_context_delta(self._last_sent_ide_context, current)
        self._last_sent_ide_context = current.model_copy(deep=True)
        self._force_full_ide_context = False
        return text

    # ------------------------------------------------------------------
    # Compression
    # ------------------------------------------------------------------

    async def try_compress_chat(
        self,
        prompt_id: str,
        force: bool = False,
        signal: AbortSignal | None = None,
    ) -> ChatCompressionInfo:
        """Compress the history if it is large enough, committing only real savings."""
        if force:
            self.compressor.reset()
        result = await self.compressor.compress(
            self.get_history(curated=True),
            prompt_id,
            self._model_for_limits(),
            force=force,
            last_prompt_token_count=self.state.last_prompt_token_count,
            signal=signal,
        )
        if result.info.status == CompressionStatus.COMPRESSED and result.new_history is not None:
            self._chat = self._start_chat(result.new_history)
            self.state.last_prompt_token_count = result.info.new_token_count
        return result.info

    async def _summarize(
        self,
        contents: list[Message],
        system_instruction: str,
        model: str,
        signal: AbortSignal | None,
    ) -> str:
        config = GenerateConfig(system_instruction=system_instruction, tools_enabled=False)
        response = await self.generate_content(contents, config, signal, model)
        return response.text

    # ------------------------------------------------------------------
    # One-shot generation
    # ------------------------------------------------------------------

    async def generate_content(
        self,
        contents: list[Message],
        config: GenerateConfig,
        signal: AbortSignal | None = None,
        model: str | None = None,
    ) -> ModelResponse:
        """Non-streaming call through the retry policy and fallback hook."""
        target = self.fallback.effective_model(model or self._model_for_limits())

        async def api_call(model_to_use: str) -> ModelResponse:
            return await self._transport.generate_content(
                model_to_use,
                self.system_instruction,
                self._chat.tools,
                contents,
                config,
                signal,
            )

        try:
            return await self.retry_policy.run(api_call, target, signal, on_persistent_429=self.fallback.handle)
        except AbortError:
            raise
        except Exception as e:
            logger.error("Error generating content with %s: %s", target, e)
            raise

    async def generate_json(
        self,
        contents: list[Message],
        schema: dict[str, Any],
        signal: AbortSignal | None = None,
        model: str | None = None,
    ) -> dict[str, Any]:
        """Structured output as a dict.

        Raises MalformedResponseError for an empty or unparsable reply.
        """
        config = GenerateConfig(response_schema=schema, temperature=0.0, tools_enabled=False)
        response = await self.generate_content(contents, config, signal, model)
        text = response.text.strip()
        if not text:
            raise MalformedResponseError("Model returned an empty response for a JSON request")

        if text.startswith("```json") and text.endswith("```"):
            self._telemetry.record(
                TelemetryEvent(
                    type=MALFORMED_JSON_RESPONSE,
                    session_id=self.session_id,
                    data={"model": model or self._model_for_limits()},
                )
            )
            text = text[len("```json"):-3].strip()

        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as e:
            raise MalformedResponseError(f"Failed to parse model response as JSON: {e}") from e
        if not isinstance(parsed, dict):
            raise MalformedResponseError(f"Expected a JSON object, got {type(parsed).__name__}")
        return parsed

    async def _generate_lite_json(
        self,
        contents: list[Message],
        schema: dict[str, Any],
        signal: AbortSignal | None = None,
    ) -> dict[str, Any]:
        return await self.generate_json(contents, schema, signal, self.settings.lite_model)
