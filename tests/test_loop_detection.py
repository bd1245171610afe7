"""Tests for LoopDetector: tool-call repetition, content chanting, LLM check."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from palaver.core.errors import AbortError
from palaver.core.loop_detection import LOOP_CHECK_PROMPT, LoopDetector, LoopType
from palaver.core.models import (
    EventType,
    FunctionResponse,
    Message,
    Part,
    Role,
    StreamEvent,
    ToolCallRequest,
    model_message,
    user_message,
)
from palaver.events import LOOP_DETECTED
from tests.conftest import RecordingTelemetry, make_settings

REPEATED = "I will now try to read the file once more. "


def _detector(telemetry=None, history=None, json_generator=None, **overrides) -> LoopDetector:
    detector = LoopDetector(
        make_settings(**overrides),
        "s1",
        history_provider=(lambda: list(history)) if history is not None else None,
        json_generator=json_generator,
        telemetry=telemetry,
    )
    detector.reset("p1")
    return detector


def _tool_event(name: str = "read_file", **args) -> StreamEvent:
    return StreamEvent(
        EventType.TOOL_CALL_REQUEST,
        ToolCallRequest(call_id="c", name=name, args=args or {"path": "a.txt"}),
    )


def _content(text: str) -> StreamEvent:
    return StreamEvent(EventType.CONTENT, text)


class TestToolCallLoops:
    def test_fifth_identical_call_is_a_loop(self):
        telemetry = RecordingTelemetry()
        detector = _detector(telemetry=telemetry)

        results = [detector.add_and_check(_tool_event()) for _ in range(5)]

        assert results == [False, False, False, False, True]
        (event,) = telemetry.of_type(LOOP_DETECTED)
        assert event.data["loop_type"] == LoopType.CONSECUTIVE_IDENTICAL_TOOL_CALLS
        assert event.data["prompt_id"] == "p1"

    def test_different_args_restart_the_count(self):
        detector = _detector()
        for _ in range(4):
            detector.add_and_check(_tool_event(path="a.txt"))

        assert not detector.add_and_check(_tool_event(path="b.txt"))
        assert not detector.add_and_check(_tool_event(path="a.txt"))

    def test_arg_order_does_not_matter(self):
        detector = _detector(tool_call_loop_threshold=2)
        detector.add_and_check(_tool_event(path="a", mode="r"))
        assert detector.add_and_check(
            StreamEvent(
                EventType.TOOL_CALL_REQUEST,
                ToolCallRequest(call_id="d", name="read_file", args={"mode": "r", "path": "a"}),
            )
        )

    def test_detection_latches_until_reset(self):
        detector = _detector(tool_call_loop_threshold=2)
        detector.add_and_check(_tool_event())
        assert detector.add_and_check(_tool_event())
        assert detector.add_and_check(_content("anything"))

        detector.reset("p2")
        assert not detector.loop_detected
        assert not detector.add_and_check(_tool_event())

    def test_disabled_detector_never_fires(self):
        detector = _detector(tool_call_loop_threshold=1)
        detector.disable_for_session()
        assert not detector.add_and_check(_tool_event())


class TestContentLoops:
    def test_chanting_is_detected(self):
        telemetry = RecordingTelemetry()
        detector = _detector(telemetry=telemetry)

        results = [detector.add_and_check(_content(REPEATED)) for _ in range(15)]

        assert not any(results[:3])
        assert results[-1]
        assert telemetry.of_type(LOOP_DETECTED)[0].data["loop_type"] == LoopType.CHANTING_IDENTICAL_SENTENCES

    def test_varied_text_is_not_a_loop(self):
        detector = _detector()
        for i in range(30):
            assert not detector.add_and_check(
                _content(f"Sentence {i} covers topic {i * 7} with a detail of {i * i}. ")
            )

    def test_code_block_content_is_ignored(self):
        detector = _detector()
        assert not detector.add_and_check(_content("```python\n"))
        for _ in range(20):
            assert not detector.add_and_check(_content(REPEATED))

    def test_tool_call_separates_content(self):
        detector = _detector()
        for i in range(15):
            detector.add_and_check(_content("x"))
            assert not detector.add_and_check(_tool_event(name=f"t{i}"))
        assert not detector.loop_detected


class TestLlmCheck:
    @pytest.mark.asyncio
    async def test_not_due_before_threshold(self):
        generator = AsyncMock(return_value={"confidence": 1.0, "reasoning": "stuck"})
        detector = _detector(history=[user_message("q")], json_generator=generator, llm_loop_check_after_turns=3)

        assert not await detector.turn_started()
        assert not await detector.turn_started()
        generator.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_high_confidence_reports_loop(self):
        telemetry = RecordingTelemetry()
        generator = AsyncMock(return_value={"confidence": 0.95, "reasoning": "same edit again"})
        history = [user_message("q"), model_message("a")]
        detector = _detector(
            telemetry=telemetry, history=history, json_generator=generator, llm_loop_check_after_turns=3
        )

        results = [await detector.turn_started() for _ in range(3)]

        assert results == [False, False, True]
        contents, schema, _signal = generator.await_args.args
        assert contents[-1].text == LOOP_CHECK_PROMPT
        assert "confidence" in schema["properties"]
        assert telemetry.of_type(LOOP_DETECTED)[0].data["loop_type"] == LoopType.LLM_DETECTED_LOOP

    @pytest.mark.asyncio
    async def test_low_confidence_backs_off(self):
        generator = AsyncMock(return_value={"confidence": 0.0, "reasoning": "fine"})
        detector = _detector(history=[user_message("q")], json_generator=generator, llm_loop_check_after_turns=3)

        for _ in range(17):
            assert not await detector.turn_started()
        assert generator.await_count == 1

        await detector.turn_started()
        assert generator.await_count == 2

    @pytest.mark.asyncio
    async def test_dangling_tool_response_is_trimmed(self):
        generator = AsyncMock(return_value={"confidence": 0.1})
        response = Message(
            role=Role.USER,
            parts=[Part(function_response=FunctionResponse("c1", "read_file", {"output": "x"}))],
        )
        detector = _detector(
            history=[response, model_message("a")], json_generator=generator, llm_loop_check_after_turns=3
        )

        for _ in range(3):
            await detector.turn_started()

        contents = generator.await_args.args[0]
        assert contents[0].text == "a"

    @pytest.mark.asyncio
    async def test_generator_failure_is_not_a_loop(self):
        generator = AsyncMock(side_effect=ValueError("bad json"))
        detector = _detector(history=[user_message("q")], json_generator=generator, llm_loop_check_after_turns=3)

        results = [await detector.turn_started() for _ in range(3)]

        assert results == [False, False, False]
        generator.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_abort_propagates(self):
        generator = AsyncMock(side_effect=AbortError("cancelled"))
        detector = _detector(history=[user_message("q")], json_generator=generator, llm_loop_check_after_turns=3)
        await detector.turn_started()
        await detector.turn_started()

        with pytest.raises(AbortError):
            await detector.turn_started()
