"""Tests for the telemetry sink."""

from __future__ import annotations

import pytest

from palaver.events import API_ERROR, TOOL_CALL, NullTelemetry, TelemetryEvent, TelemetrySink


@pytest.mark.asyncio
async def test_handlers_receive_matching_and_wildcard_events():
    sink = TelemetrySink()
    typed, everything = [], []

    async def on_tool(event):
        typed.append(event.type)

    async def on_any(event):
        everything.append(event.type)

    sink.on(TOOL_CALL, on_tool)
    sink.on("*", on_any)
    await sink.start()
    sink.record(TelemetryEvent(type=TOOL_CALL, session_id="s1"))
    sink.record(TelemetryEvent(type=API_ERROR, session_id="s1"))
    await sink.stop()

    assert typed == [TOOL_CALL]
    assert everything == [TOOL_CALL, API_ERROR]


@pytest.mark.asyncio
async def test_failing_handler_does_not_block_others():
    sink = TelemetrySink()
    seen = []

    async def broken(event):
        raise RuntimeError("handler bug")

    async def healthy(event):
        seen.append(event.data["n"])

    sink.on(TOOL_CALL, broken)
    sink.on(TOOL_CALL, healthy)
    await sink.start()
    for n in range(3):
        sink.record(TelemetryEvent(type=TOOL_CALL, data={"n": n}))
    await sink.stop()

    assert seen == [0, 1, 2]


@pytest.mark.asyncio
async def test_full_queue_drops_events():
    sink = TelemetrySink(max_queue=2)
    seen = []

    async def handler(event):
        seen.append(event.data["n"])

    sink.on(TOOL_CALL, handler)
    for n in range(4):
        sink.record(TelemetryEvent(type=TOOL_CALL, data={"n": n}))

    assert sink.dropped == 2

    await sink.start()
    await sink.stop()
    assert seen == [0, 1]


@pytest.mark.asyncio
async def test_stop_without_start_is_a_no_op():
    sink = TelemetrySink()
    await sink.stop()


def test_null_telemetry_ignores_records():
    sink = NullTelemetry()
    for _ in range(5):
        sink.record(TelemetryEvent(type=TOOL_CALL))
    assert sink.dropped == 0
