"""Integration tests for the REST API.

Uses httpx AsyncClient with ASGITransport and a pool backed by the
scripted FakeTransport.
"""

from __future__ import annotations

import asyncio
import json

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from palaver.api.rest import create_app
from palaver.core.models import ToolCallRequest
from palaver.core.pool import ClientPool
from palaver.tools.scheduler import ToolCallStatus
from tests.conftest import FakeTransport, call_chunk, make_settings, reply


def _events(body: str) -> list[dict]:
    return [json.loads(line[len("data: "):]) for line in body.splitlines() if line.startswith("data: ")]


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def pool(transport, registry):
    return ClientPool(make_settings(), transport, registry)


@pytest_asyncio.fixture
async def client(pool):
    app = create_app(pool, make_settings())
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


# ---------------------------------------------------------------------------
# /chat/stream
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_chat_stream(client, transport, pool):
    transport.streams.append(reply("Hello there."))

    resp = await client.post("/chat/stream", json={"message": "Hi", "session_id": "s1"})

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    assert resp.headers["x-session-id"] == "s1"
    events = _events(resp.text)
    assert [e["type"] for e in events] == ["content", "finished"]
    assert events[0]["value"] == "Hello there."
    assert "s1" in pool
    assert pool.get("s1").active is None


@pytest.mark.asyncio
async def test_chat_stream_with_tool_round_trip(client, transport):
    transport.streams.extend(
        [
            [call_chunk("c1", "lookup", {"q": "x"}, finish_reason="TOOL_USE")],
            reply("Found it."),
        ]
    )

    resp = await client.post("/chat/stream", json={"message": "look", "session_id": "s1"})

    types = [e["type"] for e in _events(resp.text)]
    assert types == ["tool_call_request", "finished", "tool_call_response", "content", "finished"]


@pytest.mark.asyncio
async def test_chat_stream_generates_session_id(client, transport):
    transport.streams.append(reply("ok"))

    resp = await client.post("/chat/stream", json={"message": "Hi"})

    assert resp.status_code == 200
    assert resp.headers["x-session-id"]


@pytest.mark.asyncio
async def test_chat_stream_reports_errors(client, transport):
    transport.streams.append(RuntimeError("boom"))

    resp = await client.post("/chat/stream", json={"message": "Hi", "session_id": "s1"})

    events = _events(resp.text)
    assert events[-1]["type"] == "error"


@pytest.mark.asyncio
async def test_chat_stream_bad_requests(client):
    resp = await client.post("/chat/stream", content=b"not json")
    assert resp.status_code == 400

    resp = await client.post("/chat/stream", json={"session_id": "s1"})
    assert resp.status_code == 400
    assert "message" in resp.json()["error"]


@pytest.mark.asyncio
async def test_chat_stream_busy_session(client, pool):
    session = pool.get_or_create("s1")

    async with session.lock:
        resp = await client.post("/chat/stream", json={"message": "Hi", "session_id": "s1"})

    assert resp.status_code == 409


# ---------------------------------------------------------------------------
# /approvals
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_resolve_approval(client, pool):
    session = pool.get_or_create("s1")
    batch = asyncio.create_task(
        session.scheduler.run([ToolCallRequest(call_id="c1", name="edit", args={"path": "a"})])
    )
    await asyncio.sleep(0)
    assert session.scheduler.get_call("c1").status == ToolCallStatus.AWAITING_APPROVAL

    resp = await client.post("/approvals/s1/c1", json={"outcome": "proceed_always"})

    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "resolved"
    assert data["outcome"] == "proceed_always"
    assert data["approval_mode"] == "auto_edit"
    (completed,) = await batch
    assert completed.status == ToolCallStatus.SUCCESS


@pytest.mark.asyncio
async def test_resolve_approval_errors(client, pool):
    resp = await client.post("/approvals/s1/c1", json={"outcome": "maybe"})
    assert resp.status_code == 400

    resp = await client.post("/approvals/s1/c1", content=b"{")
    assert resp.status_code == 400

    resp = await client.post("/approvals/nope/c1", json={"outcome": "cancel"})
    assert resp.status_code == 404

    pool.get_or_create("s1")
    resp = await client.post("/approvals/s1/c1", json={"outcome": "cancel"})
    assert resp.status_code == 409


# ---------------------------------------------------------------------------
# Compression, editor context, session end
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_compress(client, pool):
    resp = await client.post("/chat/s1/compress")
    assert resp.status_code == 404

    pool.get_or_create("s1")
    resp = await client.post("/chat/s1/compress")

    assert resp.status_code == 200
    assert resp.json()["status"] == "noop"


@pytest.mark.asyncio
async def test_compress_busy(client, pool):
    session = pool.get_or_create("s1")
    async with session.lock:
        resp = await client.post("/chat/s1/compress")
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_update_ide_context(client, pool):
    payload = {"open_files": [{"path": "/a.py", "is_active": True}]}

    resp = await client.put("/ide/s1", json=payload)

    assert resp.status_code == 200
    context = pool.get("s1").client.ide_context.get()
    assert context.active_file.path == "/a.py"


@pytest.mark.asyncio
async def test_update_ide_context_invalid(client):
    resp = await client.put("/ide/s1", json={"open_files": [{"is_active": True}]})
    assert resp.status_code == 422

    resp = await client.put("/ide/s1", content=b"nope")
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_end_chat(client, pool):
    resp = await client.delete("/chat/s1")
    assert resp.status_code == 404

    pool.get_or_create("s1")
    resp = await client.delete("/chat/s1")

    assert resp.status_code == 200
    assert resp.json() == {"status": "ended", "session_id": "s1"}
    assert "s1" not in pool


@pytest.mark.asyncio
async def test_health(client, pool):
    pool.get_or_create("s1")

    resp = await client.get("/health")

    assert resp.status_code == 200
    assert resp.json() == {"status": "healthy", "sessions": 1}
