"""REST API for palaver.

Endpoints:
  POST   /chat/stream                       - Send a message, stream events (SSE)
  POST   /approvals/{session_id}/{call_id}  - Resolve a tool call awaiting approval
  POST   /chat/{session_id}/compress        - Force history compression
  PUT    /ide/{session_id}                  - Push the user's editor context
  DELETE /chat/{session_id}                 - End a session
  GET    /health                            - Health check
"""

from __future__ import annotations

import json
import logging
from typing import Any
from uuid import uuid4

from pydantic import ValidationError
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, StreamingResponse
from starlette.routing import Route

from palaver.config import Settings
from palaver.core.abort import AbortController
from palaver.core.conversation import new_prompt_id
from palaver.core.ide_context import IdeContext
from palaver.core.models import EventType, StreamEvent
from palaver.core.pool import ClientPool
from palaver.tools.scheduler import ApprovalOutcome

logger = logging.getLogger(__name__)


def _sse(event: StreamEvent) -> str:
    return f"data: {json.dumps(event.to_dict(), default=str)}\n\n"


def create_app(
    pool: ClientPool,
    settings: Settings,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""

    async def chat_stream(request: Request) -> StreamingResponse | JSONResponse:
        """POST /chat/stream - SSE stream of StreamEvents for one user message."""
        try:
            body = await request.json()
        except Exception:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)

        message = body.get("message")
        if not message:
            return JSONResponse({"error": "Missing required field: message"}, status_code=400)

        session_id = body.get("session_id") or str(uuid4())
        session = pool.get_or_create(session_id)
        if session.busy:
            return JSONResponse(
                {"error": "Session is already processing a request", "session_id": session_id},
                status_code=409,
            )
        prompt_id = body.get("prompt_id") or new_prompt_id(session_id)

        async def event_generator():
            controller = AbortController()
            async with session.lock:
                session.active = controller
                session.touch()
                try:
                    async for event in session.runner.run(message, controller.signal, prompt_id):
                        yield _sse(event)
                except Exception as e:
                    logger.error("Stream error in session %s: %s", session_id, e)
                    yield _sse(StreamEvent(EventType.ERROR, {"message": str(e)}))
                finally:
                    # Client went away or the run ended; stop anything still in flight
                    if not controller.signal.aborted:
                        controller.abort("Stream closed")
                    session.active = None
                    session.touch()

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
                "X-Session-Id": session_id,
            },
        )

    async def resolve_approval(request: Request) -> JSONResponse:
        """POST /approvals/{session_id}/{call_id} - Apply an approval outcome."""
        session_id = request.path_params["session_id"]
        call_id = request.path_params["call_id"]
        try:
            body = await request.json()
        except Exception:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)

        try:
            outcome = ApprovalOutcome(body.get("outcome"))
        except ValueError:
            valid = ", ".join(o.value for o in ApprovalOutcome)
            return JSONResponse({"error": f"outcome must be one of: {valid}"}, status_code=400)

        session = pool.get(session_id)
        if session is None:
            return JSONResponse({"error": "Unknown session"}, status_code=404)

        resolved = await session.scheduler.resolve_approval(call_id, outcome)
        if not resolved:
            return JSONResponse(
                {"error": "Tool call is not awaiting approval", "call_id": call_id},
                status_code=409,
            )
        return JSONResponse(
            {
                "status": "resolved",
                "call_id": call_id,
                "outcome": outcome.value,
                "approval_mode": str(session.scheduler.approval_mode),
            }
        )

    async def compress(request: Request) -> JSONResponse:
        """POST /chat/{session_id}/compress - Forced compression."""
        session_id = request.path_params["session_id"]
        session = pool.get(session_id)
        if session is None:
            return JSONResponse({"error": "Unknown session"}, status_code=404)
        if session.busy:
            return JSONResponse({"error": "Session is busy"}, status_code=409)

        async with session.lock:
            try:
                info = await session.client.try_compress_chat(new_prompt_id(session_id), force=True)
            except Exception as e:
                logger.error("Compression error in session %s: %s", session_id, e)
                return JSONResponse({"error": str(e)}, status_code=500)
        return JSONResponse(
            {
                "session_id": session_id,
                "status": str(info.status),
                "original_token_count": info.original_token_count,
                "new_token_count": info.new_token_count,
            }
        )

    async def update_ide_context(request: Request) -> JSONResponse:
        """PUT /ide/{session_id} - Replace the session's editor context."""
        session_id = request.path_params["session_id"]
        try:
            body = await request.json()
        except Exception:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        try:
            context = IdeContext.model_validate(body)
        except ValidationError as e:
            return JSONResponse({"error": e.errors(include_url=False)}, status_code=422)

        session = pool.get_or_create(session_id)
        session.client.ide_context.set(context)
        return JSONResponse({"status": "updated", "session_id": session_id})

    async def end_chat(request: Request) -> JSONResponse:
        """DELETE /chat/{session_id} - End a conversation."""
        session_id = request.path_params["session_id"]
        if not pool.release(session_id):
            return JSONResponse({"error": "Unknown session"}, status_code=404)
        return JSONResponse({"status": "ended", "session_id": session_id})

    async def health(request: Request) -> JSONResponse:
        """GET /health - Health check."""
        return JSONResponse({"status": "healthy", "sessions": len(pool)})

    routes = [
        Route("/chat/stream", chat_stream, methods=["POST"]),
        Route("/chat/{session_id}/compress", compress, methods=["POST"]),
        Route("/chat/{session_id}", end_chat, methods=["DELETE"]),
        Route("/approvals/{session_id}/{call_id}", resolve_approval, methods=["POST"]),
        Route("/ide/{session_id}", update_ide_context, methods=["PUT"]),
        Route("/health", health),
    ]

    kwargs: dict[str, Any] = {"routes": routes}
    if lifespan is not None:
        kwargs["lifespan"] = lifespan
    return Starlette(**kwargs)
