"""Tool-call scheduler: approval gate plus concurrent execution.

Each request becomes a ToolCall that moves through

    validating -> scheduled | awaiting_approval | error
    awaiting_approval -> scheduled | cancelled
    scheduled -> executing -> success | error | cancelled

Approval is two-phase: a call parks in awaiting_approval with
ConfirmationDetails, and the host later calls resolve_approval() (or
details.on_confirm()). Execution of a batch starts only once no call is
validating or awaiting approval; scheduled calls then run concurrently
as asyncio tasks. Every state change happens on the event loop thread,
and each call is written only by the code path that owns its current
state, so near-simultaneous completions cannot corrupt the batch.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from palaver.core.abort import AbortSignal
from palaver.core.errors import SchedulerBusyError
from palaver.core.models import FunctionResponse, Part, ToolCallRequest
from palaver.core.state import SessionState
from palaver.events import TOOL_CALL, NullTelemetry, TelemetryEvent, TelemetrySink
from palaver.tools.base import RiskClass, ToolHandler, ToolResult
from palaver.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)


class ToolCallStatus(StrEnum):
    VALIDATING = "validating"
    SCHEDULED = "scheduled"
    AWAITING_APPROVAL = "awaiting_approval"
    EXECUTING = "executing"
    SUCCESS = "success"
    ERROR = "error"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({ToolCallStatus.SUCCESS, ToolCallStatus.ERROR, ToolCallStatus.CANCELLED})


class ApprovalMode(StrEnum):
    DEFAULT = "default"
    AUTO_EDIT = "auto_edit"
    YOLO = "yolo"


class ApprovalOutcome(StrEnum):
    PROCEED_ONCE = "proceed_once"
    PROCEED_ALWAYS = "proceed_always"
    CANCEL = "cancel"


# Least permissive first
_MODE_ORDER = [ApprovalMode.DEFAULT, ApprovalMode.AUTO_EDIT, ApprovalMode.YOLO]


def needs_approval(mode: ApprovalMode, risk: RiskClass) -> bool:
    if risk == RiskClass.NONE or mode == ApprovalMode.YOLO:
        return False
    if mode == ApprovalMode.AUTO_EDIT:
        return risk == RiskClass.DESTRUCTIVE
    return True


def mode_for_always(risk: RiskClass) -> ApprovalMode:
    """Least permissive mode that auto-approves calls of this risk class."""
    if risk == RiskClass.DESTRUCTIVE:
        return ApprovalMode.YOLO
    if risk == RiskClass.EDIT:
        return ApprovalMode.AUTO_EDIT
    return ApprovalMode.DEFAULT


@dataclass
class ConfirmationDetails:
    """What the host shows the user for a call awaiting approval."""

    call_id: str
    tool_name: str
    args: dict[str, Any]
    risk: RiskClass
    title: str
    prompt: str
    _resolve: Callable[[str, ApprovalOutcome], Awaitable[bool]] = field(repr=False, compare=False)

    async def on_confirm(self, outcome: ApprovalOutcome) -> bool:
        return await self._resolve(self.call_id, outcome)

    def to_dict(self) -> dict[str, Any]:
        return {
            "call_id": self.call_id,
            "tool_name": self.tool_name,
            "args": self.args,
            "risk": str(self.risk),
            "title": self.title,
            "prompt": self.prompt,
        }


@dataclass
class ToolCallResponse:
    call_id: str
    response_parts: list[Part]
    result_display: Any = None
    error: str | None = None
    error_type: str | None = None


@dataclass
class ToolCall:
    """Scheduler-owned wrapper around one ToolCallRequest."""

    request: ToolCallRequest
    status: ToolCallStatus = ToolCallStatus.VALIDATING
    tool: ToolHandler | None = None
    risk: RiskClass = RiskClass.NONE
    confirmation_details: ConfirmationDetails | None = None
    response: ToolCallResponse | None = None
    outcome: ApprovalOutcome | None = None
    start_time: float = field(default_factory=time.monotonic)
    duration_ms: int | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "call_id": self.request.call_id,
            "name": self.request.name,
            "args": self.request.args,
            "status": str(self.status),
        }
        if self.response is not None:
            data["response"] = [p.to_dict() for p in self.response.response_parts]
            if self.response.error:
                data["error"] = self.response.error
        if self.confirmation_details is not None:
            data["confirmation"] = self.confirmation_details.to_dict()
        return data


# A ToolCall in a terminal state
CompletedToolCall = ToolCall

OnToolCallsUpdate = Callable[[list[ToolCall]], None]
OnAllToolCallsComplete = Callable[[list[CompletedToolCall]], Awaitable[None]]
ApprovalHandler = Callable[[ConfirmationDetails], Awaitable[ApprovalOutcome]]


def convert_to_function_response(request: ToolCallRequest, result: ToolResult) -> Part:
    """Successful tool output as a function_response part."""
    return Part(
        function_response=FunctionResponse(
            id=request.call_id,
            name=request.name,
            response={"output": result.output},
        )
    )


def error_response(request: ToolCallRequest, message: str, error_type: str) -> ToolCallResponse:
    """Error/cancel outcome, still answering the call with one response part."""
    part = Part(
        function_response=FunctionResponse(
            id=request.call_id,
            name=request.name,
            response={"error": message},
        )
    )
    return ToolCallResponse(
        call_id=request.call_id,
        response_parts=[part],
        result_display=message,
        error=message,
        error_type=error_type,
    )


class ToolCallScheduler:
    """Runs one batch of tool calls at a time through approval and execution."""

    def __init__(
        self,
        registry: ToolRegistry,
        state: SessionState,
        telemetry: TelemetrySink | None = None,
        on_tool_calls_update: OnToolCallsUpdate | None = None,
        on_all_tool_calls_complete: OnAllToolCallsComplete | None = None,
        approval_handler: ApprovalHandler | None = None,
    ) -> None:
        self._registry = registry
        self._state = state
        self._telemetry = telemetry or NullTelemetry()
        self.on_tool_calls_update = on_tool_calls_update
        self.on_all_tool_calls_complete = on_all_tool_calls_complete
        self.approval_handler = approval_handler

        self._calls: list[ToolCall] = []
        self._tasks: dict[str, asyncio.Task] = {}
        self._approval_task: asyncio.Task | None = None
        self._abort_task: asyncio.Task | None = None
        self._signal: AbortSignal | None = None
        self._remove_abort_callback: Callable[[], None] | None = None
        self._batch_done: asyncio.Future[list[CompletedToolCall]] | None = None
        self._completing = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def approval_mode(self) -> ApprovalMode:
        return ApprovalMode(self._state.approval_mode)

    @approval_mode.setter
    def approval_mode(self, mode: ApprovalMode) -> None:
        self._state.approval_mode = str(mode)

    @property
    def calls(self) -> list[ToolCall]:
        return list(self._calls)

    @property
    def is_running(self) -> bool:
        return bool(self._calls)

    def get_call(self, call_id: str) -> ToolCall | None:
        for call in self._calls:
            if call.request.call_id == call_id:
                return call
        return None

    async def schedule(self, requests: list[ToolCallRequest], signal: AbortSignal | None = None) -> None:
        """Validate a batch and start whatever needs no approval.

        Raises SchedulerBusyError if the previous batch has not completed.
        """
        if self._calls:
            raise SchedulerBusyError("Cannot schedule tool calls while another batch is running")
        if not requests:
            return

        self._completing = False
        self._batch_done = asyncio.get_running_loop().create_future()
        self._signal = signal
        self._calls = [ToolCall(request=r) for r in requests]
        self._notify()

        for call in self._calls:
            self._validate(call)
        self._notify()

        if signal is not None:
            self._remove_abort_callback = signal.add_callback(self._on_abort)

        if self.approval_handler is not None and self._awaiting():
            self._approval_task = asyncio.create_task(self._prompt_for_approvals(), name="tool-approvals")

        self._attempt_execution()
        await self._check_and_notify_completion()

    async def run(self, requests: list[ToolCallRequest], signal: AbortSignal | None = None) -> list[CompletedToolCall]:
        """Schedule a batch and wait until every call is terminal."""
        if not requests:
            return []
        await self.schedule(requests, signal)
        assert self._batch_done is not None
        return await self._batch_done

    async def resolve_approval(self, call_id: str, outcome: ApprovalOutcome) -> bool:
        """Apply the host's decision for an awaiting call.

        Returns False when the call is unknown or no longer awaiting.
        """
        call = self.get_call(call_id)
        if call is None or call.status != ToolCallStatus.AWAITING_APPROVAL:
            logger.warning("Ignoring approval for %s: not awaiting approval", call_id)
            return False

        call.outcome = outcome
        if outcome == ApprovalOutcome.CANCEL:
            self._set_status(
                call,
                ToolCallStatus.CANCELLED,
                error_response(call.request, "User cancelled the tool call.", "cancelled"),
            )
        else:
            if outcome == ApprovalOutcome.PROCEED_ALWAYS:
                self._raise_approval_mode(mode_for_always(call.risk))
            self._set_status(call, ToolCallStatus.SCHEDULED)
            if outcome == ApprovalOutcome.PROCEED_ALWAYS:
                self.reevaluate_pending()

        self._attempt_execution()
        await self._check_and_notify_completion()
        return True

    def reevaluate_pending(self) -> int:
        """Auto-confirm awaiting calls the current approval mode no longer gates.

        Executing and terminal calls are left alone. Returns how many
        calls were released.
        """
        released = 0
        mode = self.approval_mode
        for call in self._calls:
            if call.status != ToolCallStatus.AWAITING_APPROVAL:
                continue
            if needs_approval(mode, call.risk):
                continue
            call.outcome = ApprovalOutcome.PROCEED_ONCE
            self._set_status(call, ToolCallStatus.SCHEDULED)
            released += 1
        if released:
            logger.info("Approval mode %s released %d pending tool call(s)", mode, released)
            self._attempt_execution()
        return released

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _validate(self, call: ToolCall) -> None:
        request = call.request
        if self._signal is not None and self._signal.aborted:
            self._set_status(
                call, ToolCallStatus.CANCELLED, error_response(request, "Tool call cancelled.", "cancelled")
            )
            return

        tool = self._registry.get_for_role(request.name, self._state.role)
        if tool is None:
            if self._registry.get(request.name) is None:
                message = f'Tool "{request.name}" not found in registry.'
            else:
                message = f'Tool "{request.name}" is not available to the {self._state.role} role.'
            self._set_status(
                call, ToolCallStatus.ERROR, error_response(request, message, "tool_not_registered")
            )
            return
        call.tool = tool

        missing = tool.missing_params(request.args)
        if missing:
            self._set_status(
                call,
                ToolCallStatus.ERROR,
                error_response(
                    request,
                    f"Missing required parameter(s): {', '.join(missing)}",
                    "invalid_tool_params",
                ),
            )
            return

        call.risk = tool.classify_risk(request.args)
        if needs_approval(self.approval_mode, call.risk):
            call.confirmation_details = ConfirmationDetails(
                call_id=request.call_id,
                tool_name=request.name,
                args=request.args,
                risk=call.risk,
                title=f"Confirm {request.name}",
                prompt=json.dumps(request.args, indent=2, ensure_ascii=False),
                _resolve=self.resolve_approval,
            )
            self._set_status(call, ToolCallStatus.AWAITING_APPROVAL)
        else:
            self._set_status(call, ToolCallStatus.SCHEDULED)

    def _set_status(
        self, call: ToolCall, status: ToolCallStatus, response: ToolCallResponse | None = None
    ) -> None:
        if call.is_terminal:
            return
        call.status = status
        if response is not None:
            call.response = response
        if status != ToolCallStatus.AWAITING_APPROVAL:
            call.confirmation_details = None
        if status in TERMINAL_STATUSES:
            call.duration_ms = int((time.monotonic() - call.start_time) * 1000)
        self._notify()

    def _notify(self) -> None:
        if self.on_tool_calls_update is not None:
            self.on_tool_calls_update(list(self._calls))

    def _awaiting(self) -> list[ToolCall]:
        return [c for c in self._calls if c.status == ToolCallStatus.AWAITING_APPROVAL]

    def _raise_approval_mode(self, target: ApprovalMode) -> None:
        if _MODE_ORDER.index(target) > _MODE_ORDER.index(self.approval_mode):
            logger.info("Approval mode raised from %s to %s", self.approval_mode, target)
            self.approval_mode = target

    def _attempt_execution(self) -> None:
        blocking = {ToolCallStatus.VALIDATING, ToolCallStatus.AWAITING_APPROVAL}
        if any(c.status in blocking for c in self._calls):
            return
        for call in self._calls:
            if call.status != ToolCallStatus.SCHEDULED:
                continue
            self._set_status(call, ToolCallStatus.EXECUTING)
            self._tasks[call.request.call_id] = asyncio.create_task(
                self._execute(call), name=f"tool-{call.request.name}-{call.request.call_id}"
            )

    async def _execute(self, call: ToolCall) -> None:
        assert call.tool is not None
        request = call.request
        try:
            result = await call.tool.execute(request.args, self._signal)
        except asyncio.CancelledError:
            self._set_status(
                call, ToolCallStatus.CANCELLED, error_response(request, "Tool call cancelled.", "cancelled")
            )
        except Exception as e:
            logger.exception("Tool %s failed", request.name)
            self._set_status(
                call, ToolCallStatus.ERROR, error_response(request, f"Tool error: {e}", "unhandled_exception")
            )
        else:
            if self._signal is not None and self._signal.aborted:
                self._set_status(
                    call, ToolCallStatus.CANCELLED, error_response(request, "Tool call cancelled.", "cancelled")
                )
            elif result.success:
                self._set_status(
                    call,
                    ToolCallStatus.SUCCESS,
                    ToolCallResponse(
                        call_id=request.call_id,
                        response_parts=[convert_to_function_response(request, result)],
                        result_display=result.output,
                    ),
                )
            else:
                self._set_status(
                    call,
                    ToolCallStatus.ERROR,
                    error_response(request, result.error or "Tool failed", result.error_type or "execution_failed"),
                )
        finally:
            self._tasks.pop(request.call_id, None)

        try:
            await self._check_and_notify_completion()
        except Exception as e:
            self._fail_batch(e)

    async def _prompt_for_approvals(self) -> None:
        """Ask the host about awaiting calls one at a time.

        A proceed_always answer can release the rest of the queue, in
        which case those calls are never prompted.
        """
        assert self.approval_handler is not None
        try:
            while True:
                awaiting = self._awaiting()
                if not awaiting:
                    return
                call = awaiting[0]
                details = call.confirmation_details
                assert details is not None
                outcome = await self.approval_handler(details)
                if not await self.resolve_approval(call.request.call_id, outcome):
                    # Resolved elsewhere while the host was prompting
                    continue
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Approval handler failed")
            self._fail_batch(e)

    def _on_abort(self) -> None:
        for call in self._calls:
            if call.is_terminal:
                continue
            task = self._tasks.get(call.request.call_id)
            if call.status == ToolCallStatus.EXECUTING and task is not None:
                task.cancel()
            elif call.status != ToolCallStatus.EXECUTING:
                self._set_status(
                    call,
                    ToolCallStatus.CANCELLED,
                    error_response(call.request, "Tool call cancelled.", "cancelled"),
                )
        if self._approval_task is not None and not self._approval_task.done():
            self._approval_task.cancel()
        self._abort_task = asyncio.get_running_loop().create_task(
            self._finish_after_abort(), name="tool-batch-abort"
        )

    async def _finish_after_abort(self) -> None:
        try:
            await self._check_and_notify_completion()
        except Exception as e:
            self._fail_batch(e)

    async def _check_and_notify_completion(self) -> None:
        if self._completing or not self._calls:
            return
        if not all(c.is_terminal for c in self._calls):
            return
        self._completing = True

        completed = list(self._calls)
        batch_done = self._batch_done
        self._calls = []
        self._signal = None
        if self._remove_abort_callback is not None:
            self._remove_abort_callback()
            self._remove_abort_callback = None
        if self._approval_task is not None and not self._approval_task.done():
            if self._approval_task is not asyncio.current_task():
                self._approval_task.cancel()
        self._approval_task = None

        for call in completed:
            self._telemetry.record(
                TelemetryEvent(
                    type=TOOL_CALL,
                    session_id=self._state.session_id,
                    data={
                        "name": call.request.name,
                        "call_id": call.request.call_id,
                        "status": str(call.status),
                        "duration_ms": call.duration_ms,
                        "outcome": str(call.outcome) if call.outcome else None,
                        "error_type": call.response.error_type if call.response else None,
                    },
                )
            )

        try:
            if self.on_all_tool_calls_complete is not None:
                await self.on_all_tool_calls_complete(completed)
        except Exception as e:
            if batch_done is not None and not batch_done.done():
                batch_done.set_exception(e)
            raise
        if batch_done is not None and not batch_done.done():
            batch_done.set_result(completed)

    def _fail_batch(self, error: Exception) -> None:
        logger.error("Tool-call batch failed: %s", error)
        if self._batch_done is not None and not self._batch_done.done():
            self._batch_done.set_exception(error)
