"""Editor context: what the user has open, and how it is shown to the model.

The first send of a chat (and the first after a reset or compression)
carries a full JSON snapshot; later sends carry only what changed.
"""

from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel


class Cursor(BaseModel):
    line: int
    character: int


class OpenFile(BaseModel):
    path: str
    is_active: bool = False
    cursor: Cursor | None = None
    selected_text: str | None = None


class IdeContext(BaseModel):
    open_files: list[OpenFile] = []

    @property
    def active_file(self) -> OpenFile | None:
        return next((f for f in self.open_files if f.is_active), None)


class IdeContextStore:
    """Latest editor context pushed by the host for one session."""

    def __init__(self) -> None:
        self._context: IdeContext | None = None

    def get(self) -> IdeContext | None:
        return self._context

    def set(self, context: IdeContext) -> None:
        self._context = context

    def clear(self) -> None:
        self._context = None


def _cursor_dict(cursor: Cursor | None) -> dict[str, int] | None:
    return cursor.model_dump() if cursor else None


def _json_block(intro: str, data: dict[str, Any]) -> str:
    return "\n".join([intro, "```json", json.dumps(data, indent=2), "```"])


def render_full_context(context: IdeContext) -> str | None:
    """Full snapshot, or None when there is nothing to report."""
    data: dict[str, Any] = {}
    active = context.active_file
    if active is not None:
        active_data: dict[str, Any] = {"path": active.path}
        if active.cursor:
            active_data["cursor"] = _cursor_dict(active.cursor)
        if active.selected_text:
            active_data["selectedText"] = active.selected_text
        data["activeFile"] = active_data
    others = [f.path for f in context.open_files if not f.is_active]
    if others:
        data["otherOpenFiles"] = others
    if not data:
        return None
    return _json_block(
        "Here is the user's editor context as a JSON object. This is for your information only.",
        data,
    )


def render_context_delta(previous: IdeContext, current: IdeContext) -> str | None:
    """Changes since the previously sent context, or None if nothing changed."""
    changes: dict[str, Any] = {}
    previous_paths = [f.path for f in previous.open_files]
    current_paths = [f.path for f in current.open_files]

    opened = [p for p in current_paths if p not in previous_paths]
    if opened:
        changes["filesOpened"] = opened
    closed = [p for p in previous_paths if p not in current_paths]
    if closed:
        changes["filesClosed"] = closed

    last_active = previous.active_file
    active = current.active_file
    if active is not None:
        if last_active is None or last_active.path != active.path:
            entry: dict[str, Any] = {"path": active.path}
            if active.cursor:
                entry["cursor"] = _cursor_dict(active.cursor)
            if active.selected_text:
                entry["selectedText"] = active.selected_text
            changes["activeFileChanged"] = entry
        else:
            if active.cursor and active.cursor != last_active.cursor:
                changes["cursorMoved"] = {"path": active.path, "cursor": _cursor_dict(active.cursor)}
            if (last_active.selected_text or "") != (active.selected_text or ""):
                changes["selectionChanged"] = {
                    "path": active.path,
                    "selectedText": active.selected_text or "",
                }
    elif last_active is not None:
        changes["activeFileChanged"] = {"path": None, "previousPath": last_active.path}

    if not changes:
        return None
    return _json_block(
        "Here is a summary of changes in the user's editor context, in JSON format. "
        "This is for your information only.",
        {"changes": changes},
    )
