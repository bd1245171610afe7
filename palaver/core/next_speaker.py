"""Next-speaker check: should the model keep talking without user input?"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Literal

from palaver.core.abort import AbortSignal
from palaver.core.errors import AbortError
from palaver.core.models import Message, Role, user_message

logger = logging.getLogger(__name__)

CHECK_PROMPT = """\
Analyze *only* the content and structure of your immediately preceding response \
(your last turn in the conversation history). Based *strictly* on that response, \
determine who should logically speak next: the 'user' or the 'model' (you).

**Decision Rules (apply in order):**
1. **Model Continues:** If your last response explicitly states an immediate next \
action *you* intend to take (e.g., "Next, I will...", "Now I'll process..."), or \
if the response seems clearly incomplete (cut off mid-thought), then the \
**'model'** should speak next.
2. **Question to User:** If your last response ends with a direct question \
addressed *to the user*, then the **'user'** should speak next.
3. **Waiting for User:** If your last response completed a thought, statement, \
or task and does not meet rule 1 or 2, the **'user'** should speak next.

**Output Format:**
Respond *only* in JSON format according to the schema."""

RESPONSE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "reasoning": {
            "type": "string",
            "description": "Brief explanation justifying the 'next_speaker' choice based strictly on the applicable rule.",
        },
        "next_speaker": {
            "type": "string",
            "enum": ["user", "model"],
            "description": "Who should speak next based on the last turn.",
        },
    },
    "required": ["reasoning", "next_speaker"],
}

JsonGenerator = Callable[[list[Message], dict[str, Any], AbortSignal | None], Awaitable[dict[str, Any]]]


@dataclass
class NextSpeakerResponse:
    reasoning: str
    next_speaker: Literal["user", "model"]


async def check_next_speaker(
    comprehensive_history: list[Message],
    curated_history: list[Message],
    generate_json: JsonGenerator,
    signal: AbortSignal | None = None,
) -> NextSpeakerResponse | None:
    """Decide who speaks next, or None when no decision can be made.

    Cheap structural cases are answered without a model call.
    """
    if not curated_history or not comprehensive_history:
        return None

    last = comprehensive_history[-1]
    if last.role == Role.MODEL and last.has_function_call:
        # Pending tool calls; the caller drives the continuation
        return None
    if last.role == Role.USER and last.has_function_response:
        return NextSpeakerResponse(
            reasoning="The last message was a function response, so the model should speak next.",
            next_speaker="model",
        )
    if last.role == Role.MODEL and not last.text.strip() and not last.has_function_call:
        return NextSpeakerResponse(
            reasoning="The last message was a model message with no content, so the model should speak next.",
            next_speaker="model",
        )

    if curated_history[-1].role != Role.MODEL:
        return None

    contents = [*curated_history, user_message(CHECK_PROMPT)]
    try:
        parsed = await generate_json(contents, RESPONSE_SCHEMA, signal)
    except AbortError:
        raise
    except Exception as e:
        logger.warning("Next speaker check failed: %s", e)
        return None

    speaker = parsed.get("next_speaker") if isinstance(parsed, dict) else None
    if speaker not in ("user", "model"):
        return None
    return NextSpeakerResponse(reasoning=str(parsed.get("reasoning", "")), next_speaker=speaker)
