"""
Caller-facing stream frames.

Every frame is a JSON-serializable dict tagged by ``type``. Frames are
emitted in order; a tool call's frame always precedes its result frame.
The stream ends with the END_SENTINEL marker.
"""

import json
from typing import Any, AsyncIterator, Dict, List, Optional

from codeagent.core.messages import ToolCall, ToolResult

END_SENTINEL = "[DONE]"

Frame = Dict[str, Any]

# complete.status values
COMPLETED = "completed"
ABORTED = "aborted"
MAX_TURNS_EXCEEDED = "max_turns_exceeded"
REJECTED = "rejected"
BUDGET_EXCEEDED = "budget_exceeded"
LOOP_DETECTED = "loop_detected"


def text_frame(text: str) -> Frame:
    return {"type": "text", "text": text}


def function_call_frame(call: ToolCall) -> Frame:
    return {"type": "functionCall", "id": call.id, "name": call.name, "args": call.input}


def tool_input_frame(call_id: str, partial: str) -> Frame:
    return {"type": "tool_input", "id": call_id, "partial": partial}


def tool_result_frame(result: ToolResult) -> Frame:
    return {"type": "toolResult", **result.to_dict()}


def tool_results_batch_frame(results: List[ToolResult]) -> Frame:
    return {"type": "toolResultsBatch", "results": [r.to_dict() for r in results]}


def retrying_frame(attempt: int, max_retries: int, delay: float, reason: str) -> Frame:
    return {
        "type": "retrying",
        "attempt": attempt,
        "maxRetries": max_retries,
        "delay": delay,
        "reason": reason,
    }


def error_frame(message: str, kind: Optional[str] = None) -> Frame:
    frame: Frame = {"type": "error", "message": message}
    if kind:
        frame["kind"] = kind
    return frame


def complete_frame(
    status: str,
    text: str,
    turns: int,
    usage: Optional[Dict[str, Any]] = None,
    files_created: Optional[List[str]] = None,
    files_modified: Optional[List[str]] = None,
) -> Frame:
    return {
        "type": "complete",
        "status": status,
        "text": text,
        "turns": turns,
        "usage": usage or {},
        "filesCreated": files_created or [],
        "filesModified": files_modified or [],
    }


def format_sse(frame: Any) -> str:
    """Render one frame (or the END_SENTINEL) as a server-sent event."""
    if frame == END_SENTINEL:
        return f"data: {END_SENTINEL}\n\n"
    return f"data: {json.dumps(frame, ensure_ascii=False)}\n\n"


async def encode_stream(frames: AsyncIterator[Frame]) -> AsyncIterator[str]:
    """SSE-encode a frame stream and terminate it with the sentinel."""
    async for frame in frames:
        yield format_sse(frame)
    yield format_sse(END_SENTINEL)
