"""
Event Framing
=============

Serializes snapshots into Server-Sent Events frames.

Each snapshot becomes one ``data: <json>\\n\\n`` frame, optionally wrapped in
``{"type": "agent_response", "data": ...}`` so other event kinds can share the
channel. A sentinel frame marks the end of a turn.
"""

import json
from typing import Any, AsyncIterator, Dict

from stageflow.agent.models import PartialResponse

AGENT_RESPONSE = "agent_response"
DONE_SENTINEL = "[DONE]"

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def frame_payload(payload: Dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


def frame_snapshot(snapshot: PartialResponse, tag_events: bool = True) -> str:
    """
    Frame one snapshot.

    Args:
        snapshot: Snapshot to send
        tag_events: Wrap the payload with the agent_response discriminator
    """
    body = snapshot.to_dict()
    if tag_events:
        body = {"type": AGENT_RESPONSE, "data": body}
    return frame_payload(body)


def frame_terminal(sentinel: str = DONE_SENTINEL) -> str:
    return f"data: {sentinel}\n\n"


async def frame_stream(
    snapshots: AsyncIterator[PartialResponse],
    tag_events: bool = True,
    sentinel: str = DONE_SENTINEL
) -> AsyncIterator[str]:
    """
    Frame a turn's snapshots and close with the terminal sentinel.

    Closing this generator closes ``snapshots`` too, so a consumer disconnect
    reaches the orchestrator as a cancellation.
    """
    try:
        async for snapshot in snapshots:
            yield frame_snapshot(snapshot, tag_events)
        yield frame_terminal(sentinel)
    finally:
        aclose = getattr(snapshots, "aclose", None)
        if aclose is not None:
            await aclose()
