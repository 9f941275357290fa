"""
Partial Response Assembler
==========================

Builds the in-flight PartialResponse from routed parser events.

Each handler performs one field assignment and then publishes one snapshot, so
a consumer never sees a half-applied update. Snapshots are deep copies; the
assembler keeps sole ownership of the working record.
"""

from typing import Any, Callable, Dict, List, Optional

from stageflow.agent.models import ImmediateDisplay, PartialResponse, SystemState, utc_now
from stageflow.streaming.parser import EventType, IncrementalParser, StreamEvent
from stageflow.streaming.router import WILDCARD, EventRouter
from stageflow.utils.logging import get_logger

logger = get_logger(__name__)

REPLY_PATH = "immediate_display.reply"
THINKING_PATH = "immediate_display.thinking"
DISPLAY_PATH = "immediate_display"
INTERACTION_PATH = "interaction"
SYSTEM_STATE_PATH = "system_state"

UpdateCallback = Callable[[PartialResponse], None]


class ResponseAssembler:
    """
    Stateful accumulator for one turn's structured response.

    Args:
        agent_name: Stamped into immediate_display when the model omits it
    """

    def __init__(self, agent_name: Optional[str] = None):
        self.agent_name = agent_name
        self.anomalies: List[Dict[str, Any]] = []
        self.completed = False

        self._parser = IncrementalParser()
        self._router = EventRouter()
        self._response = PartialResponse()
        self._callback: Optional[UpdateCallback] = None
        self._published: List[PartialResponse] = []

        self._router.register(REPLY_PATH, self._on_reply)
        self._router.register(THINKING_PATH, self._on_thinking)
        self._router.register(DISPLAY_PATH, self._on_display)
        self._router.register(INTERACTION_PATH, self._on_interaction)
        self._router.register(SYSTEM_STATE_PATH, self._on_system_state)
        self._router.register(WILDCARD, self._on_any)

    def on_update(self, callback: Optional[UpdateCallback]) -> None:
        """Set the single notification callback (None to clear)."""
        self._callback = callback

    def feed(self, chunk: str) -> List[PartialResponse]:
        """
        Feed one chunk of model output.

        Returns:
            Snapshots published while handling this chunk, oldest first
        """
        self._published = []
        self._router.route(self._parser.feed(chunk))
        return self._published

    def finish(self) -> List[PartialResponse]:
        """Flush the parser at end of stream."""
        self._published = []
        self._router.route(self._parser.finish())
        return self._published

    def snapshot(self) -> PartialResponse:
        return self._response.copy()

    # ------------------------------------------------------------------
    # Field handlers
    # ------------------------------------------------------------------

    def _display(self) -> ImmediateDisplay:
        if self._response.immediate_display is None:
            self._response.immediate_display = ImmediateDisplay()
            self._stamp()
        return self._response.immediate_display

    def _on_reply(self, event: StreamEvent) -> None:
        if event.type != EventType.DATA or not isinstance(event.value, str):
            return
        self._display().reply = event.value
        self._publish()

    def _on_thinking(self, event: StreamEvent) -> None:
        if event.type != EventType.DATA or not isinstance(event.value, str):
            return
        self._display().thinking = event.value
        self._publish()

    def _on_display(self, event: StreamEvent) -> None:
        if event.type != EventType.DATA or not isinstance(event.value, dict):
            return
        before = self._response.immediate_display
        merged = ImmediateDisplay.from_dict(event.value)
        if before is not None:
            merged.agent_name = merged.agent_name or before.agent_name
            merged.timestamp = merged.timestamp or before.timestamp
        self._response.immediate_display = merged
        self._stamp()
        if before is None or before.to_dict() != merged.to_dict():
            self._publish()

    def _on_interaction(self, event: StreamEvent) -> None:
        if event.type != EventType.DATA or not isinstance(event.value, dict):
            return
        self._response.interaction = event.value
        self._publish()

    def _on_system_state(self, event: StreamEvent) -> None:
        if event.type != EventType.DATA or not isinstance(event.value, dict):
            return
        self._response.system_state = SystemState.from_dict(event.value)
        self._publish()

    def _on_any(self, event: StreamEvent) -> None:
        if event.type == EventType.ERROR:
            self.anomalies.append(event.value)
            return
        if event.type != EventType.COMPLETE:
            return
        if not isinstance(event.value, dict):
            self.anomalies.append({
                "error_code": "PARSE_ANOMALY",
                "message": f"top-level {type(event.value).__name__} is not a response object",
            })
            logger.warning("assembler.unexpected_document", extra={"kind": type(event.value).__name__})
            return
        before = self._response.immediate_display
        self._response = PartialResponse.from_dict(event.value)
        display = self._response.immediate_display
        if display is not None and before is not None:
            display.agent_name = display.agent_name or before.agent_name
            display.timestamp = display.timestamp or before.timestamp
        self._stamp()
        self.completed = True
        self._publish()

    def _stamp(self) -> None:
        display = self._response.immediate_display
        if display is None:
            return
        if display.agent_name is None:
            display.agent_name = self.agent_name
        if display.timestamp is None:
            display.timestamp = utc_now().isoformat()

    def _publish(self) -> None:
        snapshot = self._response.copy()
        self._published.append(snapshot)
        if self._callback is not None:
            self._callback(snapshot)
