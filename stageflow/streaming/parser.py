"""
Incremental Structure Parser
============================

Decodes a JSON document that arrives in arbitrary text chunks and reports
field-level events as soon as each fragment becomes decodable.

The scanner is an explicit state machine: a character class lookup feeds a
``(state, char_class) -> handler`` transition table, and a PathStack records
where in the document the scanner currently is. State survives between
chunks, so the events produced do not depend on where the chunk boundaries
fall.

Per chunk the parser emits:
- ``data`` for every closed string value, closed literal and closed nested
  container (containers are decoded whole from their raw slice)
- ``data`` with the decoded-so-far prefix when the chunk ends inside a string
  value
- ``complete`` with the decoded document once the root container closes
- ``error`` for malformed fragments; ``feed`` itself never raises
"""

import json
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from stageflow.streaming.path_stack import ContainerKind, PathSegment, PathStack, join_path
from stageflow.utils.errors import ParseAnomaly
from stageflow.utils.logging import get_logger

logger = get_logger(__name__)


# ============================================================================
# Events
# ============================================================================

class EventType(str, Enum):
    """Kinds of parser events"""
    DATA = "data"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass
class StreamEvent:
    """A structural discovery in the stream."""
    type: EventType
    path: List[PathSegment] = field(default_factory=list)
    value: Any = None
    partial: bool = False

    @property
    def dotted_path(self) -> str:
        return join_path(self.path)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "path": self.dotted_path,
            "value": self.value,
            "partial": self.partial,
        }


# ============================================================================
# Scanner states and character classes
# ============================================================================

class ParserState(str, Enum):
    TOP_LEVEL = "top_level"
    IN_OBJECT = "in_object"
    IN_ARRAY = "in_array"
    IN_STRING = "in_string"
    IN_ESCAPE = "in_escape"
    IN_LITERAL = "in_literal"


class CharClass(str, Enum):
    QUOTE = "quote"
    BACKSLASH = "backslash"
    OPEN_OBJECT = "open_object"
    CLOSE_OBJECT = "close_object"
    OPEN_ARRAY = "open_array"
    CLOSE_ARRAY = "close_array"
    COLON = "colon"
    COMMA = "comma"
    WHITESPACE = "whitespace"
    LITERAL = "literal"
    OTHER = "other"


_PUNCTUATION = {
    '"': CharClass.QUOTE,
    '\\': CharClass.BACKSLASH,
    '{': CharClass.OPEN_OBJECT,
    '}': CharClass.CLOSE_OBJECT,
    '[': CharClass.OPEN_ARRAY,
    ']': CharClass.CLOSE_ARRAY,
    ':': CharClass.COLON,
    ',': CharClass.COMMA,
}


def classify(ch: str) -> CharClass:
    """Map a character to its class."""
    char_class = _PUNCTUATION.get(ch)
    if char_class is not None:
        return char_class
    if ch.isspace():
        return CharClass.WHITESPACE
    if ch.isalnum() or ch in "-+.":
        return CharClass.LITERAL
    return CharClass.OTHER


# Handler names by state; a missing class falls back to the state's default.
_CONTAINER_TRANSITIONS = {
    CharClass.QUOTE: "_open_string",
    CharClass.OPEN_OBJECT: "_open_object",
    CharClass.OPEN_ARRAY: "_open_array",
    CharClass.CLOSE_OBJECT: "_close_container",
    CharClass.CLOSE_ARRAY: "_close_container",
    CharClass.COMMA: "_next_member",
    CharClass.WHITESPACE: "_skip",
    CharClass.LITERAL: "_open_literal",
}

TRANSITIONS: Dict[ParserState, Dict[CharClass, str]] = {
    ParserState.TOP_LEVEL: {
        CharClass.OPEN_OBJECT: "_open_object",
        CharClass.OPEN_ARRAY: "_open_array",
    },
    ParserState.IN_OBJECT: {**_CONTAINER_TRANSITIONS, CharClass.COLON: "_bind_key"},
    ParserState.IN_ARRAY: dict(_CONTAINER_TRANSITIONS),
    ParserState.IN_STRING: {
        CharClass.QUOTE: "_close_string",
        CharClass.BACKSLASH: "_begin_escape",
    },
    ParserState.IN_ESCAPE: {},
    ParserState.IN_LITERAL: {CharClass.LITERAL: "_skip"},
}

DEFAULT_TRANSITIONS: Dict[ParserState, str] = {
    # Prose and code fences around the document are ignored
    ParserState.TOP_LEVEL: "_skip",
    ParserState.IN_OBJECT: "_unexpected",
    ParserState.IN_ARRAY: "_unexpected",
    ParserState.IN_STRING: "_skip",
    ParserState.IN_ESCAPE: "_end_escape",
    ParserState.IN_LITERAL: "_close_literal",
}

# Next character that can end a run of plain string content
_STRING_STOP = re.compile(r'["\\]')
# Trailing \u escape still missing some of its hex digits
_PARTIAL_UNICODE = re.compile(r'(\\+)u[0-9a-fA-F]{0,3}$')


# ============================================================================
# Whole-document decoding
# ============================================================================

def decode_document(text: str) -> Tuple[bool, Any]:
    """
    Decode a complete document, tolerating a ```json fence and leading prose.

    Args:
        text: Accumulated model output

    Returns:
        (True, value) when an object or array decodes, else (False, None)
    """
    # Anything before the first opener (prose, an opening fence) and anything
    # after the document (a closing fence) is ignored by raw_decode.
    decoder = json.JSONDecoder(strict=False)
    for start in sorted(i for i in (text.find("{"), text.find("[")) if i >= 0):
        try:
            value, _ = decoder.raw_decode(text, start)
        except ValueError:
            continue
        if isinstance(value, (dict, list)):
            return True, value
    return False, None


def _decode_fragment(raw: str) -> Any:
    return json.loads(raw, strict=False)


# ============================================================================
# Parser
# ============================================================================

class IncrementalParser:
    """
    Chunk-fed JSON parser that reports fields before the document is complete.

    Usage:
        parser = IncrementalParser()
        for chunk in chunks:
            for event in parser.feed(chunk):
                ...
        trailing = parser.finish()
    """

    def __init__(self):
        self._stack = PathStack()
        self._events: List[StreamEvent] = []
        self._reset()

    # ------------------------------------------------------------------
    # Public interface
    # ------------------------------------------------------------------

    @property
    def state(self) -> ParserState:
        return self._state

    @property
    def path(self) -> List[PathSegment]:
        return self._stack.segments()

    def feed(self, chunk: str) -> List[StreamEvent]:
        """
        Consume one chunk.

        Args:
            chunk: Next slice of model output, split anywhere

        Returns:
            Events discovered in this chunk, in stream order
        """
        self._events = []
        if not chunk:
            return self._events

        self._buffer += chunk
        try:
            self._scan()
            self._emit_string_prefix()
            if self._root_closed:
                decoded, value = decode_document(self._buffer)
                if decoded:
                    self._events.append(StreamEvent(EventType.COMPLETE, [], value))
                    events = self._events
                    self._reset()
                    return events
        except Exception as e:
            # The scanner must keep the stream alive; resync at the buffer end
            self._anomaly(f"scanner failure: {e}", len(self._buffer))
            logger.exception("parser.scan_failed")
            self._cursor = len(self._buffer)
        return self._events

    def finish(self) -> List[StreamEvent]:
        """
        Flush at end of stream.

        Returns:
            A ``complete`` event if the remaining buffer decodes, an ``error``
            event describing the truncated document otherwise, or nothing when
            no document was opened since the last one completed.
        """
        self._events = []
        if self._stack.depth == 0 and not self._root_closed:
            # Prose or a closing fence after the document
            if self._buffer.strip():
                logger.debug("parser.trailing_text", extra={"length": len(self._buffer)})
            self._reset()
            return self._events

        decoded, value = decode_document(self._buffer)
        if decoded:
            self._events.append(StreamEvent(EventType.COMPLETE, [], value))
        else:
            self._anomaly(
                f"stream ended inside an unfinished document (depth {self._stack.depth})",
                len(self._buffer),
            )
        events = self._events
        self._reset()
        return events

    def reset(self) -> None:
        self._reset()

    # ------------------------------------------------------------------
    # Scanning
    # ------------------------------------------------------------------

    def _reset(self) -> None:
        self._buffer = ""
        self._cursor = 0
        self._state = ParserState.TOP_LEVEL
        self._stack.clear()
        self._token_start: Optional[int] = None
        self._string_is_key = False
        self._pending_key: Optional[str] = None
        self._last_prefix: Optional[str] = None
        self._root_closed = False

    def _scan(self) -> None:
        buffer = self._buffer
        end = len(buffer)
        while self._cursor < end:
            if self._state == ParserState.IN_STRING:
                # Skip plain string content in one step
                match = _STRING_STOP.search(buffer, self._cursor)
                if match is None:
                    self._cursor = end
                    break
                self._cursor = match.start()
            ch = buffer[self._cursor]
            self._handler(self._state, ch)(ch, self._cursor)
            self._cursor += 1

    def _handler(self, state: ParserState, ch: str) -> Callable[[str, int], None]:
        name = TRANSITIONS[state].get(classify(ch), DEFAULT_TRANSITIONS[state])
        return getattr(self, name)

    def _container_state(self) -> ParserState:
        top = self._stack.top
        if top is None:
            return ParserState.TOP_LEVEL
        if top.kind == ContainerKind.OBJECT:
            return ParserState.IN_OBJECT
        return ParserState.IN_ARRAY

    # ------------------------------------------------------------------
    # Transition handlers
    # ------------------------------------------------------------------

    def _skip(self, ch: str, offset: int) -> None:
        pass

    def _unexpected(self, ch: str, offset: int) -> None:
        self._anomaly(f"unexpected character {ch!r}", offset)

    def _open_object(self, ch: str, offset: int) -> None:
        self._enter(ContainerKind.OBJECT, offset)

    def _open_array(self, ch: str, offset: int) -> None:
        self._enter(ContainerKind.ARRAY, offset)

    def _enter(self, kind: ContainerKind, offset: int) -> None:
        if self._state == ParserState.IN_OBJECT and self._stack.top.key is None:
            self._anomaly("container in key position", offset)
        if self._state == ParserState.TOP_LEVEL:
            self._root_closed = False
        self._stack.enter(kind, offset)
        self._state = self._container_state()

    def _close_container(self, ch: str, offset: int) -> None:
        expected = ContainerKind.OBJECT if ch == "}" else ContainerKind.ARRAY
        top = self._stack.top
        if top.kind != expected:
            self._anomaly(f"mismatched closer {ch!r} for open {top.kind.value}", offset)
            return

        self._drop_orphan_key(offset)
        frame = self._stack.exit()
        self._state = self._container_state()
        if self._stack.depth == 0:
            self._root_closed = True
            return

        raw = self._buffer[frame.offset:offset + 1]
        try:
            value = _decode_fragment(raw)
        except ValueError as e:
            self._anomaly(f"undecodable container at {self._stack.dotted() or '<root>'}: {e}", offset)
            return
        self._emit(value)

    def _open_string(self, ch: str, offset: int) -> None:
        self._string_is_key = (
            self._state == ParserState.IN_OBJECT and self._stack.top.key is None
        )
        if self._string_is_key and self._pending_key is not None:
            self._anomaly(f"key '{self._pending_key}' not followed by a colon", offset)
            self._pending_key = None
        self._token_start = offset
        self._last_prefix = None
        self._state = ParserState.IN_STRING

    def _close_string(self, ch: str, offset: int) -> None:
        raw = self._buffer[self._token_start:offset + 1]
        self._token_start = None
        self._state = self._container_state()
        try:
            value = _decode_fragment(raw)
        except ValueError as e:
            self._anomaly(f"undecodable string: {e}", offset)
            return
        if self._string_is_key:
            self._pending_key = value
        else:
            self._emit(value)

    def _begin_escape(self, ch: str, offset: int) -> None:
        self._state = ParserState.IN_ESCAPE

    def _end_escape(self, ch: str, offset: int) -> None:
        self._state = ParserState.IN_STRING

    def _bind_key(self, ch: str, offset: int) -> None:
        if self._pending_key is None:
            self._anomaly("colon without a preceding key", offset)
            return
        self._stack.bind_key(self._pending_key)
        self._pending_key = None

    def _next_member(self, ch: str, offset: int) -> None:
        if self._state == ParserState.IN_OBJECT:
            self._drop_orphan_key(offset)
            self._stack.release_key()
        else:
            self._stack.next_index()

    def _open_literal(self, ch: str, offset: int) -> None:
        self._token_start = offset
        self._state = ParserState.IN_LITERAL

    def _close_literal(self, ch: str, offset: int) -> None:
        raw = self._buffer[self._token_start:offset]
        self._token_start = None
        self._state = self._container_state()
        if self._state == ParserState.IN_OBJECT and self._stack.top.key is None:
            self._anomaly(f"literal {raw!r} without a key", offset)
        else:
            try:
                self._emit(_decode_fragment(raw))
            except ValueError:
                self._anomaly(f"invalid literal {raw!r}", offset)
        # The terminating character still belongs to the container
        self._handler(self._state, ch)(ch, offset)

    # ------------------------------------------------------------------
    # Emission
    # ------------------------------------------------------------------

    def _emit(self, value: Any) -> None:
        self._events.append(
            StreamEvent(EventType.DATA, self._stack.segments(), value, partial=True)
        )

    def _emit_string_prefix(self) -> None:
        if self._state not in (ParserState.IN_STRING, ParserState.IN_ESCAPE):
            return
        if self._string_is_key:
            return

        raw = self._buffer[self._token_start + 1:]
        if self._state == ParserState.IN_ESCAPE:
            raw = raw[:-1]
        raw = _hold_back_unicode(raw)
        try:
            prefix = _decode_fragment(f'"{raw}"')
        except ValueError:
            logger.debug("parser.prefix_undecodable", extra={"path": self._stack.dotted()})
            return
        if prefix and prefix != self._last_prefix:
            self._last_prefix = prefix
            self._emit(prefix)

    def _drop_orphan_key(self, offset: int) -> None:
        if self._pending_key is not None:
            self._anomaly(f"key '{self._pending_key}' has no value", offset)
            self._pending_key = None

    def _anomaly(self, message: str, offset: int) -> None:
        anomaly = ParseAnomaly(message, offset=offset)
        path = self._stack.segments()
        logger.warning(
            "parser.anomaly",
            extra={"detail": message, "offset": offset, "path": join_path(path)}
        )
        self._events.append(StreamEvent(EventType.ERROR, path, anomaly.to_dict()))


def _hold_back_unicode(raw: str) -> str:
    """Drop a trailing, still-incomplete ``\\uXXXX`` escape."""
    match = _PARTIAL_UNICODE.search(raw)
    if match and len(match.group(1)) % 2 == 1:
        return raw[:match.start()] + match.group(1)[:-1]
    return raw
