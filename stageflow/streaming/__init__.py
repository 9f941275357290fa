"""
Streaming Layer
===============

Incremental decoding of structured model output.

Components:
- path_stack: Path tracking for the scanner
- parser: Chunk-fed JSON parser emitting field-level events
- router: Path-addressed event dispatch
- assembler: PartialResponse accumulator
- files: File extraction for the coding stage
- framing: SSE framing for snapshots
"""

from stageflow.streaming.parser import EventType, IncrementalParser, StreamEvent
from stageflow.streaming.path_stack import PathStack
from stageflow.streaming.router import WILDCARD, EventRouter
from stageflow.streaming.assembler import ResponseAssembler
from stageflow.streaming.files import FileExtractor, FileUpdate
from stageflow.streaming.framing import frame_snapshot, frame_stream, frame_terminal

__all__ = [
    "EventType",
    "IncrementalParser",
    "StreamEvent",
    "PathStack",
    "WILDCARD",
    "EventRouter",
    "ResponseAssembler",
    "FileExtractor",
    "FileUpdate",
    "frame_snapshot",
    "frame_stream",
    "frame_terminal",
]
