"""
Path Stack
==========

Tracks the field path of the scanner's current position inside a partially
received JSON document. Object frames contribute their bound key, array frames
contribute the index of the element being read, so the third file's name in
``{"files": [...]}`` lives at ``files.2.filename``.
"""

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Union


PathSegment = Union[str, int]


class ContainerKind(str, Enum):
    """Kind of an open container frame"""
    OBJECT = "object"
    ARRAY = "array"


@dataclass
class Frame:
    """One open container on the stack."""
    kind: ContainerKind
    offset: int
    key: Optional[str] = None
    index: int = 0

    def segment(self) -> Optional[PathSegment]:
        if self.kind == ContainerKind.ARRAY:
            return self.index
        return self.key


def join_path(segments: List[PathSegment]) -> str:
    """Render path segments in dotted form."""
    return ".".join(str(segment) for segment in segments)


class PathStack:
    """
    Stack of open containers with the key or index each one is positioned at.

    The stack knows nothing about characters; the parser drives it on
    structural punctuation.
    """

    def __init__(self):
        self._frames: List[Frame] = []

    @property
    def depth(self) -> int:
        return len(self._frames)

    @property
    def top(self) -> Optional[Frame]:
        return self._frames[-1] if self._frames else None

    def enter(self, kind: ContainerKind, offset: int) -> Frame:
        """
        Open a container.

        Args:
            kind: Object or array
            offset: Buffer offset of the opening brace/bracket

        Returns:
            The new frame
        """
        frame = Frame(kind=ContainerKind(kind), offset=offset)
        self._frames.append(frame)
        return frame

    def exit(self) -> Frame:
        """
        Close the innermost container.

        Raises:
            IndexError: If no container is open
        """
        if not self._frames:
            raise IndexError("exit() on an empty path stack")
        return self._frames.pop()

    def bind_key(self, key: str) -> None:
        """Position the innermost object at ``key``."""
        frame = self._require(ContainerKind.OBJECT)
        frame.key = key

    def release_key(self) -> Optional[str]:
        """Clear the innermost object's key after its member ends."""
        frame = self._require(ContainerKind.OBJECT)
        key, frame.key = frame.key, None
        return key

    def next_index(self) -> int:
        """Advance the innermost array to its next element."""
        frame = self._require(ContainerKind.ARRAY)
        frame.index += 1
        return frame.index

    def segments(self) -> List[PathSegment]:
        """Current path, outermost first. Unbound object frames are skipped."""
        return [s for s in (frame.segment() for frame in self._frames) if s is not None]

    def dotted(self) -> str:
        return join_path(self.segments())

    def clear(self) -> None:
        self._frames.clear()

    def _require(self, kind: ContainerKind) -> Frame:
        frame = self.top
        if frame is None or frame.kind != kind:
            raise ValueError(f"innermost container is not an {kind.value}")
        return frame
