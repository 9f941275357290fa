"""
Tests for the parser's path stack.
"""

import pytest

from stageflow.streaming.path_stack import ContainerKind, PathStack, join_path


class TestPathStack:
    """Push/pop and key/index bookkeeping, independent of any scanner"""

    def test_empty_stack(self):
        stack = PathStack()
        assert stack.depth == 0
        assert stack.top is None
        assert stack.segments() == []
        assert stack.dotted() == ""

    def test_object_keys_form_the_path(self):
        stack = PathStack()
        stack.enter(ContainerKind.OBJECT, 0)
        stack.bind_key("immediate_display")
        stack.enter(ContainerKind.OBJECT, 22)
        stack.bind_key("reply")

        assert stack.depth == 2
        assert stack.dotted() == "immediate_display.reply"

    def test_unbound_object_frames_are_skipped(self):
        stack = PathStack()
        stack.enter(ContainerKind.OBJECT, 0)
        assert stack.segments() == []

    def test_array_contributes_element_index(self):
        stack = PathStack()
        stack.enter(ContainerKind.OBJECT, 0)
        stack.bind_key("files")
        stack.enter(ContainerKind.ARRAY, 9)
        stack.enter(ContainerKind.OBJECT, 10)
        stack.bind_key("filename")
        assert stack.segments() == ["files", 0, "filename"]

        stack.release_key()
        stack.exit()
        assert stack.next_index() == 1
        stack.enter(ContainerKind.OBJECT, 40)
        stack.bind_key("content")

        assert stack.dotted() == "files.1.content"

    def test_release_key_returns_previous_key(self):
        stack = PathStack()
        stack.enter(ContainerKind.OBJECT, 0)
        stack.bind_key("reply")

        assert stack.release_key() == "reply"
        assert stack.top.key is None

    def test_exit_returns_frame_with_offset(self):
        stack = PathStack()
        stack.enter(ContainerKind.ARRAY, 5)
        frame = stack.exit()
        assert frame.kind == ContainerKind.ARRAY
        assert frame.offset == 5

    def test_exit_on_empty_stack(self):
        with pytest.raises(IndexError):
            PathStack().exit()

    def test_wrong_container_kind(self):
        stack = PathStack()
        stack.enter(ContainerKind.ARRAY, 0)
        with pytest.raises(ValueError):
            stack.bind_key("x")

        stack.exit()
        stack.enter(ContainerKind.OBJECT, 0)
        with pytest.raises(ValueError):
            stack.next_index()

    def test_clear(self):
        stack = PathStack()
        stack.enter(ContainerKind.OBJECT, 0)
        stack.enter(ContainerKind.ARRAY, 1)
        stack.clear()
        assert stack.depth == 0


def test_join_path():
    assert join_path(["files", 2, "filename"]) == "files.2.filename"
    assert join_path([]) == ""
