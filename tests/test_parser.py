"""
Tests for the incremental structure parser.

Covers field-level events on split input, chunk-boundary independence,
escapes, malformed fragments and end-of-stream handling.
"""

import json

import pytest

from stageflow.streaming.parser import (
    EventType,
    IncrementalParser,
    ParserState,
    classify,
    CharClass,
    decode_document,
)
from conftest import chunked, make_response


def feed_all(chunks):
    parser = IncrementalParser()
    events = []
    for chunk in chunks:
        events.extend(parser.feed(chunk))
    events.extend(parser.finish())
    return events


def data_events(events, path):
    return [e for e in events if e.type == EventType.DATA and e.dotted_path == path]


def final_values(events):
    """Last value seen for every path."""
    values = {}
    for event in events:
        if event.type == EventType.DATA:
            values[event.dotted_path] = event.value
    return values


def completes(events):
    return [e for e in events if e.type == EventType.COMPLETE]


class TestFieldEvents:
    """Fields are reported before the document completes"""

    def test_reply_split_across_three_chunks(self):
        events = feed_all(['{"immediate_display":{"re', 'ply":"Hel', 'lo"}}'])

        replies = data_events(events, "immediate_display.reply")
        assert replies
        assert replies[-1].value == "Hello"
        assert completes(events)[0].value == {"immediate_display": {"reply": "Hello"}}

    def test_string_prefix_emitted_mid_value(self):
        parser = IncrementalParser()
        events = parser.feed('{"immediate_display":{"reply":"Hel')

        replies = data_events(events, "immediate_display.reply")
        assert [e.value for e in replies] == ["Hel"]
        assert replies[0].partial is True
        assert parser.state == ParserState.IN_STRING
        assert parser.path == ["immediate_display", "reply"]

    def test_unchanged_prefix_is_not_repeated(self):
        parser = IncrementalParser()
        parser.feed('{"reply":"abc')
        # Only the start of an escape arrives; the decoded prefix is unchanged
        events = parser.feed('\\')
        assert data_events(events, "reply") == []

    def test_nested_container_decoded_whole(self):
        doc = make_response("Hi", intent="greeting", progress=10, interaction={"type": "buttons"})
        events = feed_all([doc])

        interaction = data_events(events, "interaction")
        assert interaction[-1].value == {"type": "buttons"}
        state = data_events(events, "system_state")[-1].value
        assert state["intent"] == "greeting"
        assert state["progress"] == 10

    def test_literals_and_array_indices(self):
        events = feed_all(['{"a": [1, true, null, -2.5], "b": false}'])

        assert data_events(events, "a.0")[0].value == 1
        assert data_events(events, "a.1")[0].value is True
        assert data_events(events, "a.2")[0].value is None
        assert data_events(events, "a.3")[0].value == -2.5
        assert data_events(events, "b")[0].value is False
        assert completes(events)[0].value == {"a": [1, True, None, -2.5], "b": False}

    def test_prose_and_fence_around_document(self):
        text = 'Sure, here it is:\n```json\n{"immediate_display": {"reply": "ok"}}\n```'
        events = feed_all(chunked(text, size=5))

        assert completes(events)[0].value == {"immediate_display": {"reply": "ok"}}
        assert not [e for e in events if e.type == EventType.ERROR]


class TestChunkBoundaries:
    """Assembled values do not depend on where chunks split"""

    DOCUMENT = make_response(
        'Line one\nSays "hi" \\ é \U0001F600 done',
        intent="design_ready",
        stage="design",
        progress=60,
        metadata={"tags": ["a", "b"], "ok": True},
    )

    def test_every_two_way_split(self):
        reference = feed_all([self.DOCUMENT])
        expected_values = final_values(reference)
        expected_doc = completes(reference)[0].value

        for split in range(1, len(self.DOCUMENT)):
            events = feed_all([self.DOCUMENT[:split], self.DOCUMENT[split:]])
            assert final_values(events) == expected_values, f"split at {split}"
            assert completes(events)[0].value == expected_doc, f"split at {split}"
            assert not [e for e in events if e.type == EventType.ERROR], f"split at {split}"

    @pytest.mark.parametrize("size", [1, 2, 3, 7, 64])
    def test_fixed_size_chunks(self, size):
        events = feed_all(chunked(self.DOCUMENT, size=size))

        assert completes(events)[0].value == json.loads(self.DOCUMENT)
        reply = data_events(events, "immediate_display.reply")[-1].value
        assert reply == json.loads(self.DOCUMENT)["immediate_display"]["reply"]

    def test_prefixes_never_contain_half_escapes(self):
        text = '{"reply": "a\\u00e9b\\nc"}'
        events = feed_all(chunked(text, size=1))

        for event in data_events(events, "reply"):
            assert "\\" not in event.value
            assert "aéb\nc".startswith(event.value)


class TestAnomalies:
    """Malformed fragments produce error events; feed never raises"""

    def test_mismatched_closer(self):
        parser = IncrementalParser()
        events = parser.feed('{"a": [1}')

        errors = [e for e in events if e.type == EventType.ERROR]
        assert errors
        assert errors[0].value["error_code"] == "PARSE_ANOMALY"
        assert "mismatched" in errors[0].value["message"]

    def test_colon_without_key(self):
        events = IncrementalParser().feed('{:1}')
        assert any(e.type == EventType.ERROR for e in events)

    def test_scanning_continues_after_anomaly(self):
        events = feed_all(['{"a": @, "b": "ok"}'])

        assert any(e.type == EventType.ERROR for e in events)
        assert data_events(events, "b")[-1].value == "ok"

    def test_truncated_document_reports_on_finish(self):
        parser = IncrementalParser()
        parser.feed('{"immediate_display": {"reply": "cut')

        trailing = parser.finish()

        assert len(trailing) == 1
        assert trailing[0].type == EventType.ERROR
        assert "unfinished" in trailing[0].value["message"]

    def test_finish_on_empty_buffer(self):
        assert IncrementalParser().finish() == []

    def test_parser_resets_after_complete(self):
        parser = IncrementalParser()
        first = parser.feed('{"a": 1}')
        second = parser.feed('{"b": 2}')

        assert completes(first)[0].value == {"a": 1}
        assert completes(second)[0].value == {"b": 2}
        assert parser.state == ParserState.TOP_LEVEL


class TestDecodeDocument:

    @pytest.mark.parametrize("text,expected", [
        ('{"a": 1}', {"a": 1}),
        ('noise [1, 2] tail', [1, 2]),
        ('```json\n{"a": "x"}\n```', {"a": "x"}),
        ('{"a": "line\nbreak"}', {"a": "line\nbreak"}),
    ])
    def test_decodes(self, text, expected):
        assert decode_document(text) == (True, expected)

    @pytest.mark.parametrize("text", ['', 'plain prose', '{"a": ', '"just a string"'])
    def test_rejects(self, text):
        assert decode_document(text) == (False, None)


def test_character_classes():
    assert classify('"') == CharClass.QUOTE
    assert classify('{') == CharClass.OPEN_OBJECT
    assert classify(' ') == CharClass.WHITESPACE
    assert classify('7') == CharClass.LITERAL
    assert classify('@') == CharClass.OTHER
