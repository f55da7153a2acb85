import json

import pytest

from shellmate import stream
from shellmate.stream import (
    FinishDelta,
    ResponseAccumulator,
    StreamDecoder,
    TextDelta,
    ToolCallAssembler,
    ToolCallFragment,
    ToolCallRequest,
    UsageDelta,
    decode_stream,
)


def sse(payload) -> str:
    """Formats one event-stream line."""
    if not isinstance(payload, str):
        payload = json.dumps(payload)
    return f"data: {payload}\n\n"


def delta_event(delta=None, finish_reason=None, **extra):
    choice = {"index": 0, "delta": delta or {}}
    if finish_reason:
        choice["finish_reason"] = finish_reason
    return {"choices": [choice], **extra}


def tool_event(index, id=None, name=None, arguments=None):
    function = {}
    if name is not None:
        function["name"] = name
    if arguments is not None:
        function["arguments"] = arguments
    call = {"index": index, "function": function}
    if id is not None:
        call["id"] = id
    return delta_event({"tool_calls": [call]})


def collect(chunks):
    accumulator = ResponseAccumulator()
    for delta in decode_stream(chunks):
        accumulator.add(delta)
    return accumulator.result()


SEARCH_STREAM = "".join([
    sse(tool_event(0, id="call_1", name="Search")),
    sse(tool_event(0, arguments='{"q":')),
    sse(tool_event(0, arguments='"cats"}')),
    sse(delta_event(finish_reason="tool_calls")),
    sse("[DONE]"),
])


def test_fragmented_tool_call_is_assembled():
    result = collect([SEARCH_STREAM])

    assert result.finish_reason == "tool_calls"
    assert result.text == ""
    assert result.tool_calls == [ToolCallRequest(id="call_1", name="Search", arguments={"q": "cats"})]


@pytest.mark.parametrize("size", [1, 2, 3, 7, 64])
def test_chunk_boundaries_do_not_change_the_result(size):
    body = SEARCH_STREAM.encode("utf-8")
    chunks = [body[i:i + size] for i in range(0, len(body), size)]

    assert collect(chunks) == collect([body])


def test_multibyte_characters_split_across_chunks():
    body = sse(delta_event({"content": "héllo ✓"})).encode("utf-8")
    split = body.index("✓".encode("utf-8")) + 1  # inside the 3-byte sequence

    result = collect([body[:split], body[split:]])

    assert result.text == "héllo ✓"


def test_text_fragments_and_finish_reason():
    body = sse(delta_event({"content": "Hel"})) + sse(delta_event({"content": "lo"})) + sse(delta_event(finish_reason="stop"))

    result = collect([body])

    assert result.text == "Hello"
    assert result.finish_reason == "stop"
    assert result.tool_calls == []


def test_malformed_and_foreign_lines_are_skipped():
    body = (
        ": keep-alive comment\n"
        "event: message\n"
        "data: {not json\n"
        + sse(delta_event({"content": "ok"}))
        + "data: \n"
    )

    result = collect([body])

    assert result.text == "ok"


def test_done_marker_ends_the_stream():
    body = sse(delta_event({"content": "a"})) + sse("[DONE]") + sse(delta_event({"content": "b"}))

    deltas = list(decode_stream([body]))

    assert deltas == [TextDelta("a")]


def test_usage_is_reported():
    body = sse(delta_event({"content": "x"})) + sse({"choices": [], "usage": {"prompt_tokens": 12, "completion_tokens": 3}})

    deltas = list(decode_stream([body]))

    assert UsageDelta(prompt_tokens=12, completion_tokens=3) in deltas


def test_last_finish_reason_wins():
    accumulator = ResponseAccumulator()
    for delta in [FinishDelta("length"), TextDelta("x"), FinishDelta("stop")]:
        accumulator.add(delta)

    assert accumulator.result().finish_reason == "stop"


def test_crlf_line_endings():
    body = sse(delta_event({"content": "hi"})).replace("\n", "\r\n")

    assert collect([body]).text == "hi"


def test_plain_json_body_is_read_as_a_single_completion():
    body = json.dumps({
        "choices": [{
            "message": {
                "role": "assistant",
                "content": None,
                "tool_calls": [{"id": "c9", "type": "function", "function": {"name": "WebFetch", "arguments": '{"url": "https://example.com"}'}}],
            },
            "finish_reason": "tool_calls",
        }],
        "usage": {"prompt_tokens": 5, "completion_tokens": 1},
    }, indent=2)

    result = collect([body[:10], body[10:]])

    assert result.finish_reason == "tool_calls"
    assert result.tool_calls == [ToolCallRequest(id="c9", name="WebFetch", arguments={"url": "https://example.com"})]
    assert result.usage == UsageDelta(5, 1)


def test_garbage_body_yields_nothing():
    assert list(decode_stream([b"<html>Bad gateway</html>"])) == []


def test_decoder_ignores_feeds_after_done():
    decoder = StreamDecoder()
    decoder.feed(sse("[DONE]"))

    assert decoder.done
    assert decoder.feed(sse(delta_event({"content": "late"}))) == []
    assert decoder.close() == []


def test_unterminated_last_line_is_flushed_on_close():
    decoder = StreamDecoder()
    assert decoder.feed('data: {"choices":[{"delta":{"content":"tail"}}]}') == []

    assert decoder.close() == [TextDelta("tail")]

# --- Tool call assembly ---

def test_interleaved_indices_are_kept_apart_and_ordered():
    assembler = ToolCallAssembler()
    for fragment in [
        ToolCallFragment(index=1, id="b", name="WebFetch"),
        ToolCallFragment(index=0, id="a", name="Shell"),
        ToolCallFragment(index=1, arguments='{"url": "https://x.test"}'),
        ToolCallFragment(index=0, arguments='{"command": '),
        ToolCallFragment(index=0, arguments='"ls"}'),
    ]:
        assembler.add(fragment)

    calls = assembler.finalize()

    assert [call.name for call in calls] == ["Shell", "WebFetch"]
    assert calls[0].arguments == {"command": "ls"}
    assert calls[1].arguments == {"url": "https://x.test"}


def test_repeated_id_and_name_are_not_doubled():
    assembler = ToolCallAssembler()
    assembler.add(ToolCallFragment(index=0, id="call_7", name="Shell", arguments='{"command":'))
    assembler.add(ToolCallFragment(index=0, id="call_7", name="Shell", arguments='"pwd"}'))

    [call] = assembler.finalize()

    assert call.id == "call_7"
    assert call.name == "Shell"
    assert call.arguments == {"command": "pwd"}


def test_missing_id_is_generated():
    assembler = ToolCallAssembler()
    assembler.add(ToolCallFragment(index=2, name="Shell", arguments="{}"))

    [call] = assembler.finalize()

    assert call.id.startswith("call_2_")


def test_invalid_argument_json_keeps_the_raw_text():
    assembler = ToolCallAssembler()
    assembler.add(ToolCallFragment(index=0, id="x", name="Shell", arguments="ls -la"))

    [call] = assembler.finalize()

    assert call.arguments == {stream.RAW_ARGUMENTS_KEY: "ls -la"}
    assert call.to_wire()["function"]["arguments"] == "ls -la"


@pytest.mark.parametrize("text, expected", [
    (None, {}),
    ("", {}),
    ("   ", {}),
    ('{"a": 1}', {"a": 1}),
    ({"a": 1}, {"a": 1}),
    ("{broken", {"_raw": "{broken"}),
])
def test_parse_arguments(text, expected):
    assert stream.parse_arguments(text) == expected


def test_tool_call_wire_format():
    call = ToolCallRequest(id="call_1", name="Search", arguments={"q": "cats"})

    assert call.to_wire() == {
        "id": "call_1",
        "type": "function",
        "function": {"name": "Search", "arguments": '{"q": "cats"}'},
    }


@pytest.mark.parametrize("bad_payload", [
    {"choices": [{"delta": "oops"}]},
    {"choices": [{"delta": {"tool_calls": [None]}}]},
    {"choices": [{"delta": {"tool_calls": "Shell"}}]},
    {"choices": [{"delta": {"content": 42}}]},
    {"choices": [{"message": "oops"}]},
    {"choices": [{"message": {"tool_calls": [None, 7]}}]},
    {"choices": "none"},
    {"choices": [None]},
    {"usage": {"prompt_tokens": "many"}, "choices": []},
    ["not", "an", "object"],
])
def test_payloads_of_unexpected_shape_do_not_end_the_stream(bad_payload):
    body = sse(delta_event({"content": "Hel"})) + sse(bad_payload) + sse(delta_event({"content": "lo"}, finish_reason="stop"))

    result = collect([body])

    assert result.text == "Hello"
    assert result.finish_reason == "stop"
    assert result.tool_calls == []


def test_tool_call_with_non_dict_function_keeps_its_index():
    body = sse({"choices": [{"delta": {"tool_calls": [{"index": 1, "id": "c1", "function": None}]}}]})

    [fragment] = list(decode_stream([body]))

    assert fragment == ToolCallFragment(index=1, id="c1")


def test_plain_body_of_unexpected_shape_yields_nothing():
    assert list(decode_stream([json.dumps({"choices": [{"message": {"content": ["a", "b"]}}]})])) == []
