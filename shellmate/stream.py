import codecs
import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterable, Iterable, Iterator, Optional, Union

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_MARKER = "[DONE]"
RAW_ARGUMENTS_KEY = "_raw"

# --- Stream deltas ---

@dataclass(frozen=True)
class TextDelta:
    text: str

@dataclass(frozen=True)
class ToolCallFragment:
    index: int
    id: Optional[str] = None
    name: Optional[str] = None
    arguments: Optional[str] = None

@dataclass(frozen=True)
class ToolCallList:
    """A complete, non-streamed list of tool calls (``choices[0].message.tool_calls``)."""
    calls: tuple

@dataclass(frozen=True)
class UsageDelta:
    prompt_tokens: int
    completion_tokens: int

@dataclass(frozen=True)
class FinishDelta:
    reason: str

StreamDelta = Union[TextDelta, ToolCallFragment, ToolCallList, UsageDelta, FinishDelta]

@dataclass(frozen=True)
class ToolCallRequest:
    id: str
    name: str
    arguments: Any

    def to_wire(self) -> dict:
        """Returns the OpenAI-style representation used in request history."""
        if isinstance(self.arguments, dict) and set(self.arguments) == {RAW_ARGUMENTS_KEY}:
            arguments = self.arguments[RAW_ARGUMENTS_KEY]
        else:
            arguments = json.dumps(self.arguments)
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": arguments},
        }


def parse_arguments(text) -> Any:
    """Parses tool-call argument text, keeping the raw text when it is not valid JSON."""
    if isinstance(text, (dict, list)):
        return text
    if text is None or not str(text).strip():
        return {}
    try:
        return json.loads(text)
    except (json.JSONDecodeError, TypeError):
        logger.debug("Tool arguments are not valid JSON, keeping raw text: %r", text)
        return {RAW_ARGUMENTS_KEY: text}

# --- Decoder ---

class StreamDecoder:
    """
    Incremental decoder for a chat-completion event stream.

    Feed it raw chunks (bytes or str, split anywhere) and it returns the deltas
    found in every complete line. Lines that do not start with ``data:`` are
    ignored, malformed payloads are skipped, and ``data: [DONE]`` ends the
    stream. If the body never contained a single data line, ``close()`` tries to
    read it as one plain JSON completion instead.
    """

    def __init__(self):
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._plain_body = []
        self._seen_data = False
        self.done = False

    def feed(self, chunk) -> list:
        if self.done or not chunk:
            return []
        if isinstance(chunk, bytes):
            chunk = self._utf8.decode(chunk)
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split("\n")
        deltas = []
        for line in lines:
            deltas.extend(self._decode_line(line))
            if self.done:
                break
        return deltas

    def close(self) -> list:
        """Flushes the trailing partial line and ends the stream."""
        if self.done:
            return []
        tail = self._utf8.decode(b"", final=True)
        remainder = self._buffer + tail
        self._buffer = ""
        deltas = self._decode_line(remainder) if remainder else []
        self.done = True
        if not self._seen_data:
            deltas.extend(self._decode_plain_body("\n".join(self._plain_body)))
        return deltas

    def _decode_line(self, line: str) -> list:
        line = line.rstrip("\r")
        if not line.startswith(DATA_PREFIX):
            if not self._seen_data:
                self._plain_body.append(line)
            return []
        self._seen_data = True
        payload = line[len(DATA_PREFIX):].strip()
        if not payload:
            return []
        if payload == DONE_MARKER:
            self.done = True
            return []
        try:
            data = json.loads(payload)
        except json.JSONDecodeError:
            logger.debug("Skipping malformed stream payload: %r", payload[:200])
            return []
        return _safe_deltas(data)

    def _decode_plain_body(self, body: str) -> list:
        if not body.strip():
            return []
        try:
            data = json.loads(body)
        except json.JSONDecodeError:
            logger.debug("Response body is neither an event stream nor JSON")
            return []
        return _safe_deltas(data)


def _safe_deltas(data) -> list:
    """Deltas of one parsed payload; a payload of an unexpected shape yields none."""
    if not isinstance(data, dict):
        return []
    try:
        return list(_payload_deltas(data))
    except (AttributeError, TypeError, ValueError) as e:
        logger.debug("Skipping stream payload with unexpected structure: %s", e)
        return []


def _string(value) -> Optional[str]:
    return value if isinstance(value, str) else None


def _count(value) -> int:
    return value if isinstance(value, int) and not isinstance(value, bool) else 0


def _payload_deltas(data: dict) -> Iterator:
    usage = data.get("usage")
    if isinstance(usage, dict):
        yield UsageDelta(
            prompt_tokens=_count(usage.get("prompt_tokens")),
            completion_tokens=_count(usage.get("completion_tokens")),
        )

    choices = data.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return
    choice = choices[0]

    delta = choice.get("delta")
    if isinstance(delta, dict):
        if _string(delta.get("content")):
            yield TextDelta(delta["content"])
        tool_calls = delta.get("tool_calls")
        for position, tc in enumerate(tool_calls if isinstance(tool_calls, list) else []):
            if not isinstance(tc, dict):
                continue
            function = tc.get("function")
            if not isinstance(function, dict):
                function = {}
            index = tc.get("index")
            yield ToolCallFragment(
                index=index if isinstance(index, int) and not isinstance(index, bool) else position,
                id=_string(tc.get("id")),
                name=_string(function.get("name")),
                arguments=_string(function.get("arguments")),
            )

    # Non-streaming responses carry a whole message instead of a delta.
    message = choice.get("message")
    if isinstance(message, dict):
        if _string(message.get("content")):
            yield TextDelta(message["content"])
        tool_calls = message.get("tool_calls")
        if isinstance(tool_calls, list):
            calls = tuple(call for call in tool_calls if isinstance(call, dict))
            if calls:
                yield ToolCallList(calls)

    if _string(choice.get("finish_reason")):
        yield FinishDelta(choice["finish_reason"])


def decode_stream(chunks: Iterable) -> Iterator:
    """Lazily yields deltas from an iterable of raw body chunks."""
    decoder = StreamDecoder()
    for chunk in chunks:
        yield from decoder.feed(chunk)
        if decoder.done:
            return
    yield from decoder.close()


async def adecode_stream(chunks: AsyncIterable):
    """Async counterpart of ``decode_stream``."""
    decoder = StreamDecoder()
    async for chunk in chunks:
        for delta in decoder.feed(chunk):
            yield delta
        if decoder.done:
            return
    for delta in decoder.close():
        yield delta

# --- Tool call assembly ---

@dataclass
class PartialToolCall:
    index: int
    id: str = ""
    name: str = ""
    argument_parts: list = field(default_factory=list)

    def add(self, fragment: ToolCallFragment):
        # Some providers repeat the id and name on every fragment instead of splitting them.
        if fragment.id and fragment.id != self.id:
            self.id += fragment.id
        if fragment.name and fragment.name != self.name:
            self.name += fragment.name
        if fragment.arguments:
            self.argument_parts.append(fragment.arguments)

    def finalize(self) -> ToolCallRequest:
        return ToolCallRequest(
            id=self.id or f"call_{self.index}_{uuid.uuid4().hex[:8]}",
            name=self.name,
            arguments=parse_arguments("".join(self.argument_parts)),
        )


class ToolCallAssembler:
    """Folds tool-call fragments, keyed by index, into finished ToolCallRequests."""

    def __init__(self):
        self._partials = {}
        self._complete = []

    def add(self, delta):
        if isinstance(delta, ToolCallFragment):
            partial = self._partials.get(delta.index)
            if partial is None:
                partial = self._partials[delta.index] = PartialToolCall(index=delta.index)
            partial.add(delta)
        elif isinstance(delta, ToolCallList):
            for call in delta.calls:
                self._complete.append(_request_from_message(call))

    def finalize(self) -> list:
        """Returns every assembled call; index-keyed calls come first, in index order."""
        requests = [self._partials[index].finalize() for index in sorted(self._partials)]
        return requests + list(self._complete)


def _request_from_message(call: dict) -> ToolCallRequest:
    function = call.get("function")
    if not isinstance(function, dict):
        function = {}
    return ToolCallRequest(
        id=_string(call.get("id")) or f"call_{uuid.uuid4().hex[:8]}",
        name=_string(function.get("name")) or "",
        arguments=parse_arguments(function.get("arguments")),
    )

# --- Response accumulation ---

@dataclass
class StreamResult:
    text: str = ""
    tool_calls: list = field(default_factory=list)
    finish_reason: Optional[str] = None
    usage: Optional[UsageDelta] = None


class ResponseAccumulator:
    """Collects one streamed response: text, finish reason, usage and tool calls."""

    def __init__(self):
        self._text_parts = []
        self._assembler = ToolCallAssembler()
        self.finish_reason = None
        self.usage = None

    def add(self, delta):
        if isinstance(delta, TextDelta):
            self._text_parts.append(delta.text)
        elif isinstance(delta, (ToolCallFragment, ToolCallList)):
            self._assembler.add(delta)
        elif isinstance(delta, UsageDelta):
            self.usage = delta
        elif isinstance(delta, FinishDelta):
            self.finish_reason = delta.reason

    @property
    def text(self) -> str:
        return "".join(self._text_parts)

    def result(self) -> StreamResult:
        return StreamResult(
            text=self.text,
            tool_calls=self._assembler.finalize(),
            finish_reason=self.finish_reason,
            usage=self.usage,
        )
