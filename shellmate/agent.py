import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from .stream import ResponseAccumulator, TextDelta, UsageDelta, adecode_stream
from .tools import ToolRouter
from .transport import ProviderError

logger = logging.getLogger(__name__)

DEFAULT_MAX_TURNS = 50
TOOL_FINISH_REASONS = {"tool_calls", "function_call"}
EMPTY_RESPONSE = "(no response from model)"

# --- History ---

@dataclass(frozen=True)
class UserTurn:
    content: str

@dataclass(frozen=True)
class AssistantTurn:
    text: Optional[str]
    tool_calls: tuple = ()

@dataclass(frozen=True)
class ToolResultTurn:
    call_id: str
    output: str
    name: str = ""

Turn = Union[UserTurn, AssistantTurn, ToolResultTurn]


def turn_to_wire(turn: Turn) -> dict:
    """Converts a turn to an OpenAI-style chat message."""
    if isinstance(turn, UserTurn):
        return {"role": "user", "content": turn.content}
    if isinstance(turn, AssistantTurn):
        message = {"role": "assistant", "content": turn.text}
        if turn.tool_calls:
            message["tool_calls"] = [call.to_wire() for call in turn.tool_calls]
        elif message["content"] is None:
            message["content"] = ""
        return message
    message = {"role": "tool", "tool_call_id": turn.call_id, "content": turn.output}
    if turn.name:
        message["name"] = turn.name
    return message


def trim_history(history: List[Turn], max_turns: int = DEFAULT_MAX_TURNS) -> List[Turn]:
    """
    Keeps at most the last ``max_turns`` turns.

    The kept window never starts on a tool result: results whose assistant
    turn fell off the front are dropped with it. If that would leave nothing,
    the window reaches back to the assistant turn that owns those results.
    """
    if len(history) <= max_turns:
        return history
    cut = len(history) - max_turns
    start = cut
    while start < len(history) and isinstance(history[start], ToolResultTurn):
        start += 1
    if start == len(history):
        start = cut
        while start > 0 and isinstance(history[start], ToolResultTurn):
            start -= 1
    return history[start:]

# --- Events ---

@dataclass
class AgentEvent:
    """Event emitted during a conversation turn"""
    type: str  # request, text, rate_limited, usage, response_end, tool_call, tool_result, final, error, aborted
    content: str = ""
    data: Optional[Dict[str, Any]] = None


class TurnState(str, Enum):
    IDLE = "idle"
    REQUESTING = "requesting"
    EXECUTING_TOOLS = "executing_tools"
    FINAL = "final"
    ABORTED = "aborted"
    FAILED = "failed"


@dataclass
class TurnOutcome:
    state: TurnState
    text: str = ""
    error: Optional[Exception] = None
    tool_rounds: int = 0

# --- Orchestrator ---

class ConversationOrchestrator:
    """
    Owns the conversation history and drives ask-the-model / run-the-tools
    rounds until the model answers without requesting tools.

    ``abort()`` is cooperative: it is checked between steps and between tool
    calls. A response or tool output that completes after an abort is
    discarded and nothing further is added to the history.
    """

    def __init__(self, transport, router: ToolRouter, model: str, system_prompt: str = "",
                 tools_enabled: bool = True, max_turns: int = DEFAULT_MAX_TURNS,
                 on_event: Callable = None):
        self.transport = transport
        self.router = router
        self.model = model
        self.system_prompt = system_prompt
        self.tools_enabled = tools_enabled
        self.max_turns = max_turns
        self.on_event = on_event
        self.history: List[Turn] = []
        self.state = TurnState.IDLE
        self.usage = {"prompt_tokens": 0, "completion_tokens": 0}
        self._aborted = False

    @property
    def aborted(self) -> bool:
        return self._aborted

    def abort(self):
        if self.state in (TurnState.REQUESTING, TurnState.EXECUTING_TOOLS):
            logger.debug("Abort requested while %s", self.state.value)
            self._aborted = True

    def reset(self):
        self.history = []
        self.state = TurnState.IDLE

    async def _emit(self, type: str, content: str = "", **data):
        if not self.on_event:
            return
        result = self.on_event(AgentEvent(type=type, content=content, data=data or None))
        if inspect.isawaitable(result):
            await result

    def build_payload(self) -> dict:
        messages = []
        if self.system_prompt:
            messages.append({"role": "system", "content": self.system_prompt})
        messages.extend(turn_to_wire(turn) for turn in self.history)
        payload = {"model": self.model, "messages": messages, "stream": True}
        if self.tools_enabled and self.router is not None and len(self.router.catalog):
            payload["tools"] = list(self.router.catalog.metadata)
            payload["tool_choice"] = "auto"
        return payload

    async def send(self, content: str) -> TurnOutcome:
        """Adds a user message and runs the conversation until it settles."""
        if self.state in (TurnState.REQUESTING, TurnState.EXECUTING_TOOLS):
            raise RuntimeError("A conversation turn is already in progress")
        self._aborted = False
        self.history.append(UserTurn(content))
        try:
            return await self._run()
        finally:
            if self.state in (TurnState.REQUESTING, TurnState.EXECUTING_TOOLS):
                self.state = TurnState.IDLE

    async def _run(self) -> TurnOutcome:
        rounds = 0
        while True:
            if self._aborted:
                return await self._finish_aborted(rounds)

            self.history = trim_history(self.history, self.max_turns)
            self.state = TurnState.REQUESTING
            try:
                response = await self._request()
            except Exception as e:
                # Transport and decode failures end the turn; nothing is appended.
                logger.debug("Model request failed: %s", e, exc_info=not isinstance(e, ProviderError))
                self.state = TurnState.FAILED
                await self._emit("error", str(e), status=getattr(e, "status", None))
                return TurnOutcome(TurnState.FAILED, text=f"Error: {e}", error=e, tool_rounds=rounds)

            if self._aborted:
                return await self._finish_aborted(rounds)

            if response.finish_reason in TOOL_FINISH_REASONS and response.tool_calls:
                checkpoint = len(self.history)
                self.history.append(AssistantTurn(text=response.text or None, tool_calls=tuple(response.tool_calls)))
                self.state = TurnState.EXECUTING_TOOLS
                results = await self.router.run_all(
                    response.tool_calls,
                    should_abort=lambda: self._aborted,
                    on_start=lambda call: self._emit("tool_call", call.name, call=call),
                    on_result=lambda result: self._emit("tool_result", result.output, result=result),
                )
                if results is None or self._aborted:
                    # Unanswered tool calls may not stay in the history.
                    del self.history[checkpoint:]
                    return await self._finish_aborted(rounds)
                for result in results:
                    self.history.append(ToolResultTurn(call_id=result.call_id, output=result.output, name=result.name))
                rounds += 1
                continue

            self.history.append(AssistantTurn(text=response.text))
            self.state = TurnState.FINAL
            await self._emit("final", response.text or EMPTY_RESPONSE)
            return TurnOutcome(TurnState.FINAL, text=response.text, tool_rounds=rounds)

    async def _finish_aborted(self, rounds: int) -> TurnOutcome:
        self.state = TurnState.ABORTED
        await self._emit("aborted")
        return TurnOutcome(TurnState.ABORTED, tool_rounds=rounds)

    async def _request(self):
        await self._emit("request", model=self.model)
        accumulator = ResponseAccumulator()

        async def on_countdown(seconds: int):
            await self._emit("rate_limited", str(seconds), seconds=seconds)

        raw = await self.transport.send(self.build_payload(), on_countdown=on_countdown)
        async for delta in adecode_stream(self.transport.iter_chunks(raw)):
            accumulator.add(delta)
            if isinstance(delta, TextDelta):
                await self._emit("text", delta.text)
            elif isinstance(delta, UsageDelta):
                self.usage["prompt_tokens"] += delta.prompt_tokens
                self.usage["completion_tokens"] += delta.completion_tokens
                await self._emit("usage", prompt_tokens=delta.prompt_tokens, completion_tokens=delta.completion_tokens)
        result = accumulator.result()
        await self._emit("response_end", result.text, finish_reason=result.finish_reason)
        return result

    async def close(self):
        """Ends the conversation and tears down the command session."""
        self._aborted = True
        session = getattr(self.router, "command_session", None) if self.router else None
        if session is not None:
            await session.close()
