import asyncio
import logging
import uuid
from enum import Enum
from typing import Callable, Optional

logger = logging.getLogger(__name__)

STOP_MARKER = "[Command interrupted]"
DECLINED_MESSAGE = "User denied execution of this command."


class ExecutionStatus(str, Enum):
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    RUNNING = "running"
    DONE = "done"
    ERRORED = "errored"
    STOPPED = "stopped"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.DONE, ExecutionStatus.ERRORED, ExecutionStatus.STOPPED)


def _make_sentinel() -> str:
    return f"__DONE_{uuid.uuid4().hex[:8]}__"


def _sentinel_prefix_length(text: str, sentinel: str) -> int:
    for length in range(min(len(sentinel) - 1, len(text)), 0, -1):
        if text.endswith(sentinel[:length]):
            return length
    return 0


class CommandExecution:
    """One interactive command: waits for confirmation, runs, resolves exactly once."""

    def __init__(self, command: str, session: "CommandSession"):
        self.id = uuid.uuid4().hex[:12]
        self.command = command
        self.status = ExecutionStatus.AWAITING_CONFIRMATION
        self.sentinel: Optional[str] = None
        self._session = session
        self._chunks = []
        self._shown = 0
        self._confirmed = asyncio.Event()
        self._result = asyncio.get_running_loop().create_future()

    @property
    def output(self) -> str:
        return "".join(self._chunks).strip()

    @property
    def resolved(self) -> bool:
        return self._result.done()

    def confirm(self):
        """Operator approval; releases the confirmation gate."""
        if self.status == ExecutionStatus.AWAITING_CONFIRMATION:
            self._confirmed.set()

    def stop(self):
        """Operator stop (or decline, while still awaiting confirmation)."""
        self._session.stop(self)

    async def wait_for_confirmation(self):
        await self._confirmed.wait()

    async def wait(self) -> str:
        return await asyncio.shield(self._result)

    def _append(self, text: str):
        if text:
            self._chunks.append(text)

    def _resolve(self, status: ExecutionStatus) -> bool:
        if self._result.done():
            return False
        self.status = status
        self._result.set_result(self.output)
        # Wake a pending confirmation wait so nothing is left suspended.
        self._confirmed.set()
        return True

    def __repr__(self):
        return f"<CommandExecution {self.id} {self.status.value} {self.command!r}>"


class CommandSession:
    """
    Serializes confirmed commands onto one long-lived shell.

    ``host`` is the interactive-process collaborator: ``start(label)``,
    ``send(handle, text)``, ``stop(handle)`` and ``kill(handle)``, and it
    reports ``on_output``/``on_completion``/``on_error`` events back to every
    listener registered with ``add_listener``. ``on_update(execution, chunk)``
    is called when an execution is created, changes status or receives
    output (``chunk`` is set only for output).
    """

    def __init__(self, host, label: str = "shellmate", on_update: Callable = None):
        self.host = host
        self.label = label
        self.on_update = on_update
        self.handle = None
        self.active: Optional[CommandExecution] = None
        self.executions = []
        host.add_listener(self)

    def _notify(self, execution: CommandExecution, chunk: str = None):
        if not self.on_update:
            return
        try:
            self.on_update(execution, chunk)
        except Exception:
            logger.exception("Command update listener failed")

    async def execute(self, command: str) -> str:
        if self.handle is None:
            self.handle = await self.host.start(self.label)
            logger.debug("Started shell session %s", self.handle)

        execution = CommandExecution(command, self)
        self.executions.append(execution)
        self.active = execution
        self._notify(execution)
        try:
            await execution.wait_for_confirmation()
            if execution.resolved:
                return await execution.wait()

            execution.sentinel = _make_sentinel()
            execution.status = ExecutionStatus.RUNNING
            self._notify(execution)
            try:
                await self.host.send(self.handle, f"{command}\necho '{execution.sentinel}'\n")
            except Exception as e:
                logger.warning("Could not send command to shell %s: %s", self.handle, e)
                self._finish(execution, ExecutionStatus.ERRORED, f"\n[Error] {e}")
            return await execution.wait()
        finally:
            if self.active is execution:
                self.active = None

    def _running(self, handle) -> Optional[CommandExecution]:
        if handle != self.handle or self.active is None:
            return None
        if self.active.status != ExecutionStatus.RUNNING:
            return None
        return self.active

    def _finish(self, execution: CommandExecution, status: ExecutionStatus, text: str = ""):
        execution._append(text)
        if execution._resolve(status):
            logger.debug("Command %s finished: %s", execution.id, status.value)
            self._notify(execution)

    # --- Host events ---

    def on_output(self, handle, chunk: str):
        execution = self._running(handle)
        if execution is None:
            logger.debug("Ignoring output for inactive session %s", handle)
            return
        execution._append(chunk)
        buffered = "".join(execution._chunks)
        position = buffered.find(execution.sentinel)
        if position == -1:
            # Hold back a tail that may be the start of a sentinel split across chunks.
            visible_end = len(buffered) - _sentinel_prefix_length(buffered, execution.sentinel)
        else:
            visible_end = position
        shown = buffered[execution._shown:visible_end]
        if shown:
            execution._shown = visible_end
            self._notify(execution, shown)
        if position != -1:
            execution._chunks = [buffered[:position]]
            self._finish(execution, ExecutionStatus.DONE)

    def on_completion(self, handle, status: int, message: str = ""):
        execution = self._running(handle)
        if execution is None:
            return
        text = f"\n{message}" if message else ""
        if status == 0:
            text += "\n[Shell exited before the command finished]"
        else:
            text += f"\n[Shell exited with status {status}]"
        self._finish(execution, ExecutionStatus.ERRORED, text)

    def on_error(self, handle, message: str):
        execution = self._running(handle)
        if execution is None:
            return
        self._finish(execution, ExecutionStatus.ERRORED, f"\n[Error] {message}")

    # --- Operator signals ---

    def stop(self, execution: CommandExecution = None):
        execution = execution or self.active
        if execution is None or execution.resolved:
            return
        if execution.status == ExecutionStatus.AWAITING_CONFIRMATION:
            self._finish(execution, ExecutionStatus.STOPPED, DECLINED_MESSAGE)
            return
        if self.handle is not None:
            try:
                self.host.stop(self.handle)
            except Exception as e:
                logger.warning("Could not interrupt shell %s: %s", self.handle, e)
        self._finish(execution, ExecutionStatus.STOPPED, f"\n{STOP_MARKER}")

    async def close(self):
        """Tears down the shell; anything still pending resolves as Stopped."""
        for execution in self.executions:
            if not execution.resolved:
                self._finish(execution, ExecutionStatus.STOPPED, f"\n{STOP_MARKER}")
        self.active = None
        if self.handle is not None:
            handle, self.handle = self.handle, None
            try:
                await self.host.kill(handle)
            except Exception as e:
                logger.warning("Could not kill shell %s: %s", handle, e)
            logger.debug("Closed shell session %s", handle)
