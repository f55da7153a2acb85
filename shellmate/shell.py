import asyncio
import codecs
import logging
import os
import signal
import uuid

logger = logging.getLogger(__name__)

READ_SIZE = 4096
RESTART_GRACE = 0.5


def default_shell() -> str:
    shell = os.environ.get("SHELL", "/bin/bash")
    if not os.path.exists(shell):
        shell = "/bin/bash"
    return shell


class ShellHost:
    """
    Runs long-lived shell processes and streams their output as events.

    Each handle maps to one shell reading commands from stdin, with stderr
    merged into stdout. Listeners get ``on_output(handle, chunk)`` for every
    piece of decoded output and ``on_completion(handle, returncode)`` when the
    shell exits. A shell that died (for example from an interrupt) is
    restarted under the same handle by the next ``send``.
    """

    def __init__(self, shell: str = None, cwd: str = None):
        self.shell = shell or default_shell()
        self.cwd = cwd
        self._processes = {}
        self._readers = {}
        self._interrupted = set()
        self._listeners = []

    def add_listener(self, listener):
        self._listeners.append(listener)

    def _emit(self, event: str, *args):
        for listener in list(self._listeners):
            try:
                getattr(listener, event)(*args)
            except Exception:
                logger.exception("Shell listener failed on %s", event)

    async def start(self, label: str) -> str:
        handle = f"{label}-{uuid.uuid4().hex[:8]}"
        await self._spawn(handle)
        return handle

    async def _spawn(self, handle: str):
        process = await asyncio.create_subprocess_exec(
            self.shell,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            cwd=self.cwd,
            start_new_session=True,
        )
        self._processes[handle] = process
        self._interrupted.discard(handle)
        self._readers[handle] = asyncio.create_task(self._read_loop(handle, process))
        logger.debug("Spawned %s (pid %s) for %s", self.shell, process.pid, handle)

    async def _read_loop(self, handle: str, process):
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            data = await process.stdout.read(READ_SIZE)
            if not data:
                break
            text = decoder.decode(data)
            if text and self._speaks_for(handle, process):
                self._emit("on_output", handle, text)
        returncode = await process.wait()
        if self._speaks_for(handle, process):
            logger.debug("Shell for %s exited with %s", handle, returncode)
            self._emit("on_completion", handle, returncode)

    def _speaks_for(self, handle: str, process) -> bool:
        # A replaced, killed or interrupted process no longer speaks for the handle.
        return self._processes.get(handle) is process and handle not in self._interrupted

    async def send(self, handle: str, text: str):
        process = self._processes.get(handle)
        if process is None:
            raise KeyError(f"Unknown shell session: {handle}")
        if handle in self._interrupted:
            try:
                await asyncio.wait_for(process.wait(), timeout=RESTART_GRACE)
            except asyncio.TimeoutError:
                pass
            self._interrupted.discard(handle)
        if process.returncode is not None:
            logger.info("Shell for %s exited (%s), restarting", handle, process.returncode)
            self._processes.pop(handle, None)
            await self._spawn(handle)
            process = self._processes[handle]
        try:
            process.stdin.write(text.encode("utf-8"))
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            self._emit("on_error", handle, f"Shell input closed: {e}")

    def stop(self, handle: str):
        """Interrupts whatever the shell is running (Ctrl+C for the process group)."""
        process = self._processes.get(handle)
        if process is None or process.returncode is not None:
            return
        self._interrupted.add(handle)
        try:
            os.killpg(process.pid, signal.SIGINT)
        except ProcessLookupError:
            pass

    async def kill(self, handle: str):
        process = self._processes.pop(handle, None)
        reader = self._readers.pop(handle, None)
        self._interrupted.discard(handle)
        if process is not None and process.returncode is None:
            try:
                os.killpg(process.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            await process.wait()
        if reader is not None:
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass

    async def close(self):
        for handle in list(self._processes):
            await self.kill(handle)
