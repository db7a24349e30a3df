# File: latex_lsp/lsp/supervisor.py

"""Owns the external language server process (TexLab).

The `ProcessSupervisor` spawns the server with three pipes, turns its stdout
into decoded JSON messages, logs its stderr, and restarts it with backoff when
it dies unexpectedly. Only an explicit `stop()` puts it in the STOPPED state,
which is the single state that suppresses automatic restarts. Once the retry
budget is spent the supervisor stays in ERROR until `start()` is called again.
"""

import asyncio
import collections
import enum
import logging
import pathlib
import shutil
import sys
from typing import Any, Awaitable, Callable, Deque, List, Optional, Sequence

from latex_lsp.lsp.codec import FrameDecoder

logger = logging.getLogger(__name__)

# --- Constants ---
SERVER_BINARY_NAME = "texlab"
MAX_RESTARTS = 3
RESTART_DELAYS = (1.0, 2.0, 4.0)  # Seconds before restart attempts 1, 2, 3
TERMINATE_GRACE_PERIOD = 5.0  # Seconds to wait after terminate() before kill()
READ_CHUNK_SIZE = 65536
STDERR_TAIL_LINES = 50


class ServerProcessState(enum.Enum):
    """Lifecycle states of the language server process."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    ERROR = "error"


StatusCallback = Callable[[ServerProcessState, Optional[str]], None]
MessageCallback = Callable[[Any], None]
SpawnFunc = Callable[..., Awaitable[Any]]


def _platform_dir() -> str:
    if sys.platform == "win32":
        return "win"
    if sys.platform == "darwin":
        return "mac"
    return "linux"


def resolve_server_command(
    configured_path: Optional[str] = None,
    bundled_dir: Optional[str] = None,
    binary_name: str = SERVER_BINARY_NAME,
) -> str:
    """Picks the server executable: user path, then bundled binary, then PATH.

    Args:
        configured_path: Explicit executable path from the user's settings.
            Ignored (with a warning) if it does not point at a file.
        bundled_dir: Directory holding bundled binaries, either directly or in
            a per-platform subdirectory (`linux`, `mac`, `win`).
        binary_name: Executable name without extension.

    Returns:
        str: An executable path, or the bare binary name as a last resort so the
        spawn error names what was looked for.
    """
    if configured_path:
        if pathlib.Path(configured_path).is_file():
            logger.info(f"Using configured language server at '{configured_path}'.")
            return configured_path
        logger.warning(f"Configured language server path '{configured_path}' is not a file. Ignoring it.")

    executable = binary_name + (".exe" if sys.platform == "win32" else "")
    if bundled_dir:
        base = pathlib.Path(bundled_dir)
        for candidate in (base / _platform_dir() / executable, base / executable):
            if candidate.is_file():
                logger.info(f"Using bundled language server at '{candidate}'.")
                return str(candidate)

    found = shutil.which(executable)
    if found:
        logger.info(f"Using language server from PATH: '{found}'.")
        return found
    logger.warning(f"Language server '{executable}' not found on PATH; spawning by name.")
    return executable


class ProcessSupervisor:
    """Spawns, watches and restarts the language server process.

    Attributes:
        command (List[str]): Executable and arguments used to spawn the server.
        on_message (Optional[MessageCallback]): Receives every decoded message
            read from the server's stdout.
        on_status_change (Optional[StatusCallback]): Called on every state
            transition with the new state and an optional error message.
        max_restarts (int): Automatic restart attempts allowed per `start()`.
        restart_delays (Sequence[float]): Delay before each restart attempt.
        process: The running subprocess, or None.
        retry_count (int): Restart attempts used since the last `start()`.
        spawn_count (int): Successful spawns since construction.
        stderr_tail (Deque[str]): The most recent stderr lines, for diagnostics.
    """

    def __init__(
        self,
        command: Sequence[str],
        on_message: Optional[MessageCallback] = None,
        on_status_change: Optional[StatusCallback] = None,
        max_restarts: int = MAX_RESTARTS,
        restart_delays: Sequence[float] = RESTART_DELAYS,
        spawn: Optional[SpawnFunc] = None,
    ):
        if not command:
            raise ValueError("ProcessSupervisor needs a non-empty command.")
        self.command = list(command)
        self.on_message = on_message
        self.on_status_change = on_status_change
        self.max_restarts = max(0, max_restarts)
        self.restart_delays = tuple(restart_delays) or RESTART_DELAYS
        self._spawn = spawn or asyncio.create_subprocess_exec
        self.process: Optional[Any] = None
        self.retry_count = 0
        self.spawn_count = 0
        self.stderr_tail: Deque[str] = collections.deque(maxlen=STDERR_TAIL_LINES)
        self._state = ServerProcessState.STOPPED
        self._workspace_root: Optional[str] = None
        self._decoder = FrameDecoder()
        self._tasks: List[asyncio.Task] = []
        self._restart_task: Optional[asyncio.Task] = None

    @property
    def state(self) -> ServerProcessState:
        return self._state

    @property
    def workspace_root(self) -> Optional[str]:
        return self._workspace_root

    async def start(self, workspace_root: str) -> None:
        """Starts the server rooted at `workspace_root`.

        Any previous instance is stopped first, and the retry budget is reset.
        Spawn failures are reported through `on_status_change`, not raised.
        """
        if self.process is not None or self._restart_task is not None or self._tasks:
            await self.stop()
        self._workspace_root = workspace_root
        self.retry_count = 0
        self.stderr_tail.clear()
        await self._spawn_process()

    async def stop(self) -> None:
        """Stops the server and disables automatic restarts."""
        self._set_state(ServerProcessState.STOPPED)
        if self._restart_task is not None:
            self._restart_task.cancel()
            self._restart_task = None
        self._workspace_root = None
        self.retry_count = 0

        process = self.process
        self.process = None
        if process is not None:
            await self._terminate(process)

        current = asyncio.current_task()
        tasks = [task for task in self._tasks if task is not current]
        self._tasks = []
        for task in tasks:
            if not task.done():
                task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._decoder.reset()

    def send(self, frame: bytes) -> None:
        """Writes a framed message to the server's stdin.

        Delivery is best-effort: with no process, a closing pipe, or a broken
        pipe the frame is dropped without raising.
        """
        process = self.process
        stdin = getattr(process, "stdin", None) if process is not None else None
        if stdin is None or stdin.is_closing():
            logger.debug("Dropping LSP frame: server stdin is not writable.")
            return
        try:
            stdin.write(frame)
        except (BrokenPipeError, ConnectionResetError, RuntimeError) as e:
            logger.debug(f"Dropping LSP frame after write failure: {e}")

    # --- Internals ---

    def _set_state(self, state: ServerProcessState, error: Optional[str] = None) -> None:
        self._state = state
        if error:
            logger.warning(f"Language server state -> {state.value}: {error}")
        else:
            logger.info(f"Language server state -> {state.value}")
        if self.on_status_change is not None:
            try:
                self.on_status_change(state, error)
            except Exception:
                logger.exception("Status callback raised; ignoring.")

    async def _spawn_process(self) -> None:
        self._set_state(ServerProcessState.STARTING)
        self._decoder.reset()
        logger.info(f"Starting language server: {' '.join(self.command)} in {self._workspace_root}")
        try:
            process = await self._spawn(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self._workspace_root,
            )
        except (OSError, ValueError) as e:
            self._fail(f"Failed to spawn {self.command[0]}: {e}")
            return

        if self._state is ServerProcessState.STOPPED:
            # stop() ran while the spawn was in progress.
            await self._terminate(process)
            return

        self.process = process
        self.spawn_count += 1
        self._tasks = [
            asyncio.create_task(self._read_stdout(process), name="lsp_stdout_reader"),
            asyncio.create_task(self._read_stderr(process), name="lsp_stderr_reader"),
            asyncio.create_task(self._watch_exit(process), name="lsp_exit_watcher"),
        ]
        self._set_state(ServerProcessState.RUNNING)

    async def _read_stdout(self, process: Any) -> None:
        try:
            while True:
                chunk = await process.stdout.read(READ_CHUNK_SIZE)
                if not chunk:
                    logger.debug("Server stdout reached EOF.")
                    return
                for message in self._decoder.feed(chunk):
                    if self.process is not process or self.on_message is None:
                        continue
                    try:
                        self.on_message(message)
                    except Exception:
                        logger.exception("Message callback raised; dropping message.")
        except asyncio.CancelledError:
            raise
        except (ConnectionError, OSError) as e:
            if self.process is process and self._state is not ServerProcessState.STOPPED:
                self._handle_failure(process, f"Error reading server stdout: {e}")

    async def _read_stderr(self, process: Any) -> None:
        if process.stderr is None:
            return
        try:
            while True:
                line = await process.stderr.readline()
                if not line:
                    return
                text = line.decode("utf-8", errors="replace").rstrip()
                self.stderr_tail.append(text)
                logger.debug(f"TexLab STDERR: {text}")
        except asyncio.CancelledError:
            raise
        except (ConnectionError, OSError) as e:
            if self.process is process and self._state is not ServerProcessState.STOPPED:
                self._handle_failure(process, f"Error reading server stderr: {e}")

    async def _watch_exit(self, process: Any) -> None:
        return_code = await process.wait()
        if self._state is ServerProcessState.STOPPED or self.process is not process:
            return
        self._handle_failure(process, f"{self.command[0]} exited with code {return_code}")

    def _handle_failure(self, process: Any, message: str) -> None:
        if self.process is not process:
            return  # already handled
        self.process = None
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
        if self.stderr_tail:
            logger.warning("Last server stderr lines:\n" + "\n".join(self.stderr_tail))
        self._fail(message)

    def _fail(self, message: str) -> None:
        """Reports a single ERROR status, then schedules a restart if the budget allows."""
        if self._state is ServerProcessState.STOPPED:
            return
        exhausted = self.retry_count >= self.max_restarts
        if exhausted:
            message = f"Language server failed after {self.max_restarts} retries: {message}"
        self._set_state(ServerProcessState.ERROR, message)
        if exhausted or self._workspace_root is None:
            return
        delay = self.restart_delays[min(self.retry_count, len(self.restart_delays) - 1)]
        self.retry_count += 1
        logger.info(f"Scheduling language server restart {self.retry_count}/{self.max_restarts} in {delay}s.")
        self._restart_task = asyncio.create_task(self._restart_after(delay), name="lsp_restart")

    async def _restart_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._restart_task = None
        if self._state is not ServerProcessState.STOPPED and self._workspace_root is not None:
            await self._spawn_process()

    async def _terminate(self, process: Any) -> None:
        stdin = getattr(process, "stdin", None)
        if stdin is not None and not stdin.is_closing():
            try:
                stdin.close()
            except (BrokenPipeError, ConnectionResetError, RuntimeError) as e:
                logger.debug(f"Error closing server stdin: {e}")
        if process.returncode is not None:
            return
        logger.info("Terminating language server process...")
        try:
            process.terminate()
            return_code = await asyncio.wait_for(process.wait(), timeout=TERMINATE_GRACE_PERIOD)
            logger.info(f"Language server process terminated with code {return_code}.")
        except asyncio.TimeoutError:
            logger.warning(
                f"Language server did not terminate after {TERMINATE_GRACE_PERIOD}s, killing."
            )
            try:
                process.kill()
                await process.wait()
            except ProcessLookupError:
                logger.debug("Process already finished before kill.")
        except ProcessLookupError:
            logger.debug("Process already finished before terminate.")
