# File: tests/unit/lsp/conftest.py

"""Fake language server processes shared by the LSP unit tests.

`FakeLanguageServer.spawn` stands in for `asyncio.create_subprocess_exec`.
Every spawned `FakeProcess` decodes what the client writes to its stdin and
answers requests on its stdout, so the real supervisor, codec, RPC client and
session run end to end without TexLab being installed.
"""

import asyncio
import time
from typing import Any, Callable, Dict, List, Optional

import pytest

from latex_lsp.lsp.codec import FrameDecoder, encode_message

# Captured before any test patches asyncio.sleep.
_real_sleep = asyncio.sleep

FULL_CAPABILITIES: Dict[str, Any] = {
    "textDocumentSync": 1,
    "completionProvider": {"triggerCharacters": ["\\", "{", "@"]},
    "hoverProvider": True,
    "definitionProvider": True,
    "documentSymbolProvider": True,
    "renameProvider": {"prepareProvider": True},
    "documentFormattingProvider": True,
    "foldingRangeProvider": True,
    "semanticTokensProvider": {
        "legend": {"tokenTypes": ["macro", "keyword"], "tokenModifiers": ["deprecated"]},
        "full": True,
    },
}


class FakeStdin:
    def __init__(self) -> None:
        self.written = bytearray()
        self.closed = False
        self.on_write: Optional[Callable[[bytes], None]] = None

    def write(self, data: bytes) -> None:
        if self.closed:
            raise BrokenPipeError("stdin closed")
        self.written.extend(data)
        if self.on_write is not None:
            self.on_write(data)

    def is_closing(self) -> bool:
        return self.closed

    def close(self) -> None:
        self.closed = True


class FakeProcess:
    """Mimics the parts of `asyncio.subprocess.Process` the supervisor uses."""

    def __init__(self, pid: int = 4242) -> None:
        self.pid = pid
        self.stdin = FakeStdin()
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self.returncode: Optional[int] = None
        self._exited = asyncio.Event()

    def exit(self, code: int = 0) -> None:
        if self.returncode is not None:
            return
        self.returncode = code
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode

    def terminate(self) -> None:
        self.exit(-15)

    def kill(self) -> None:
        self.exit(-9)

    def send_message(self, message: Any) -> None:
        self.stdout.feed_data(encode_message(message))

    def send_stderr(self, text: str) -> None:
        self.stderr.feed_data(text.encode("utf-8"))


class FakeLanguageServer:
    """Scripted server: answers requests from `responses`, records everything.

    Attributes:
        capabilities: Returned from `initialize`.
        responses: Method -> result, or a callable taking params and returning one.
        errors: Method -> JSON-RPC error object to answer with instead.
        silent: Methods that never get an answer.
        messages: Every message the client wrote, in order, across processes.
        processes: Every spawned process, oldest first.
        spawn_error: Raised from `spawn` instead of creating a process.
        commands: The argv of every spawn attempt.
    """

    def __init__(self, capabilities: Optional[Dict[str, Any]] = None) -> None:
        self.capabilities = dict(FULL_CAPABILITIES if capabilities is None else capabilities)
        self.responses: Dict[str, Any] = {
            "initialize": lambda params: {"capabilities": self.capabilities},
            "shutdown": None,
        }
        self.errors: Dict[str, Dict[str, Any]] = {}
        self.silent = set()
        self.messages: List[Dict[str, Any]] = []
        self.processes: List[FakeProcess] = []
        self.spawn_error: Optional[Exception] = None
        self.commands: List[tuple] = []

    @property
    def process(self) -> FakeProcess:
        return self.processes[-1]

    async def spawn(self, *command: str, **kwargs: Any) -> FakeProcess:
        self.commands.append(command)
        if self.spawn_error is not None:
            raise self.spawn_error
        process = FakeProcess(pid=4242 + len(self.processes))
        decoder = FrameDecoder()
        process.stdin.on_write = lambda data: self._on_client_bytes(process, decoder, data)
        self.processes.append(process)
        return process

    def requests(self, method: Optional[str] = None) -> List[Dict[str, Any]]:
        return [
            m for m in self.messages
            if "id" in m and "method" in m and (method is None or m["method"] == method)
        ]

    def notifications(self, method: Optional[str] = None) -> List[Dict[str, Any]]:
        return [
            m for m in self.messages
            if "id" not in m and (method is None or m.get("method") == method)
        ]

    def _on_client_bytes(self, process: FakeProcess, decoder: FrameDecoder, data: bytes) -> None:
        for message in decoder.feed(data):
            self.messages.append(message)
            method = message.get("method")
            if method == "exit":
                process.exit(0)
                continue
            if method is None or "id" not in message or method in self.silent:
                continue
            if method in self.errors:
                process.send_message({"jsonrpc": "2.0", "id": message["id"], "error": self.errors[method]})
                continue
            handler = self.responses.get(method)
            result = handler(message.get("params")) if callable(handler) else handler
            process.send_message({"jsonrpc": "2.0", "id": message["id"], "result": result})


async def wait_for_condition(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("Condition not met before timeout")
        await _real_sleep(0.001)


# --- Fixtures ---


@pytest.fixture
def fake_server():
    return FakeLanguageServer()


@pytest.fixture
def wait_until():
    return wait_for_condition


@pytest.fixture
def recorded_sleeps(mocker):
    """Makes asyncio.sleep return immediately and records requested delays."""
    delays: List[float] = []

    async def _fake_sleep(delay, *args, **kwargs):
        delays.append(delay)
        await _real_sleep(0)

    mocker.patch("asyncio.sleep", new=_fake_sleep)
    return delays
