# File: latex_lsp/lsp/rpc.py

"""JSON-RPC request/response correlation for the LaTeX language server.

The `RpcClient` assigns request ids, keeps one `PendingRequest` per in-flight
request and settles it exactly once: with the server's result, with the
server's error, on timeout, or when a newer request for the same
method/document pair supersedes it. It knows nothing about processes; it
writes framed bytes through a `send` callable and is fed decoded messages via
`handle_message`.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set, Union

from latex_lsp.lsp.codec import encode_message
from latex_lsp.lsp.protocol import JSONRPC_VERSION

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT = 5.0  # Seconds


# --- Exceptions ---


class LspRequestError(Exception):
    """Base class for every way an LSP request can fail.

    Attributes:
        method (Optional[str]): The request method, when known.
        request_id (Optional[int]): The JSON-RPC id, when known.
    """

    def __init__(self, message: str, method: Optional[str] = None, request_id: Optional[int] = None):
        super().__init__(message)
        self.method = method
        self.request_id = request_id


class LspResponseError(LspRequestError):
    """The server answered with an `error` object.

    Attributes:
        code (Any): The error code from the LSP response. Defaults to "Unknown".
        message (str): The error message from the LSP response.
        data (Any): Optional additional data provided with the error.
    """

    def __init__(self, error_payload: Any, method: Optional[str] = None, request_id: Optional[int] = None):
        payload = error_payload if isinstance(error_payload, dict) else {"message": str(error_payload)}
        self.code = payload.get("code", "Unknown")
        self.message = payload.get("message", "Unknown error")
        self.data = payload.get("data")
        super().__init__(f"LSP Error Code {self.code}: {self.message}", method, request_id)


class RequestTimeoutError(LspRequestError):
    """No response arrived before the request's timer fired."""


class RequestSupersededError(LspRequestError):
    """A newer request with the same dedupe key replaced this one."""


class ServerUnresponsiveError(LspRequestError):
    """The health check declared the server unresponsive."""


class ClientStoppedError(LspRequestError):
    """The session was stopped or lost its server while the request was pending."""


# --- Inbound message kinds ---


@dataclass
class Response:
    id: Any
    result: Any = None
    error: Any = None


@dataclass
class Notification:
    method: str
    params: Any = None


@dataclass
class ServerRequest:
    id: Any
    method: str
    params: Any = None


InboundMessage = Union[Response, Notification, ServerRequest]


def decode_message(raw: Any) -> Optional[InboundMessage]:
    """Classifies a decoded JSON-RPC message once, by the fields it carries.

    - `id` with `result` or `error` is a response to one of our requests.
    - `method` without `id` is a notification.
    - `method` with `id` is a request initiated by the server.

    Returns:
        The typed message, or None if the payload fits none of these shapes.
    """
    if not isinstance(raw, dict):
        return None
    has_id = raw.get("id") is not None
    method = raw.get("method")
    if has_id and ("result" in raw or "error" in raw):
        return Response(id=raw["id"], result=raw.get("result"), error=raw.get("error"))
    if isinstance(method, str) and not has_id:
        return Notification(method=method, params=raw.get("params"))
    if isinstance(method, str) and has_id:
        return ServerRequest(id=raw["id"], method=method, params=raw.get("params"))
    return None


def dedupe_key(method: str, params: Any) -> str:
    """Groups requests that supersede one another: same method, same document."""
    if isinstance(params, dict):
        text_document = params.get("textDocument")
        if isinstance(text_document, dict) and text_document.get("uri"):
            return f"{method}:{text_document['uri']}"
    return method


@dataclass
class PendingRequest:
    id: int
    method: str
    dedupe_key: str
    future: asyncio.Future
    timeout_handle: asyncio.TimerHandle
    sent_at: float


class RpcClient:
    """Correlates outgoing JSON-RPC requests with incoming responses.

    Attributes:
        default_timeout (float): Seconds before an unanswered request fails.
        on_notification (Optional[Callable[[str, Any], None]]): Receives every
            server notification as `(method, params)`.
        last_message_at (Optional[float]): `time.monotonic()` of the last
            message received from the server.
        last_response_at (Optional[float]): `time.monotonic()` of the last
            response received from the server. Notifications do not update it.
    """

    def __init__(
        self,
        send: Callable[[bytes], None],
        on_notification: Optional[Callable[[str, Any], None]] = None,
        default_timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ):
        self._send = send
        self.on_notification = on_notification
        self.default_timeout = default_timeout
        self._next_id = 1
        self._pending: Dict[int, PendingRequest] = {}
        self._dedupe: Dict[str, int] = {}
        self.last_message_at: Optional[float] = None
        self.last_response_at: Optional[float] = None

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def in_flight_keys(self) -> Set[str]:
        """Dedupe keys that currently own an in-flight request."""
        return set(self._dedupe)

    async def request(self, method: str, params: Any = None, timeout: Optional[float] = None) -> Any:
        """Sends a request and waits for its response.

        If a request with the same dedupe key is still in flight it is rejected
        with `RequestSupersededError` before this one is written.

        Args:
            method (str): The LSP method name (e.g. "textDocument/hover").
            params (Any): The request parameters.
            timeout (Optional[float]): Seconds to wait; `default_timeout` if None.

        Returns:
            Any: The `result` field of the response (None for a null result).

        Raises:
            LspResponseError: The server answered with an error.
            RequestTimeoutError: No answer within the timeout.
            RequestSupersededError: A newer same-key request replaced this one.
            ServerUnresponsiveError: The health check gave up on the server.
            ClientStoppedError: The session stopped while waiting.
        """
        loop = asyncio.get_running_loop()
        request_id = self._next_id
        self._next_id += 1
        key = dedupe_key(method, params)

        previous_id = self._dedupe.get(key)
        if previous_id is not None:
            logger.debug(f"Request {request_id} ({method}) supersedes request {previous_id}.")
            self._settle(
                previous_id,
                error=RequestSupersededError(
                    f"LSP request '{method}' superseded by request {request_id}",
                    method,
                    previous_id,
                ),
            )

        effective_timeout = self.default_timeout if timeout is None else timeout
        future: asyncio.Future = loop.create_future()
        handle = loop.call_later(effective_timeout, self._expire, request_id, effective_timeout)
        self._pending[request_id] = PendingRequest(
            id=request_id,
            method=method,
            dedupe_key=key,
            future=future,
            timeout_handle=handle,
            sent_at=time.monotonic(),
        )
        self._dedupe[key] = request_id

        logger.debug(f"Sending request {request_id}: {method}")
        self._send(
            encode_message({"jsonrpc": JSONRPC_VERSION, "id": request_id, "method": method, "params": params})
        )
        try:
            return await future
        except asyncio.CancelledError:
            self._discard(request_id)
            raise

    def notify(self, method: str, params: Any = None) -> None:
        """Sends a notification. No response is expected and nothing is awaited."""
        logger.debug(f"Sending notification: {method}")
        self._send(encode_message({"jsonrpc": JSONRPC_VERSION, "method": method, "params": params}))

    def handle_message(self, raw: Any) -> None:
        """Dispatches one decoded message received from the server."""
        self.last_message_at = time.monotonic()
        message = decode_message(raw)

        if isinstance(message, Response):
            self.last_response_at = self.last_message_at
            request_id = message.id
            if isinstance(request_id, str) and request_id.isdigit():
                request_id = int(request_id)
            if request_id not in self._pending:
                logger.debug(f"Received response for ID {message.id}, but it was not pending.")
                return
            if message.error is not None:
                pending = self._pending[request_id]
                logger.debug(f"Received error response for ID {request_id}")
                self._settle(request_id, error=LspResponseError(message.error, pending.method, request_id))
            else:
                logger.debug(f"Received result response for ID {request_id}")
                self._settle(request_id, result=message.result)

        elif isinstance(message, Notification):
            logger.debug(f"Received notification: {message.method}")
            if self.on_notification is None:
                return
            try:
                self.on_notification(message.method, message.params)
            except Exception:
                logger.exception(f"Dropping notification '{message.method}' after handler failure.")

        elif isinstance(message, ServerRequest):
            # Answer with a null result so the server does not wait on us.
            logger.debug(f"Answering server request {message.id} ({message.method}) with null.")
            self._send(encode_message({"jsonrpc": JSONRPC_VERSION, "id": message.id, "result": None}))

        else:
            logger.warning(f"Received message with unknown structure: {raw!r}")

    def reject_all(self, make_error: Callable[[PendingRequest], LspRequestError]) -> int:
        """Rejects every pending request and clears all bookkeeping.

        Args:
            make_error: Builds the exception for each pending request.

        Returns:
            int: How many requests were rejected.
        """
        pending: List[PendingRequest] = list(self._pending.values())
        for entry in pending:
            self._settle(entry.id, error=make_error(entry))
        self._dedupe.clear()
        return len(pending)

    def oldest_pending_age(self, now: Optional[float] = None) -> Optional[float]:
        """Seconds the longest-waiting request has been pending, or None."""
        if not self._pending:
            return None
        current = time.monotonic() if now is None else now
        return current - min(entry.sent_at for entry in self._pending.values())

    def _expire(self, request_id: int, timeout: float) -> None:
        pending = self._pending.get(request_id)
        if pending is None:
            return
        logger.warning(f"Timeout waiting for response to request {request_id} ({pending.method}).")
        self._settle(
            request_id,
            error=RequestTimeoutError(
                f"LSP request '{pending.method}' timed out after {timeout}s",
                pending.method,
                request_id,
            ),
        )

    def _settle(self, request_id: int, result: Any = None, error: Optional[Exception] = None) -> bool:
        pending = self._pending.pop(request_id, None)
        if pending is None:
            return False
        pending.timeout_handle.cancel()
        if self._dedupe.get(pending.dedupe_key) == request_id:
            del self._dedupe[pending.dedupe_key]
        if not pending.future.done():
            if error is not None:
                pending.future.set_exception(error)
            else:
                pending.future.set_result(result)
        return True

    def _discard(self, request_id: int) -> None:
        pending = self._pending.pop(request_id, None)
        if pending is None:
            return
        pending.timeout_handle.cancel()
        if self._dedupe.get(pending.dedupe_key) == request_id:
            del self._dedupe[pending.dedupe_key]
