# File: latex_lsp/lsp/codec.py

"""Content-Length framing for JSON-RPC messages over a byte stream.

Each message on the wire is a header block terminated by a blank line,
followed by exactly `Content-Length` bytes of UTF-8 encoded JSON:

    Content-Length: 52\\r\\n
    \\r\\n
    {"jsonrpc":"2.0","id":1,"method":"initialize",...}

All length accounting is done on encoded bytes. Counting characters instead
desynchronizes the stream as soon as a message contains non-ASCII text.
"""

import json
import logging
import re
from typing import Any, List

logger = logging.getLogger(__name__)

HEADER_SEPARATOR = b"\r\n\r\n"
CONTENT_LENGTH_RE = re.compile(rb"Content-Length:\s*(\d+)", re.IGNORECASE)


def encode_message(message: Any) -> bytes:
    """Serializes a JSON-RPC payload and prepends its Content-Length header.

    Args:
        message (Any): A JSON-serializable request, response or notification.

    Returns:
        bytes: The framed message, ready to be written to the server's stdin.
    """
    body = json.dumps(message, ensure_ascii=False).encode("utf-8")
    header = f"Content-Length: {len(body)}\r\n\r\n".encode("ascii")
    return header + body


class FrameDecoder:
    """Incrementally reassembles framed JSON messages from arbitrary chunks.

    Bytes are appended with `feed()`, which returns every message that became
    complete. Incomplete bodies stay buffered until more bytes arrive. Header
    blocks without a Content-Length field are skipped, and bodies that are not
    valid UTF-8 JSON are dropped, so garbage never stalls the stream.
    """

    def __init__(self) -> None:
        self._buffer = bytearray()

    @property
    def pending_bytes(self) -> int:
        """Number of buffered bytes not yet consumed as a complete message."""
        return len(self._buffer)

    def reset(self) -> None:
        """Discards any partially received data."""
        self._buffer.clear()

    def feed(self, data: bytes) -> List[Any]:
        """Appends `data` to the buffer and extracts all complete messages.

        Args:
            data (bytes): The next chunk read from the server's stdout.

        Returns:
            List[Any]: Decoded JSON values, in stream order. May be empty.
        """
        if data:
            self._buffer.extend(data)

        messages: List[Any] = []
        while True:
            header_end = self._buffer.find(HEADER_SEPARATOR)
            if header_end == -1:
                break

            header = bytes(self._buffer[:header_end])
            body_start = header_end + len(HEADER_SEPARATOR)
            match = CONTENT_LENGTH_RE.search(header)
            if not match:
                logger.warning(f"Skipping LSP header block without Content-Length: {header[:200]!r}")
                del self._buffer[:body_start]
                continue

            content_length = int(match.group(1))
            if len(self._buffer) - body_start < content_length:
                break  # wait for the rest of the body

            body = bytes(self._buffer[body_start : body_start + content_length])
            del self._buffer[: body_start + content_length]

            try:
                messages.append(json.loads(body.decode("utf-8")))
            except (UnicodeDecodeError, json.JSONDecodeError) as e:
                logger.error(f"Dropping undecodable LSP message body: {e}. Body: {body[:200]!r}")

        return messages
