"""
JSON-RPC 2.0 messages and the base protocol framing.

The base protocol consists of a header and a content part (comparable to HTTP).
The header and content part are separated by a '\\r\\n'.

https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#baseProtocol
"""

import json
import re
from enum import Enum, auto
from typing import Any, Dict, Optional, Union

from parley_errors import MalformedMessage, error_object
from parley_typing import (
    LSPMessageType,
    LSPNotificationMessage,
    LSPRequestMessage,
    LSPResponseMessage,
)

HEADER_SEPARATOR = b"\r\n\r\n"

# Headers larger than this without a separator are garbage.
MAX_HEADER_SIZE = 4096

# Where a frame starts; used to find the next frame after a bad header.
CONTENT_LENGTH_PATTERN = re.compile(rb"content-length:", re.IGNORECASE)


class MessageKind(Enum):
    REQUEST = auto()
    RESPONSE = auto()
    ERROR = auto()
    NOTIFICATION = auto()


def request(
    id: Union[int, str],
    method: str,
    params: Optional[Any] = None,
) -> LSPRequestMessage:
    return {
        "jsonrpc": "2.0",
        "id": id,
        "method": method,
        "params": params,
    }


def notification(
    method: str,
    params: Optional[Any] = None,
) -> LSPNotificationMessage:
    return {
        "jsonrpc": "2.0",
        "method": method,
        "params": params,
    }


def response(
    id: Optional[Union[int, str]],
    result: Optional[Any] = None,
) -> LSPResponseMessage:
    return {
        "jsonrpc": "2.0",
        "id": id,
        "result": result,
    }


def error_response(
    id: Optional[Union[int, str]],
    code: int,
    message: str,
    data: Optional[Any] = None,
) -> LSPResponseMessage:
    return {
        "jsonrpc": "2.0",
        "id": id,
        "error": error_object(code, message, data),
    }


def message_kind(message: Dict[str, Any]) -> MessageKind:
    if "method" in message:
        # A request from the server has an ID; a notification doesn't.
        if message.get("id") is not None:
            return MessageKind.REQUEST

        return MessageKind.NOTIFICATION

    if message.get("error") is not None:
        return MessageKind.ERROR

    return MessageKind.RESPONSE


def get_in(value: Any, *keys, default=None) -> Any:
    """
    Safe lookup into a JSON value.

    Keys are dict keys or list indexes; returns `default` as soon as a step
    doesn't apply - missing key, index out of range, or a value of the wrong shape.
    """
    for k in keys:
        if isinstance(value, dict) and isinstance(k, str):
            if k not in value:
                return default

            value = value[k]

        elif isinstance(value, list) and isinstance(k, int):
            if not -len(value) <= k < len(value):
                return default

            value = value[k]

        else:
            return default

    return default if value is None else value


def encode(message: LSPMessageType) -> bytes:
    content = json.dumps(message, ensure_ascii=False).encode("utf-8")

    # Content-Length counts bytes, not characters.
    header = f"Content-Length: {len(content)}\r\n\r\n"

    return header.encode("ascii") + content


def _parse_header(header: bytes) -> int:
    try:
        lines = header.decode("ascii").split("\r\n")
    except UnicodeDecodeError:
        raise MalformedMessage("Header is not ASCII", header)

    headers = {}

    for line in lines:
        if not line:
            continue

        k, sep, v = line.partition(":")

        if not sep:
            raise MalformedMessage("Invalid header line", header)

        headers[k.strip().lower()] = v.strip()

    content_length = headers.get("content-length")

    if content_length is None:
        raise MalformedMessage("Missing Content-Length", header)

    try:
        n = int(content_length)
    except ValueError:
        raise MalformedMessage("Invalid Content-Length", header)

    if n < 0:
        raise MalformedMessage("Invalid Content-Length", header)

    return n


class MessageReader:
    """
    Incremental decoder for a stream of framed messages.

    Bytes are fed as they arrive, split at arbitrary offsets;
    a message is only returned once its frame is complete.
    """

    def __init__(self):
        self._buffer = bytearray()
        # Content-Length of the frame being read; None while reading a header.
        self._content_length: Optional[int] = None
        # Set after a bad header: the body of that frame has an unknown length.
        self._resync = False

    def feed(self, data: bytes):
        self._buffer.extend(data)

    def buffered(self) -> int:
        return len(self._buffer)

    def _skip_to_next_frame(self) -> bool:
        """
        Drop bytes up to the next Content-Length header.

        Returns False if there's no header in the buffer yet.
        """
        match = CONTENT_LENGTH_PATTERN.search(self._buffer)

        if match is None:
            # Keep a tail which could be the start of a split header.
            keep = len(CONTENT_LENGTH_PATTERN.pattern) - 1

            del self._buffer[: max(len(self._buffer) - keep, 0)]

            return False

        del self._buffer[: match.start()]

        self._resync = False

        return True

    def next_message(self) -> Optional[Dict[str, Any]]:
        """
        Returns the next message, or None if more data is needed.

        Raises MalformedMessage if a frame can't be decoded;
        the frame is consumed, so reading can continue with the next one.
        """

        # -- RESYNC

        if self._resync and not self._skip_to_next_frame():
            return None

        # -- HEADER

        if self._content_length is None:
            i = self._buffer.find(HEADER_SEPARATOR)

            if i == -1:
                if len(self._buffer) > MAX_HEADER_SIZE:
                    raw = bytes(self._buffer)
                    self._buffer.clear()
                    self._resync = True
                    raise MalformedMessage("Header too large", raw)

                return None

            header = bytes(self._buffer[:i])

            del self._buffer[: i + len(HEADER_SEPARATOR)]

            try:
                self._content_length = _parse_header(header)
            except MalformedMessage:
                self._resync = True
                raise

        # -- CONTENT

        n = self._content_length

        if len(self._buffer) < n:
            return None

        content = bytes(self._buffer[:n])

        del self._buffer[:n]

        self._content_length = None

        try:
            message = json.loads(content.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise MalformedMessage("Failed to decode message", content)

        if not isinstance(message, dict):
            raise MalformedMessage("Message is not an object", content)

        return message


def decode(reader: MessageReader) -> Optional[Dict[str, Any]]:
    return reader.next_message()
