from typing import Optional

from parley_typing import LSPResponseError, LSPResponseMessage

# https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#errorCodes
kERROR_PARSE_ERROR = -32700
kERROR_INVALID_REQUEST = -32600
kERROR_METHOD_NOT_FOUND = -32601
kERROR_INVALID_PARAMS = -32602
kERROR_INTERNAL_ERROR = -32603
kERROR_REQUEST_CANCELLED = -32800

# Client-side failures, never sent by a server.
kERROR_TRANSPORT_CLOSED = -1
kERROR_REQUEST_TIMEOUT = -2


class ParleyError(Exception):
    pass


class SpawnError(ParleyError):
    """
    The server binary is missing or can't be launched.
    """


class TransportClosed(ParleyError):
    """
    The server process died or its pipe is broken.
    """


class WriteError(TransportClosed):
    pass


class MalformedMessage(ParleyError):
    """
    A frame that can't be decoded; `raw` holds its bytes for diagnostics.
    """

    def __init__(self, reason: str, raw: bytes = b""):
        super().__init__(f"{reason}: {raw[:200]!r}")
        self.reason = reason
        self.raw = raw


class ProtocolError(ParleyError):
    """
    The server answered a request with a JSON-RPC error object.
    """

    def __init__(self, code: int, message: str, data=None):
        super().__init__(f"code={code}, message={message}")
        self.code = code
        self.message = message
        self.data = data


class UnsupportedCapability(ParleyError):
    """
    A feature the server didn't advertise; reported, never sent.
    """

    def __init__(self, feature: str):
        super().__init__(f"{feature} not supported")
        self.feature = feature


class UnmatchedResponse(ParleyError):
    def __init__(self, id):
        super().__init__(f"No pending request with ID {id!r}")
        self.id = id


class RequestTimeout(ParleyError):
    pass


class RequestCancelled(ParleyError):
    pass


def error_object(code: int, message: str, data=None) -> LSPResponseError:
    return {
        "code": code,
        "message": message,
        "data": data,
    }


def failure(response: LSPResponseMessage) -> Optional[ParleyError]:
    """
    Returns the failure carried by `response`, or None if it's a successful response.

    Failures are delivered to request callbacks as values; this maps them to
    exception instances so callers can branch on the type without raising.
    """
    error = response.get("error")

    if not error:
        return None

    code = error.get("code")
    message = error.get("message") or ""

    if code == kERROR_TRANSPORT_CLOSED:
        return TransportClosed(message)
    elif code == kERROR_REQUEST_TIMEOUT:
        return RequestTimeout(message)
    elif code == kERROR_REQUEST_CANCELLED:
        return RequestCancelled(message)
    else:
        return ProtocolError(code, message, error.get("data"))
