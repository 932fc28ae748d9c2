import json
import logging
import os
import threading
from collections import deque
from enum import Enum, auto
from pathlib import Path
from typing import (
    Any,
    Callable,
    Deque,
    Dict,
    Iterator,
    List,
    Optional,
    Set,
    Tuple,
    Union,
    cast,
)
from urllib.parse import unquote, urlparse

import parley_transport
from parley_codec import (
    MessageKind,
    MessageReader,
    encode,
    error_response,
    get_in,
    message_kind,
    notification,
    request,
    response,
)
from parley_errors import (
    MalformedMessage,
    SpawnError,
    TransportClosed,
    kERROR_METHOD_NOT_FOUND,
    kERROR_REQUEST_CANCELLED,
    kERROR_TRANSPORT_CLOSED,
)
from parley_rpc import (
    Correlator,
    DispatchRegistry,
    EventListener,
    MessageListener,
    ResponseCallback,
)
from parley_typing import (
    LSPDidChangeTextDocumentParams,
    LSPDidCloseTextDocumentParams,
    LSPDidOpenTextDocumentParams,
    LSPInitializeResult,
    LSPMessageType,
    LSPResponseMessage,
    LSPServerCapabilities,
    LSPServerInfo,
    LSPTextDocumentPositionParams,
    ServerConfig,
)

# https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#completionItemKind
kCOMPLETION_ITEM_KIND = {
    1: "Text",
    2: "Method",
    3: "Function",
    4: "Constructor",
    5: "Field",
    6: "Variable",
    7: "Class",
    8: "Interface",
    9: "Module",
    10: "Property",
    11: "Unit",
    12: "Value",
    13: "Enum",
    14: "Keyword",
    15: "Snippet",
    16: "Color",
    17: "File",
    18: "Reference",
    19: "Folder",
    20: "EnumMember",
    21: "Constant",
    22: "Struct",
    23: "Event",
    24: "Operator",
    25: "TypeParameter",
}

# Methods which are sent regardless of the handshake.
kLIFECYCLE_METHODS = {"initialize", "shutdown", "exit"}

# Spawns a transport for a server config.
Spawn = Callable[[ServerConfig, logging.Logger], "parley_transport.ProcessTransport"]


def path_to_uri(path: str) -> str:
    return Path(path).as_uri()


def uri_to_path(uri: str) -> str:
    return unquote(urlparse(uri).path)


def provider_enabled(provider: Optional[Union[bool, dict]]) -> bool:
    """
    A provider capability is a boolean or an options object; an empty options object enables it.
    """
    return provider is not None and provider is not False


def textDocumentSyncOptions(
    textDocumentSync: Optional[Union[dict, int]],
) -> Dict[str, Any]:
    if textDocumentSync is None:
        return {
            "openClose": False,
            "change": 0,
        }

    elif isinstance(textDocumentSync, int):
        return {
            "openClose": False if textDocumentSync == 0 else True,
            "change": textDocumentSync,
        }

    else:
        return textDocumentSync


def _drain(queue: Deque) -> Iterator:
    """
    Pop the items which were queued when draining started.

    Items appended meanwhile wait for the next tick;
    stops early if the queue is cleared.
    """
    for _ in range(len(queue)):
        if not queue:
            return

        yield queue.popleft()


class LanguageServerStatus(Enum):
    """Represents the lifecycle state of the language server.

    State transitions:
    UNINITIALIZED -> INITIALIZING -> INITIALIZED -> SHUTTING_DOWN -> TERMINATED

    TERMINATED can be reached from any state: the process died,
    initialization failed, or the host shut the server down.
    """

    UNINITIALIZED = auto()  # Initialize request not sent yet
    INITIALIZING = auto()  # Initialize request sent, waiting for response
    INITIALIZED = auto()  # Successfully initialized and ready for requests
    SHUTTING_DOWN = auto()  # Shutdown requested by the host
    TERMINATED = auto()  # Process is gone; the client can't be used anymore


class LanguageServerClient:
    """One running language server and its protocol state.

    Nothing is written or dispatched when a message is pushed:
    outgoing notifications and requests, and incoming responses and errors,
    wait in four FIFO queues which are drained once per `tick`.

    Traffic pushed before the initialize handshake completes is deferred,
    and sent in order right after the 'initialized' notification.

    Thread Safety:
        - A single RLock (_lock) protects state, queues and pending requests
        - Hosts may push from any thread; `tick` is called by the scheduler
    """

    def __init__(
        self,
        logger: logging.Logger,
        config: ServerConfig,
        spawn: Optional[Spawn] = None,
        json_logger: Optional[logging.Logger] = None,
        prettify_json: bool = False,
    ):
        self._lock = threading.RLock()
        self._logger = logger
        self._json_logger = json_logger
        self._prettify_json = prettify_json
        self._config = config
        self._name = config["name"]
        self._spawn = spawn or parley_transport.spawn
        self._status = LanguageServerStatus.UNINITIALIZED
        self._transport: Optional[parley_transport.ProcessTransport] = None
        self._server_info: Optional[LSPServerInfo] = None
        self._server_capabilities: Optional[LSPServerCapabilities] = None
        self._reader = MessageReader()
        self._correlator = Correlator(logger, self._name, self)
        self._registry = DispatchRegistry(logger, self._name)
        self._notifications: Deque[Tuple[str, Any]] = deque()
        self._requests: Deque[
            Tuple[str, Any, Optional[ResponseCallback], Optional[float]]
        ] = deque()
        self._responses: Deque[Dict[str, Any]] = deque()
        self._errors: Deque[Dict[str, Any]] = deque()
        self._deferred: Deque[Tuple[Deque, Tuple]] = deque()
        self._open_documents: Set[str] = set()
        # Torn down by `tick` once it releases the lock.
        self._teardown_reason: Optional[str] = None

    def __str__(self):
        return f"{self._name} ({self._status.name})"

    # -- Config

    @property
    def name(self) -> str:
        return self._name

    @property
    def config(self) -> ServerConfig:
        return self._config

    @property
    def file_patterns(self) -> List[str]:
        return self._config.get("file_patterns", [])

    @property
    def settings(self) -> Any:
        return self._config.get("settings")

    @property
    def verbose(self) -> bool:
        return bool(self._config.get("verbose"))

    @property
    def language(self) -> str:
        return self._config.get("language") or self._name

    # -- State

    def server_status(self) -> LanguageServerStatus:
        with self._lock:
            return self._status

    def is_server_initializing(self) -> bool:
        return self.server_status() == LanguageServerStatus.INITIALIZING

    def is_server_initialized(self) -> bool:
        """
        Returns True if server is up and running and successfully processed an 'initialize' request.
        """
        return self.server_status() == LanguageServerStatus.INITIALIZED

    def is_server_terminated(self) -> bool:
        return self.server_status() == LanguageServerStatus.TERMINATED

    def capabilities(self) -> Optional[LSPServerCapabilities]:
        return self._server_capabilities

    def server_info(self) -> Optional[LSPServerInfo]:
        return self._server_info

    def pending_requests(self) -> int:
        with self._lock:
            return len(self._correlator)

    def support_method(self, method: str) -> Optional[bool]:
        if self._server_capabilities is None:
            return None

        if method == "textDocument/completion":
            return provider_enabled(self._server_capabilities.get("completionProvider"))
        elif method == "textDocument/definition":
            return provider_enabled(self._server_capabilities.get("definitionProvider"))
        elif method == "textDocument/declaration":
            return provider_enabled(self._server_capabilities.get("declarationProvider"))
        elif method == "textDocument/typeDefinition":
            return provider_enabled(self._server_capabilities.get("typeDefinitionProvider"))
        elif method == "textDocument/implementation":
            return provider_enabled(self._server_capabilities.get("implementationProvider"))
        elif method == "textDocument/didOpen" or method == "textDocument/didClose":
            options = textDocumentSyncOptions(
                self._server_capabilities.get("textDocumentSync")
            )
            return options.get("openClose", False)
        elif method == "textDocument/didChange":
            options = textDocumentSyncOptions(
                self._server_capabilities.get("textDocumentSync")
            )
            return options.get("change", 0) != 0
        else:
            return False

    def completion_trigger_characters(self) -> List[str]:
        return get_in(
            self._server_capabilities,
            "completionProvider",
            "triggerCharacters",
            default=[],
        )

    def completion_item_kind(self, kind: Optional[int]) -> Optional[str]:
        return kCOMPLETION_ITEM_KIND.get(kind) if kind is not None else None

    # -- Listeners

    def add_event_listener(self, name: str, callback: EventListener):
        """
        Listen to a lifecycle event: 'initialized' or 'shutdown'.

        callback is called with this client.
        """
        self._registry.on_event(name, callback)

    def add_message_listener(self, method: str, callback: MessageListener):
        """
        Listen to a server notification or request.

        callback is called with this client and the message's params.
        """
        self._registry.on_method(method, callback)

    # -- Logging

    def log(self, message: str, level: int = logging.INFO):
        self._logger.log(level, f"[{self._name}] {message}")

    def _dumps(self, message: Any) -> str:
        if self._prettify_json:
            return json.dumps(message, indent=2)

        return json.dumps(message)

    def _log_json(self, direction: str, message: Any):
        if self._json_logger:
            self._json_logger.debug(f"[{self._name}] {direction} {self._dumps(message)}")

    # -- Lifecycle

    def start(self):
        """
        Spawn the server process.

        Raises SpawnError if the server can't be launched.
        """
        with self._lock:
            if self._transport is not None:
                return

            if self._status != LanguageServerStatus.UNINITIALIZED:
                raise SpawnError(f"{self._name} - Can't start a {self._status.name} server")

            self._transport = self._spawn(self._config, self._logger)

    def initialize(
        self,
        root_uri: Optional[str] = None,
        client_name: str = "Parley",
        client_version: str = "0.1.0",
        callback: Optional[ResponseCallback] = None,
    ):
        """
        The initialize request is sent as the first request from the client to the server.
        Until the server has responded to the initialize request with an InitializeResult,
        the client must not send any additional requests or notifications to the server.

        Spawns the server process if it's not running yet; raises SpawnError if it can't be launched.

        https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#initialize
        """

        with self._lock:
            if self._status != LanguageServerStatus.UNINITIALIZED:
                self._logger.warning(
                    f"[{self._name}] Cannot initialize - already in state {self._status.name}"
                )
                return

            self.start()

            root_path = uri_to_path(root_uri) if root_uri else None

            params = {
                "processId": os.getpid(),
                "clientInfo": {
                    "name": client_name,
                    "version": client_version,
                },
                # The rootPath of the workspace. Is null if no folder is open.
                # Deprecated in favour of rootUri.
                "rootPath": root_path,
                # The rootUri of the workspace. Is null if no folder is open.
                "rootUri": root_uri,
                "workspaceFolders": (
                    [{"name": Path(root_path).name, "uri": root_uri}]
                    if root_path
                    else None
                ),
                "initializationOptions": self._config.get("initializationOptions"),
                "trace": "off",
                "capabilities": {
                    "textDocument": {
                        "synchronization": {
                            "dynamicRegistration": False,
                            # Documents are synced by always sending the full content of the document.
                            "change": 1,
                        },
                        "completion": {
                            "completionItem": {
                                "snippetSupport": False,
                            },
                        },
                        "definition": {"linkSupport": False},
                        "declaration": {"linkSupport": False},
                        "typeDefinition": {"linkSupport": False},
                        "implementation": {"linkSupport": False},
                    },
                },
            }

            self._status = LanguageServerStatus.INITIALIZING

            self._logger.debug(f"[{self._name}] Initializing ⏳")

            def _callback(session, response: LSPResponseMessage):
                if error := response.get("error"):
                    if callback:
                        callback(session, response)

                    # Cancelled by shutdown or teardown; already on the way out.
                    if not self.is_server_initializing():
                        return

                    # Without a capable server there's nothing left to do.
                    self._logger.error(
                        f"[{self._name}] Initialization failed: "
                        f"code={error.get('code')}, message={error.get('message')} 🔴"
                    )

                    self._teardown_reason = "Initialization failed"

                    return

                with self._lock:
                    if self._status != LanguageServerStatus.INITIALIZING:
                        return

                    self._status = LanguageServerStatus.INITIALIZED

                    if result := cast(LSPInitializeResult, response.get("result")):
                        self._server_capabilities = result.get("capabilities") or {}
                        self._server_info = result.get("serverInfo")
                    else:
                        self._server_capabilities = {}

                    self._logger.info(f"[{self._name}] Initialized 🚀")

                    # The initialized notification is sent from the client to the server
                    # after the client received the result of the initialize request
                    # but before the client is sending any other request or notification to the server.
                    #
                    # https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#initialized
                    self._notifications.append(("initialized", {}))

                    while self._deferred:
                        queue, item = self._deferred.popleft()
                        queue.append(item)

                if callback:
                    callback(session, response)

                self._registry.fire_event("initialized", self)

            self._requests.append(("initialize", params, _callback, None))

    def shutdown(self, timeout: float = 5.0):
        """
        Shut the server down and release its process.

        Pending requests are cancelled. If the server is still alive,
        this client sends 'shutdown' and 'exit' without waiting for the response.

        https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#shutdown
        """

        with self._lock:
            if self._status in (
                LanguageServerStatus.SHUTTING_DOWN,
                LanguageServerStatus.TERMINATED,
            ):
                return

            self._logger.info(f"Shutdown {self._name}")

            was_initialized = self._status == LanguageServerStatus.INITIALIZED

            self._status = LanguageServerStatus.SHUTTING_DOWN

            self._correlator.fail_all(
                kERROR_REQUEST_CANCELLED,
                f"{self._name} is shutting down",
            )

            self._clear_queues()

            transport = self._transport

            if was_initialized and transport is not None and transport.is_alive():
                try:
                    self._write(request(self._correlator.next_id(), "shutdown"))
                    self._write(notification("exit"))
                except TransportClosed as e:
                    self._logger.debug(f"[{self._name}] {e}")

        self.teardown("Shutdown", timeout)

    def teardown(self, reason: str, timeout: float = 5.0):
        """
        Fail pending requests, drop queued messages and release the server process.

        Idempotent; fires the 'shutdown' event once.
        """
        with self._lock:
            if self._status == LanguageServerStatus.TERMINATED:
                return

            self._status = LanguageServerStatus.TERMINATED

            self._correlator.fail_all(kERROR_TRANSPORT_CLOSED, f"{self._name}: {reason}")

            self._clear_queues()

            self._open_documents.clear()

            transport = self._transport

        if transport is not None:
            transport.close(timeout)

        self._logger.info(f"[{self._name}] Terminated; {reason}")

        self._registry.fire_event("shutdown", self)

    def _clear_queues(self):
        self._notifications.clear()
        self._requests.clear()
        self._responses.clear()
        self._errors.clear()
        self._deferred.clear()

    # -- Outgoing

    def _put(self, queue: Deque, item: Tuple, method: str) -> bool:
        with self._lock:
            if self._status in (
                LanguageServerStatus.SHUTTING_DOWN,
                LanguageServerStatus.TERMINATED,
            ):
                self._logger.warning(
                    f"Server {self._name} was shutdown; Will drop {method}"
                )
                return False

            if (
                self._status != LanguageServerStatus.INITIALIZED
                and method not in kLIFECYCLE_METHODS
            ):
                self._logger.debug(
                    f"Server {self._name} is not initialized; Will defer {method}"
                )
                self._deferred.append((queue, item))
                return True

            queue.append(item)

            return True

    def push_notification(self, method: str, params: Optional[Any] = None) -> bool:
        """
        Enqueue a notification; it's written on the next tick.

        Returns False if the notification was dropped.
        """
        return self._put(self._notifications, (method, params), method)

    def push_request(
        self,
        method: str,
        params: Optional[Any] = None,
        callback: Optional[ResponseCallback] = None,
        timeout: Optional[float] = None,
    ) -> bool:
        """
        Enqueue a request; it's written on the next tick.

        callback is called with this client and the response message,
        once the response - or an error - is received.
        Failures are delivered as error responses; see `parley_errors.failure`.

        Returns False if the request was dropped.
        """
        if timeout is None:
            timeout = self._config.get("request_timeout")

        return self._put(
            self._requests,
            (method, params, callback, timeout),
            method,
        )

    def _write(self, message: LSPMessageType):
        if self._transport is None:
            raise TransportClosed(f"{self._name} - Server is not running")

        self._log_json("-->", message)

        self._transport.write(encode(message))

    # -- Incoming

    def read_messages(self) -> int:
        """
        Read and decode whatever the server wrote so far.

        Decoded messages are queued, not dispatched.
        Returns the number of messages queued.
        """
        if self._transport is None:
            return 0

        for line in self._transport.read_stderr():
            self._logger.debug(f"[{self._name}] stderr: {line}")

        if (data := self._transport.read_available()) is None:
            return 0

        self._reader.feed(data)

        n = 0

        while True:
            try:
                message = self._reader.next_message()
            except MalformedMessage as e:
                # Drop the frame; an 'in-flight' request won't have its callback called.
                self._logger.error(f"[{self._name}] {e}")
                continue

            if message is None:
                break

            self._log_json("<--", message)

            if message_kind(message) == MessageKind.ERROR:
                self._errors.append(message)
            else:
                self._responses.append(message)

            n += 1

        return n

    # -- Tick

    def process_notifications(self) -> int:
        n = 0

        for method, params in _drain(self._notifications):

            try:
                self._write(notification(method, params))
            except TransportClosed as e:
                self._logger.error(f"[{self._name}] Can't send {method}: {e}")
            else:
                n += 1

        return n

    def process_requests(self) -> int:
        n = 0

        for method, params, callback, timeout in _drain(self._requests):

            id = self._correlator.next_id()

            # Registered before it's written, so a write failure fails it on teardown.
            self._correlator.register(id, method, callback, timeout)

            try:
                self._write(request(id, method, params))
            except TransportClosed as e:
                self._logger.error(f"[{self._name}] Can't send {method}: {e}")
            else:
                n += 1

        return n

    def process_responses(self) -> int:
        n = 0

        for message in _drain(self._responses):

            kind = message_kind(message)

            if kind == MessageKind.RESPONSE:
                if self.verbose:
                    self.log(f"Response: {self._dumps(message)}")

                self._correlator.resolve(message.get("id"), cast(LSPResponseMessage, message))

            elif kind == MessageKind.NOTIFICATION:
                self._registry.fire_method(message["method"], self, message.get("params"))

            else:
                self._handle_server_request(message)

            n += 1

        return n

    def process_errors(self) -> int:
        n = 0

        for message in _drain(self._errors):

            error = message.get("error") or {}

            if self.verbose:
                self.log(f"Error: {self._dumps(message)}")

            if message.get("id") is None:
                # E.g. the server couldn't parse a request - there's nothing to resolve.
                self._logger.error(
                    f"[{self._name}] Error: code={get_in(error, 'code')}, message={get_in(error, 'message')}"
                )
            else:
                self._correlator.resolve(message["id"], cast(LSPResponseMessage, message))

            n += 1

        return n

    def process_timeouts(self) -> int:
        return self._correlator.expire()

    def _handle_server_request(self, message: Dict[str, Any]):
        method = message["method"]

        handled = self._registry.fire_method(method, self, message.get("params"))

        # Every processed request must send a response back to the sender of the request.
        if handled:
            reply = response(message["id"], None)
        else:
            reply = error_response(
                message["id"],
                kERROR_METHOD_NOT_FOUND,
                f"Unhandled method {method}",
            )

        try:
            self._write(reply)
        except TransportClosed as e:
            self._logger.error(f"[{self._name}] Can't reply to {method}: {e}")

    def tick(self):
        """
        Drain the queues once: notifications, requests, responses, then errors.

        Tears the client down if the server process is gone or initialization failed.
        """
        with self._lock:
            if self._status == LanguageServerStatus.TERMINATED or self._transport is None:
                return

            self.read_messages()
            self.process_notifications()
            self.process_requests()
            self.process_responses()
            self.process_errors()
            self.process_timeouts()

            reason = self._teardown_reason

            alive = self._transport.is_alive()

        # Closing the transport waits for the process; never with the lock held.
        if reason is None and not alive:
            reason = f"Server process terminated ({self._transport.returncode()})"

        if reason is not None:
            self.teardown(reason)

    # -- Text Document

    def textDocument_didOpen(self, params: LSPDidOpenTextDocumentParams):
        """
        The document open notification is sent from the client to the server
        to signal newly opened text documents.

        https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#textDocument_didOpen
        """

        # An open notification must not be sent more than once without a corresponding close notification send before.
        textDocument_uri = params["textDocument"]["uri"]

        with self._lock:
            if textDocument_uri in self._open_documents:
                return

            if self.push_notification("textDocument/didOpen", params):
                self._open_documents.add(textDocument_uri)

    def textDocument_didClose(self, params: LSPDidCloseTextDocumentParams):
        """
        https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#textDocument_didClose
        """

        textDocument_uri = params["textDocument"]["uri"]

        with self._lock:
            # A close notification requires a previous open notification to be sent.
            if textDocument_uri not in self._open_documents:
                return

            self.push_notification("textDocument/didClose", params)

            self._open_documents.remove(textDocument_uri)

    def textDocument_didChange(self, params: LSPDidChangeTextDocumentParams):
        """
        https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#textDocument_didChange
        """

        # Before a client can change a text document it must claim
        # ownership of its content using the textDocument/didOpen notification.
        if params["textDocument"]["uri"] not in self._open_documents:
            return

        self.push_notification("textDocument/didChange", params)

    def is_document_open(self, uri: str) -> bool:
        return uri in self._open_documents

    def textDocument_completion(
        self,
        params: LSPTextDocumentPositionParams,
        callback: ResponseCallback,
    ):
        """
        https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#textDocument_completion
        """
        self.push_request("textDocument/completion", params, callback)

    def textDocument_goto(
        self,
        method: str,
        params: LSPTextDocumentPositionParams,
        callback: ResponseCallback,
    ):
        """
        Request the location(s) of the symbol at a position.

        method is one of 'definition', 'declaration', 'typeDefinition' or 'implementation'.

        https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#textDocument_definition
        """
        self.push_request(f"textDocument/{method}", params, callback)
