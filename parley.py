import copy
import logging
import os
import re
import threading
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

import parley_transport
from parley_client import (
    LanguageServerClient,
    Spawn,
    path_to_uri,
    provider_enabled,
    uri_to_path,
)
from parley_codec import get_in
from parley_errors import SpawnError, UnsupportedCapability, failure
from parley_typing import (
    LSPCompletionItem,
    LSPRange,
    LSPResponseMessage,
    LSPTextDocumentItem,
    LSPTextDocumentPositionParams,
    ParleyCompletions,
    ParleyDocument,
    ParleySettings,
    ServerConfig,
)

__version__ = "0.1.0"

# -- Logging

logging_formatter = logging.Formatter(fmt="[{name}] {levelname} {message}", style="{")

# Handler to log on the Console.
console_logging_handler = logging.StreamHandler()
console_logging_handler.setFormatter(logging_formatter)

# Logger used to log 'everything-plugin' - except LSP stuff. (See logger below)
plugin_logger = logging.getLogger("parley")
plugin_logger.propagate = False

# Logger used by the LSP client.
client_logger = logging.getLogger("parley.Client")
client_logger.propagate = False

# Logger used to log every JSON message sent and received; See setting 'log_file'.
json_logger = logging.getLogger("parley.Client.json")
json_logger.propagate = False

_json_logging_handler: Optional[logging.Handler] = None


# -- CONSTANTS

kSETTING_SERVERS = "servers"

kCLIENT_NAME = "Parley"

# Scan the fastest possible while not eating too much CPU.
kFOCUSED_INTERVAL = 0.01

# If window is unfocused lower the rate to lower CPU usage.
kUNFOCUSED_INTERVAL = 1.0

# Goto methods, by precedence, and the capability which enables each.
kGOTO_DEFINITION_METHODS = [
    ("definition", "definitionProvider"),
    ("declaration", "declarationProvider"),
    ("typeDefinition", "typeDefinitionProvider"),
]

kGOTO_IMPLEMENTATION_METHODS = [
    ("implementation", "implementationProvider"),
]

# (line1, col1, line2, col2) - 1-indexed.
Selection = Tuple[int, int, int, int]


class Host(Protocol):
    """
    The editor Parley works for.
    """

    def complete(self, symbols: ParleyCompletions) -> None:
        ...

    def open_file(self, path: str, line: int, col: int) -> None:
        ...

    def add_completion_trigger(
        self,
        name: str,
        file_patterns: List[str],
        characters: List[str],
    ) -> None:
        ...

    def window_has_focus(self) -> bool:
        ...

    def project_directory(self) -> Optional[str]:
        ...


## -- API


def setting(settings: Optional[ParleySettings], k: str, not_found: Any):
    """
    Get setting k from settings.

    Returns not_found if setting k is is not set.
    """
    if settings is None:
        return not_found

    return settings.get(k, not_found)


def setup_logging(settings: Optional[ParleySettings] = None):
    global _json_logging_handler

    plugin_logger.addHandler(console_logging_handler)
    plugin_logger.setLevel(setting(settings, "logger.plugin.level", "INFO"))

    client_logger.addHandler(console_logging_handler)
    client_logger.setLevel(setting(settings, "logger.client.level", "INFO"))

    if log_file := setting(settings, "log_file", None):
        _json_logging_handler = logging.FileHandler(log_file, encoding="utf-8")
        _json_logging_handler.setFormatter(logging_formatter)

        json_logger.addHandler(_json_logging_handler)
        json_logger.setLevel("DEBUG")


def teardown_logging():
    global _json_logging_handler

    plugin_logger.removeHandler(console_logging_handler)
    client_logger.removeHandler(console_logging_handler)

    if _json_logging_handler is not None:
        json_logger.removeHandler(_json_logging_handler)
        _json_logging_handler.close()
        _json_logging_handler = None


def matches_any(filename: str, patterns: List[str]) -> bool:
    for pattern in patterns:
        if re.search(pattern, filename):
            return True

    return False


def file_extension(filename: str) -> str:
    return os.path.splitext(filename)[1].lstrip(".")


def range_to_selection(range: LSPRange) -> Tuple[int, int]:
    """
    Returns 1-indexed (line, col) of the range's start.
    """
    return (
        get_in(range, "start", "line", default=0) + 1,
        get_in(range, "start", "character", default=0) + 1,
    )


def document_uri(doc: ParleyDocument) -> str:
    return path_to_uri(os.path.abspath(doc["filename"]))


def text_document_item(doc: ParleyDocument) -> LSPTextDocumentItem:
    """
    An item to transfer a text document from the client to the server.

    https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#textDocumentItem
    """
    return {
        "uri": document_uri(doc),
        "languageId": doc.get("languageId") or file_extension(doc["filename"]),
        "version": doc.get("version", 0),
        "text": doc.get("text", ""),
    }


def position_params(
    doc: ParleyDocument,
    line: int,
    col: int,
) -> LSPTextDocumentPositionParams:
    """
    Position params for 1-indexed `line` and `col`.

    https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#textDocumentPositionParams
    """
    return {
        "textDocument": {
            "uri": document_uri(doc),
        },
        "position": {
            "line": line - 1,
            "character": col - 1,
        },
    }


def completion_items(
    server: LanguageServerClient,
    items: List[LSPCompletionItem],
) -> Dict[str, str]:
    """
    Returns a mapping of label to detail.

    The last item with a given label wins.
    """
    symbols = {}

    for item in items or []:
        if not isinstance(item, dict):
            continue

        label = (
            item.get("label")
            or get_in(item, "textEdit", "newText")
            or item.get("insertText")
        )

        if not label:
            continue

        detail = item.get("detail")

        info = detail or server.completion_item_kind(item.get("kind")) or ""

        # Some servers (clangd) embed the signature in the label:
        # insert text is the actual symbol, and the label becomes the detail.
        insert_text = item.get("insertText")

        if item.get("label") and insert_text and len(item["label"]) > len(insert_text):
            label = insert_text
            info = item["label"]

            if detail:
                info = f"{info}: {detail}"

        symbols[label] = info

    return symbols


# ---------------------------------------------------------------------------------------


class ClientRegistry:
    """
    Registered server configs and the clients running them - at most one client per server name.
    """

    def __init__(
        self,
        logger: logging.Logger = client_logger,
        spawn: Optional[Spawn] = None,
        json_logger: Optional[logging.Logger] = None,
        prettify_json: bool = False,
    ):
        self._lock = threading.RLock()
        self._logger = logger
        self._spawn = spawn or parley_transport.spawn
        self._json_logger = json_logger
        self._prettify_json = prettify_json
        self._servers: Dict[str, ServerConfig] = {}
        self._running: Dict[str, LanguageServerClient] = {}
        self._on_start: List[Callable[[LanguageServerClient], None]] = []

    @property
    def servers(self) -> Dict[str, ServerConfig]:
        with self._lock:
            return dict(self._servers)

    @property
    def running(self) -> Dict[str, LanguageServerClient]:
        with self._lock:
            return dict(self._running)

    def add_server(self, config: ServerConfig):
        for k in ("name", "command", "file_patterns"):
            if not config.get(k):
                raise ValueError(f"Server config is missing '{k}': {config}")

        with self._lock:
            self._servers[config["name"]] = copy.deepcopy(config)

    def on_start(self, callback: Callable[[LanguageServerClient], None]):
        """
        callback is called with every new client, before it's initialized.
        """
        self._on_start.append(callback)

    def get_active_servers(self, filename: str) -> List[str]:
        """
        Returns names of running servers applicable to `filename`.
        """
        with self._lock:
            return [
                name
                for name, client in self._running.items()
                if matches_any(filename, client.file_patterns)
                and not client.is_server_terminated()
            ]

    def start_server(
        self,
        filename: str,
        project_directory: Optional[str] = None,
    ) -> List[LanguageServerClient]:
        """
        Start servers applicable to `filename` which are not running yet.

        Returns the clients started.
        """
        started = []

        with self._lock:
            for name, config in self._servers.items():
                if not matches_any(filename, config["file_patterns"]):
                    continue

                if name in self._running:
                    continue

                self._logger.info(f"Starting {name}")

                client = LanguageServerClient(
                    self._logger,
                    config,
                    spawn=self._spawn,
                    json_logger=self._json_logger,
                    prettify_json=self._prettify_json,
                )

                for callback in self._on_start:
                    callback(client)

                try:
                    client.initialize(
                        path_to_uri(project_directory) if project_directory else None,
                        kCLIENT_NAME,
                        __version__,
                    )
                except SpawnError as e:
                    self._logger.error(f"[{name}] {e}")
                    continue

                self._running[name] = client

                started.append(client)

        return started

    def process(self):
        """
        Tick every running client once; terminated clients are removed.
        """
        for name, client in self.running.items():
            try:
                client.tick()
            except Exception:
                self._logger.exception(f"[{name}] Error processing server")

            if client.is_server_terminated():
                with self._lock:
                    if self._running.get(name) is client:
                        del self._running[name]

                self._logger.debug(f"[{name}] Removed from running servers")

    def shutdown(self, timeout: float = 5.0):
        with self._lock:
            clients = list(self._running.values())
            self._running.clear()

        for client in clients:
            client.shutdown(timeout)


class LanguageFeatures:
    """
    Editor-facing features: document sync, completion and goto.
    """

    def __init__(
        self,
        registry: ClientRegistry,
        host: Host,
        logger: logging.Logger = plugin_logger,
    ):
        self._registry = registry
        self._host = host
        self._logger = logger

        registry.on_start(self._setup_client)

    def _log(self, server: LanguageServerClient, message: str):
        self._logger.info(f"[{server.name}] {message}")

    def _setup_client(self, client: LanguageServerClient):
        client.add_message_listener("window/logMessage", self._on_log_message)
        client.add_message_listener("window/showMessage", self._on_log_message)
        client.add_event_listener("initialized", self._on_initialized)

    def _on_log_message(self, server: LanguageServerClient, params):
        """
        https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#window_logMessage
        """
        if message := get_in(params, "message"):
            self._log(server, message)

    def _on_initialized(self, server: LanguageServerClient):
        self._log(server, "Initialized")

        if server.settings:
            # https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#workspace_didChangeConfiguration
            server.push_notification(
                "workspace/didChangeConfiguration",
                {"settings": server.settings},
            )

        if characters := server.completion_trigger_characters():
            if server.verbose:
                server.log(
                    f"Adding triggers for '{server.language}' - {', '.join(characters)}"
                )

            self._host.add_completion_trigger(
                server.language,
                server.file_patterns,
                characters,
            )

    def _active_clients(self, doc: ParleyDocument) -> List[LanguageServerClient]:
        running = self._registry.running

        return [
            running[name]
            for name in self._registry.get_active_servers(doc["filename"])
            if name in running
        ]

    def open_document(self, doc: ParleyDocument):
        self._registry.start_server(doc["filename"], self._host.project_directory())

        for client in self._active_clients(doc):
            client.textDocument_didOpen({"textDocument": text_document_item(doc)})

    def close_document(self, doc: ParleyDocument):
        for client in self._active_clients(doc):
            client.textDocument_didClose({"textDocument": {"uri": document_uri(doc)}})

    def request_completion(self, doc: ParleyDocument, line: int, col: int):
        for client in self._active_clients(doc):
            # Documents are synced by always sending the full content of the document.
            client.textDocument_didChange(
                {
                    "textDocument": {
                        "uri": document_uri(doc),
                        "version": doc.get("version", 0),
                    },
                    "contentChanges": [{"text": doc.get("text", "")}],
                    "syncKind": 1,
                }
            )

            supported = client.support_method("textDocument/completion")

            # Not initialized yet.
            if supported is None:
                continue

            if not supported:
                client.log(str(UnsupportedCapability("Completion")), logging.DEBUG)
                continue

            client.textDocument_completion(
                position_params(doc, line, col),
                self._on_completion,
            )

    def _on_completion(self, server: LanguageServerClient, response: LSPResponseMessage):
        if error := failure(response):
            server.log(f"Completion failed: {error}", logging.DEBUG)
            return

        # result: CompletionItem[] | CompletionList | null
        # If a CompletionItem[] is provided it is interpreted to be complete.
        result = response.get("result")

        if not result:
            return

        if isinstance(result, dict):
            if result.get("isIncomplete"):
                server.log("Completion list incomplete", logging.DEBUG)
                return

            items = result.get("items") or []
        else:
            items = result

        if not items:
            return

        self._host.complete(
            {
                "name": server.name,
                "files": server.file_patterns,
                "items": completion_items(server, items),
            }
        )

    def goto_symbol(
        self,
        doc: ParleyDocument,
        line: int,
        col: int,
        implementation: bool = False,
    ):
        for client in self._active_clients(doc):
            capabilities = client.capabilities()

            if capabilities is None:
                continue

            candidates = (
                kGOTO_IMPLEMENTATION_METHODS
                if implementation
                else kGOTO_DEFINITION_METHODS
            )

            method = next(
                (
                    method
                    for method, provider in candidates
                    if provider_enabled(capabilities.get(provider))
                ),
                None,
            )

            if method is None:
                feature = "implementation" if implementation else "definition"

                self._log(client, str(UnsupportedCapability(f"Goto {feature}")))
                continue

            client.textDocument_goto(
                method,
                position_params(doc, line, col),
                self._goto_callback(method),
            )

    def _goto_callback(self, method: str):
        def callback(server: LanguageServerClient, response: LSPResponseMessage):
            if error := failure(response):
                self._log(server, f"Goto {method} failed: {error}")
                return

            location = response.get("result")

            # TODO: Let the host pick one of multiple locations.
            if isinstance(location, list):
                location = location[0] if location else None

            # Location or LocationLink.
            uri = get_in(location, "uri") or get_in(location, "targetUri")

            if not uri:
                self._log(server, f"No {method} found")
                return

            range = get_in(location, "range") or get_in(location, "targetSelectionRange")

            line, col = range_to_selection(range)

            self._host.open_file(uri_to_path(uri), line, col)

        return callback

    # -- Host events

    def on_text_input(self, doc: ParleyDocument, selection: Selection):
        line1, col1, line2, col2 = selection

        if line1 == line2 and col1 == col2:
            self.request_completion(doc, line1, col1)

    # -- Commands

    def complete(self, doc: ParleyDocument, selection: Selection):
        self.on_text_input(doc, selection)

    def goto_definition(self, doc: ParleyDocument, selection: Selection):
        line1, col1, line2, col2 = selection

        if line1 == line2 and col1 == col2:
            self.goto_symbol(doc, line1, col1)

    def goto_implementation(self, doc: ParleyDocument, selection: Selection):
        line1, col1, line2, col2 = selection

        if line1 == line2 and col1 == col2:
            self.goto_symbol(doc, line1, col1, implementation=True)


class Scheduler:
    """
    Ticks every running server, without blocking the host.

    The tick interval is short while the host window has focus,
    and longer otherwise.
    """

    def __init__(
        self,
        registry: ClientRegistry,
        host: Optional[Host] = None,
        focused_interval: float = kFOCUSED_INTERVAL,
        unfocused_interval: float = kUNFOCUSED_INTERVAL,
        logger: logging.Logger = plugin_logger,
    ):
        self._registry = registry
        self._host = host
        self._focused_interval = focused_interval
        self._unfocused_interval = unfocused_interval
        self._logger = logger
        self._stopped = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def interval(self) -> float:
        if self._host is None or self._host.window_has_focus():
            return self._focused_interval

        return self._unfocused_interval

    def run_once(self):
        try:
            self._registry.process()
        except Exception:
            self._logger.exception("Scheduler tick error")

    def _run(self):
        self._logger.debug("Scheduler started 🟢")

        while not self._stopped.is_set():
            self.run_once()

            self._stopped.wait(self.interval())

        self._logger.debug("Scheduler stopped 🔴")

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.is_running():
            return

        self._stopped.clear()

        self._thread = threading.Thread(
            name="Scheduler",
            target=self._run,
            daemon=True,
        )
        self._thread.start()

    def stop(self, timeout: float = 5.0):
        self._stopped.set()

        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None


class Parley:
    """
    Parley, set up for a host: registry, features and scheduler.

    Hosts call `start` once loaded and `shutdown` before exiting.
    """

    def __init__(
        self,
        host: Host,
        settings: Optional[ParleySettings] = None,
        spawn: Optional[Spawn] = None,
    ):
        self.settings = settings or {}

        self.registry = ClientRegistry(
            client_logger,
            spawn=spawn,
            json_logger=json_logger if setting(settings, "log_file", None) else None,
            prettify_json=setting(settings, "prettify_json", False),
        )

        for config in setting(settings, kSETTING_SERVERS, []):
            self.registry.add_server(config)

        self.features = LanguageFeatures(self.registry, host)

        self.scheduler = Scheduler(
            self.registry,
            host,
            focused_interval=setting(settings, "focused_interval", kFOCUSED_INTERVAL),
            unfocused_interval=setting(
                settings, "unfocused_interval", kUNFOCUSED_INTERVAL
            ),
        )

    def start(self):
        setup_logging(self.settings)

        plugin_logger.debug("Plugin loaded")

        self.scheduler.start()

    def shutdown(self, timeout: float = 5.0):
        plugin_logger.debug("Plugin unloaded")

        self.scheduler.stop(timeout)

        self.registry.shutdown(timeout)

        teardown_logging()
