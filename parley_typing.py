from typing import Any, Dict, List, Literal, Optional, TypedDict, Union


class ServerConfig(TypedDict, total=False):
    # Required: name, command, file_patterns.
    name: str
    command: List[str]
    # Regular expressions searched in the document's filename, e.g. r"\.py$".
    file_patterns: List[str]
    # Forwarded via 'workspace/didChangeConfiguration' once initialized.
    settings: Any
    initializationOptions: Any
    # Log raw JSON responses.
    verbose: bool
    # Name used when registering completion trigger characters with the host.
    language: str
    # Seconds before a pending request is failed with a timeout error.
    request_timeout: Optional[float]


class ParleySettings(TypedDict, total=False):
    servers: List[ServerConfig]
    # Set to a file to log all JSON messages.
    log_file: str
    # Break JSON for more readability on the log.
    prettify_json: bool
    focused_interval: float
    unfocused_interval: float


class ParleyDocument(TypedDict, total=False):
    # Absolute path of the document.
    filename: str
    # Defaults to the file extension.
    languageId: str
    version: int
    text: str


class ParleyCompletions(TypedDict):
    name: str
    files: List[str]
    # label -> detail
    items: Dict[str, str]


# -- LSP


class LSPMessage(TypedDict):
    jsonrpc: str


class LSPNotificationMessage(LSPMessage):
    """
    A notification message.

    A processed notification message must not send a response back. They work like events.

    https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#notificationMessage
    """

    method: str
    params: Optional[Any]


class LSPRequestMessage(LSPMessage):
    """
    A request message to describe a request between the client and the server.

    Every processed request must send a response back to the sender of the request.

    https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#requestMessage
    """

    id: Union[int, str]
    method: str
    params: Optional[Any]


class LSPResponseError(TypedDict):
    code: int
    message: str
    data: Optional[Any]


class LSPResponseMessage(TypedDict, total=False):
    """
    A Response Message sent as a result of a request.

    If a request doesn’t provide a result value the receiver of a request
    still needs to return a response message to conform to the JSON-RPC specification.

    The result property of the ResponseMessage should be set to null
    in this case to signal a successful request.

    https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#responseMessage
    """

    jsonrpc: str
    id: Optional[Union[int, str]]
    result: Optional[Any]
    error: Optional[LSPResponseError]


LSPMessageType = Union[
    LSPNotificationMessage,
    LSPRequestMessage,
    LSPResponseMessage,
]


class LSPServerInfo(TypedDict, total=False):
    # The name of the server as defined by the server.
    name: str

    # The server's version as defined by the server.
    version: Optional[str]


class LSPCompletionOptions(TypedDict, total=False):
    triggerCharacters: List[str]
    resolveProvider: bool


class LSPServerCapabilities(TypedDict, total=False):
    completionProvider: LSPCompletionOptions
    definitionProvider: Union[bool, Dict[str, Any]]
    declarationProvider: Union[bool, Dict[str, Any]]
    typeDefinitionProvider: Union[bool, Dict[str, Any]]
    implementationProvider: Union[bool, Dict[str, Any]]
    textDocumentSync: Union[int, Dict[str, Any]]


class LSPInitializeResult(TypedDict, total=False):
    # The capabilities the language server provides.
    capabilities: LSPServerCapabilities

    # Information about the server.
    serverInfo: Optional[LSPServerInfo]


class LSPTextDocumentIdentifier(TypedDict):
    """
    Text documents are identified using a URI. On the protocol level, URIs are passed as strings.

    https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#textDocumentIdentifier
    """

    uri: str


class LSPVersionedTextDocumentIdentifier(LSPTextDocumentIdentifier):
    """
    An identifier to denote a specific version of a text document.

    https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#versionedTextDocumentIdentifier
    """

    version: int


class LSPTextDocumentItem(TypedDict):
    """
    An item to transfer a text document from the client to the server.

    https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#textDocumentItem
    """

    uri: str
    languageId: str
    version: int
    text: str


class LSPPosition(TypedDict):
    """
    Position in a text document expressed as zero-based line and zero-based character offset.

    https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#position
    """

    line: int
    character: int


class LSPRange(TypedDict):
    """
    A range in a text document expressed as (zero-based) start and end positions.

    https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#range
    """

    start: LSPPosition
    end: LSPPosition


class LSPLocation(TypedDict):
    """
    Represents a location inside a resource, such as a line inside a text file.

    https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#location
    """

    uri: str
    range: LSPRange


class LSPTextDocumentContentChangeEventFull(TypedDict):
    text: str


class LSPDidOpenTextDocumentParams(TypedDict):
    textDocument: LSPTextDocumentItem


class LSPDidCloseTextDocumentParams(TypedDict):
    textDocument: LSPTextDocumentIdentifier


class LSPDidChangeTextDocumentParams(TypedDict, total=False):
    """
    https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#didChangeTextDocumentParams
    """

    textDocument: LSPVersionedTextDocumentIdentifier
    contentChanges: List[LSPTextDocumentContentChangeEventFull]
    syncKind: Literal[0, 1, 2]


class LSPTextDocumentPositionParams(TypedDict):
    """
    A parameter literal used in requests to pass a text document and a position inside that document.

    https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#textDocumentPositionParams
    """

    textDocument: LSPTextDocumentIdentifier
    position: LSPPosition


class LSPTextEdit(TypedDict):
    range: LSPRange
    newText: str


class LSPCompletionItem(TypedDict, total=False):
    """
    https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#completionItem
    """

    # The label of this completion item.
    # The label property is also by default the text that is inserted when selecting this completion.
    label: str

    # The kind of this completion item.
    kind: Optional[int]

    # A human-readable string with additional information about this item, like type or symbol information.
    detail: Optional[str]

    # A string that should be inserted into a document when selecting this completion.
    # When omitted the label is used as the insert text for this item.
    insertText: Optional[str]

    # An edit which is applied to a document when selecting this completion.
    textEdit: Optional[LSPTextEdit]


class LSPCompletionList(TypedDict):
    """
    https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#completionList
    """

    # This list is not complete. Further typing should result in recomputing this list.
    isIncomplete: bool

    # The completion items.
    items: List[LSPCompletionItem]


LSPCompletionResult = Union[
    LSPCompletionList,
    List[LSPCompletionItem],
    None,
]

# https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#textDocument_definition
LSPDefinitionResult = Union[
    LSPLocation,
    List[LSPLocation],
    None,
]
