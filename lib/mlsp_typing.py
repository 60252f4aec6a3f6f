from typing import Any, Callable, Dict, List, Literal, Optional, TypedDict, Union


class MlspServerConfig(TypedDict, total=False):
    # Program to start; also the connection identity when `shortName` is not set.
    cmd: str

    # Program arguments.
    args: List[str]

    # Name used to identify the connection (status bar, stop, logs).
    shortName: str

    # Passed verbatim as `initializationOptions` of the initialize request.
    initializationOptions: Any

    # Called once with the client after the server is initialized.
    # (Only available when configured from Python.)
    onInitialized: Callable[[Any], None]

    # Force (or disable) the completion post-filter for this server.
    filterCompletions: bool


class MlspSettings(TypedDict, total=False):
    languageServer: Dict[str, MlspServerConfig]
    defaultLanguageServer: Dict[str, MlspServerConfig]
    autostart: Dict[str, List[MlspServerConfig]]
    showDiagnostics: Dict[str, bool]
    tabAutocomplete: bool


# -- Messages


class LSPServerInfo(TypedDict, total=False):
    name: str
    version: Optional[str]


class LSPInitializeResult(TypedDict, total=False):
    """
    https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#initializeResult
    """

    # Capability name to a boolean, or to an options object.
    capabilities: Dict[str, Any]
    serverInfo: Optional[LSPServerInfo]


class LSPMessage(TypedDict):
    jsonrpc: str


class LSPNotificationMessage(LSPMessage):
    """
    Fire-and-forget; the receiver never replies.

    https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#notificationMessage
    """

    method: str
    params: Any


class LSPRequestMessage(LSPMessage):
    """
    https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#requestMessage
    """

    id: Union[int, str]
    method: str
    params: Any


class LSPResponseError(TypedDict, total=False):
    code: int
    message: str
    data: Optional[Any]


class LSPResponseMessage(TypedDict, total=False):
    """
    Either `result` or `error` is set; `result` may be null on success.

    https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#responseMessage
    """

    jsonrpc: str
    id: Optional[Union[int, str]]
    result: Optional[Any]
    error: LSPResponseError


# -- Documents


class LSPTextDocumentIdentifier(TypedDict):
    uri: str


class LSPVersionedTextDocumentIdentifier(LSPTextDocumentIdentifier):
    version: int


class LSPTextDocumentItem(TypedDict):
    """
    Sent with didOpen - the whole text of a document.

    https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#textDocumentItem
    """

    uri: str
    languageId: str
    version: int
    text: str


class LSPPosition(TypedDict):
    # Both zero-based.
    line: int
    character: int


class LSPRange(TypedDict):
    # End is exclusive.
    start: LSPPosition
    end: LSPPosition


class LSPLocation(TypedDict):
    uri: str
    range: LSPRange


class LSPTextDocumentContentChangeEventFull(TypedDict):
    text: str


class LSPTextDocumentContentChangeEventIncremental(TypedDict):
    range: LSPRange
    text: str


# A change without a range replaces the whole document.
#
# https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#textDocumentContentChangeEvent
LSPTextDocumentContentChangeEvent = Union[
    LSPTextDocumentContentChangeEventFull,
    LSPTextDocumentContentChangeEventIncremental,
]


class LSPTextEdit(TypedDict):
    """
    An insertion is a range where start == end; a deletion has an empty newText.

    https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#textEdit
    """

    range: LSPRange
    newText: str


# -- Diagnostics


class LSPCodeDescription(TypedDict):
    href: str


class LSPDiagnostic(TypedDict, total=False):
    """
    https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#diagnostic
    """

    range: LSPRange

    # 1 error, 2 warning, 3 information, 4 hint.
    severity: Optional[Literal[1, 2, 3, 4]]

    code: Optional[Union[int, str]]
    codeDescription: Optional[LSPCodeDescription]

    # Tool which reported the diagnostic, e.g. 'pyflakes'.
    source: Optional[str]

    message: str


class LSPPublishDiagnosticsParams(TypedDict, total=False):
    """
    https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#publishDiagnosticsParams
    """

    uri: str

    # Version of the document the diagnostics were computed for, if the server tracks it.
    version: Optional[int]

    diagnostics: List[LSPDiagnostic]


# -- Results


class LSPMarkupContent(TypedDict):
    kind: Literal["plaintext", "markdown"]
    value: str


class LSPHover(TypedDict, total=False):
    """
    https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#hover
    """

    # A string or a list of MarkedString are deprecated, but still sent by some servers.
    contents: Union[str, List[Any], LSPMarkupContent]
    range: LSPRange


class LSPCompletionItem(TypedDict, total=False):
    label: str
    kind: Optional[int]
    detail: Optional[str]

    # Falls back to `label` when absent.
    insertText: Optional[str]


class LSPCompletionList(TypedDict):
    isIncomplete: bool
    items: List[LSPCompletionItem]


# https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#textDocument_completion
LSPCompletionResult = Union[
    List[LSPCompletionItem],
    LSPCompletionList,
    None,
]


class LSPDocumentSymbol(TypedDict, total=False):
    """
    A symbol of the requested document - it has a range, not a location - with nested symbols.

    https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#documentSymbol
    """

    name: str
    detail: str
    kind: int
    range: LSPRange
    selectionRange: LSPRange
    children: List["LSPDocumentSymbol"]


class LSPSymbolInformation(TypedDict, total=False):
    name: str
    kind: int
    containerName: str
    location: LSPLocation


# https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#textDocument_documentSymbol
LSPDocumentSymbolResult = Union[
    List[LSPDocumentSymbol],
    List[LSPSymbolInformation],
    None,
]

# LocationLink[] is recognized but not followed.
#
# https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#textDocument_definition
LSPDefinitionResult = Union[
    LSPLocation,
    List[LSPLocation],
    List[Dict[str, Any]],
    None,
]

# https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#textDocument_formatting
LSPFormattingResult = Union[
    List[LSPTextEdit],
    None,
]
