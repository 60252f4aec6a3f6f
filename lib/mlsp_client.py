import codecs
import logging
import os
from enum import Enum, auto
from typing import Any, Callable, Dict, List, Optional, TypedDict, Union

import mlsp_results
from mlsp_diagnostics import DiagnosticsStore
from mlsp_edits import apply_text_edits, loc_offset
from mlsp_framing import MessageBuffer, encode
from mlsp_host import Editor, View
from mlsp_typing import (
    LSPCompletionResult,
    LSPDefinitionResult,
    LSPDocumentSymbolResult,
    LSPFormattingResult,
    LSPHover,
    LSPInitializeResult,
    LSPNotificationMessage,
    LSPPublishDiagnosticsParams,
    LSPRequestMessage,
    LSPResponseError,
    LSPResponseMessage,
    LSPServerInfo,
    LSPTextDocumentContentChangeEvent,
    LSPTextDocumentIdentifier,
    LSPTextDocumentItem,
    LSPVersionedTextDocumentIdentifier,
    MlspServerConfig,
)

# https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#messageType
kMESSAGE_TYPE_NAME = {
    1: "Error",
    2: "Warning",
    3: "Info",
    4: "Log",
    5: "Debug",
}

kCOMPLETION_TRIGGER_INVOKED = 1


def request(
    id: int,
    method: str,
    params: Optional[Any] = None,
) -> LSPRequestMessage:
    # Servers are allowed to omit params but some servers misbehave
    # when they are missing - an empty object is always sent instead.
    return {
        "jsonrpc": "2.0",
        "id": id,
        "method": method,
        "params": {} if params is None else params,
    }


def notification(
    method: str,
    params: Optional[Any] = None,
) -> LSPNotificationMessage:
    return {
        "jsonrpc": "2.0",
        "method": method,
        "params": {} if params is None else params,
    }


def response(id: Union[int, str], result: Any) -> LSPResponseMessage:
    return {
        "jsonrpc": "2.0",
        "id": id,
        "result": result,
    }


class LanguageServerStatus(Enum):
    """Represents the lifecycle state of a connection.

    State transitions:
    PENDING -> ACTIVE -> STOPPED
            -> STOPPED
    """

    PENDING = auto()  # Process started, initialize request sent
    ACTIVE = auto()  # Initialize response received, initialized notification sent
    STOPPED = auto()  # Stopped, process exited or failed to start


class OpenDocument(TypedDict):
    version: int


class RequestCorrelator:
    """
    Request ids and the method each pending request was sent for.

    Ids start at 0 and are never reused. A pending entry is consumed once - by its
    response - or dropped when the connection is torn down.
    """

    def __init__(self):
        self._next_id = 0
        self._pending: Dict[int, str] = {}

    def __len__(self):
        return len(self._pending)

    def __contains__(self, id):
        return id in self._pending

    def next_request(self, method: str) -> int:
        id = self._next_id

        self._next_id += 1

        self._pending[id] = method

        return id

    def resolve(self, id: Any) -> Optional[str]:
        """
        Returns the method of request `id`, or None if there's no such pending request.
        """
        if isinstance(id, bool) or not isinstance(id, int):
            return None

        return self._pending.pop(id, None)

    def clear(self) -> int:
        n = len(self._pending)

        self._pending.clear()

        return n


class LanguageServerClient:
    """
    One connection to a language server: its process, and its protocol state.

    Methods are meant to be called from a single thread; the process' output is
    delivered with `on_stdout`, `on_stderr` and `on_exit`.
    """

    def __init__(
        self,
        logger: logging.Logger,
        config: MlspServerConfig,
        editor: Editor,
        diagnostics: DiagnosticsStore,
        on_initialized: Optional[Callable[["LanguageServerClient"], None]] = None,
        on_stopped: Optional[Callable[["LanguageServerClient"], None]] = None,
        on_text_replaced: Optional[Callable[[View], None]] = None,
    ):
        self._logger = logger
        self._config = config
        self._name = config.get("shortName") or config["cmd"]
        self._editor = editor
        self._diagnostics = diagnostics
        self._on_initialized = on_initialized
        self._on_stopped = on_stopped
        self._on_text_replaced = on_text_replaced
        self._status = LanguageServerStatus.PENDING
        self._process = None
        self._buffer = MessageBuffer(logger, self._name)
        self._requests = RequestCorrelator()
        self._capabilities: Dict[str, Any] = {}
        self._server_info: Optional[LSPServerInfo] = None
        self._open_documents: Dict[str, OpenDocument] = {}
        self._stderr_decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._stderr = ""
        self._log_messages: List[str] = []

        self._result_handlers: Dict[str, Callable[[str, Any], None]] = {
            "initialize": self._handle_initialize,
            "textDocument/hover": self._handle_hover,
            "textDocument/formatting": self._handle_formatting,
            "textDocument/rangeFormatting": self._handle_formatting,
            "textDocument/completion": self._handle_completion,
            "textDocument/definition": self._handle_goto,
            "textDocument/declaration": self._handle_goto,
            "textDocument/typeDefinition": self._handle_goto,
            "textDocument/implementation": self._handle_goto,
            "textDocument/references": self._handle_references,
            "textDocument/documentSymbol": self._handle_document_symbol,
        }

        self._notification_handlers: Dict[str, Callable[[Any], None]] = {
            "textDocument/publishDiagnostics": self._handle_publish_diagnostics,
            "window/showMessage": self._handle_show_message,
            "window/logMessage": self._handle_log_message,
            "$/logTrace": self._handle_log_trace,
        }

    @property
    def name(self) -> str:
        return self._name

    @property
    def command(self) -> str:
        return self._config["cmd"]

    @property
    def status(self) -> LanguageServerStatus:
        return self._status

    @property
    def server_name(self) -> Optional[str]:
        if self._server_info:
            return self._server_info.get("name")

    @property
    def server_version(self) -> Optional[str]:
        if self._server_info:
            return self._server_info.get("version")

    @property
    def stderr(self) -> str:
        return self._stderr

    @property
    def log_messages(self) -> List[str]:
        return self._log_messages

    @property
    def pending_requests(self) -> RequestCorrelator:
        return self._requests

    def is_open(self, path: str) -> bool:
        return path in self._open_documents

    def document_version(self, path: str) -> Optional[int]:
        if document := self._open_documents.get(path):
            return document["version"]

    def open_documents(self) -> List[str]:
        return list(self._open_documents)

    def support_capability(self, capability: str) -> bool:
        # An options object - even an empty one - means supported.
        return self._capabilities.get(capability) not in (None, False)

    def log(self) -> str:
        """
        Returns what the server wrote to stderr, followed by the messages it asked to log.
        """
        return self._stderr + "".join(f"{message}\n" for message in self._log_messages)

    # -- Lifecycle

    def initialize(self, spawn: Callable[[List[str]], Any]) -> bool:
        """
        Starts the server with `spawn` and sends the initialize request.

        `spawn` is called with the program and its arguments; it returns the process
        (see `mlsp_process.ServerProcess`). Returns False if the process couldn't be started.

        https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#initialize
        """
        args = [self._config["cmd"], *self._config.get("args", [])]

        self._logger.info(f"[{self._name}] Starting `{' '.join(args)}`")

        try:
            self._process = spawn(args)
        except OSError as e:
            self._logger.error(f"[{self._name}] Failed to start server process: {e}")

            self._editor.message(f"Error: {e}")

            self._teardown()

            return False

        root_uri = mlsp_results.path_to_uri(os.getcwd())

        params = {
            "processId": os.getpid(),
            "rootUri": root_uri,
            "workspaceFolders": [{"name": "root", "uri": root_uri}],
            "capabilities": {
                "textDocument": {
                    "synchronization": {"didSave": True, "willSave": False},
                    "hover": {"contentFormat": ["plaintext"]},
                    "completion": {
                        "completionItem": {
                            "snippetSupport": False,
                            "documentationFormat": [],
                        },
                        "contextSupport": True,
                    },
                },
            },
        }

        if "initializationOptions" in self._config:
            params["initializationOptions"] = self._config["initializationOptions"]

        self.request("initialize", params)

        return True

    def _teardown(self) -> bool:
        """
        Drops every open document - without telling the server - and pending request.

        Returns False if the connection was already stopped.
        """
        if self._status == LanguageServerStatus.STOPPED:
            return False

        self._status = LanguageServerStatus.STOPPED

        paths = list(self._open_documents)

        self._open_documents.clear()

        self._diagnostics.clear(self._name, paths)

        if n := self._requests.clear():
            self._logger.warning(f"[{self._name}] Clearing {n} pending request(s)")

        if self._on_stopped:
            self._on_stopped(self)

        return True

    def stop(self):
        if self._teardown():
            self._logger.info(f"[{self._name}] Stop")

            if self._process is not None:
                self._process.kill()

    def on_exit(self, returncode: Optional[int]):
        self._teardown()

        self._logger.info(f"[{self._name}] exited with returncode {returncode}")

        self._editor.message(f"{self._name} exited")

    # -- Messages

    def _send(self, message: Union[LSPRequestMessage, LSPNotificationMessage, LSPResponseMessage]):
        method = message.get("method")

        if self._status == LanguageServerStatus.STOPPED or self._process is None:
            self._logger.debug(f"[{self._name}] Not running; Will drop {method}")
            return

        # Nothing but the initialize request goes out before the server is initialized.
        if self._status == LanguageServerStatus.PENDING and method not in (None, "initialize"):
            self._logger.debug(f"[{self._name}] Not initialized; Will drop {method}")
            return

        self._logger.debug(f"[{self._name}] -> {message}")

        self._process.send(encode(message))

    def request(self, method: str, params: Optional[Any] = None) -> int:
        id = self._requests.next_request(method)

        self._send(request(id, method, params))

        return id

    def notification(self, method: str, params: Optional[Any] = None):
        self._send(notification(method, params))

    def on_stdout(self, data: bytes):
        # Output queued before the connection stopped.
        if self._status == LanguageServerStatus.STOPPED:
            self._logger.debug(f"[{self._name}] Stopped; Will drop {len(data)} byte(s)")
            return

        for message in self._buffer.feed(data):
            self._logger.debug(f"[{self._name}] <- {message}")

            try:
                self.receive_message(message)
            except Exception:
                self._logger.exception(
                    f"[{self._name}] Error handling '{message.get('method') or message.get('id')}'"
                )

    def on_stderr(self, data: bytes):
        self._stderr += self._stderr_decoder.decode(data)

    def receive_message(self, message: Dict[str, Any]):
        # A message with a method is a notification, or a request from the server;
        # its id - if any - is not one of ours.
        if "method" in message:
            if "id" in message:
                self._handle_server_request(message)
            else:
                self._handle_notification(message)

            return

        request_id = message.get("id")

        method = self._requests.resolve(request_id)

        if method is None:
            self._logger.warning(f"[{self._name}] Response for unknown request {request_id!r}")
            return

        if error := message.get("error"):
            self._handle_response_error(method, error)
        else:
            self._handle_response_result(method, message.get("result"))

    def _handle_server_request(self, message: Dict[str, Any]):
        """
        The server is waiting for a response - everything is answered with null,
        except `workspace/configuration` which gets an empty object per item.
        """
        method = message["method"]

        result = None

        if method == "workspace/configuration":
            items = (message.get("params") or {}).get("items", [])
            result = [{} for _ in items]
        else:
            self._logger.debug(f"[{self._name}] Replying null to server request {method}")

        self._send(response(message["id"], result))

    def _handle_notification(self, message: Dict[str, Any]):
        method = message["method"]

        if handler := self._notification_handlers.get(method):
            handler(message.get("params") or {})
        else:
            self._logger.debug(f"[{self._name}] Unhandled notification: {method}")

    def _handle_response_error(self, method: str, error: LSPResponseError):
        self._logger.error(
            f"[{self._name}] Error: code={error.get('code')}, message={error.get('message')}, data={error.get('data')}"
        )

        self._editor.message(f"{error.get('message')} (Error {error.get('code')}, {method})")

        if method == "initialize":
            self.stop()

        elif method == "textDocument/completion":
            if view := self._editor.current_view():
                self._editor.set_completions(view, [])

    def _handle_response_result(self, method: str, result: Any):
        if handler := self._result_handlers.get(method):
            try:
                handler(method, result)
            except mlsp_results.UnrecognizedResult as e:
                self._logger.warning(f"[{self._name}] {e}")
        else:
            self._logger.warning(f"[{self._name}] Don't know what to do with response to {method}")

    # -- Results

    def _handle_initialize(self, method: str, result: Optional[LSPInitializeResult]):
        result = result or {}

        self._capabilities = result.get("capabilities") or {}
        self._server_info = result.get("serverInfo")

        if self._server_info:
            self._editor.message(
                f"Initialized {self.server_name} version {self.server_version}"
            )
        else:
            self._editor.message(f"Initialized '{self._name}' (no version information)")

        self._status = LanguageServerStatus.ACTIVE

        self._logger.info(f"[{self._name}] Initialized")

        # The initialized notification is sent from the client to the server
        # after the client received the result of the initialize request
        # but before the client is sending any other request or notification to the server.
        #
        # https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#initialized
        self.notification("initialized")

        if on_initialized := self._config.get("onInitialized"):
            on_initialized(self)

        if self._on_initialized:
            self._on_initialized(self)

    def _handle_hover(self, method: str, result: Optional[LSPHover]):
        try:
            text = mlsp_results.hover_text(result)
        except mlsp_results.UnrecognizedResult:
            self._editor.message(
                "WARNING: ignored textDocument/hover result due to unrecognized format"
            )
            return

        self._editor.message(text if text is not None else "no hover results")

    def _handle_formatting(self, method: str, result: LSPFormattingResult):
        what = "file" if method == "textDocument/formatting" else "selection"

        if mlsp_results.is_empty(result):
            self._editor.message(f"formatted {what} (no changes)")
            return

        if not isinstance(result, list):
            raise mlsp_results.UnrecognizedResult(method, result)

        if view := self._editor.current_view():
            text = view.text()

            new_text, cursor_offset = apply_text_edits(
                text,
                result,
                loc_offset(text, view.cursor()),
            )

            view.replace_text(new_text, cursor_offset)

            if self._on_text_replaced:
                self._on_text_replaced(view)

            self._editor.message(f"formatted {what}")

    def _handle_completion(self, method: str, result: LSPCompletionResult):
        view = self._editor.current_view()

        if view is None:
            return

        completions = mlsp_results.completion_items(result)

        if not completions:
            self._editor.message("no completions")
            self._editor.set_completions(view, [])
            return

        line, character = view.cursor()

        line_text = view.line(line)

        start = mlsp_results.word_prefix_start(line_text, character)

        if self._config.get("filterCompletions", self.server_name == "rust-analyzer"):
            completions = mlsp_results.filter_completions(
                completions,
                line_text[start:character],
            )

        self._editor.set_completions(view, completions, (line, start))

    def _handle_goto(self, method: str, result: LSPDefinitionResult):
        location = mlsp_results.first_location(method, result)

        if location is None:
            self._editor.message(f"{method.split('/', 1)[1]} not found")

        elif mlsp_results.is_location_link(location):
            self._editor.message("LocationLinks are not supported yet")

        else:
            start = location["range"]["start"]

            self._editor.open_file(
                mlsp_results.uri_to_path(location["uri"]),
                (start["line"], start["character"]),
            )

    def _handle_references(self, method: str, result: Any):
        if mlsp_results.is_empty(result):
            self._editor.message("No references found")
            return

        self._editor.show_scratch("references", mlsp_results.format_locations(result))

    def _handle_document_symbol(self, method: str, result: LSPDocumentSymbolResult):
        view = self._editor.current_view()

        path = view.path if view and view.path else ""

        symbols = mlsp_results.document_symbols(result, path)

        if not symbols:
            self._editor.message("No symbols found in current document")
            return

        locations = [location for location, _ in symbols]
        labels = [label for _, label in symbols]

        self._editor.show_scratch(
            "document symbols",
            mlsp_results.format_locations(locations, labels),
        )

    # -- Notifications

    def _handle_publish_diagnostics(self, params: LSPPublishDiagnosticsParams):
        """
        Diagnostics notifications are sent from the server to the client to signal results of validation runs.

        https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#textDocument_publishDiagnostics
        """
        path = mlsp_results.uri_to_path(params["uri"])

        document = self._open_documents.get(path)

        if document is None:
            self._logger.debug(f"[{self._name}] Diagnostics for document that is not open: {path}")
            return

        version = params.get("version")

        if version is not None and version != document["version"]:
            self._logger.warning(
                f"[{self._name}] Diagnostics for outdated version {version} of {path} (version {document['version']})"
            )
            return

        self._diagnostics.publish(self._name, path, params.get("diagnostics") or [])

    def _handle_show_message(self, params):
        """
        https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#window_showMessage
        """
        message_type = params.get("type")

        self._log_message(message_type, params.get("message", ""))

        # Errors and warnings only.
        if message_type is not None and message_type < 3:
            self._editor.message(params.get("message", ""))

    def _handle_log_message(self, params):
        """
        https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#window_logMessage
        """
        self._log_message(params.get("type"), params.get("message", ""))

    def _handle_log_trace(self, params):
        """
        https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#logTrace
        """
        self._log_messages.append(f"[Trace] {params.get('message', '')}")

    def _log_message(self, message_type: Optional[int], message: str):
        self._log_messages.append(f"[{kMESSAGE_TYPE_NAME.get(message_type, message_type)}] {message}")

    # -- Document synchronization

    def text_document_identifier(self, path: str) -> LSPTextDocumentIdentifier:
        return {"uri": mlsp_results.path_to_uri(path)}

    def did_open(self, path: str, text: str, language_id: str):
        """
        An open notification must not be sent more than once without a corresponding close notification send before.

        https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#textDocument_didOpen
        """
        if self._status != LanguageServerStatus.ACTIVE or path in self._open_documents:
            return

        self._open_documents[path] = {"version": 1}

        text_document: LSPTextDocumentItem = {
            "uri": mlsp_results.path_to_uri(path),
            "languageId": language_id,
            "version": 1,
            "text": text,
        }

        self.notification("textDocument/didOpen", {"textDocument": text_document})

    def did_close(self, path: str):
        """
        A close notification requires a previous open notification to be sent.

        https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#textDocument_didClose
        """
        if path not in self._open_documents:
            return

        del self._open_documents[path]

        self._diagnostics.discard(self._name, path)

        self.notification(
            "textDocument/didClose",
            {"textDocument": self.text_document_identifier(path)},
        )

    def did_change(self, path: str, changes: List[LSPTextDocumentContentChangeEvent]):
        """
        https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#textDocument_didChange
        """
        document = self._open_documents.get(path)

        # Before a client can change a text document it must claim
        # ownership of its content using the textDocument/didOpen notification.
        if document is None:
            self._logger.error(
                f"[{self._name}] Tried to emit didChange for document that was not open: {path}"
            )
            return

        document["version"] += 1

        text_document: LSPVersionedTextDocumentIdentifier = {
            "uri": mlsp_results.path_to_uri(path),
            "version": document["version"],
        }

        self.notification(
            "textDocument/didChange",
            {"textDocument": text_document, "contentChanges": changes},
        )

    def did_save(self, path: str):
        """
        https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#textDocument_didSave
        """
        self.notification(
            "textDocument/didSave",
            {"textDocument": self.text_document_identifier(path)},
        )
