import copy
import functools
import json
import logging
import threading
from enum import Enum, auto
from queue import Empty, Queue
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Sequence, Tuple

from mlsp_client import (
    LanguageServerClient,
    kCOMPLETION_TRIGGER_INVOKED,
)
from mlsp_diagnostics import DiagnosticsStore, diagnostic_details
from mlsp_edits import Loc, range_from_delta, range_from_selection
from mlsp_host import Editor, View
from mlsp_process import ServerProcess
from mlsp_results import path_to_uri
from mlsp_typing import MlspServerConfig, MlspSettings

# -- Logging

logging_formatter = logging.Formatter(fmt="[{name}] {levelname} {message}", style="{")

# Handler to log on the Console.
console_logging_handler = logging.StreamHandler()
console_logging_handler.setFormatter(logging_formatter)

# Logger used to log 'everything-plugin' - except LSP stuff. (See logger below)
plugin_logger = logging.getLogger("mlsp")
plugin_logger.propagate = False

# Logger used by the LSP client.
client_logger = logging.getLogger("mlsp.Client")
client_logger.propagate = False

# ---------------------------------------------------------------------------------------


# -- CONSTANTS

kDEFAULT_SETTINGS: MlspSettings = {
    "languageServer": {},
    "defaultLanguageServer": {},
    "autostart": {},
    "showDiagnostics": {
        "error": True,
        "warning": True,
        "information": True,
        "hint": True,
    },
    "tabAutocomplete": False,
    "logger.plugin.level": "INFO",
    "logger.client.level": "INFO",
}

kNO_LANGUAGE_SERVER = "No language server is running! Try starting one with the `lsp` command."


# ---------------------------------------------------------------------------------------


## -- API


def load_settings(path: Optional[str] = None) -> Dict[str, Any]:
    """
    Returns settings read from the JSON file at `path`, merged over the defaults.

    `showDiagnostics` is merged per severity - a file may enable or disable a single severity.
    """
    settings = copy.deepcopy(kDEFAULT_SETTINGS)

    if path is None:
        return settings

    try:
        with open(path, encoding="utf-8") as f:
            user_settings = json.load(f)
    except FileNotFoundError:
        plugin_logger.debug(f"Settings file {path} not found; Using defaults")
        return settings
    except (OSError, json.JSONDecodeError):
        plugin_logger.exception(f"Failed to read settings {path}; Using defaults")
        return settings

    for k, v in user_settings.items():
        if k == "showDiagnostics" and isinstance(v, dict):
            settings[k] = {**settings[k], **v}
        else:
            settings[k] = v

    return settings


def setting(settings: Dict[str, Any], k: str, not_found: Any):
    """
    Get setting k.

    Returns not_found if setting k is is not set.
    """
    return settings.get(k, not_found)


def setup_logging(settings: Dict[str, Any]):
    plugin_logger.addHandler(console_logging_handler)
    plugin_logger.setLevel(setting(settings, "logger.plugin.level", "INFO"))

    client_logger.addHandler(console_logging_handler)
    client_logger.setLevel(setting(settings, "logger.client.level", "INFO"))

    plugin_logger.debug("Logging set up")


def teardown_logging():
    plugin_logger.debug("Logging torn down")

    plugin_logger.removeHandler(console_logging_handler)
    client_logger.removeHandler(console_logging_handler)


def server_identity(server: MlspServerConfig) -> str:
    return server.get("shortName") or server["cmd"]


def view_applicable(view: Optional[View]) -> bool:
    """
    Returns True if `view` displays a file mlsp should know about.
    """
    return view is not None and view.path is not None and view.file_type != "unknown"


def text_document_position(view: View) -> Dict[str, Any]:
    line, character = view.cursor()

    return {
        "textDocument": {"uri": path_to_uri(view.path)},
        "position": {"line": line, "character": character},
    }


class ConnectionRegistry:
    """
    Connections by identity - pending (initialize request sent) or active (initialized).

    An identity is either pending or active, never both.
    """

    def __init__(self):
        self._pending: Dict[str, LanguageServerClient] = {}
        self._active: Dict[str, LanguageServerClient] = {}

    def __contains__(self, name: str):
        return name in self._pending or name in self._active

    def get(self, name: str) -> Optional[LanguageServerClient]:
        return self._pending.get(name) or self._active.get(name)

    def get_active(self, name: str) -> Optional[LanguageServerClient]:
        return self._active.get(name)

    def active_clients(self) -> List[LanguageServerClient]:
        return list(self._active.values())

    def pending_clients(self) -> List[LanguageServerClient]:
        return list(self._pending.values())

    def add_pending(self, client: LanguageServerClient) -> bool:
        """
        Returns False - and does nothing - if the identity is already pending or active.
        """
        if client.name in self:
            return False

        self._pending[client.name] = client

        return True

    def promote(self, client: LanguageServerClient):
        if self._pending.get(client.name) is client:
            del self._pending[client.name]

        self._active[client.name] = client

    def remove(self, client: LanguageServerClient):
        # Only `client` - not another connection which took over its identity.
        if self._pending.get(client.name) is client:
            del self._pending[client.name]

        if self._active.get(client.name) is client:
            del self._active[client.name]


class DocumentViews:
    """
    Every view which displays a path.
    """

    def __init__(self):
        self._views: Dict[str, List[View]] = {}

    def __contains__(self, path: str):
        return path in self._views

    def views(self, path: str) -> List[View]:
        return list(self._views.get(path, []))

    def paths(self) -> List[str]:
        return list(self._views)

    def bind(self, view: View) -> bool:
        """
        Returns True if `view` is the first view of its path.
        """
        views = self._views.setdefault(view.path, [])

        if view not in views:
            views.append(view)

        return len(views) == 1

    def unbind(self, view: View) -> bool:
        """
        Returns True if `view` was the last view of its path.
        """
        views = self._views.get(view.path)

        if not views or view not in views:
            return False

        views.remove(view)

        if views:
            return False

        del self._views[view.path]

        return True


class EventKind(Enum):
    STDOUT = auto()  # Server wrote to stdout
    STDERR = auto()  # Server wrote to stderr
    EXIT = auto()  # Server process exited
    ACTION = auto()  # Host action


class Event(NamedTuple):
    kind: EventKind
    client: Optional[LanguageServerClient]
    data: Any


class Mlsp:
    """
    Language server connections of one editor.

    Protocol state is mutated by a single loop which consumes the events of the inbox:
    process output (posted by process threads) and host actions (posted with `submit`).
    A host either runs the loop on a thread - `start` - or drains it - `run_pending`.
    """

    def __init__(
        self,
        editor: Editor,
        settings: Optional[Dict[str, Any]] = None,
        spawn: Optional[Callable[[LanguageServerClient, List[str]], Any]] = None,
    ):
        self._editor = editor
        self._settings = settings if settings is not None else load_settings()
        self._spawn = spawn or self._spawn_process
        self._inbox: Queue = Queue()
        self._handler: Optional[threading.Thread] = None
        self._last_autocompletion = -1

        self.registry = ConnectionRegistry()
        self.views = DocumentViews()
        self.diagnostics = DiagnosticsStore(
            plugin_logger,
            self.views.views,
            setting(self._settings, "showDiagnostics", {}),
        )

    # -- Event loop

    def post(self, kind: EventKind, client: Optional[LanguageServerClient], data: Any = None):
        self._inbox.put(Event(kind, client, data))

    def submit(self, action: Callable, *args, **kwargs):
        """
        Runs `action` on the loop.
        """
        self.post(EventKind.ACTION, None, functools.partial(action, *args, **kwargs))

    def _handle(self, event: Event):
        try:
            if event.kind == EventKind.STDOUT:
                event.client.on_stdout(event.data)

            elif event.kind == EventKind.STDERR:
                event.client.on_stderr(event.data)

            elif event.kind == EventKind.EXIT:
                event.client.on_exit(event.data)

            elif event.kind == EventKind.ACTION:
                event.data()

        except Exception:
            plugin_logger.exception(f"Error handling {event.kind.name} event")

    def run(self):
        """
        Handles events until `shutdown`.
        """
        plugin_logger.debug("Handler started")

        while (event := self._inbox.get()) is not None:
            self._handle(event)

        plugin_logger.debug("Handler stopped")

    def run_pending(self, timeout: Optional[float] = None) -> int:
        """
        Handles queued events and returns how many were handled.

        With a `timeout`, waits that long for the first event.
        """
        n = 0

        while True:
            try:
                if n == 0 and timeout is not None:
                    event = self._inbox.get(timeout=timeout)
                else:
                    event = self._inbox.get_nowait()
            except Empty:
                return n

            if event is None:
                return n

            self._handle(event)

            n += 1

    def start(self):
        self._handler = threading.Thread(name="mlsp", target=self.run, daemon=True)
        self._handler.start()

    def shutdown(self):
        """
        Stops every connection, and the loop.
        """
        if self._handler is None:
            self.stop_servers()
            self.run_pending()
            return

        self.submit(self.stop_servers)

        # Enqueue `None` to signal that the handler must stop.
        self._inbox.put(None)

        self._handler.join()
        self._handler = None

    # -- Connections

    def _spawn_process(self, client: LanguageServerClient, args: List[str]) -> ServerProcess:
        return ServerProcess(
            client_logger,
            client.name,
            args,
            on_stdout=lambda data: self.post(EventKind.STDOUT, client, data),
            on_stderr=lambda data: self.post(EventKind.STDERR, client, data),
            on_exit=lambda returncode: self.post(EventKind.EXIT, client, returncode),
        )

    def _on_client_initialized(self, client: LanguageServerClient):
        self.registry.promote(client)

        # Documents couldn't be opened before the server was initialized.
        for path in self.views.paths():
            if views := self.views.views(path):
                view = views[0]

                client.did_open(path, view.text(), view.file_type)

    def _on_client_stopped(self, client: LanguageServerClient):
        self.registry.remove(client)

    def initialize(self, server: MlspServerConfig) -> Optional[LanguageServerClient]:
        name = server_identity(server)

        if name in self.registry:
            self._editor.message(f"{name} is already running")
            return None

        client = LanguageServerClient(
            client_logger,
            server,
            self._editor,
            self.diagnostics,
            on_initialized=self._on_client_initialized,
            on_stopped=self._on_client_stopped,
            on_text_replaced=self.full_update,
        )

        self.registry.add_pending(client)

        if not client.initialize(functools.partial(self._spawn, client)):
            return None

        return client

    def find_client_with_capability(
        self,
        capability: str,
        feature: Optional[str] = None,
    ) -> Optional[LanguageServerClient]:
        """
        Returns the first active connection which supports `capability`.

        The user is told when no connection is active; and, if `feature` is given,
        when none of them supports it.
        """
        clients = self.registry.active_clients()

        if not clients:
            self._editor.message(kNO_LANGUAGE_SERVER)
            return None

        for client in clients:
            if client.support_capability(capability):
                return client

        if feature is not None:
            self._editor.message(f"None of the active language server(s) support {feature}")

        return None

    # -- Actions

    def start_server(self, view: Optional[View], args: Sequence[str] = ()):
        """
        Starts a language server: `args` is either the name of a configured server,
        or a program and its arguments; without `args`, the default server of
        the view's file type is started.
        """
        args = list(args)

        if args:
            cmd = args.pop(0)

            server = setting(self._settings, "languageServer", {}).get(cmd) or {
                "cmd": cmd,
                "args": args,
            }
        else:
            file_type = view.file_type if view else "unknown"

            server = setting(self._settings, "defaultLanguageServer", {}).get(file_type)

            if server is None:
                self._editor.message(f"ERROR: no language server set up for file type '{file_type}'")
                return

        self.initialize(server)

    def stop_servers(self, name: Optional[str] = None):
        if name is None:
            for client in self.registry.pending_clients() + self.registry.active_clients():
                client.stop()

        elif client := self.registry.get(name):
            client.stop()

        else:
            self._editor.message(f"ERROR: unable to find active language server with name '{name}'")

    def show_log(self, name: Optional[str] = None):
        client = None

        for c in self.registry.active_clients():
            if name is None or c.name == name:
                client = c
                break

        if client is None:
            self._editor.message("no LSP client found")
            return

        if not (log := client.log()):
            self._editor.message(f"{client.name} has not written anything to stderr")
            return

        self._editor.show_scratch(f"Log for '{client.name}' ({client.command})", log)

    def full_update(self, view: View):
        """
        Sends the whole content of `view` to every active connection.
        """
        if not self.registry.active_clients():
            return

        self.clear_autocomplete()

        if not view_applicable(view):
            return

        changes = [{"text": view.text()}]

        for client in self.registry.active_clients():
            client.did_change(view.path, changes)

    def content_update(self, view: View):
        self.full_update(view)

    def hover(self, view: View):
        if client := self.find_client_with_capability("hoverProvider", "hover information"):
            client.request("textDocument/hover", text_document_position(view))

    def format(self, view: View):
        selections = view.selections()

        if len(selections) > 1:
            self._editor.message("formatting multiple selections is not supported yet")
            return

        # Most servers ignore these values but tabSize and insertSpaces are required.
        # https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#formattingOptions
        options = {
            "tabSize": view.tab_size,
            "insertSpaces": view.tabs_to_spaces,
            "trimTrailingWhitespace": True,
            "insertFinalNewline": True,
            "trimFinalNewlines": True,
        }

        text_document = {"uri": path_to_uri(view.path)}

        if not selections:
            if client := self.find_client_with_capability("documentFormattingProvider", "formatting"):
                client.request(
                    "textDocument/formatting",
                    {"textDocument": text_document, "options": options},
                )
        else:
            if client := self.find_client_with_capability(
                "documentRangeFormattingProvider", "formatting selections"
            ):
                client.request(
                    "textDocument/rangeFormatting",
                    {
                        "textDocument": text_document,
                        "range": range_from_selection(selections[0]),
                        "options": options,
                    },
                )

    def autocomplete(self, view: View):
        if client := self.find_client_with_capability("completionProvider", "completion"):
            client.request(
                "textDocument/completion",
                {
                    **text_document_position(view),
                    "context": {"triggerKind": kCOMPLETION_TRIGGER_INVOKED},
                },
            )

    def goto(self, view: View, kind: str):
        """
        `kind` is one of definition, declaration, typeDefinition or implementation.
        """
        method = f"textDocument/{kind}"

        if client := self.find_client_with_capability(f"{kind}Provider", method):
            client.request(method, text_document_position(view))

    def find_references(self, view: View):
        if client := self.find_client_with_capability("referencesProvider", "finding references"):
            client.request(
                "textDocument/references",
                {
                    **text_document_position(view),
                    "context": {"includeDeclaration": True},
                },
            )

    def document_symbols(self, view: View):
        if client := self.find_client_with_capability("documentSymbolProvider", "document symbols"):
            client.request(
                "textDocument/documentSymbol",
                {"textDocument": {"uri": path_to_uri(view.path)}},
            )

    def diagnostic_info(self, view: View):
        """
        Shows every diagnostic on the cursor's line - one view per diagnostic.
        """
        line, _ = view.cursor()

        found = False

        for client in self.registry.active_clients():
            diagnostics = self.diagnostics.get(client.name, view.path)

            for n, diagnostic in enumerate(diagnostics, start=1):
                if diagnostic["range"]["start"]["line"] != line:
                    continue

                found = True

                self._editor.show_scratch(
                    f"{client.name} diagnostics #{n}",
                    diagnostic_details(diagnostic, client.server_name or client.name),
                )

        if not found:
            self._editor.message("found no diagnostics on current line")

    def status(self) -> str:
        names = [client.name for client in self.registry.active_clients()]

        if not names:
            return "off"
        elif len(names) == 1:
            return names[0]
        else:
            return f"[{','.join(names)}]"

    # -- Editor hooks

    def on_buffer_open(self, view: View):
        if not view_applicable(view):
            return

        self.views.bind(view)

        for client in self.registry.active_clients():
            client.did_open(view.path, view.text(), view.file_type)

        for server in setting(self._settings, "autostart", {}).get(view.file_type, []):
            if server_identity(server) not in self.registry:
                self.initialize(server)

    def on_quit(self, view: View):
        if not view_applicable(view):
            return

        # Other views still display the document.
        if not self.views.unbind(view):
            return

        for client in self.registry.active_clients():
            client.did_close(view.path)

    def on_save(self, view: View):
        if not view_applicable(view):
            return

        for client in self.registry.active_clients():
            client.did_save(view.path)

    def on_before_text_event(self, view: View, deltas: Sequence[Tuple[Loc, Optional[Loc], str]]):
        """
        Forwards an edit - (start, end, text) deltas - to every active connection.
        """
        if not self.registry.active_clients() or not view_applicable(view):
            return

        changes = [
            {"range": range_from_delta(start, end), "text": text}
            for start, end, text in deltas
        ]

        for client in self.registry.active_clients():
            client.did_change(view.path, changes)

    def pre_autocomplete(self, view: View) -> bool:
        """
        Requests completions when tab is pressed after a word.

        Returns True if completions were requested.
        """
        if not self.registry.active_clients():
            return False

        if not setting(self._settings, "tabAutocomplete", False):
            return False

        if self.find_client_with_capability("completionProvider") is None:
            return False

        line, character = view.cursor()

        # Tab at the beginning of the line is indentation.
        if character == 0:
            return False

        # Completions were already requested on this line;
        # requesting again would reset cycling through them.
        if self._last_autocompletion == line:
            return False

        if view.line(line)[character - 1 : character].strip():
            # Two empty suggestions capture the tab until the server replies.
            self._editor.set_completions(view, ["", ""])

            self.autocomplete(view)

            self._last_autocompletion = line

            return True

        return False

    def pre_insert_tab(self, view: View) -> bool:
        """
        Returns False if tab must not be inserted - completions were requested on this line.
        """
        if not self.registry.active_clients():
            return True

        if not setting(self._settings, "tabAutocomplete", False):
            return True

        line, _ = view.cursor()

        return self._last_autocompletion != line

    def clear_autocomplete(self):
        self._last_autocompletion = -1

    def on_cursor_move(self, view: View):
        self.clear_autocomplete()
