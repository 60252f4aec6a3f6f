import json
import logging

from fakes import FakeEditor, FakeProcess, FakeView, notify, result

import mlsp
from mlsp import (
    ConnectionRegistry,
    DocumentViews,
    EventKind,
    Mlsp,
    kNO_LANGUAGE_SERVER,
    load_settings,
    setting,
)
from mlsp_client import LanguageServerStatus

PATH = "/tmp/project/main.py"
URI = "file:///tmp/project/main.py"


class Harness:
    """
    Mlsp with fake processes - one per started server, by identity.
    """

    def __init__(self, settings=None, view=None):
        self.view = view or FakeView(path=PATH, text="import os\n")
        self.editor = FakeEditor(self.view)
        self.processes = {}
        self.mlsp = Mlsp(self.editor, load_settings() if settings is None else settings, spawn=self.spawn)

    def spawn(self, client, args):
        process = FakeProcess()
        self.processes[client.name] = process
        return process

    def start(self, name="pylsp", capabilities=None, server_info=None):
        self.mlsp.start_server(self.view, [name])
        client = self.mlsp.registry.get(name)

        initialize_result = {"capabilities": capabilities or {}}
        if server_info:
            initialize_result["serverInfo"] = server_info

        self.mlsp.post(EventKind.STDOUT, client, result(0, initialize_result))
        self.mlsp.run_pending()

        return client

    def receive(self, client, data):
        self.mlsp.post(EventKind.STDOUT, client, data)
        self.mlsp.run_pending()


def settings(**kwargs):
    s = load_settings()
    s.update(kwargs)
    return s


class TestSettings:
    def test_defaults(self):
        s = load_settings()
        assert setting(s, "tabAutocomplete", None) is False
        assert setting(s, "showDiagnostics", {})["hint"] is True
        assert setting(s, "missing", 42) == 42

    def test_load(self, tmp_path):
        path = tmp_path / "mlsp.json"
        path.write_text(
            json.dumps(
                {
                    "showDiagnostics": {"hint": False},
                    "languageServer": {"py": {"cmd": "pylsp"}},
                    "logger.client.level": "DEBUG",
                }
            )
        )

        s = load_settings(str(path))

        assert s["showDiagnostics"] == {"error": True, "warning": True, "information": True, "hint": False}
        assert s["languageServer"] == {"py": {"cmd": "pylsp"}}
        assert s["logger.client.level"] == "DEBUG"
        assert s["autostart"] == {}

    def test_missing_file(self, tmp_path):
        assert load_settings(str(tmp_path / "nope.json")) == load_settings()

    def test_invalid_file(self, tmp_path):
        path = tmp_path / "mlsp.json"
        path.write_text("{")
        assert load_settings(str(path)) == load_settings()

    def test_defaults_are_not_shared(self):
        load_settings()["showDiagnostics"]["error"] = False
        assert load_settings()["showDiagnostics"]["error"] is True


class TestLogging:
    def test_setup_and_teardown(self):
        mlsp.setup_logging(settings(**{"logger.plugin.level": "DEBUG", "logger.client.level": "WARNING"}))

        try:
            assert mlsp.console_logging_handler in mlsp.plugin_logger.handlers
            assert mlsp.console_logging_handler in mlsp.client_logger.handlers
            assert mlsp.plugin_logger.level == logging.DEBUG
            assert mlsp.client_logger.level == logging.WARNING
            assert not mlsp.client_logger.propagate
        finally:
            mlsp.teardown_logging()

        assert mlsp.console_logging_handler not in mlsp.plugin_logger.handlers
        assert mlsp.console_logging_handler not in mlsp.client_logger.handlers


class TestConnectionRegistry:
    def test_identity_is_pending_or_active(self):
        class Client:
            name = "pylsp"

        registry = ConnectionRegistry()
        client = Client()

        assert registry.add_pending(client)
        assert not registry.add_pending(Client())
        assert registry.get("pylsp") is client
        assert registry.get_active("pylsp") is None

        registry.promote(client)

        assert registry.get_active("pylsp") is client
        assert registry.pending_clients() == []
        assert not registry.add_pending(Client())

        registry.remove(Client())
        assert registry.get("pylsp") is client

        registry.remove(client)
        assert "pylsp" not in registry
        assert registry.get("pylsp") is None


class TestDocumentViews:
    def test_bind_and_unbind(self):
        views = DocumentViews()
        a = FakeView(path=PATH)
        b = FakeView(path=PATH)

        assert views.bind(a)
        assert not views.bind(b)
        assert views.views(PATH) == [a, b]

        assert not views.unbind(a)
        assert views.unbind(b)
        assert PATH not in views
        assert not views.unbind(b)


class TestStartServer:
    def test_start_named_server(self):
        harness = Harness(settings(languageServer={"py": {"cmd": "pylsp", "args": ["-v"], "shortName": "py"}}))
        harness.mlsp.start_server(harness.view, ["py"])

        client = harness.mlsp.registry.get("py")
        assert client.status == LanguageServerStatus.PENDING
        assert client.command == "pylsp"

    def test_start_program(self):
        harness = Harness()
        harness.mlsp.start_server(harness.view, ["clangd", "--log=verbose"])
        assert harness.mlsp.registry.get("clangd") is not None

    def test_start_default_server(self):
        harness = Harness(settings(defaultLanguageServer={"python": {"cmd": "pylsp"}}))
        harness.mlsp.start_server(harness.view)
        assert "pylsp" in harness.mlsp.registry

    def test_no_default_server(self):
        harness = Harness()
        harness.mlsp.start_server(harness.view)
        assert harness.editor.messages == ["ERROR: no language server set up for file type 'python'"]

    def test_duplicate_pending(self):
        harness = Harness()
        harness.mlsp.start_server(harness.view, ["pylsp"])
        client = harness.mlsp.registry.get("pylsp")
        process = harness.processes["pylsp"]

        harness.mlsp.start_server(harness.view, ["pylsp"])

        assert harness.editor.messages == ["pylsp is already running"]
        assert harness.mlsp.registry.get("pylsp") is client
        assert harness.processes["pylsp"] is process
        assert client.status == LanguageServerStatus.PENDING

    def test_duplicate_active(self):
        harness = Harness()
        client = harness.start()
        sent = len(harness.processes["pylsp"].sent)

        harness.mlsp.start_server(harness.view, ["pylsp"])

        assert harness.editor.messages[-1] == "pylsp is already running"
        assert harness.mlsp.registry.get_active("pylsp") is client
        assert len(harness.processes["pylsp"].sent) == sent

    def test_spawn_failure_releases_identity(self):
        harness = Harness()

        def spawn(client, args):
            raise PermissionError(13, "Permission denied")

        harness.mlsp = Mlsp(harness.editor, load_settings(), spawn=spawn)
        harness.mlsp.start_server(harness.view, ["pylsp"])

        assert harness.editor.messages == ["Error: [Errno 13] Permission denied"]
        assert "pylsp" not in harness.mlsp.registry

    def test_initialized_opens_bound_documents(self):
        harness = Harness()
        other = FakeView(path="/tmp/project/other.py", text="x = 1\n")
        harness.mlsp.on_buffer_open(harness.view)
        harness.mlsp.on_buffer_open(other)

        client = harness.start()

        assert client.status == LanguageServerStatus.ACTIVE
        assert harness.mlsp.registry.get_active("pylsp") is client
        assert harness.processes["pylsp"].methods() == [
            "initialize",
            "initialized",
            "textDocument/didOpen",
            "textDocument/didOpen",
        ]
        assert client.is_open(PATH)
        assert client.is_open(other.path)


class TestStopServers:
    def test_stop_all(self):
        harness = Harness()
        a = harness.start("pylsp")
        b = harness.start("ruff")

        harness.mlsp.stop_servers()

        assert a.status == b.status == LanguageServerStatus.STOPPED
        assert harness.mlsp.status() == "off"

    def test_stop_by_name(self):
        harness = Harness()
        a = harness.start("pylsp")
        b = harness.start("ruff")

        harness.mlsp.stop_servers("ruff")

        assert a.status == LanguageServerStatus.ACTIVE
        assert b.status == LanguageServerStatus.STOPPED
        assert harness.processes["ruff"].killed

    def test_stop_unknown(self):
        harness = Harness()
        harness.mlsp.stop_servers("nope")
        assert harness.editor.messages == ["ERROR: unable to find active language server with name 'nope'"]

    def test_stop_clears_diagnostics_from_every_view(self):
        harness = Harness()
        a = FakeView(path=PATH, text="import os\n")
        b = FakeView(path=PATH, text="import os\n")
        harness.mlsp.on_buffer_open(a)
        harness.mlsp.on_buffer_open(b)

        client = harness.start()
        harness.receive(
            client,
            notify(
                "textDocument/publishDiagnostics",
                {
                    "uri": URI,
                    "version": 1,
                    "diagnostics": [
                        {"range": {"start": {"line": 0, "character": 7}, "end": {"line": 0, "character": 9}}, "message": "unused"}
                    ],
                },
            ),
        )

        assert "pylsp" in a.diagnostics and "pylsp" in b.diagnostics

        harness.mlsp.stop_servers("pylsp")

        assert "pylsp" not in a.diagnostics
        assert "pylsp" not in b.diagnostics
        assert harness.mlsp.diagnostics.get("pylsp", PATH) == []

    def test_exit(self):
        harness = Harness()
        client = harness.start()

        harness.mlsp.post(EventKind.EXIT, client, 1)
        harness.mlsp.run_pending()

        assert harness.editor.messages[-1] == "pylsp exited"
        assert "pylsp" not in harness.mlsp.registry

        # The identity can be started again.
        harness.mlsp.start_server(harness.view, ["pylsp"])
        assert harness.mlsp.registry.get("pylsp") is not client


class TestStatus:
    def test_status(self):
        harness = Harness()
        assert harness.mlsp.status() == "off"

        harness.start("pylsp")
        assert harness.mlsp.status() == "pylsp"

        harness.start("ruff")
        assert harness.mlsp.status() == "[pylsp,ruff]"

    def test_pending_is_off(self):
        harness = Harness()
        harness.mlsp.start_server(harness.view, ["pylsp"])
        assert harness.mlsp.status() == "off"


class TestBufferHooks:
    def test_open_sends_did_open(self):
        harness = Harness()
        client = harness.start()
        harness.mlsp.on_buffer_open(harness.view)

        assert client.is_open(PATH)
        assert harness.processes["pylsp"].last("textDocument/didOpen")["params"]["textDocument"]["text"] == "import os\n"

    def test_ignored_views(self):
        harness = Harness()
        client = harness.start()

        harness.mlsp.on_buffer_open(FakeView(path=None))
        harness.mlsp.on_buffer_open(FakeView(path="/tmp/x.log", file_type="unknown"))

        assert client.open_documents() == []
        assert harness.mlsp.views.paths() == []

    def test_autostart(self):
        harness = Harness(settings(autostart={"python": [{"cmd": "pylsp"}, {"cmd": "ruff", "args": ["server"]}]}))
        harness.mlsp.on_buffer_open(harness.view)
        harness.mlsp.on_buffer_open(FakeView(path=PATH))

        assert set(harness.processes) == {"pylsp", "ruff"}
        assert harness.editor.messages == []

    def test_close_last_view(self):
        harness = Harness()
        a = FakeView(path=PATH)
        b = FakeView(path=PATH)
        harness.mlsp.on_buffer_open(a)
        harness.mlsp.on_buffer_open(b)
        harness.start()

        process = harness.processes["pylsp"]

        harness.mlsp.on_quit(a)
        assert process.methods().count("textDocument/didClose") == 0

        harness.mlsp.on_quit(b)
        assert process.methods().count("textDocument/didClose") == 1

        harness.mlsp.on_quit(b)
        assert process.methods().count("textDocument/didClose") == 1

    def test_save(self):
        harness = Harness()
        harness.start()
        harness.mlsp.on_save(harness.view)
        assert harness.processes["pylsp"].last("textDocument/didSave") is not None

    def test_text_event(self):
        harness = Harness()
        harness.mlsp.on_buffer_open(harness.view)
        client = harness.start()

        harness.mlsp.on_before_text_event(harness.view, [((0, 9), (0, 0), "\nimport sys"), ((0, 0), (0, 6), "")])

        params = harness.processes["pylsp"].last("textDocument/didChange")["params"]
        assert params["textDocument"] == {"uri": URI, "version": 2}
        assert params["contentChanges"] == [
            {"range": {"start": {"line": 0, "character": 9}, "end": {"line": 0, "character": 9}}, "text": "\nimport sys"},
            {"range": {"start": {"line": 0, "character": 0}, "end": {"line": 0, "character": 6}}, "text": ""},
        ]
        assert client.document_version(PATH) == 2

    def test_full_update(self):
        harness = Harness()
        harness.mlsp.on_buffer_open(harness.view)
        harness.start()

        harness.mlsp.content_update(harness.view)

        params = harness.processes["pylsp"].last("textDocument/didChange")["params"]
        assert params["contentChanges"] == [{"text": "import os\n"}]

    def test_no_active_connection(self):
        harness = Harness()
        harness.mlsp.on_buffer_open(harness.view)
        harness.mlsp.on_before_text_event(harness.view, [((0, 0), None, "x")])
        harness.mlsp.content_update(harness.view)
        assert harness.processes == {}


class TestActions:
    def test_no_language_server(self):
        harness = Harness()
        harness.mlsp.hover(harness.view)
        assert harness.editor.messages == [kNO_LANGUAGE_SERVER]

    def test_capability_absence(self):
        harness = Harness()
        harness.start(capabilities={"completionProvider": {}})
        sent = len(harness.processes["pylsp"].sent)

        harness.mlsp.hover(harness.view)
        harness.mlsp.goto(harness.view, "typeDefinition")
        harness.mlsp.document_symbols(harness.view)

        assert harness.editor.messages[-3:] == [
            "None of the active language server(s) support hover information",
            "None of the active language server(s) support textDocument/typeDefinition",
            "None of the active language server(s) support document symbols",
        ]
        assert len(harness.processes["pylsp"].sent) == sent

    def test_capability_options_object(self):
        harness = Harness()
        harness.start(capabilities={"hoverProvider": {}, "documentFormattingProvider": {}})

        harness.mlsp.hover(harness.view)
        harness.mlsp.format(harness.view)

        methods = harness.processes["pylsp"].methods()
        assert "textDocument/hover" in methods
        assert "textDocument/formatting" in methods
        assert not any(m.startswith("None of the active") for m in harness.editor.messages)

    def test_find_client_with_capability(self):
        harness = Harness()
        harness.start("pylsp", capabilities={"hoverProvider": True})
        ruff = harness.start("ruff", capabilities={"documentFormattingProvider": True})

        assert harness.mlsp.find_client_with_capability("documentFormattingProvider", "formatting") is ruff

    def test_hover(self):
        harness = Harness(view=FakeView(path=PATH, text="import os\n", cursor=(0, 8)))
        client = harness.start(capabilities={"hoverProvider": True})

        harness.mlsp.hover(harness.view)

        request = harness.processes["pylsp"].last("textDocument/hover")
        assert request["params"] == {"textDocument": {"uri": URI}, "position": {"line": 0, "character": 8}}

        harness.receive(client, result(request["id"], {"contents": "module os"}))
        assert harness.editor.messages[-1] == "module os"

    def test_format_document(self):
        harness = Harness()
        harness.view.tab_size = 2
        harness.view.tabs_to_spaces = True
        harness.start(capabilities={"documentFormattingProvider": True})

        harness.mlsp.format(harness.view)

        params = harness.processes["pylsp"].last("textDocument/formatting")["params"]
        assert params["options"] == {
            "tabSize": 2,
            "insertSpaces": True,
            "trimTrailingWhitespace": True,
            "insertFinalNewline": True,
            "trimFinalNewlines": True,
        }

    def test_format_selection(self):
        harness = Harness()
        harness.view._selections = [((0, 0), (0, 6))]
        harness.start(capabilities={"documentRangeFormattingProvider": True})

        harness.mlsp.format(harness.view)

        params = harness.processes["pylsp"].last("textDocument/rangeFormatting")["params"]
        assert params["range"] == {"start": {"line": 0, "character": 0}, "end": {"line": 0, "character": 6}}

    def test_format_multiple_selections(self):
        harness = Harness()
        harness.view._selections = [((0, 0), (0, 1)), ((0, 2), (0, 3))]
        harness.start(capabilities={"documentRangeFormattingProvider": True})

        harness.mlsp.format(harness.view)

        assert harness.editor.messages[-1] == "formatting multiple selections is not supported yet"
        assert harness.processes["pylsp"].last("textDocument/rangeFormatting") is None

    def test_format_resyncs_every_connection(self):
        view = FakeView(path=PATH, text="x=1\n")
        harness = Harness(view=view)
        harness.mlsp.on_buffer_open(view)
        pylsp = harness.start("pylsp", capabilities={"documentFormattingProvider": True})
        harness.start("ruff")

        harness.mlsp.format(view)
        request = harness.processes["pylsp"].last("textDocument/formatting")
        edits = [{"range": {"start": {"line": 0, "character": 1}, "end": {"line": 0, "character": 2}}, "newText": " = "}]
        harness.receive(pylsp, result(request["id"], edits))

        assert view.text() == "x = 1\n"

        for name in ("pylsp", "ruff"):
            params = harness.processes[name].last("textDocument/didChange")["params"]
            assert params["contentChanges"] == [{"text": "x = 1\n"}]

    def test_autocomplete(self):
        harness = Harness(view=FakeView(path=PATH, text="os.pa", cursor=(0, 5)))
        harness.start(capabilities={"completionProvider": {}})

        harness.mlsp.autocomplete(harness.view)

        params = harness.processes["pylsp"].last("textDocument/completion")["params"]
        assert params["context"] == {"triggerKind": 1}
        assert params["position"] == {"line": 0, "character": 5}

    def test_goto(self):
        harness = Harness()
        harness.start(capabilities={"definitionProvider": True, "implementationProvider": True})

        harness.mlsp.goto(harness.view, "definition")
        harness.mlsp.goto(harness.view, "implementation")

        methods = harness.processes["pylsp"].methods()
        assert "textDocument/definition" in methods
        assert "textDocument/implementation" in methods

    def test_find_references(self):
        harness = Harness()
        harness.start(capabilities={"referencesProvider": True})

        harness.mlsp.find_references(harness.view)

        params = harness.processes["pylsp"].last("textDocument/references")["params"]
        assert params["context"] == {"includeDeclaration": True}

    def test_show_log(self):
        harness = Harness()
        client = harness.start()

        harness.mlsp.show_log()
        assert harness.editor.messages[-1] == "pylsp has not written anything to stderr"

        harness.mlsp.post(EventKind.STDERR, client, b"starting\n")
        harness.mlsp.run_pending()
        harness.mlsp.show_log("pylsp")

        assert harness.editor.scratches == [("Log for 'pylsp' (pylsp)", "starting\n")]

    def test_show_log_no_client(self):
        harness = Harness()
        harness.mlsp.show_log()
        assert harness.editor.messages == ["no LSP client found"]


class TestDiagnosticInfo:
    def publish(self, harness, client, diagnostics):
        harness.receive(client, notify("textDocument/publishDiagnostics", {"uri": URI, "diagnostics": diagnostics}))

    def test_diagnostic_info(self):
        harness = Harness(view=FakeView(path=PATH, text="import os\nx\n", cursor=(0, 3)))
        harness.mlsp.on_buffer_open(harness.view)
        client = harness.start(server_info={"name": "pylsp", "version": "1"})

        r0 = {"start": {"line": 0, "character": 7}, "end": {"line": 0, "character": 9}}
        r1 = {"start": {"line": 1, "character": 0}, "end": {"line": 1, "character": 1}}
        self.publish(
            harness,
            client,
            [
                {"range": r1, "message": "undefined"},
                {"range": r0, "message": "'os' imported but unused", "severity": 2, "code": "F401"},
            ],
        )

        harness.mlsp.diagnostic_info(harness.view)

        assert harness.editor.scratches == [
            ("pylsp diagnostics #2", "pylsp F401\nhref: -\nseverity: warning\n\n'os' imported but unused")
        ]

    def test_no_diagnostics(self):
        harness = Harness()
        harness.start()
        harness.mlsp.diagnostic_info(harness.view)
        assert harness.editor.messages[-1] == "found no diagnostics on current line"


class TestAutocompleteHeuristic:
    def harness(self, text, cursor):
        harness = Harness(settings(tabAutocomplete=True), view=FakeView(path=PATH, text=text, cursor=cursor))
        harness.start(capabilities={"completionProvider": {}})
        return harness

    def test_after_word(self):
        harness = self.harness("os.pa", (0, 5))

        assert harness.mlsp.pre_autocomplete(harness.view)
        assert harness.editor.completions == [(["", ""], None)]
        assert harness.processes["pylsp"].last("textDocument/completion") is not None
        assert not harness.mlsp.pre_insert_tab(harness.view)

    def test_beginning_of_line(self):
        harness = self.harness("    ", (0, 0))
        assert not harness.mlsp.pre_autocomplete(harness.view)
        assert harness.mlsp.pre_insert_tab(harness.view)

    def test_after_whitespace(self):
        harness = self.harness("x = ", (0, 4))
        assert not harness.mlsp.pre_autocomplete(harness.view)

    def test_once_per_line(self):
        harness = self.harness("os.pa", (0, 5))

        assert harness.mlsp.pre_autocomplete(harness.view)
        assert not harness.mlsp.pre_autocomplete(harness.view)

        harness.mlsp.on_cursor_move(harness.view)

        assert harness.mlsp.pre_autocomplete(harness.view)

    def test_disabled(self):
        harness = Harness(view=FakeView(path=PATH, text="os.pa", cursor=(0, 5)))
        harness.start(capabilities={"completionProvider": {}})
        assert not harness.mlsp.pre_autocomplete(harness.view)
        assert harness.mlsp.pre_insert_tab(harness.view)


class TestEventLoop:
    def test_submit(self):
        harness = Harness()
        calls = []

        harness.mlsp.submit(calls.append, 1)
        harness.mlsp.submit(calls.append, 2)

        assert calls == []
        assert harness.mlsp.run_pending() == 2
        assert calls == [1, 2]

    def test_failing_action_does_not_stop_the_loop(self):
        harness = Harness()
        calls = []

        harness.mlsp.submit(lambda: 1 / 0)
        harness.mlsp.submit(calls.append, "after")

        assert harness.mlsp.run_pending() == 2
        assert calls == ["after"]

    def test_handler_thread(self):
        harness = Harness()
        harness.mlsp.start()
        harness.mlsp.submit(harness.mlsp.start_server, harness.view, ["pylsp"])
        harness.mlsp.shutdown()

        assert harness.processes["pylsp"].killed
        assert "pylsp" not in harness.mlsp.registry
