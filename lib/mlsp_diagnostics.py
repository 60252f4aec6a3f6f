import logging
import re
from typing import Callable, Dict, List, Mapping, Optional, Tuple, TypedDict

from mlsp_host import View
from mlsp_typing import LSPDiagnostic

# https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#diagnosticSeverity
kDIAGNOSTIC_SEVERITY_ERROR = 1
kDIAGNOSTIC_SEVERITY_WARNING = 2
kDIAGNOSTIC_SEVERITY_INFORMATION = 3
kDIAGNOSTIC_SEVERITY_HINT = 4

kSEVERITY_NAME = {
    kDIAGNOSTIC_SEVERITY_ERROR: "error",
    kDIAGNOSTIC_SEVERITY_WARNING: "warning",
    kDIAGNOSTIC_SEVERITY_INFORMATION: "information",
    kDIAGNOSTIC_SEVERITY_HINT: "hint",
}


class RenderedDiagnostic(TypedDict):
    severity: str
    message: str
    start: Tuple[int, int]
    end: Tuple[int, int]


def severity_name(severity: Optional[int]) -> str:
    return kSEVERITY_NAME.get(severity, "information")


def one_line(text: str) -> str:
    """
    Returns `text` on a single line: a line break between words becomes " / ",
    and runs of whitespace become a single space.
    """
    text = re.sub(r"([A-Za-z])\n([A-Za-z])", r"\1 / \2", text)

    return re.sub(r"\s+", " ", text)


def render_diagnostic(diagnostic: LSPDiagnostic, end_line: str) -> RenderedDiagnostic:
    """
    Returns `diagnostic` ready to be shown on a view.

    `end_line` is the text of the line where the diagnostic ends;
    the end column never goes past it.
    """
    message = diagnostic.get("message", "")
    source = diagnostic.get("source")
    code = diagnostic.get("code")

    if code is not None:
        code = str(code)

        # Some servers repeat the code at the start of the message.
        if message.startswith(code + " "):
            message = message[len(code) + 1 :]

    if source is not None and code is not None:
        extra = f"({source} {code}) "
    elif source is not None:
        extra = f"({source}) "
    elif code is not None:
        extra = f"({code}) "
    else:
        extra = ""

    start = diagnostic["range"]["start"]
    end = diagnostic["range"]["end"]

    end_character = min(end["character"], len(end_line))

    return {
        "severity": severity_name(diagnostic.get("severity")),
        "message": f"{extra}{one_line(message)}",
        "start": (start["line"], start["character"]),
        "end": (end["line"], end_character),
    }


def diagnostic_details(diagnostic: LSPDiagnostic, source: str) -> str:
    """
    Returns everything known about `diagnostic`, as shown in a diagnostic info view.

    `source` is used when the diagnostic doesn't name its own source.
    """
    code = diagnostic.get("code")
    code_description = diagnostic.get("codeDescription") or {}
    severity = diagnostic.get("severity")

    return (
        f"{diagnostic.get('source') or source} "
        f"{code if code is not None else '(no error code)'}\n"
        f"href: {code_description.get('href') or '-'}\n"
        f"severity: {severity_name(severity) if severity else '-'}\n"
        f"\n"
        f"{diagnostic.get('message', '')}"
    )


class DiagnosticsStore:
    """
    Latest diagnostics per (connection, document).

    Diagnostics of a connection are shown on every view of the document, under the
    connection's identity - so connections don't overwrite each other's diagnostics.
    """

    def __init__(
        self,
        logger: logging.Logger,
        views: Callable[[str], List[View]],
        show: Optional[Mapping[str, bool]] = None,
    ):
        self._logger = logger
        self._views = views
        self._show = dict(show or {})
        self._diagnostics: Dict[Tuple[str, str], List[LSPDiagnostic]] = {}

    def get(self, owner: str, path: str) -> List[LSPDiagnostic]:
        return self._diagnostics.get((owner, path), [])

    def publish(self, owner: str, path: str, diagnostics: List[LSPDiagnostic]):
        """
        Newly pushed diagnostics always replace previously pushed diagnostics.
        There is no merging that happens on the client side.

        https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#textDocument_publishDiagnostics
        """
        self._diagnostics[(owner, path)] = diagnostics

        for view in self._views(path):
            view.set_diagnostics(owner, self.render(view, diagnostics))

    def render(self, view: View, diagnostics: List[LSPDiagnostic]) -> List[RenderedDiagnostic]:
        rendered = []

        for diagnostic in diagnostics:
            if not self._show.get(severity_name(diagnostic.get("severity")), True):
                continue

            end_line = view.line(diagnostic["range"]["end"]["line"])

            rendered.append(render_diagnostic(diagnostic, end_line))

        return rendered

    def discard(self, owner: str, path: str):
        self._diagnostics.pop((owner, path), None)

    def clear(self, owner: str, paths: List[str]):
        """
        Removes diagnostics of `owner` for `paths` - from the store and from every view.
        """
        for path in paths:
            self._diagnostics.pop((owner, path), None)

            for view in self._views(path):
                view.clear_diagnostics(owner)

        self._logger.debug(f"[{owner}] Cleared diagnostics of {len(paths)} document(s)")
