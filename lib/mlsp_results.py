"""
Interpreters for request results.

Every function here takes a raw result - whatever the server sent - and returns
plain values; `UnrecognizedResult` is raised for shapes a function doesn't know.
"""

import re
from pathlib import Path
from typing import Any, Iterator, List, Optional, Sequence, Tuple, Union
from urllib.parse import unquote, urlparse

from mlsp_typing import (
    LSPCompletionResult,
    LSPDefinitionResult,
    LSPDocumentSymbol,
    LSPDocumentSymbolResult,
    LSPHover,
    LSPLocation,
    LSPSymbolInformation,
)

# https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#symbolKind
kSYMBOL_KIND = {
    1: "File",
    2: "Module",
    3: "Namespace",
    4: "Package",
    5: "Class",
    6: "Method",
    7: "Property",
    8: "Field",
    9: "Constructor",
    10: "Enum",
    11: "Interface",
    12: "Function",
    13: "Variable",
    14: "Constant",
    15: "String",
    16: "Number",
    17: "Boolean",
    18: "Array",
    19: "Object",
    20: "Key",
    21: "Null",
    22: "EnumMember",
    23: "Struct",
    24: "Event",
    25: "Operator",
    26: "TypeParameter",
}

kWORD_CHARACTER = re.compile(r"\w")

kCOMPLETION_WORD = re.compile(r"^[A-Za-z0-9_]+$")


class UnrecognizedResult(Exception):
    """
    Raised when a result doesn't have any of the shapes an interpreter expects.
    """

    def __init__(self, method: str, result: Any):
        super().__init__(f"Unrecognized {method} result: {result!r}")
        self.method = method
        self.result = result


def path_to_uri(path: str) -> str:
    return Path(path).as_uri()


def uri_to_path(uri: str) -> str:
    """
    Returns the path of a `file://` URI; any other URI is returned as is.
    """
    parsed = urlparse(uri)

    if parsed.scheme != "file":
        return uri

    return unquote(parsed.path)


def is_empty(result: Any) -> bool:
    """
    Returns True for results which carry nothing: null, "", [] and {}.
    """
    return result is None or (isinstance(result, (str, list, dict)) and not result)


def hover_text(result: Optional[LSPHover]) -> Optional[str]:
    """
    Returns the text of a hover result, or None if there's nothing to show.

    `contents` as a string (or a list) is deprecated but some servers still
    respond with {"contents": ""} or {"contents": []} when there's no result.

    https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#hover
    """
    if result is None:
        return None

    if not isinstance(result, dict):
        raise UnrecognizedResult("textDocument/hover", result)

    contents = result.get("contents")

    if is_empty(contents):
        return None

    if isinstance(contents, str):
        return contents

    if isinstance(contents, dict) and isinstance(contents.get("value"), str):
        return contents["value"]

    raise UnrecognizedResult("textDocument/hover", result)


def completion_items(result: LSPCompletionResult) -> List[str]:
    """
    Returns the text each completion item inserts - `insertText`, or `label` when it's absent.

    Result is either CompletionItem[] or CompletionList ({isIncomplete, items}).

    https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#textDocument_completion
    """
    if result is None:
        return []

    if isinstance(result, list):
        items = result
    elif isinstance(result, dict):
        items = result.get("items") or []
    else:
        raise UnrecognizedResult("textDocument/completion", result)

    return [item.get("insertText") or item.get("label", "") for item in items]


def word_prefix_start(line: str, character: int) -> int:
    """
    Returns where the word left of `character` starts.
    """
    start = min(character, len(line))

    while start > 0 and kWORD_CHARACTER.match(line[start - 1]):
        start -= 1

    return start


def filter_completions(completions: Sequence[str], prefix: str) -> List[str]:
    """
    Returns completions which are a single word starting with `prefix`, without duplicates.

    Some servers offer completions that don't start with the typed prefix,
    end with punctuation (e.g. `self::`) or repeat the same identifier
    from different namespaces.
    """
    seen = set()

    filtered = []

    for completion in completions:
        if completion in seen:
            continue

        if kCOMPLETION_WORD.match(completion) and completion.startswith(prefix):
            seen.add(completion)
            filtered.append(completion)

    return filtered


def is_location_link(location: Any) -> bool:
    return isinstance(location, dict) and (
        "targetRange" in location or "targetUri" in location
    )


def first_location(method: str, result: LSPDefinitionResult) -> Optional[Any]:
    """
    Returns the first target of a definition-like result, or None if there's none.

    Result is Location | Location[] | LocationLink[] | null.
    A LocationLink is returned as is - see `is_location_link`.
    """
    if is_empty(result):
        return None

    if isinstance(result, list):
        result = result[0]

    if not isinstance(result, dict):
        raise UnrecognizedResult(method, result)

    return result


def symbol_label(symbol: Union[LSPSymbolInformation, LSPDocumentSymbol]) -> str:
    kind = symbol.get("kind")

    return f"[{kSYMBOL_KIND.get(kind, kind)}]\t{symbol.get('name', '')}"


def _flatten_document_symbols(
    symbols: Sequence[LSPDocumentSymbol],
) -> Iterator[LSPDocumentSymbol]:
    for symbol in symbols:
        yield symbol

        if children := symbol.get("children"):
            yield from _flatten_document_symbols(children)


def document_symbols(result: LSPDocumentSymbolResult, path: str) -> List[Tuple[LSPLocation, str]]:
    """
    Returns (location, label) of every symbol in a documentSymbol result.

    SymbolInformation[] carry their own location; DocumentSymbol[] have a range
    in the requested document (`path`), and may nest children.

    https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#textDocument_documentSymbol
    """
    if is_empty(result):
        return []

    if not isinstance(result, list):
        raise UnrecognizedResult("textDocument/documentSymbol", result)

    uri = path_to_uri(path)

    symbols = []

    for symbol in result:
        if location := symbol.get("location"):
            symbols.append((location, symbol_label(symbol)))
        else:
            for document_symbol in _flatten_document_symbols([symbol]):
                location = {"uri": uri, "range": document_symbol["range"]}
                symbols.append((location, symbol_label(document_symbol)))

    return symbols


def format_location(location: LSPLocation) -> str:
    start = location["range"]["start"]

    return f"{uri_to_path(location['uri'])}:{start['line'] + 1}:{start['character'] + 1}"


def format_locations(
    locations: Sequence[LSPLocation],
    labels: Optional[Sequence[str]] = None,
) -> str:
    """
    Returns one `path:line:column` row per location - line and column are 1-based.

    When `labels` is given, every row starts with its label and a tab.
    """
    rows = []

    for index, location in enumerate(locations):
        row = format_location(location)

        if labels is not None:
            row = f"{labels[index]}\t{row}"

        rows.append(f"{row}\n")

    return "".join(rows)
