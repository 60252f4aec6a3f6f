from typing import List, Optional, Sequence, Tuple

from mlsp_typing import LSPPosition, LSPRange, LSPTextEdit

# (line, character) - both zero-based.
Loc = Tuple[int, int]


def range_from_selection(selection: Tuple[Loc, Loc]) -> LSPRange:
    """
    Returns a Range for an editor selection - a pair of (line, character).
    """
    (start_line, start_character), (end_line, end_character) = selection

    return {
        "start": {"line": start_line, "character": start_character},
        "end": {"line": end_line, "character": end_character},
    }


def range_from_delta(start: Loc, end: Optional[Loc]) -> LSPRange:
    """
    Returns a Range for an editor text delta.

    Editors report insertions with an end of (0, 0) or no end at all;
    an insertion is a range where start == end.
    """
    if end is None or end == (0, 0):
        end = start

    return range_from_selection((start, end))


def line_starts(text: str) -> List[int]:
    """
    Returns the offset at which each line of `text` starts.
    """
    starts = [0]

    index = text.find("\n")

    while index != -1:
        starts.append(index + 1)
        index = text.find("\n", index + 1)

    return starts


def position_offset(text: str, starts: Sequence[int], position: LSPPosition) -> int:
    """
    Returns the offset of `position` in `text`.

    A line past the end of the document is the end of the document;
    a character past the end of its line is the end of that line.
    """
    line = position["line"]

    if line >= len(starts):
        return len(text)

    line_end = starts[line + 1] - 1 if line + 1 < len(starts) else len(text)

    return min(starts[line] + max(position["character"], 0), line_end)


def offset_loc(text: str, offset: int) -> Loc:
    """
    Returns the (line, character) of `offset` in `text`.
    """
    offset = min(max(offset, 0), len(text))

    line = text.count("\n", 0, offset)

    return line, offset - (text.rfind("\n", 0, offset) + 1)


def loc_offset(text: str, loc: Loc) -> int:
    line, character = loc

    return position_offset(text, line_starts(text), {"line": line, "character": character})


def sort_text_edits(edits: Sequence[LSPTextEdit]) -> List[LSPTextEdit]:
    """
    Returns edits sorted by start position.

    If multiple edits share the same start position their order in `edits`
    is kept (Python's sort is stable).

    https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#textEditArray
    """
    return sorted(
        edits,
        key=lambda edit: (
            edit["range"]["start"]["line"],
            edit["range"]["start"]["character"],
        ),
    )


def apply_text_edits(
    text: str,
    edits: Sequence[LSPTextEdit],
    cursor_offset: int = 0,
) -> Tuple[str, int]:
    """
    Applies `edits` - all computed against `text` - and returns the new text and cursor offset.

    The cursor moves by the change in length of every edit which starts before it.
    (An edit that spans the cursor may move it somewhere within the new text.)
    """
    starts = line_starts(text)

    parts = []

    previous_end = 0

    for edit in sort_text_edits(edits):
        start = position_offset(text, starts, edit["range"]["start"])
        end = max(position_offset(text, starts, edit["range"]["end"]), start)

        new_text = edit["newText"]

        parts.append(text[previous_end:start])
        parts.append(new_text)

        previous_end = max(previous_end, end)

        if start < cursor_offset:
            cursor_offset += len(new_text) - (end - start)

    parts.append(text[previous_end:])

    new_text = "".join(parts)

    return new_text, min(max(cursor_offset, 0), len(new_text))
