"""
What mlsp needs from the editor it runs in.

An editor integration subclasses `View` (one displayed instance of a file) and
`Editor` (messages, navigation, scratch views and completion UI), and forwards
its events to the functions in `mlsp`.
"""

from typing import List, Optional, Tuple

# (line, character) - both zero-based.
Loc = Tuple[int, int]


class View:
    """
    One displayed instance of a document.

    Several views may display the same file at the same time.
    """

    # Absolute path of the file, or None for buffers without a file.
    path: Optional[str] = None

    # Language identifier, e.g. "python". "unknown" for buffers mlsp must ignore.
    file_type: str = "unknown"

    # Formatting options.
    tab_size: int = 4
    tabs_to_spaces: bool = False

    def text(self) -> str:
        raise NotImplementedError

    def line(self, n: int) -> str:
        """
        Returns the text of line `n`, without its line terminator.
        """
        lines = self.text().split("\n")

        return lines[n] if 0 <= n < len(lines) else ""

    def cursor(self) -> Loc:
        raise NotImplementedError

    def selections(self) -> List[Tuple[Loc, Loc]]:
        """
        Returns the non-empty selections of every cursor.
        """
        return []

    def replace_text(self, text: str, cursor_offset: int):
        """
        Replaces the whole content with `text` and moves the cursor to `cursor_offset`.
        """
        raise NotImplementedError

    def set_diagnostics(self, owner: str, diagnostics: list):
        """
        Replaces the diagnostics `owner` shows on this view.

        `diagnostics` is a list of `mlsp_diagnostics.RenderedDiagnostic`.
        """
        raise NotImplementedError

    def clear_diagnostics(self, owner: str):
        raise NotImplementedError


class Editor:
    def message(self, text: str):
        """
        Shows a one-line message to the user.
        """
        raise NotImplementedError

    def current_view(self) -> Optional[View]:
        raise NotImplementedError

    def open_file(self, path: str, loc: Loc):
        """
        Opens `path` - or focuses the view where it's already open - and moves the cursor to `loc`.
        """
        raise NotImplementedError

    def show_scratch(self, title: str, text: str):
        """
        Shows `text` in a read-only view next to the current one.
        """
        raise NotImplementedError

    def set_completions(self, view: View, completions: List[str], prefix_start: Optional[Loc] = None):
        """
        Offers `completions`; an empty list clears the completion UI.

        `prefix_start` is where the word being completed starts - the text from there
        to the cursor is replaced by the chosen completion.
        """
        raise NotImplementedError
