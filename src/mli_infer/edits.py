"""Application of server-reported text edits to a document's text.

Positions are (line, UTF-16 code unit) pairs resolved against the original
text. Edits are stitched in start order rather than applied one after another
to a mutated buffer, so the order the server lists them in never shifts the
coordinates of later edits.
"""

from __future__ import annotations

from typing import Sequence

from lsprotocol.types import Position, TextEdit

from mli_infer.exceptions import EditConflictError


def _utf16_units(char: str) -> int:
    return 2 if ord(char) > 0xFFFF else 1


class TextBuffer:
    """Line index over an immutable text for position translation."""

    def __init__(self, text: str) -> None:
        self.text = text
        self._line_starts = [0]
        for index, char in enumerate(text):
            if char == "\n":
                self._line_starts.append(index + 1)

    def line_to_offset(self, line: int) -> int:
        if line >= len(self._line_starts):
            return len(self.text)
        return self._line_starts[line]

    def _line_end(self, line: int) -> int:
        if line + 1 < len(self._line_starts):
            end = self._line_starts[line + 1] - 1
            if end > self._line_starts[line] and self.text[end - 1] == "\r":
                end -= 1
            return end
        return len(self.text)

    def offset_at(self, position: Position) -> int:
        """Translate a position to a string offset, clamping past line ends."""
        if position.line >= len(self._line_starts):
            return len(self.text)
        offset = self.line_to_offset(position.line)
        end = self._line_end(position.line)
        units = 0
        while offset < end and units < position.character:
            units += _utf16_units(self.text[offset])
            offset += 1
        return offset


def apply_edits(text: str, edits: Sequence[TextEdit]) -> str:
    """Return text with every edit applied.

    Inserts at the same position keep the order they were listed in, and an
    insert at the start of a replaced range lands before the replacement.
    Raises EditConflictError for overlapping or inverted ranges.
    """
    if not edits:
        return text
    buffer = TextBuffer(text)
    spans: list[tuple[int, int, int, str]] = []
    for order, edit in enumerate(edits):
        start = buffer.offset_at(edit.range.start)
        end = buffer.offset_at(edit.range.end)
        if end < start:
            raise EditConflictError(f"inverted edit range {edit.range}")
        spans.append((start, end, order, edit.new_text))
    spans.sort(key=lambda span: (span[0], span[1], span[2]))

    pieces: list[str] = []
    cursor = 0
    for start, end, _, new_text in spans:
        if start < cursor:
            raise EditConflictError(
                f"edit at offset {start} overlaps a previous edit ending at {cursor}"
            )
        pieces.append(text[cursor:start])
        pieces.append(new_text)
        cursor = end
    pieces.append(text[cursor:])
    return "".join(pieces)
