"""Text layout for the display's text generator clips."""

from __future__ import annotations


def format_display_text(text: str) -> str:
    """Lay *text* out two words per line.

    Words are split on single spaces and paired in order; a trailing odd word
    sits on its own line::

        >>> format_display_text("HAPPY BIRTHDAY TABLE TWELVE")
        'HAPPY BIRTHDAY\\nTABLE TWELVE'
        >>> format_display_text("A B C")
        'A B\\nC'
    """
    if not text:
        return ""
    words = text.split(" ")
    lines: list[str] = []
    for i in range(0, len(words), 2):
        lines.append(" ".join(words[i:i + 2]))
    return "\n".join(lines)
