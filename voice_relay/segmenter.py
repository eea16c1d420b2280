"""
segmenter.py — split a streaming token sequence into speakable segments.

Only ``.`` and ``?`` end a segment.  Abbreviations, decimals and ``!`` are not
special-cased.
"""

from __future__ import annotations

from typing import Optional

TERMINATORS = frozenset(".?")


def split_first(buffer: str) -> tuple[Optional[str], str]:
    """Split at the earliest terminator.

    Returns ``(segment, remainder)`` where the segment includes the terminator,
    or ``(None, buffer)`` when the buffer holds no terminator.
    """
    for idx, char in enumerate(buffer):
        if char in TERMINATORS:
            return buffer[: idx + 1], buffer[idx + 1 :]
    return None, buffer


def feed(buffer: str, token: str) -> tuple[Optional[str], str]:
    """Append *token* and extract at most one segment.

    A buffer holding several terminators yields them one per call; whatever is
    left is flushed when generation completes.
    """
    return split_first(buffer + token)


def flush(buffer: str) -> Optional[str]:
    """Final segment for a finished generation, or None when only whitespace is left."""
    if buffer.strip():
        return buffer
    return None
