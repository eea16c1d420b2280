"""
utterance.py — speaking/silence detection over streaming transcripts.

Pure functions: each call takes the current ``DetectorState`` and returns the
next one plus the signals it produced.  The caller owns the state and decides
what to do with ``UtteranceStarted`` / ``UtteranceCompleted``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Literal, Optional, Union

log = logging.getLogger("voice_relay.utterance")

Reason = Literal["speech_final", "utterance_end"]


@dataclass(frozen=True)
class DetectorState:
    speaking: bool = False
    buffer: str = ""


@dataclass(frozen=True)
class UtteranceStarted:
    pass


@dataclass(frozen=True)
class UtteranceCompleted:
    transcript: str
    reason: Reason
    last_word_end: Optional[float] = None


Signal = Union[UtteranceStarted, UtteranceCompleted]


def on_transcript(
    state: DetectorState,
    text: str,
    is_final: bool,
    speech_final: bool,
) -> tuple[DetectorState, list[Signal]]:
    """Apply one transcript chunk.

    Empty chunks are ignored outright, including any ``speech_final`` flag they
    carry; the utterance then completes on the provider's utterance-end marker.
    """
    text = text.strip()
    if not text:
        return state, []

    signals: list[Signal] = []
    if not state.speaking:
        state = replace(state, speaking=True)
        signals.append(UtteranceStarted())
        log.info("event=utterance_start")

    if is_final:
        state = replace(state, buffer=f"{state.buffer} {text}".strip())

    log.debug(
        "event=transcript text=%.80r is_final=%s speech_final=%s",
        text, is_final, speech_final,
    )

    if speech_final and is_final:
        state, completed = _complete(state, "speech_final", None)
        signals.append(completed)
    return state, signals


def on_utterance_end(
    state: DetectorState,
    last_word_end: Optional[float] = None,
) -> tuple[DetectorState, list[Signal]]:
    """Provider utterance-end marker; a no-op unless an utterance is in progress."""
    if not state.speaking:
        log.debug("event=utterance_end_ignored reason=not_speaking")
        return state, []
    state, completed = _complete(state, "utterance_end", last_word_end)
    return state, [completed]


def _complete(
    state: DetectorState,
    reason: Reason,
    last_word_end: Optional[float],
) -> tuple[DetectorState, UtteranceCompleted]:
    log.info("event=utterance_complete reason=%s transcript_len=%d", reason, len(state.buffer))
    completed = UtteranceCompleted(
        transcript=state.buffer,
        reason=reason,
        last_word_end=last_word_end,
    )
    return DetectorState(), completed
