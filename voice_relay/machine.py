"""
machine.py — per-session speech orchestration state machine.

Every handler is a pure function ``(ConversationState, event) -> (ConversationState,
commands)``.  The session runtime feeds events in arrival order and executes the
returned commands in order, which is what gives barge-in its ordering guarantee:
the cancels for turn N are issued before anything belonging to turn N+1.

Turn phases
-----------
  IDLE        nothing in flight
  LISTENING   the caller is speaking
  GENERATING  an LLM request is streaming (segments may already be synthesising)
  SPEAKING    generation finished, the synthesis context is still producing audio

Invariant: ``context_id`` is None whenever no generation or synthesis is in flight.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Literal, Optional, Union

from . import segmenter, utterance
from .utterance import DetectorState, UtteranceCompleted, UtteranceStarted

log = logging.getLogger("voice_relay.machine")

Role = Literal["system", "user", "assistant"]


class TurnState(Enum):
    IDLE = "IDLE"
    LISTENING = "LISTENING"
    GENERATING = "GENERATING"
    SPEAKING = "SPEAKING"


@dataclass(frozen=True)
class ConversationMessage:
    role: Role
    content: str

    def as_dict(self) -> dict:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class ConversationState:
    session_id: str
    turn: TurnState = TurnState.IDLE
    history: tuple[ConversationMessage, ...] = ()
    detector: DetectorState = field(default_factory=DetectorState)
    generation_id: Optional[int] = None
    generation_count: int = 0
    response_text: str = ""
    context_id: Optional[str] = None
    context_count: int = 0
    segment_buffer: str = ""
    synthesis_failed: bool = False


# ---------------------------------------------------------------------------
# Inbound events (already serialised onto the session queue)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TranscriptReceived:
    text: str
    is_final: bool
    speech_final: bool
    timestamp: int


@dataclass(frozen=True)
class UtteranceEndReceived:
    timestamp: int
    last_word_end: Optional[float] = None


@dataclass(frozen=True)
class TokenReceived:
    generation_id: int
    token: str


@dataclass(frozen=True)
class GenerationCompleted:
    generation_id: int
    full_text: str


@dataclass(frozen=True)
class GenerationFailed:
    generation_id: int
    error: str


@dataclass(frozen=True)
class SynthesisChunk:
    context_id: Optional[str]
    audio: str
    done: bool = False


@dataclass(frozen=True)
class SynthesisDone:
    context_id: Optional[str]


@dataclass(frozen=True)
class SynthesisFailed:
    error: str
    context_id: Optional[str] = None


SynthesisEvent = Union[SynthesisChunk, SynthesisDone, SynthesisFailed]
Event = Union[
    TranscriptReceived,
    UtteranceEndReceived,
    TokenReceived,
    GenerationCompleted,
    GenerationFailed,
    SynthesisChunk,
    SynthesisDone,
    SynthesisFailed,
]


# ---------------------------------------------------------------------------
# Outbound commands (executed by the session runtime)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SendEvent:
    type: str
    data: dict = field(default_factory=dict)


@dataclass(frozen=True)
class StartGeneration:
    generation_id: int
    history: tuple[ConversationMessage, ...]


@dataclass(frozen=True)
class CancelGeneration:
    generation_id: int


@dataclass(frozen=True)
class DispatchSegment:
    context_id: str
    text: str
    continuation: bool


@dataclass(frozen=True)
class FinishContext:
    context_id: str


@dataclass(frozen=True)
class CancelContext:
    context_id: str


@dataclass(frozen=True)
class RelayAudio:
    context_id: str
    audio: str
    done: bool


Command = Union[
    SendEvent,
    StartGeneration,
    CancelGeneration,
    DispatchSegment,
    FinishContext,
    CancelContext,
    RelayAudio,
]
Transition = tuple[ConversationState, list[Command]]


# ---------------------------------------------------------------------------
# History helpers
# ---------------------------------------------------------------------------

def _append_user(
    history: tuple[ConversationMessage, ...], text: str
) -> tuple[ConversationMessage, ...]:
    # An unanswered user message (generation cancelled before any token) absorbs
    # the next utterance so roles keep alternating.
    if history and history[-1].role == "user":
        merged = f"{history[-1].content} {text}".strip()
        return history[:-1] + (ConversationMessage("user", merged),)
    return history + (ConversationMessage("user", text),)


def _append_assistant(
    history: tuple[ConversationMessage, ...], text: str
) -> tuple[ConversationMessage, ...]:
    if not text:
        return history
    return history + (ConversationMessage("assistant", text),)


# ---------------------------------------------------------------------------
# Interruption coordinator
# ---------------------------------------------------------------------------

def interrupt(state: ConversationState) -> Transition:
    """Cancel the active generation, then the active synthesis context.

    Partial assistant text is kept in history as that turn's reply.  Resets
    the segmenter and nulls the context id so late audio from the cancelled
    context fails the relay check.
    """
    commands: list[Command] = []
    history = state.history
    if state.generation_id is not None:
        commands.append(CancelGeneration(state.generation_id))
        history = _append_assistant(history, state.response_text)
    if state.context_id is not None:
        commands.append(CancelContext(state.context_id))
    if commands:
        log.info(
            "event=interrupt session=%s generation_id=%s context_id=%s partial_chars=%d",
            state.session_id, state.generation_id, state.context_id, len(state.response_text),
        )
    state = replace(
        state,
        history=history,
        generation_id=None,
        response_text="",
        context_id=None,
        segment_buffer="",
        synthesis_failed=False,
    )
    return state, commands


# ---------------------------------------------------------------------------
# Utterance handling
# ---------------------------------------------------------------------------

def on_transcript(state: ConversationState, event: TranscriptReceived) -> Transition:
    detector, signals = utterance.on_transcript(
        state.detector, event.text, event.is_final, event.speech_final
    )
    return _apply_signals(replace(state, detector=detector), signals, event.timestamp)


def on_utterance_end(state: ConversationState, event: UtteranceEndReceived) -> Transition:
    detector, signals = utterance.on_utterance_end(state.detector, event.last_word_end)
    return _apply_signals(replace(state, detector=detector), signals, event.timestamp)


def _apply_signals(
    state: ConversationState, signals: list[utterance.Signal], timestamp: int
) -> Transition:
    commands: list[Command] = []
    for signal in signals:
        if isinstance(signal, UtteranceStarted):
            commands.append(SendEvent("speech_start", {"timestamp": timestamp}))
            state, cancels = interrupt(state)
            commands.extend(cancels)
            state = replace(state, turn=TurnState.LISTENING)
        elif isinstance(signal, UtteranceCompleted):
            data = {
                "timestamp": timestamp,
                "transcript": signal.transcript,
                "reason": signal.reason,
            }
            if signal.last_word_end is not None:
                data["last_word_end"] = signal.last_word_end
            commands.append(SendEvent("speech_end", data))
            if signal.transcript.strip():
                state, started = _begin_generation(state, signal.transcript)
                commands.extend(started)
            else:
                state = replace(state, turn=TurnState.IDLE)
    return state, commands


def _begin_generation(state: ConversationState, transcript: str) -> Transition:
    generation_id = state.generation_count + 1
    history = _append_user(state.history, transcript)
    state = replace(
        state,
        turn=TurnState.GENERATING,
        history=history,
        generation_id=generation_id,
        generation_count=generation_id,
        response_text="",
        segment_buffer="",
        synthesis_failed=False,
    )
    log.info(
        "event=generation_requested session=%s generation_id=%d history_len=%d",
        state.session_id, generation_id, len(history),
    )
    return state, [SendEvent("llm_start", {}), StartGeneration(generation_id, history)]


# ---------------------------------------------------------------------------
# Generation handling
# ---------------------------------------------------------------------------

def _is_active_generation(state: ConversationState, generation_id: int) -> bool:
    if state.generation_id is not None and generation_id == state.generation_id:
        return True
    log.debug(
        "event=stale_generation_event_dropped session=%s generation_id=%d active=%s",
        state.session_id, generation_id, state.generation_id,
    )
    return False


def _dispatch(state: ConversationState, text: str) -> Transition:
    if state.synthesis_failed:
        log.debug("event=segment_skipped reason=synthesis_failed chars=%d", len(text))
        return state, []
    if state.context_id is None:
        count = state.context_count + 1
        context_id = f"{state.session_id}-{count}"
        state = replace(state, context_id=context_id, context_count=count)
        return state, [DispatchSegment(context_id, text, continuation=False)]
    return state, [DispatchSegment(state.context_id, text, continuation=True)]


def on_token(state: ConversationState, event: TokenReceived) -> Transition:
    if not _is_active_generation(state, event.generation_id):
        return state, []
    commands: list[Command] = [SendEvent("llm_token", {"token": event.token})]
    segment, remainder = segmenter.feed(state.segment_buffer, event.token)
    state = replace(
        state,
        response_text=state.response_text + event.token,
        segment_buffer=remainder,
    )
    if segment is not None:
        state, dispatched = _dispatch(state, segment)
        commands.extend(dispatched)
    return state, commands


def _close_turn(state: ConversationState) -> Transition:
    """Generation is over: finish the context if one is open, else go idle."""
    commands: list[Command] = []
    if state.context_id is not None:
        commands.append(FinishContext(state.context_id))
        turn = TurnState.SPEAKING
    else:
        turn = TurnState.IDLE
    state = replace(
        state,
        turn=turn,
        generation_id=None,
        response_text="",
        segment_buffer="",
    )
    return state, commands


def on_complete(state: ConversationState, event: GenerationCompleted) -> Transition:
    if not _is_active_generation(state, event.generation_id):
        return state, []
    commands: list[Command] = [SendEvent("llm_complete", {"fullText": event.full_text})]
    state = replace(state, history=_append_assistant(state.history, event.full_text))

    final = segmenter.flush(state.segment_buffer)
    if final is not None:
        state, dispatched = _dispatch(state, final)
        commands.extend(dispatched)

    state, closing = _close_turn(state)
    commands.extend(closing)
    log.info(
        "event=generation_complete session=%s chars=%d turn=%s",
        state.session_id, len(event.full_text), state.turn.value,
    )
    return state, commands


def on_generation_error(state: ConversationState, event: GenerationFailed) -> Transition:
    if not _is_active_generation(state, event.generation_id):
        return state, []
    log.warning(
        "event=generation_failed session=%s generation_id=%d error=%s",
        state.session_id, event.generation_id, event.error,
    )
    commands: list[Command] = [SendEvent("llm_error", {"error": event.error})]
    state, closing = _close_turn(state)
    commands.extend(closing)
    return state, commands


# ---------------------------------------------------------------------------
# Synthesis relay
# ---------------------------------------------------------------------------

def is_current_context(state: ConversationState, context_id: Optional[str]) -> bool:
    return context_id is not None and context_id == state.context_id


def on_synthesis(state: ConversationState, event: SynthesisEvent) -> Transition:
    """Relay boundary for everything the synthesis provider sends.

    The one stale-context comparison lives here: any event tagged with a
    context id other than the session's current one is dropped.
    """
    if isinstance(event, SynthesisFailed) and event.context_id is None:
        log.warning("event=synthesis_error session=%s error=%s", state.session_id, event.error)
        return state, [SendEvent("tts_error", {"error": event.error})]

    if not is_current_context(state, event.context_id):
        log.debug(
            "event=stale_synthesis_dropped session=%s kind=%s context_id=%s current=%s",
            state.session_id, type(event).__name__, event.context_id, state.context_id,
        )
        return state, []

    if isinstance(event, SynthesisChunk):
        return state, [RelayAudio(event.context_id, event.audio, event.done)]

    idle = TurnState.IDLE if state.turn == TurnState.SPEAKING else state.turn
    if isinstance(event, SynthesisDone):
        log.info("event=synthesis_complete session=%s context_id=%s", state.session_id, event.context_id)
        state = replace(state, context_id=None, turn=idle)
        return state, [SendEvent("tts_complete", {"context_id": event.context_id})]

    log.warning(
        "event=synthesis_error session=%s context_id=%s error=%s",
        state.session_id, event.context_id, event.error,
    )
    state = replace(
        state,
        context_id=None,
        turn=idle,
        synthesis_failed=state.generation_id is not None,
    )
    return state, [SendEvent("tts_error", {"error": event.error, "context_id": event.context_id})]


_HANDLERS: dict[type, Callable[[ConversationState, Event], Transition]] = {
    TranscriptReceived: on_transcript,
    UtteranceEndReceived: on_utterance_end,
    TokenReceived: on_token,
    GenerationCompleted: on_complete,
    GenerationFailed: on_generation_error,
    SynthesisChunk: on_synthesis,
    SynthesisDone: on_synthesis,
    SynthesisFailed: on_synthesis,
}


def step(state: ConversationState, event: Event) -> Transition:
    """Apply one event; the single entry point used by the session runtime."""
    handler = _HANDLERS.get(type(event))
    if handler is None:
        raise TypeError(f"unsupported event {type(event).__name__}")
    return handler(state, event)
