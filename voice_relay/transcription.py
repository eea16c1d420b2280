"""
transcription.py — Deepgram live transcription over a raw websocket.

The client only moves bytes and parses messages; speaking/silence decisions
live in utterance.py.  Each inbound message becomes one event for the session
queue, or nothing for informational messages.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import AsyncIterator, Optional, Union
from urllib.parse import urlencode

import websockets

from .config import TranscriptionConfig
from .machine import TranscriptReceived, UtteranceEndReceived

log = logging.getLogger("voice_relay.transcription")

KEEPALIVE_MESSAGE = json.dumps({"type": "KeepAlive"})
CLOSE_STREAM_MESSAGE = json.dumps({"type": "CloseStream"})


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class TranscriptionError:
    error: str


TranscriptionEvent = Union[TranscriptReceived, UtteranceEndReceived, TranscriptionError]


def parse_message(raw: Union[str, bytes], timestamp: Optional[int] = None) -> Optional[TranscriptionEvent]:
    """Map one Deepgram message to an event; None for messages the session ignores.

    Raises ValueError / KeyError / TypeError on malformed payloads; the reader
    logs those and keeps going.
    """
    msg = json.loads(raw)
    ts = now_ms() if timestamp is None else timestamp
    kind = msg.get("type")

    if kind == "Results":
        alternatives = msg["channel"]["alternatives"]
        transcript = alternatives[0].get("transcript", "") if alternatives else ""
        return TranscriptReceived(
            text=transcript,
            is_final=bool(msg.get("is_final")),
            speech_final=bool(msg.get("speech_final")),
            timestamp=ts,
        )
    if kind == "UtteranceEnd":
        return UtteranceEndReceived(timestamp=ts, last_word_end=msg.get("last_word_end"))
    if kind == "Metadata":
        log.info("event=stt_metadata request_id=%s", msg.get("request_id"))
        return None
    if kind == "SpeechStarted":
        log.debug("event=stt_speech_started timestamp=%s", msg.get("timestamp"))
        return None
    if kind == "Error":
        return TranscriptionError(error=msg.get("description") or msg.get("message") or "transcription error")

    log.debug("event=stt_unhandled_message type=%s", kind)
    return None


class TranscriptionClient:
    """Duplex connection to the live transcription endpoint."""

    def __init__(self, api_key: str, config: TranscriptionConfig) -> None:
        self._api_key = api_key
        self._config = config
        self._ws = None
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def url(self) -> str:
        return f"{self._config.url}?{urlencode(self._config.query_params())}"

    async def connect(self) -> None:
        headers = {"Authorization": f"Token {self._api_key}"}
        self._ws = await websockets.connect(self.url, additional_headers=headers)
        self._open = True
        log.info("event=stt_connected model=%s sample_rate=%d", self._config.model, self._config.sample_rate)

    async def send_audio(self, frame: bytes) -> None:
        if not self._open:
            return
        await self._ws.send(frame)

    async def keep_alive(self) -> None:
        if not self._open:
            return
        await self._ws.send(KEEPALIVE_MESSAGE)
        log.debug("event=stt_keepalive_sent")

    async def events(self) -> AsyncIterator[TranscriptionEvent]:
        """Yield parsed events until the provider closes the stream."""
        try:
            async for raw in self._ws:
                try:
                    event = parse_message(raw)
                except (ValueError, KeyError, IndexError, TypeError, AttributeError) as exc:
                    log.warning("event=stt_parse_error error=%s", exc)
                    continue
                if event is not None:
                    yield event
        except websockets.ConnectionClosedError as exc:
            log.warning("event=stt_connection_lost error=%s", exc)
            yield TranscriptionError(error=f"transcription connection lost: {exc}")
        finally:
            self._open = False
            log.info("event=stt_stream_closed")

    async def close(self) -> None:
        if self._ws is None:
            return
        if self._open:
            try:
                await self._ws.send(CLOSE_STREAM_MESSAGE)
            except websockets.ConnectionClosed:
                pass
        self._open = False
        await self._ws.close()
        log.info("event=stt_closed")
