"""
synthesis.py — Cartesia websocket TTS with per-turn contexts.

Every segment of a turn is sent under the same ``context_id`` with
``continue: true`` so the provider stitches them into one audio stream; the
turn is closed with an empty transcript and ``continue: false``.  A cancel is
scoped to a single context id.
"""

from __future__ import annotations

import json
import logging
from typing import AsyncIterator, Optional, Union
from urllib.parse import urlencode

import websockets

from .config import SynthesisConfig
from .machine import SynthesisChunk, SynthesisDone, SynthesisFailed

log = logging.getLogger("voice_relay.synthesis")

SynthesisEvent = Union[SynthesisChunk, SynthesisDone, SynthesisFailed]


def parse_message(raw: Union[str, bytes]) -> Optional[SynthesisEvent]:
    """Map one provider message to an event; None for informational messages."""
    msg = json.loads(raw)
    kind = msg.get("type")
    context_id = msg.get("context_id")

    if kind == "chunk":
        if not msg.get("data"):
            return None
        return SynthesisChunk(context_id=context_id, audio=msg["data"], done=bool(msg.get("done")))
    if kind == "done":
        return SynthesisDone(context_id=context_id)
    if kind == "error":
        return SynthesisFailed(error=str(msg.get("error") or "synthesis error"), context_id=context_id)
    if kind == "timestamps":
        words = (msg.get("word_timestamps") or {}).get("words") or []
        log.debug("event=tts_timestamps context_id=%s words=%d", context_id, len(words))
        return None

    log.debug("event=tts_unhandled_message type=%s", kind)
    return None


class SynthesisClient:
    """Duplex connection to the streaming TTS endpoint."""

    def __init__(self, api_key: str, config: SynthesisConfig) -> None:
        self._api_key = api_key
        self._config = config
        self._ws = None
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def url(self) -> str:
        query = urlencode({"api_key": self._api_key, "cartesia_version": self._config.version})
        return f"{self._config.url}?{query}"

    async def connect(self) -> None:
        self._ws = await websockets.connect(self.url)
        self._open = True
        log.info("event=tts_connected model=%s voice=%s", self._config.model_id, self._config.voice_id)

    def build_request(self, context_id: str, text: str, more: bool) -> dict:
        cfg = self._config
        return {
            "model_id": cfg.model_id,
            "transcript": text,
            "voice": {"mode": "id", "id": cfg.voice_id},
            "language": cfg.language,
            "context_id": context_id,
            "output_format": cfg.output_format(),
            "add_timestamps": cfg.add_timestamps,
            "continue": more,
        }

    async def speak(self, context_id: str, text: str, continuation: bool) -> None:
        """Send one segment.  ``continuation`` marks a follow-on segment of an open context.

        Segments always go out with ``continue: true``; the context is closed
        by ``finish``, so ``continuation`` only feeds the log line.
        """
        await self._send(self.build_request(context_id, text, more=True))
        log.info(
            "event=tts_segment_sent context_id=%s continuation=%s chars=%d",
            context_id, continuation, len(text),
        )

    async def finish(self, context_id: str) -> None:
        """No more segments for this context; the provider flushes and sends ``done``."""
        await self._send(self.build_request(context_id, "", more=False))
        log.info("event=tts_context_finished context_id=%s", context_id)

    async def cancel(self, context_id: str) -> None:
        await self._send({"context_id": context_id, "cancel": True})
        log.info("event=tts_context_cancelled context_id=%s", context_id)

    async def _send(self, payload: dict) -> None:
        if not self._open:
            raise ConnectionError("synthesis connection not available")
        await self._ws.send(json.dumps(payload))

    async def events(self) -> AsyncIterator[SynthesisEvent]:
        """Yield parsed events until the provider closes the socket.

        A lost connection ends the iteration; the session reports it once and
        releases the open context.
        """
        try:
            async for raw in self._ws:
                try:
                    event = parse_message(raw)
                except (ValueError, KeyError, TypeError, AttributeError) as exc:
                    log.warning("event=tts_parse_error error=%s", exc)
                    continue
                if event is not None:
                    yield event
        except websockets.ConnectionClosedError as exc:
            log.warning("event=tts_connection_lost error=%s", exc)
        finally:
            self._open = False
            log.info("event=tts_stream_closed")

    async def close(self) -> None:
        if self._ws is None:
            return
        self._open = False
        await self._ws.close()
        log.info("event=tts_closed")
