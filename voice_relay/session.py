"""
session.py — per-connection runtime and the session registry.

Concurrency model
-----------------
Each session has one ``asyncio.Queue``.  The transcription reader, the
synthesis reader and the generation callbacks only *enqueue*; a single
consumer task pops events, runs them through ``machine.step`` and executes the
returned commands in order.  No two handlers for one session ever run at the
same time, and nothing is shared between sessions except the registry.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from . import machine
from .audio import is_audio_frame, wav_from_base64_pcm
from .config import ConfigurationError, Credentials, RelayConfig
from .generation import Generation, GenerationController, make_client
from .machine import (
    CancelContext,
    CancelGeneration,
    Command,
    ConversationState,
    DispatchSegment,
    FinishContext,
    GenerationCompleted,
    GenerationFailed,
    RelayAudio,
    SendEvent,
    StartGeneration,
    SynthesisFailed,
    TokenReceived,
)
from .protocol import encode
from .synthesis import SynthesisClient
from .transcription import TranscriptionClient, TranscriptionError

log = logging.getLogger("voice_relay.session")

SendText = Callable[[str], Awaitable[None]]
CloseClient = Callable[[], Awaitable[None]]


@dataclass(frozen=True)
class ProviderClosed:
    source: str


class ProviderFactory:
    """Builds provider clients for a session.  Tests swap in fakes here."""

    def transcription(self, credentials: Credentials, config: RelayConfig) -> Any:
        return TranscriptionClient(credentials.deepgram_api_key, config.transcription)

    def synthesis(self, credentials: Credentials, config: RelayConfig) -> Any:
        return SynthesisClient(credentials.cartesia_api_key, config.synthesis)

    def generation(self, credentials: Credentials, config: RelayConfig) -> GenerationController:
        client = make_client(credentials.groq_api_key, config.generation)
        return GenerationController(client, config.generation, config.system_prompt)


class Session:
    def __init__(
        self,
        session_id: str,
        send_text: SendText,
        close_client: CloseClient,
        config: RelayConfig,
        providers: ProviderFactory,
    ) -> None:
        self.id = session_id
        self.created_at = time.time()
        self.state = ConversationState(session_id=session_id)
        self.initialized = False

        self._send_text = send_text
        self._close_client = close_client
        self._config = config
        self._providers = providers

        self._queue: asyncio.Queue = asyncio.Queue()
        self._stt: Any = None
        self._tts: Any = None
        self._llm: Optional[GenerationController] = None
        self._generation: Optional[Generation] = None

        self._consumer_task: Optional[asyncio.Task] = None
        self._reader_tasks: list[asyncio.Task] = []
        self._keepalive_task: Optional[asyncio.Task] = None
        self._closing = False

    # -- lifecycle -------------------------------------------------------------

    async def initialize(self) -> bool:
        """Connect providers and start the event loop for this session.

        Returns False (and has sent the matching error event) when the session
        cannot start.
        """
        try:
            credentials = Credentials.from_env()
        except ConfigurationError as exc:
            log.error("event=session_config_error session=%s error=%s", self.id, exc)
            await self._emit("error", {"error": str(exc), "kind": "configuration"})
            return False

        self._stt = self._providers.transcription(credentials, self._config)
        self._tts = self._providers.synthesis(credentials, self._config)
        self._llm = self._providers.generation(credentials, self._config)

        try:
            await self._stt.connect()
        except Exception as exc:
            log.error("event=stt_connect_failed session=%s error=%s", self.id, exc)
            await self._emit("stt_error", {"error": f"transcription connection failed: {exc}"})
            self._stt = None
            self._tts = None
            return False

        try:
            await self._tts.connect()
        except Exception as exc:
            log.error("event=tts_connect_failed session=%s error=%s", self.id, exc)
            await self._emit("tts_error", {"error": f"synthesis connection failed: {exc}"})
            self._tts = None

        self._consumer_task = asyncio.create_task(self._consume(), name=f"session_{self.id}")
        self._reader_tasks.append(
            asyncio.create_task(self._read(self._stt, "transcription"), name=f"stt_reader_{self.id}")
        )
        if self._tts is not None:
            self._reader_tasks.append(
                asyncio.create_task(self._read(self._tts, "synthesis"), name=f"tts_reader_{self.id}")
            )
        self._keepalive_task = asyncio.create_task(
            self._keepalive_loop(), name=f"stt_keepalive_{self.id}"
        )

        self.initialized = True
        log.info("event=session_initialized session=%s tts=%s", self.id, self._tts is not None)
        await self._emit("initialized", {})
        return True

    async def close(self) -> None:
        """Stop every task and close every provider connection.  Idempotent."""
        if self._closing:
            return
        self._closing = True

        if self._generation is not None:
            self._generation.cancel()

        tasks = [t for t in [self._keepalive_task, self._consumer_task, *self._reader_tasks] if t]
        for task in tasks:
            task.cancel()

        # Providers are closed before waiting on anything so a cancelled
        # caller still releases every connection.
        for name, client in (("transcription", self._stt), ("synthesis", self._tts)):
            if client is None:
                continue
            try:
                await client.close()
            except Exception as exc:
                log.warning("event=provider_close_error session=%s provider=%s error=%s", self.id, name, exc)

        await asyncio.gather(*tasks, return_exceptions=True)
        if self._generation is not None:
            await self._generation.wait()
            self._generation = None

        log.info(
            "event=session_closed session=%s duration_ms=%d",
            self.id, int((time.time() - self.created_at) * 1000),
        )

    @property
    def keepalive_active(self) -> bool:
        return self._keepalive_task is not None and not self._keepalive_task.done()

    # -- inbound ---------------------------------------------------------------

    async def handle_audio(self, frame: bytes) -> None:
        if not is_audio_frame(frame, self._config.session.min_audio_frame_bytes):
            log.debug("event=audio_frame_dropped session=%s bytes=%d", self.id, len(frame))
            return
        if self._stt is None or not self._stt.is_open:
            return
        try:
            await self._stt.send_audio(frame)
        except Exception as exc:
            log.warning("event=stt_send_failed session=%s error=%s", self.id, exc)

    def enqueue(self, event: Any) -> None:
        self._queue.put_nowait(event)

    async def _read(self, client: Any, source: str) -> None:
        async for event in client.events():
            self.enqueue(event)
        self.enqueue(ProviderClosed(source))

    async def _keepalive_loop(self) -> None:
        interval = self._config.session.keepalive_interval_sec
        while True:
            try:
                await self._stt.keep_alive()
            except Exception as exc:
                log.warning("event=stt_keepalive_failed session=%s error=%s", self.id, exc)
            await asyncio.sleep(interval)

    # -- event loop ------------------------------------------------------------

    async def _consume(self) -> None:
        while True:
            event = await self._queue.get()

            if isinstance(event, ProviderClosed):
                if await self._on_provider_closed(event):
                    return
                continue
            if isinstance(event, TranscriptionError):
                log.warning("event=stt_error session=%s error=%s", self.id, event.error)
                await self._emit("stt_error", {"error": event.error})
                continue

            try:
                await self._apply(event)
            except Exception:
                log.exception("event=session_event_failed session=%s kind=%s", self.id, type(event).__name__)

    async def _apply(self, event: machine.Event) -> None:
        self.state, commands = machine.step(self.state, event)
        for command in commands:
            await self._execute(command)
        if self.state.generation_id is None:
            self._generation = None

    async def _on_provider_closed(self, event: ProviderClosed) -> bool:
        """Returns True when the session should stop consuming."""
        if self._closing:
            return True
        if event.source == "transcription":
            log.info("event=stt_closed_by_provider session=%s closing_client=True", self.id)
            await self._close_client()
            return True
        log.warning("event=tts_closed_by_provider session=%s context_id=%s", self.id, self.state.context_id)
        self._tts = None
        error = "synthesis connection closed"
        if self.state.context_id is None:
            await self._emit("tts_error", {"error": error})
        else:
            # Releases the open context through the machine's own error path.
            await self._apply(SynthesisFailed(error, self.state.context_id))
        return False

    async def _execute(self, command: Command) -> None:
        if isinstance(command, SendEvent):
            await self._emit(command.type, command.data)
        elif isinstance(command, StartGeneration):
            self._start_generation(command)
        elif isinstance(command, CancelGeneration):
            if self._generation is not None:
                self._generation.cancel()
                self._generation = None
        elif isinstance(command, RelayAudio):
            await self._relay_audio(command)
        elif isinstance(command, DispatchSegment):
            await self._synthesis_call("speak", command.context_id, command.text, command.continuation)
        elif isinstance(command, FinishContext):
            await self._synthesis_call("finish", command.context_id)
        elif isinstance(command, CancelContext):
            await self._synthesis_call("cancel", command.context_id)
        else:
            raise TypeError(f"unsupported command {type(command).__name__}")

    def _start_generation(self, command: StartGeneration) -> None:
        generation_id = command.generation_id
        self._generation = self._llm.start(
            command.history,
            on_token=lambda token: self.enqueue(TokenReceived(generation_id, token)),
            on_complete=lambda text: self.enqueue(GenerationCompleted(generation_id, text)),
            on_error=lambda exc: self.enqueue(GenerationFailed(generation_id, str(exc))),
        )

    async def _synthesis_call(self, method: str, context_id: str, *args: Any) -> None:
        # Send failures re-enter the machine as a context error so the turn
        # stops dispatching and the context id is released.
        if self._tts is None or not self._tts.is_open:
            if method != "cancel":
                self.enqueue(SynthesisFailed("synthesis connection not available", context_id))
            return
        try:
            await getattr(self._tts, method)(context_id, *args)
        except Exception as exc:
            log.error("event=tts_send_failed session=%s op=%s error=%s", self.id, method, exc)
            if method != "cancel":
                self.enqueue(SynthesisFailed(str(exc), context_id))

    async def _relay_audio(self, command: RelayAudio) -> None:
        cfg = self._config.synthesis
        audio = command.audio
        if cfg.container == "wav":
            try:
                audio = wav_from_base64_pcm(audio, cfg.sample_rate, cfg.encoding)
            except (ValueError, RuntimeError) as exc:
                log.warning(
                    "event=tts_chunk_conversion_failed session=%s context_id=%s error=%s",
                    self.id, command.context_id, exc,
                )
                await self._emit(
                    "tts_error",
                    {"error": f"audio conversion failed: {exc}", "context_id": command.context_id},
                )
                return
        await self._emit(
            "tts_audio",
            {
                "audio": audio,
                "context_id": command.context_id,
                "done": command.done,
                "format": cfg.container,
            },
        )

    async def _emit(self, event_type: str, data: dict) -> None:
        try:
            await self._send_text(encode(event_type, data))
        except Exception as exc:
            log.warning("event=client_send_failed session=%s type=%s error=%s", self.id, event_type, exc)


class SessionRegistry:
    """Active sessions keyed by connection id."""

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}
        self._lock = asyncio.Lock()

    async def add(self, session: Session) -> None:
        async with self._lock:
            self._sessions[session.id] = session
        log.info("event=session_registered session=%s active=%d", session.id, len(self._sessions))

    async def remove(self, session_id: str) -> Optional[Session]:
        async with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is not None:
            log.info("event=session_unregistered session=%s active=%d", session_id, len(self._sessions))
        return session

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def snapshot(self) -> list[Session]:
        return list(self._sessions.values())

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
