"""Shared fixtures and provider fakes for the voice relay tests."""

import asyncio
from types import SimpleNamespace
from typing import Optional

import pytest

from voice_relay.config import CARTESIA_KEY_ENV, DEEPGRAM_KEY_ENV, GROQ_KEY_ENV
from voice_relay.generation import GenerationController
from voice_relay.session import ProviderFactory

_END = object()


# =============================================================================
# LLM fakes
# =============================================================================


def make_chunk(content: Optional[str]):
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=content))])


class FakeStream:
    """Async iterable shaped like a streaming chat-completion response."""

    def __init__(self, tokens, hold: Optional[asyncio.Event] = None, fail: Optional[Exception] = None):
        self.tokens = list(tokens)
        self.hold = hold
        self.fail = fail
        self.closed = False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for token in self.tokens:
            yield make_chunk(token)
            await asyncio.sleep(0)
        if self.hold is not None:
            await self.hold.wait()
        if self.fail is not None:
            raise self.fail

    async def close(self):
        self.closed = True


class FakeCompletions:
    def __init__(self, streams=None, error: Optional[Exception] = None):
        self.streams = list(streams or [])
        self.error = error
        self.requests: list[dict] = []

    async def create(self, **kwargs):
        self.requests.append(kwargs)
        if self.error is not None:
            raise self.error
        if not self.streams:
            return FakeStream([])
        return self.streams.pop(0)


def make_llm_client(streams=None, error: Optional[Exception] = None):
    return SimpleNamespace(chat=SimpleNamespace(completions=FakeCompletions(streams, error)))


# =============================================================================
# Websocket provider fakes
# =============================================================================


class FakeProviderClient:
    """Stands in for TranscriptionClient / SynthesisClient."""

    def __init__(self, fail_connect: bool = False):
        self.fail_connect = fail_connect
        self.is_open = False
        self.closed = False
        self.calls: list[tuple] = []
        self._events: asyncio.Queue = asyncio.Queue()

    async def connect(self):
        if self.fail_connect:
            raise ConnectionError("connection refused")
        self.is_open = True

    def push(self, event):
        self._events.put_nowait(event)

    def end(self):
        self._events.put_nowait(_END)

    async def events(self):
        while True:
            event = await self._events.get()
            if event is _END:
                self.is_open = False
                return
            yield event

    async def close(self):
        self.closed = True
        self.is_open = False
        self.end()

    # transcription surface
    async def send_audio(self, frame):
        self.calls.append(("audio", len(frame)))

    async def keep_alive(self):
        self.calls.append(("keep_alive",))

    # synthesis surface
    async def speak(self, context_id, text, continuation):
        self.calls.append(("speak", context_id, text, continuation))

    async def finish(self, context_id):
        self.calls.append(("finish", context_id))

    async def cancel(self, context_id):
        self.calls.append(("cancel", context_id))


class FakeProviders(ProviderFactory):
    def __init__(self, streams=None, stt_fails: bool = False, tts_fails: bool = False):
        self.stt = FakeProviderClient(fail_connect=stt_fails)
        self.tts = FakeProviderClient(fail_connect=tts_fails)
        self.llm_client = make_llm_client(streams)
        self.created: list[str] = []

    def transcription(self, credentials, config):
        self.created.append("transcription")
        return self.stt

    def synthesis(self, credentials, config):
        self.created.append("synthesis")
        return self.tts

    def generation(self, credentials, config):
        self.created.append("generation")
        return GenerationController(self.llm_client, config.generation, config.system_prompt)


# =============================================================================
# Helpers
# =============================================================================


async def wait_until(predicate, timeout: float = 2.0):
    """Poll *predicate* on the running loop until it holds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


@pytest.fixture
def provider_keys(monkeypatch):
    monkeypatch.setenv(DEEPGRAM_KEY_ENV, "dg-test")
    monkeypatch.setenv(GROQ_KEY_ENV, "gsk-test")
    monkeypatch.setenv(CARTESIA_KEY_ENV, "sk-test")


@pytest.fixture
def no_provider_keys(monkeypatch):
    for name in (DEEPGRAM_KEY_ENV, GROQ_KEY_ENV, CARTESIA_KEY_ENV):
        monkeypatch.delenv(name, raising=False)
