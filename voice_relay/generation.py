"""
generation.py — cancellable streaming chat completions (Groq).

``GenerationController.start`` opens one streaming request as an asyncio task
and returns a ``Generation`` handle.  Callbacks are plain functions invoked on
the event loop thread:

  on_token(text)        once per non-empty delta, in arrival order
  on_complete(text)     exactly once, with every token joined, after end-of-stream
  on_error(exc)         at most once, for any failure not caused by cancel()

After ``Generation.cancel()`` returns no callback fires for that request.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Iterable, Optional

from groq import AsyncGroq

from .config import GenerationConfig
from .machine import ConversationMessage

log = logging.getLogger("voice_relay.generation")

TokenCallback = Callable[[str], None]
CompleteCallback = Callable[[str], None]
ErrorCallback = Callable[[Exception], None]


def make_client(api_key: str, config: GenerationConfig) -> AsyncGroq:
    return AsyncGroq(api_key=api_key, base_url=config.base_url)


class Generation:
    """Handle for one in-flight streaming request."""

    def __init__(
        self,
        on_token: TokenCallback,
        on_complete: CompleteCallback,
        on_error: ErrorCallback,
    ) -> None:
        self._on_token = on_token
        self._on_complete = on_complete
        self._on_error = on_error
        self._cancelled = False
        self._task: Optional[asyncio.Task] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        """Request abort.  Synchronous; suppresses every later callback."""
        if self._cancelled:
            return
        self._cancelled = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
        log.info("event=generation_cancel")

    async def wait(self) -> None:
        """Wait for the underlying task to settle (used on shutdown and in tests)."""
        if self._task is None:
            return
        try:
            await self._task
        except asyncio.CancelledError:
            pass


class GenerationController:
    """Builds the outgoing message list and owns the streaming request."""

    def __init__(self, client: Any, config: GenerationConfig, system_prompt: str) -> None:
        self._client = client
        self._config = config
        self._system_prompt = system_prompt

    def build_messages(self, history: Iterable[ConversationMessage]) -> list[dict]:
        """System prompt followed by the full history; history itself is not touched."""
        return [{"role": "system", "content": self._system_prompt}] + [
            message.as_dict() for message in history
        ]

    def start(
        self,
        history: Iterable[ConversationMessage],
        *,
        on_token: TokenCallback,
        on_complete: CompleteCallback,
        on_error: ErrorCallback,
    ) -> Generation:
        generation = Generation(on_token, on_complete, on_error)
        messages = self.build_messages(history)
        generation._task = asyncio.create_task(
            self._run(generation, messages),
            name="llm_generation",
        )
        return generation

    async def _run(self, generation: Generation, messages: list[dict]) -> None:
        tokens: list[str] = []
        stream = None
        started = time.perf_counter()
        log.info("event=llm_request model=%s messages=%d", self._config.model, len(messages))
        try:
            stream = await self._client.chat.completions.create(
                model=self._config.model,
                messages=messages,
                stream=True,
                **self._config.request_params(),
            )
            async for chunk in stream:
                if generation.cancelled:
                    return
                if not chunk.choices:
                    continue
                content = chunk.choices[0].delta.content
                if not content:
                    continue
                if not tokens:
                    log.info(
                        "event=llm_first_token latency_ms=%.1f",
                        (time.perf_counter() - started) * 1000,
                    )
                tokens.append(content)
                generation._on_token(content)
        except asyncio.CancelledError:
            log.debug("event=llm_stream_aborted tokens=%d", len(tokens))
            raise
        except Exception as exc:
            if generation.cancelled:
                log.debug("event=llm_error_suppressed reason=cancelled error=%s", exc)
                return
            log.error("event=llm_error error=%s", exc)
            generation._on_error(exc)
            return
        finally:
            if stream is not None:
                await _close_quietly(stream)

        if generation.cancelled:
            return
        full_text = "".join(tokens)
        log.info(
            "event=llm_complete chars=%d duration_ms=%.1f",
            len(full_text), (time.perf_counter() - started) * 1000,
        )
        generation._on_complete(full_text)


async def _close_quietly(stream: Any) -> None:
    close = getattr(stream, "close", None)
    if close is None:
        return
    try:
        await close()
    except Exception as exc:
        log.debug("event=llm_stream_close_error error=%s", exc)
