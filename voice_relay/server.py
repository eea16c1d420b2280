"""
server.py — Voice Relay · FastAPI entry point
=============================================
One websocket connection per browser client.  Each connection owns at most
one `Session` that bridges the client to transcription, generation and
synthesis providers.

Endpoints
---------
  WS   /ws        Client audio in, conversation events out
  GET  /health    Service liveness
  GET  /sessions  List active sessions
  GET  /config    Current runtime configuration
  PUT  /config    Deep-merge a partial configuration patch

Configuration changes apply to sessions created afterwards; running sessions
keep the config they started with.
"""

from __future__ import annotations

import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import Body, FastAPI, HTTPException, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from .config import RelayConfig
from .protocol import Envelope, parse_client_frame
from .session import ProviderFactory, Session, SessionRegistry

load_dotenv()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.DEBUG if os.getenv("VOICE_DEBUG") else logging.INFO,
    format="%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s – %(message)s",
    datefmt="%H:%M:%S",
)
log = logging.getLogger("voice_relay.server")

CONFIG_PATH_ENV = "VOICE_RELAY_CONFIG"


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------

class SessionInfo(BaseModel):
    session_id: str
    turn: str
    uptime_sec: float
    history_length: int


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def create_app(
    config: Optional[RelayConfig] = None,
    providers: Optional[ProviderFactory] = None,
) -> FastAPI:
    config_path = os.getenv(CONFIG_PATH_ENV)
    if config is None:
        config = RelayConfig.load(config_path) if config_path else RelayConfig()

    @asynccontextmanager
    async def _lifespan(app: FastAPI):
        log.info("event=server_start")
        yield
        registry: SessionRegistry = app.state.registry
        log.info("event=server_shutdown closing %d active sessions", len(registry))
        for session in registry.snapshot():
            await registry.remove(session.id)
            await session.close()
        log.info("event=server_stopped")

    app = FastAPI(
        title="Voice Relay",
        version="1.0.0",
        description="Real-time voice conversation relay",
        lifespan=_lifespan,
    )
    app.state.registry = SessionRegistry()
    app.state.config = config
    app.state.config_path = config_path
    app.state.providers = providers or ProviderFactory()

    # Allow file:// and any local origin to reach the API (dev only)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health() -> JSONResponse:
        """Liveness probe."""
        return JSONResponse({
            "status":          "ok",
            "active_sessions": len(app.state.registry),
        })

    @app.get("/sessions", response_model=list[SessionInfo])
    async def list_sessions() -> list[SessionInfo]:
        now = time.time()
        return [
            SessionInfo(
                session_id=s.id,
                turn=s.state.turn.value,
                uptime_sec=round(now - s.created_at, 1),
                history_length=len(s.state.history),
            )
            for s in app.state.registry.snapshot()
        ]

    @app.get("/config")
    async def get_config() -> JSONResponse:
        return JSONResponse(app.state.config.model_dump())

    @app.put("/config")
    async def put_config(patch: dict = Body(...)) -> JSONResponse:
        """Partial update, e.g. ``{"generation": {"temperature": 0.3}}``."""
        try:
            updated = app.state.config.merge_patch(patch)
        except ValidationError as exc:
            raise HTTPException(
                status_code=422,
                detail=exc.errors(include_url=False),
            ) from exc
        app.state.config = updated
        if app.state.config_path:
            updated.save(app.state.config_path)
        log.info("event=config_updated keys=%s", sorted(patch))
        return JSONResponse(updated.model_dump())

    @app.websocket("/ws")
    async def ws_session(ws: WebSocket) -> None:
        await ws.accept()
        connection_id = uuid.uuid4().hex[:12]
        registry: SessionRegistry = app.state.registry
        session: Optional[Session] = None
        log.info("event=client_connected connection=%s remote=%s", connection_id, ws.client)

        async def close_client() -> None:
            try:
                await ws.close()
            except RuntimeError as exc:
                log.debug("event=client_already_closed connection=%s error=%s", connection_id, exc)

        try:
            while True:
                message = await ws.receive()
                if message["type"] == "websocket.disconnect":
                    break
                payload = message.get("bytes")
                if payload is None:
                    payload = message.get("text")

                frame = parse_client_frame(payload)
                if frame is None:
                    continue

                if isinstance(frame, bytes):
                    if session is None or not session.initialized:
                        log.debug("event=audio_before_initialize connection=%s", connection_id)
                        continue
                    await session.handle_audio(frame)
                    continue

                if frame.type == "initialize":
                    if session is not None and session.initialized:
                        log.warning("event=duplicate_initialize connection=%s", connection_id)
                        continue
                    session = await _start_session(connection_id, ws, close_client, app)
                    continue

                _log_unknown(connection_id, frame)
        finally:
            if session is not None:
                await registry.remove(session.id)
                await session.close()
            log.info("event=client_disconnected connection=%s", connection_id)

    return app


async def _start_session(connection_id: str, ws: WebSocket, close_client, app: FastAPI) -> Session:
    session = Session(
        connection_id,
        send_text=ws.send_text,
        close_client=close_client,
        config=app.state.config,
        providers=app.state.providers,
    )
    await app.state.registry.add(session)
    if not await session.initialize():
        await app.state.registry.remove(session.id)
        await session.close()
    return session


def _log_unknown(connection_id: str, frame: Envelope) -> None:
    log.warning("event=unknown_client_event connection=%s type=%s", connection_id, frame.type)


app = create_app()


def main() -> None:
    import uvicorn

    uvicorn.run(
        "voice_relay.server:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        log_level="debug" if os.getenv("VOICE_DEBUG") else "info",
    )


if __name__ == "__main__":
    main()
