from __future__ import annotations

import logging
import threading
import time
from typing import Any

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from .client import NotRegisteredError, SessionError, SessionProxy, SessionState
from .protocol import ProtocolError, Role

logger = logging.getLogger(__name__)

# Delay between registration attempts while the relay is unreachable
RETRY_INTERVAL = 1.0


class GameEventBody(BaseModel):
    """Request body for posting a game event."""

    payload: Any = None


class BridgeSession:
    """Internal OBSERVER session that lets HTTP callers reach the relay."""

    def __init__(
        self,
        server: str = "tcp://localhost",
        port: int = 8080,
        registration_timeout: float = 5.0,
    ) -> None:
        self._proxy = SessionProxy(
            server=server, port=port, registration_timeout=registration_timeout
        )
        self._running = False
        self._thread = threading.Thread(target=self._loop, name="RestBridgeSession", daemon=True)
        self._registration_timeout = registration_timeout
        self._last_error: str | None = None

    @property
    def proxy(self) -> SessionProxy:
        """Return the underlying SessionProxy instance."""
        return self._proxy

    def start(self) -> None:
        """Start the background loop that keeps the session registered."""
        if self._running:
            return
        self._running = True
        self._thread.start()

    def stop(self) -> None:
        """Stop the loop and close the session."""
        self._running = False
        if self._thread.is_alive():
            self._thread.join(timeout=self._registration_timeout + 2.0)
        self._proxy.disconnect()

    def _loop(self) -> None:
        """Register as OBSERVER, and again whenever the relay drops the session."""
        while self._running:
            if self._proxy.state is not SessionState.DISCONNECTED:
                time.sleep(0.1)
                continue
            try:
                self._proxy.connect(Role.OBSERVER)
                self._last_error = None
            except SessionError as exc:
                self._last_error = str(exc)
                logger.debug(f"Bridge registration failed: {exc}")
                if self._proxy.state is not SessionState.DISCONNECTED:
                    self._proxy.disconnect()
                time.sleep(RETRY_INTERVAL)

    def status(self) -> dict[str, Any]:
        state = self._proxy.get_state()
        return {
            "state": state.state.value,
            "role": state.role.value if state.role else None,
            "sessionId": state.session_id,
            "registered": state.is_registered,
            "lastError": self._last_error,
        }

    def send_game_event(self, payload: Any) -> None:
        self._proxy.send_game_event(payload)


def create_app(session: BridgeSession) -> FastAPI:
    """Create the FastAPI application hosting the REST bridge."""
    app = FastAPI(title="xrwall REST Bridge", version="1.0.0")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    @app.get("/")
    def health_check() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "ok"}

    @app.get("/v1/session")
    def session_status() -> dict[str, Any]:
        return session.status()

    @app.post("/v1/game-events", status_code=202)
    def post_game_event(body: GameEventBody) -> dict[str, Any]:
        try:
            session.send_game_event(body.payload)
        except NotRegisteredError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        except ProtocolError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"status": "queued", "sessionId": session.status()["sessionId"]}

    return app


def run_uvicorn_in_thread(
    app: FastAPI, host: str = "0.0.0.0", port: int = 8800
) -> tuple[threading.Thread, "uvicorn.Server"]:  # noqa: F821
    """Spawn a Uvicorn server for the given FastAPI app in a background thread."""
    import uvicorn

    config = uvicorn.Config(
        app=app, host=host, port=port, log_level="warning", lifespan="off"
    )
    server = uvicorn.Server(config=config)
    thread = threading.Thread(target=server.run, name="RestBridgeHTTP", daemon=True)
    thread.start()
    return thread, server
