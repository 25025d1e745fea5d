"""
FastAPI application exposing the FastGPT bridge.
"""
import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import List, Optional

import httpx
from fastapi import FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import PlainTextResponse
from pydantic import ValidationError

from fastgpt_bridge.admission import AdmissionGate
from fastgpt_bridge.answer_service import Answer, Renderer, answer_question
from fastgpt_bridge.chat_client import ChatClient
from fastgpt_bridge.config import Settings, init_directories, settings
from fastgpt_bridge.errors import (
    BridgeError,
    DecodeError,
    EmptyAnswerError,
    GateClosedError,
    RemoteError,
    StorageError,
    TransportError,
)
from fastgpt_bridge.housekeeping import start_cleanup, stop_cleanup
from fastgpt_bridge.models import AskRequest, AskResponse, CleanupReport, Session, SSEEvent, StorageStats
from fastgpt_bridge.session_store import SessionStore

logger = logging.getLogger(__name__)


def _to_http_error(error: BridgeError) -> HTTPException:
    if isinstance(error, EmptyAnswerError):
        return HTTPException(status_code=502, detail="The chat backend returned no answer")
    if isinstance(error, RemoteError):
        return HTTPException(status_code=502, detail=f"Chat backend error (HTTP {error.status})")
    if isinstance(error, (TransportError, DecodeError)):
        return HTTPException(status_code=502, detail=str(error))
    if isinstance(error, GateClosedError):
        return HTTPException(status_code=503, detail="Service is shutting down")
    if isinstance(error, StorageError):
        return HTTPException(status_code=500, detail="Failed to store session")
    return HTTPException(status_code=500, detail=str(error))


def _answer_to_response(answer: Answer) -> AskResponse:
    return AskResponse(
        session_id=answer.session_id,
        content=answer.markdown,
        image_path=str(answer.image_path) if answer.image_path else None,
        event_count=answer.event_count,
    )


def create_app(
    config: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    renderer: Optional[Renderer] = None,
) -> FastAPI:
    config = config or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Set up storage, the chat client and the cleanup loop."""
        init_directories(config)
        gate = AdmissionGate(config.fastgpt_concurrency_limit)
        app.state.store = SessionStore(config.data_dir)
        app.state.client = ChatClient.from_settings(config, gate=gate, transport=transport)
        start_cleanup(app.state.store, config.session_expiry_days, config.cleanup_interval_hours)
        yield
        gate.shutdown()
        await stop_cleanup()
        await app.state.client.aclose()

    app = FastAPI(
        title="FastGPT Bridge",
        version="1.0.0",
        lifespan=lifespan
    )

    async def ask(app: FastAPI, body: AskRequest, on_event=None) -> AskResponse:
        answer = await answer_question(
            app.state.client,
            app.state.store,
            body.user_id,
            body.question,
            image_urls=body.image_urls or None,
            on_event=on_event,
            renderer=renderer,
            temp_dir=config.image_output_dir / "temp",
        )
        return _answer_to_response(answer)

    @app.post("/api/ask", response_model=AskResponse)
    async def ask_question(request: Request, body: AskRequest):
        """Ask the chat backend a question and store the interaction."""
        try:
            return await ask(request.app, body)
        except BridgeError as e:
            logger.error("Ask failed for user %s: %s", body.user_id, e)
            raise _to_http_error(e)

    @app.websocket("/ws/ask")
    async def websocket_ask(websocket: WebSocket):
        """Answer questions over a websocket, relaying progress events live."""
        await websocket.accept()

        async def relay(event: SSEEvent):
            await websocket.send_json({"type": "progress", "event": event.name})

        try:
            while True:
                data = await websocket.receive_text()
                try:
                    message = json.loads(data)
                    body = AskRequest(**{k: v for k, v in message.items() if k != "type"})
                except (ValueError, TypeError, ValidationError) as e:
                    await websocket.send_json({"type": "error", "content": f"Invalid question: {e}"})
                    continue

                try:
                    result = await ask(websocket.app, body, on_event=relay)
                except BridgeError as e:
                    logger.error("Websocket ask failed for user %s: %s", body.user_id, e)
                    await websocket.send_json({"type": "error", "content": _to_http_error(e).detail})
                    continue
                await websocket.send_json({"type": "answer", **result.model_dump()})
        except WebSocketDisconnect:
            logger.info("Websocket client disconnected")

    @app.get("/api/users/{user_id}/sessions", response_model=List[Session])
    async def list_sessions(request: Request, user_id: str, limit: int = Query(10, ge=1, le=100)):
        """Return the user's most recent sessions."""
        try:
            sessions = await asyncio.to_thread(request.app.state.store.get_user_sessions, user_id)
        except StorageError as e:
            raise _to_http_error(e)
        return sessions[:limit]

    @app.get("/api/users/{user_id}/stats", response_model=StorageStats)
    async def user_stats(request: Request, user_id: str):
        """Return storage statistics for the user."""
        try:
            return await asyncio.to_thread(request.app.state.store.storage_stats, user_id)
        except StorageError as e:
            raise _to_http_error(e)

    @app.get("/api/sessions/{session_id}/response", response_class=PlainTextResponse)
    async def session_response(request: Request, session_id: str):
        """Return the stored markdown answer of a session."""
        try:
            markdown = await asyncio.to_thread(request.app.state.store.read_response_markdown, session_id)
        except StorageError:
            markdown = None
        if markdown is None:
            raise HTTPException(status_code=404, detail="Session not found")
        return PlainTextResponse(markdown, media_type="text/markdown")

    @app.post("/api/cleanup", response_model=CleanupReport)
    async def run_cleanup(request: Request, expiry_days: Optional[float] = Query(None, ge=0)):
        """Purge images of expired and orphaned sessions now."""
        days = config.session_expiry_days if expiry_days is None else expiry_days
        return await request.app.state.store.periodic_cleanup(days)

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        gate = app.state.client.gate if hasattr(app.state, "client") else None
        return {
            "status": "healthy",
            "service": "fastgpt-bridge",
            "version": "1.0.0",
            "requests_in_flight": gate.in_use if gate else 0,
        }

    return app


logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)

app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
