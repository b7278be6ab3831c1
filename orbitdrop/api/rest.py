"""
REST API for an Endpoint

Design Decision: API Framework
==============================

Options Considered:
1. FastAPI - async, pydantic validation, auto-docs
2. Flask - simple, but sync-focused
3. aiohttp - async, fewer batteries

Decision: FastAPI
- Shares the endpoint's event loop
- Pydantic models document request and response shapes
- StreamingResponse gives server-sent events for free

API Design:
- Room:      GET /status, POST /room, POST /room/join, GET|POST /token
- Transfers: GET|POST /transfers, POST /transfers/{id}/{action},
             DELETE /transfers/{id}
- History:   GET /history
- Live:      GET /events (server-sent events)
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from ..errors import InvalidToken, NegotiationError, SignalingError
from ..session.events import ErrorRaised, StatusChanged, TransferUpdated

logger = logging.getLogger(__name__)


# === Pydantic Models ===

class RoomRequest(BaseModel):
    """Request to create a room (code is generated when omitted)."""
    room_id: Optional[str] = None


class JoinRequest(BaseModel):
    """Request to join a room by code or share link."""
    code: str


class TokenRequest(BaseModel):
    """A manual signaling token pasted by the user."""
    token: str


class SendRequest(BaseModel):
    """Request to send a file."""
    file_path: str


class RoomStatus(BaseModel):
    """Connection status response."""
    room_id: Optional[str]
    role: Optional[str]
    state: str
    label: str
    usable: bool
    running: bool


class TransferInfo(BaseModel):
    """One transfer record."""
    id: str
    name: str
    total_size: int
    mime_type: str
    direction: str
    transferred: int
    progress: float
    status: str
    error: Optional[str] = None
    insight: Optional[str] = None
    local_path: Optional[str] = None


class HistoryInfo(BaseModel):
    """One completed transfer from history."""
    transfer_id: str
    name: str
    size: int
    mime_type: str
    direction: str
    completed_at: float
    insight: Optional[str] = None


def _transfer_info(record) -> TransferInfo:
    return TransferInfo(
        id=record.id,
        name=record.name,
        total_size=record.total_size,
        mime_type=record.mime_type,
        direction=record.direction.value,
        transferred=record.transferred,
        progress=record.progress_percent,
        status=record.status.value,
        error=record.error,
        insight=record.insight,
        local_path=record.local_path,
    )


def _event_to_dict(event) -> Optional[dict]:
    if isinstance(event, StatusChanged):
        return {
            'event': 'status',
            'state': event.state.value,
            'label': event.label,
            'usable': event.usable,
        }
    if isinstance(event, TransferUpdated):
        return {'event': 'transfer', **_transfer_info(event.record).model_dump()}
    if isinstance(event, ErrorRaised):
        return {'event': 'error', 'context': event.context, 'error': str(event.error)}
    return None


# === API Creation ===

def create_app(endpoint) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        endpoint: Endpoint instance to control

    Returns:
        FastAPI application
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("API server starting...")
        yield
        logger.info("API server stopping...")

    app = FastAPI(
        title="OrbitDrop API",
        description="Control a room-code file transfer endpoint",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def find_transfer(transfer_id: str):
        record = endpoint.get_transfer(transfer_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Transfer not found")
        return record

    # === General ===

    @app.get("/", tags=["General"])
    async def root():
        return {
            "name": "OrbitDrop",
            "version": "1.0.0",
            "status": "running" if endpoint.is_running else "not running",
        }

    @app.get("/status", response_model=RoomStatus, tags=["Room"])
    async def get_status():
        """Get connection status."""
        coordinator = endpoint.coordinator
        return RoomStatus(
            room_id=coordinator.room_id,
            role=coordinator.role.value if coordinator.role else None,
            state=coordinator.state.value,
            label=coordinator.state.label,
            usable=coordinator.is_usable,
            running=endpoint.is_running,
        )

    @app.get("/stats", tags=["General"])
    async def get_stats():
        return endpoint.get_stats()

    # === Room ===

    @app.post("/room", tags=["Room"])
    async def create_room(request: RoomRequest):
        """Create a room and start waiting for the peer."""
        try:
            room_id = await endpoint.create_room(request.room_id)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except RuntimeError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return {"room_id": room_id}

    @app.post("/room/join", tags=["Room"])
    async def join_room(request: JoinRequest):
        """Join a room by code."""
        try:
            room_id = await endpoint.join_room(request.code)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except RuntimeError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return {"room_id": room_id}

    @app.get("/token", tags=["Room"])
    async def export_token():
        """Export the local descriptor for manual exchange."""
        try:
            token = await endpoint.export_token()
        except SignalingError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return {"token": token}

    @app.post("/token", tags=["Room"])
    async def import_token(request: TokenRequest):
        """Apply a token pasted from the peer."""
        try:
            await endpoint.import_token(request.token)
        except InvalidToken as e:
            raise HTTPException(status_code=400, detail=str(e))
        except NegotiationError as e:
            raise HTTPException(status_code=422, detail=str(e))
        except SignalingError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return {"success": True, "state": endpoint.state.value}

    # === Transfers ===

    @app.get("/transfers", response_model=List[TransferInfo], tags=["Transfers"])
    async def list_transfers():
        return [_transfer_info(r) for r in endpoint.list_transfers()]

    @app.post("/transfers", status_code=202, tags=["Transfers"])
    async def send_file(request: SendRequest):
        """Start sending a file; progress is reported on /transfers and /events."""
        file_path = Path(request.file_path)
        if not file_path.is_absolute():
            file_path = file_path.resolve()

        if not file_path.exists():
            raise HTTPException(status_code=404, detail=f"File not found: {file_path}")
        if not file_path.is_file():
            raise HTTPException(status_code=400, detail=f"Not a file: {file_path}")
        if not endpoint.coordinator.is_usable:
            raise HTTPException(status_code=409, detail="Peer is not connected")

        logger.info(f"Send request for: {file_path}")
        transfer_id = endpoint.start_send(file_path)
        return {"transfer_id": transfer_id}

    @app.get("/transfers/{transfer_id}", response_model=TransferInfo, tags=["Transfers"])
    async def get_transfer(transfer_id: str):
        return _transfer_info(find_transfer(transfer_id))

    @app.post("/transfers/{transfer_id}/pause", tags=["Transfers"])
    async def pause_transfer(transfer_id: str):
        find_transfer(transfer_id)
        if not endpoint.pause(transfer_id):
            raise HTTPException(status_code=409, detail="Transfer is not running")
        return {"success": True}

    @app.post("/transfers/{transfer_id}/resume", tags=["Transfers"])
    async def resume_transfer(transfer_id: str):
        find_transfer(transfer_id)
        if not endpoint.resume(transfer_id):
            raise HTTPException(status_code=409, detail="Transfer is not running")
        return {"success": True}

    @app.post("/transfers/{transfer_id}/cancel", tags=["Transfers"])
    async def cancel_transfer(transfer_id: str):
        find_transfer(transfer_id)
        if not endpoint.cancel(transfer_id):
            raise HTTPException(status_code=409, detail="Transfer is not running")
        return {"success": True}

    @app.delete("/transfers/{transfer_id}", tags=["Transfers"])
    async def remove_transfer(transfer_id: str):
        success = endpoint.remove_transfer(transfer_id)
        return {"success": success}

    # === History ===

    @app.get("/history", response_model=List[HistoryInfo], tags=["History"])
    async def get_history():
        entries = await endpoint.get_history()
        return [HistoryInfo(**entry.to_dict()) for entry in entries]

    # === Live events ===

    @app.get("/events", tags=["Live"])
    async def stream_events():
        """Stream status, transfer and error events (SSE)."""
        queue = endpoint.events.listen()

        async def event_generator():
            try:
                while True:
                    try:
                        event = await asyncio.wait_for(queue.get(), timeout=15.0)
                    except asyncio.TimeoutError:
                        yield ": heartbeat\n\n"
                        continue

                    data = _event_to_dict(event)
                    if data is not None:
                        yield f"data: {json.dumps(data)}\n\n"
            finally:
                endpoint.events.stop_listening(queue)

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            }
        )

    return app


async def run_api_server(endpoint, host: str = "127.0.0.1", port: int = 8080):
    """
    Run the API server on the current event loop.

    Args:
        endpoint: Endpoint instance
        host: Host to bind to
        port: Port to listen on
    """
    import uvicorn

    app = create_app(endpoint)

    config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_level="info",
    )
    server = uvicorn.Server(config)
    await server.serve()
