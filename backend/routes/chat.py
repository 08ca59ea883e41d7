"""Chat WebSocket, SSE chat, and abort endpoints."""

import asyncio
import json
import logging

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from fastapi.responses import StreamingResponse
from pydantic import ValidationError

from config import CORS_ORIGINS
from core import ChatEngine
from deps import get_engine
from models import ChatRequest

logger = logging.getLogger(__name__)

router = APIRouter()

_WS_MAX_MESSAGE_SIZE = 20_000_000   # base64 images ride along with chat messages


@router.websocket("/ws")
async def ws_endpoint(websocket: WebSocket):
    origin = websocket.headers.get("origin", "")
    if origin and origin not in CORS_ORIGINS:
        await websocket.close(code=4003, reason="Origin not allowed")
        return
    await websocket.accept()

    engine: ChatEngine = getattr(websocket.app.state, "engine", None)
    if engine is None:
        await websocket.close(code=1013, reason="Chat engine is still initializing")
        return
    clients = websocket.app.state.ws_clients
    clients.append(websocket)
    in_flight: dict[str, asyncio.Task] = {}

    async def emit(event: dict):
        try:
            await websocket.send_json(event)
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.debug("[WS] Dropped %s event: %s", event.get("type"), e)

    try:
        while True:
            data = await websocket.receive_text()
            if data == "ping":
                await websocket.send_text("pong")
                continue
            if len(data) > _WS_MAX_MESSAGE_SIZE:
                await websocket.send_json({"type": "error", "message": "Message too large"})
                continue
            try:
                msg = json.loads(data)
            except json.JSONDecodeError:
                await websocket.send_json({"type": "error", "message": "Invalid JSON"})
                continue
            if not isinstance(msg, dict):
                await websocket.send_json({"type": "error", "message": "Invalid message format"})
                continue

            msg_type = msg.get("type")
            if msg_type == "chat":
                try:
                    req = ChatRequest(**{k: v for k, v in msg.items() if k != "type"})
                except ValidationError as e:
                    await websocket.send_json({"type": "error", "message": f"Invalid chat request: {e}"})
                    continue
                if req.request_id in in_flight or engine.registry.is_active(req.request_id):
                    await websocket.send_json({"type": "error", "request_id": req.request_id,
                                               "message": "Request id already in flight"})
                    continue
                task = asyncio.create_task(engine.handle_chat(req, emit))
                in_flight[req.request_id] = task
                task.add_done_callback(lambda _t, rid=req.request_id: in_flight.pop(rid, None))

            elif msg_type == "abort":
                request_id = str(msg.get("request_id", ""))
                count = engine.abort(request_id) if request_id else 0
                await websocket.send_json({"type": "abort_result", "request_id": request_id,
                                           "cancelled": count})

            elif msg_type == "get_tools":
                await websocket.send_json({"type": "tools", "tools": engine.gateway.current_tools()})

            elif msg_type == "refresh_tools":
                try:
                    tools = await engine.gateway.refresh_tools()
                except Exception as e:
                    logger.warning("[WS] Tool refresh failed: %s", e)
                    await websocket.send_json({"type": "error", "message": f"Failed to refresh tools: {e}"})
                    continue
                await websocket.send_json({"type": "tools", "tools": tools})

            else:
                await websocket.send_json({"type": "error", "message": f"Unknown message type: {str(msg_type)[:50]}"})
    except WebSocketDisconnect:
        pass
    finally:
        if websocket in clients:
            clients.remove(websocket)
        for request_id in list(in_flight):
            logger.info("[WS] Client gone, aborting %s", request_id)
            engine.abort(request_id)


@router.post("/api/chat")
async def api_chat(req: ChatRequest, engine: ChatEngine = Depends(get_engine)):
    """Run a chat turn and stream its events as Server-Sent Events."""
    queue: asyncio.Queue = asyncio.Queue()

    async def emit(event: dict):
        await queue.put(event)

    async def run():
        try:
            await engine.handle_chat(req, emit)
        finally:
            await queue.put(None)

    async def event_stream():
        task = asyncio.create_task(run())
        try:
            while True:
                event = await queue.get()
                if event is None:
                    break
                yield f"data: {json.dumps(event)}\n\n"
            yield "data: [DONE]\n\n"
        finally:
            if not task.done():
                engine.abort(req.request_id)

    return StreamingResponse(event_stream(), media_type="text/event-stream")


@router.post("/api/chat/{request_id}/abort")
def api_abort(request_id: str, engine: ChatEngine = Depends(get_engine)):
    count = engine.abort(request_id)
    return {"request_id": request_id, "cancelled": count}
