"""
Relay — local LLM chat engine with a shared MCP tool gateway.
FastAPI backend streaming llama.cpp completions to WebSocket/SSE clients.
"""

import logging

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import CORS_ORIGINS, INFERENCE_URL, SYSTEM_NAME, WEB_HOST, WEB_PORT
from core import ChatEngine
from routes import register_routes

logger = logging.getLogger(__name__)


async def _broadcast(app: FastAPI, event: dict):
    """Send an event to every connected WebSocket client."""
    for ws in list(app.state.ws_clients):
        try:
            await ws.send_json(event)
        except Exception as e:
            logger.debug("Dropping WebSocket client: %s", e)
            if ws in app.state.ws_clients:
                app.state.ws_clients.remove(ws)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    app.state.ws_clients = []
    engine = ChatEngine()

    async def broadcast(event: dict):
        await _broadcast(app, event)

    engine.gateway.set_broadcast(broadcast)
    app.state.engine = engine
    logger.info("%s ready, inference endpoint %s", SYSTEM_NAME, INFERENCE_URL)
    yield
    logger.info("Shutting down, stopping tool gateway")
    await engine.gateway.teardown()


app = FastAPI(
    title="Relay",
    description="Local LLM chat engine with MCP tool gateway orchestration",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_routes(app)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=WEB_HOST, port=WEB_PORT)
