"""Tool listing endpoints backed by the shared gateway."""

from fastapi import APIRouter, Depends

from core import ChatEngine
from deps import get_engine

router = APIRouter()


@router.get("/api/tools")
def list_tools(engine: ChatEngine = Depends(get_engine)):
    return {"tools": engine.gateway.current_tools(), "state": engine.gateway.state.value}


@router.post("/api/tools/refresh")
async def refresh_tools(engine: ChatEngine = Depends(get_engine)):
    tools = await engine.gateway.refresh_tools()
    return {"tools": tools, "state": engine.gateway.state.value}
