"""Health endpoint."""

from fastapi import APIRouter, Request

from config import SYSTEM_NAME

router = APIRouter()


@router.get("/health")
def health(request: Request):
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        return {"status": "starting", "name": SYSTEM_NAME}
    return {
        "status": "ok",
        "name": SYSTEM_NAME,
        "gateway": engine.gateway.state.value,
        "active_requests": engine.registry.active_requests(),
    }
