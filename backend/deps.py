"""
Shared route dependencies: access to the ChatEngine stored on app state.
"""

from fastapi import HTTPException, Request

from core import ChatEngine


def get_engine(request: Request) -> ChatEngine:
    """Return the ChatEngine instance from app state, or 503 while starting up."""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Chat engine is still initializing")
    return engine
