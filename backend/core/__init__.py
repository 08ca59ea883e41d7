"""
Core package — chat turn orchestration.

Usage:
    from core import ChatEngine
    engine = ChatEngine()
    await engine.handle_chat(request, emit)
"""

from core.chat_engine import ChatEngine

__all__ = [
    "ChatEngine",
]
