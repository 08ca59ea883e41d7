"""
Gateway package — the shared MCP tool gateway subprocess and its client.
"""

from gateway.client import GatewayClient
from gateway.manager import GatewayHandle, GatewayManager, GatewayState

__all__ = [
    "GatewayClient",
    "GatewayHandle",
    "GatewayManager",
    "GatewayState",
]
