"""
Inference package — streaming client for the local llama.cpp endpoint.

Quick start:
    from inference import StreamingCompletionClient
    client = StreamingCompletionClient()
    result = await client.complete(messages, model="ai/llama3.2")
"""

from inference.streaming import CompletionResult, StreamingCompletionClient
from inference.tokens import TokenUsage, estimate_tokens

__all__ = [
    "CompletionResult",
    "StreamingCompletionClient",
    "TokenUsage",
    "estimate_tokens",
]
