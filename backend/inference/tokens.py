"""
Token estimation and usage accounting.

Token counts are estimated with the chars/4 heuristic; the inference endpoint
reports real usage, which is accumulated in TokenUsage.
"""

import math
from dataclasses import dataclass
from typing import Optional


def estimate_tokens(text: str) -> int:
    """Approximate token count for a string (1 token ~ 4 characters)."""
    if not text:
        return 0
    return math.ceil(len(text) / 4)


def estimate_content_tokens(content) -> int:
    """Estimate tokens for a message content (string or multi-part list).

    Only text parts are counted; image payloads are sized by the endpoint.
    """
    if isinstance(content, str):
        return estimate_tokens(content)
    if isinstance(content, list):
        total = 0
        for part in content:
            if isinstance(part, dict) and part.get("type") == "text":
                total += estimate_tokens(part.get("text", ""))
            elif isinstance(part, str):
                total += estimate_tokens(part)
        return total
    return 0


def estimate_turn_tokens(turn: dict) -> int:
    return estimate_content_tokens(turn.get("content", ""))


@dataclass
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )

    @classmethod
    def from_payload(cls, usage: Optional[dict], timings: Optional[dict] = None) -> "TokenUsage":
        """Build usage from an endpoint `usage` dict, or derive it from llama.cpp `timings`."""
        if usage:
            prompt = int(usage.get("prompt_tokens") or 0)
            completion = int(usage.get("completion_tokens") or 0)
            total = int(usage.get("total_tokens") or (prompt + completion))
            return cls(prompt, completion, total)
        if timings:
            prompt = int(timings.get("cache_n") or 0) + int(timings.get("prompt_n") or 0)
            completion = int(timings.get("predicted_n") or 0)
            return cls(prompt, completion, prompt + completion)
        return cls()

    def to_dict(self) -> dict:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }
