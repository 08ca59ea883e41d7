"""
Failure classification for completion errors.

Context-size failures are turned into an actionable report (observed prompt
size, current limit, recommended context, per-block breakdown); image-input
failures get model-swap guidance; everything else is reported generically.
"""

import json
import math
import re
from dataclasses import dataclass, field
from typing import Optional

from config import (
    MIN_RECOMMENDED_CONTEXT,
    RECOMMENDED_CONTEXT_MULTIPLIER,
    RECOMMENDED_CONTEXT_ROUNDING,
)

KIND_CONTEXT_SIZE = "context_size"
KIND_IMAGE_UNSUPPORTED = "image_unsupported"
KIND_GENERIC = "generic"

_CONTEXT_PATTERNS = [
    re.compile(r"exceed\w*\s+(the\s+)?(available\s+)?context", re.IGNORECASE),
    re.compile(r"context\s+(size|length|window)\s+(exceeded|too\s+small)", re.IGNORECASE),
    re.compile(r"exceed_context_size", re.IGNORECASE),
    re.compile(r"maximum context length", re.IGNORECASE),
    re.compile(r"too many tokens", re.IGNORECASE),
]

_IMAGE_PATTERNS = [
    re.compile(r"image input is not supported", re.IGNORECASE),
    re.compile(r"does not support (image|vision|multimodal)", re.IGNORECASE),
    re.compile(r"(image|multimodal)\s+(input\s+)?not\s+supported", re.IGNORECASE),
    re.compile(r"mmproj", re.IGNORECASE),
]

_PROMPT_TOKENS_RE = [
    re.compile(r"n_prompt_tokens\"?\s*[:=]\s*(\d+)"),
    re.compile(r"request\s*\((\d+)\s*tokens\)", re.IGNORECASE),
    re.compile(r"(\d+)\s+prompt tokens", re.IGNORECASE),
]
_LIMIT_RE = [
    re.compile(r"n_ctx\"?\s*[:=]\s*(\d+)"),
    re.compile(r"context size\s*\((\d+)\s*tokens\)", re.IGNORECASE),
    re.compile(r"context length is (\d+)", re.IGNORECASE),
]


@dataclass
class FailureReport:
    kind: str
    message: str
    prompt_tokens: Optional[int] = None
    context_limit: Optional[int] = None
    recommended_context: Optional[int] = None
    breakdown: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "message": self.message,
            "prompt_tokens": self.prompt_tokens,
            "context_limit": self.context_limit,
            "recommended_context": self.recommended_context,
            "breakdown": dict(self.breakdown),
        }


def is_context_size_error(text: str) -> bool:
    return any(p.search(text) for p in _CONTEXT_PATTERNS)


def is_image_unsupported_error(text: str) -> bool:
    return any(p.search(text) for p in _IMAGE_PATTERNS)


def _first_int(patterns: list[re.Pattern], text: str) -> Optional[int]:
    for p in patterns:
        m = p.search(text)
        if m:
            return int(m.group(1))
    return None


def extract_context_figures(text: str) -> tuple[Optional[int], Optional[int]]:
    """Pull (prompt_tokens, n_ctx) out of an error body, JSON or prose."""
    start = text.find("{")
    if start != -1:
        try:
            body = json.loads(text[start:])
            err = body.get("error", body) if isinstance(body, dict) else {}
            if isinstance(err, dict) and ("n_prompt_tokens" in err or "n_ctx" in err):
                prompt = err.get("n_prompt_tokens")
                limit = err.get("n_ctx")
                return (int(prompt) if prompt is not None else None,
                        int(limit) if limit is not None else None)
        except (json.JSONDecodeError, ValueError, TypeError):
            pass
    return _first_int(_PROMPT_TOKENS_RE, text), _first_int(_LIMIT_RE, text)


def recommend_context(prompt_tokens: Optional[int], current_limit: Optional[int] = None,
                      multiplier: float = RECOMMENDED_CONTEXT_MULTIPLIER,
                      minimum: int = MIN_RECOMMENDED_CONTEXT,
                      rounding: int = RECOMMENDED_CONTEXT_ROUNDING) -> int:
    """~1.5x the observed prompt, at least `minimum`, rounded up to `rounding`."""
    observed = prompt_tokens or current_limit or 0
    target = max(minimum, math.ceil(observed * multiplier))
    return int(math.ceil(target / rounding) * rounding)


def _format_breakdown(breakdown: dict[str, int]) -> str:
    if not breakdown:
        return ""
    total = sum(breakdown.values())
    lines = [f"  - {name}: ~{tokens:,} tokens" for name, tokens in breakdown.items() if tokens]
    lines.append(f"  - Total (estimated): ~{total:,} tokens")
    return "\n".join(lines)


def classify_failure(error_text: str, breakdown: Optional[dict[str, int]] = None,
                     max_context: Optional[int] = None) -> FailureReport:
    """Turn a completion failure into a user-facing report."""
    breakdown = dict(breakdown or {})
    text = error_text or ""

    if is_context_size_error(text):
        prompt_tokens, limit = extract_context_figures(text)
        if limit is None:
            limit = max_context
        if prompt_tokens is None and breakdown:
            prompt_tokens = sum(breakdown.values())
        recommended = recommend_context(prompt_tokens, limit)

        lines = ["The conversation is too large for the model's context window."]
        if prompt_tokens is not None and limit is not None:
            lines.append(f"The request needs about {prompt_tokens:,} tokens but the context is limited to {limit:,}.")
        elif prompt_tokens is not None:
            lines.append(f"The request needs about {prompt_tokens:,} tokens.")
        lines.append(f"Increase the context size to at least {recommended:,} tokens, "
                     "or start a new conversation / reduce attached context.")
        detail = _format_breakdown(breakdown)
        if detail:
            lines.append("Context breakdown:\n" + detail)
        return FailureReport(
            kind=KIND_CONTEXT_SIZE,
            message="\n".join(lines),
            prompt_tokens=prompt_tokens,
            context_limit=limit,
            recommended_context=recommended,
            breakdown=breakdown,
        )

    if is_image_unsupported_error(text):
        return FailureReport(
            kind=KIND_IMAGE_UNSUPPORTED,
            message=("The selected model does not accept image input. Switch to a "
                     "vision-capable model or resend the message without the image."),
            breakdown=breakdown,
        )

    return FailureReport(
        kind=KIND_GENERIC,
        message=f"Failed to process request: {text}" if text else "Failed to process request.",
        breakdown=breakdown,
    )
