"""
Tool execution for the two-phase chat loop.

Phase one's completion text is scanned for tool calls; each call is executed
against the gateway client one at a time (tool effects may depend on order),
and the outcomes are folded into a follow-up turn that asks the model for its
final answer.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from orchestration.tool_calls import ToolCall

logger = logging.getLogger(__name__)

FINAL_ANSWER_INSTRUCTION = (
    "Please provide your final answer based on the tool results above. "
    "Do not call any more tools."
)

_MAX_RESULT_CHARS = 20000


@dataclass
class ToolResult:
    name: str
    result: Any = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        d = {"name": self.name, "result": self.result}
        if self.error is not None:
            d["error"] = self.error
        return d


async def execute_tool_calls(
    calls: list[ToolCall],
    client,
    on_status: Optional[Callable[[str, str], Awaitable[None]]] = None,
) -> list[ToolResult]:
    """Run each call sequentially. A failing tool never aborts the others.

    Args:
        calls: Parsed tool calls in invocation order.
        client: Object exposing `async call_tool(name, arguments)`.
        on_status: Optional async callable(status, details) for progress events.
    """
    results: list[ToolResult] = []
    for call in calls:
        logger.info("[TOOL] Executing %s with %s", call.name, json.dumps(call.arguments)[:500])
        if on_status:
            await on_status(f"Executing tool: {call.name}", f"Running {call.name}...")
        try:
            result = await client.call_tool(call.name, call.arguments)
        except Exception as e:
            logger.error("[TOOL] %s failed: %s", call.name, e)
            results.append(ToolResult(name=call.name, result=None, error=str(e) or type(e).__name__))
            if on_status:
                await on_status(f"Tool failed: {call.name}", str(e))
            continue
        logger.info("[TOOL] %s completed", call.name)
        results.append(ToolResult(name=call.name, result=result))
    return results


def render_tool_result(result: Any) -> str:
    """Flatten an MCP tools/call result into text for the model."""
    if result is None:
        return ""
    if isinstance(result, str):
        text = result
    elif isinstance(result, dict) and isinstance(result.get("content"), list):
        parts = []
        for item in result["content"]:
            if isinstance(item, dict) and item.get("type") == "text":
                parts.append(item.get("text", ""))
            else:
                parts.append(json.dumps(item))
        text = "\n".join(parts)
    else:
        text = json.dumps(result, indent=2, default=str)
    if len(text) > _MAX_RESULT_CHARS:
        text = text[:_MAX_RESULT_CHARS] + "\n\n[Truncated]"
    return text


def format_tool_results(results: list[ToolResult]) -> str:
    """Summary of all tool outcomes plus the final-answer instruction."""
    sections = ["Tool execution results:"]
    for r in results:
        if r.error is not None:
            sections.append(f"### Tool: {r.name}\nError: {r.error}")
        else:
            sections.append(f"### Tool: {r.name}\nResult:\n{render_tool_result(r.result)}")
    sections.append(FINAL_ANSWER_INSTRUCTION)
    return "\n\n".join(sections)


def build_follow_up(messages: list[dict], first_response: str,
                    results: list[ToolResult]) -> list[dict]:
    """Return a new turn list for phase two: raw assistant text, then tool outcomes."""
    return [
        *messages,
        {"role": "assistant", "content": first_response},
        {"role": "user", "content": format_tool_results(results)},
    ]
