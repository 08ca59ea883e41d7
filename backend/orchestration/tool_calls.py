"""
Tool-call extraction from completions.

Endpoints with native function calling return structured tool_calls, which
tool_calls_from_native() converts. Otherwise the model requests a tool by
emitting a fenced JSON block:

    ```json
    {"tool_call": {"name": "tool_name", "arguments": {...}}}
    ```

Any number of blocks may appear in one completion. Blocks that are not valid
JSON or do not have the tool_call shape are skipped.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Optional

logger = logging.getLogger(__name__)

_CODE_BLOCK_RE = re.compile(r"```json[ \t]*\n([\s\S]*?)\n?```")


@dataclass
class ToolCall:
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"name": self.name, "arguments": self.arguments}


def _tool_call_from_json(raw: str) -> Optional[ToolCall]:
    parsed = json.loads(raw)
    if not isinstance(parsed, dict):
        return None
    call = parsed.get("tool_call")
    if not isinstance(call, dict) or not call.get("name"):
        return None
    arguments = call.get("arguments") or {}
    if not isinstance(arguments, dict):
        logger.warning("Tool call %s has non-object arguments, ignoring them", call["name"])
        arguments = {}
    return ToolCall(name=str(call["name"]), arguments=arguments)


def parse_tool_calls(text: str) -> list[ToolCall]:
    """Extract tool calls from completion text, in order of appearance."""
    if not text:
        return []

    calls: list[ToolCall] = []
    for match in _CODE_BLOCK_RE.finditer(text):
        try:
            call = _tool_call_from_json(match.group(1))
        except json.JSONDecodeError as e:
            logger.warning("Skipping malformed tool-call block: %s", e)
            continue
        if call:
            calls.append(call)

    # Some models answer with the bare object and no fence
    if not calls:
        stripped = text.strip()
        if stripped.startswith("{") and stripped.endswith("}"):
            try:
                call = _tool_call_from_json(stripped)
            except json.JSONDecodeError:
                call = None
            if call:
                calls.append(call)

    if calls:
        logger.info("Parsed %d tool call(s): %s", len(calls), ", ".join(c.name for c in calls))
    return calls


def tool_calls_from_native(raw_calls: list[dict]) -> list[ToolCall]:
    """Convert accumulated native tool_calls (argument JSON as a string)."""
    calls: list[ToolCall] = []
    for raw in raw_calls or []:
        name = raw.get("name")
        if not name:
            continue
        arguments = raw.get("arguments") or "{}"
        if isinstance(arguments, str):
            try:
                arguments = json.loads(arguments) if arguments.strip() else {}
            except json.JSONDecodeError as e:
                logger.warning("Native tool call %s has malformed arguments: %s", name, e)
                arguments = {}
        if not isinstance(arguments, dict):
            arguments = {}
        calls.append(ToolCall(name=str(name), arguments=arguments))
    return calls


def format_tool_calls(calls: list[ToolCall]) -> str:
    """Render calls as fenced blocks, for transcripts of native calls."""
    return "\n\n".join(
        "```json\n" + json.dumps({"tool_call": call.to_dict()}) + "\n```" for call in calls
    )
