"""
GatewayClient — MCP session over a gateway subprocess's stdio.

The GatewayManager owns the process (spawn, readiness, kill). This client
only bridges the process's stdout/stdin into an `mcp.ClientSession`:

    stdout lines -> JSONRPCMessage -> session read stream
    session write stream -> JSON line -> stdin

The gateway may print log lines on stdout; anything that is not a JSON-RPC
message is skipped. The session runs in its own task for as long as the
client is connected, since anyio task groups must be exited by the task
that entered them.
"""

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Optional

import anyio
from mcp import ClientSession, types
from mcp.shared.exceptions import McpError
from mcp.shared.message import SessionMessage
from pydantic import ValidationError

from config import GATEWAY_REQUEST_TIMEOUT, MCP_CLIENT_INFO
from errors import GatewayConnectError, GatewayToolError

logger = logging.getLogger(__name__)

CLOSED_MESSAGE = "Gateway closed its output stream"


def _unwrap(exc: BaseException) -> BaseException:
    # Task groups wrap a single failure in an exception group
    while getattr(exc, "exceptions", None) and len(exc.exceptions) == 1:
        exc = exc.exceptions[0]
    return exc


class GatewayClient:
    def __init__(self, process, request_timeout: float = GATEWAY_REQUEST_TIMEOUT):
        self.process = process
        self.request_timeout = request_timeout
        self.session: Optional[ClientSession] = None
        self.tools: list[dict] = []
        self.server_info: dict = {}
        self._done = asyncio.Event()
        self._ready: Optional[asyncio.Future] = None
        self._scope: Optional[anyio.CancelScope] = None
        self._task: Optional[asyncio.Task] = None
        self._refresh_task: Optional[asyncio.Task] = None

    @property
    def is_connected(self) -> bool:
        return self.session is not None and not self._done.is_set()

    # ── Lifecycle ──

    async def connect(self):
        """Start the session task and wait for initialize + tools/list.

        Both steps are bounded by the request timeout inside the session task.
        """
        if self.process.stdin is None or self.process.stdout is None:
            raise GatewayConnectError("Gateway process missing stdout/stdin")

        self._ready = asyncio.get_running_loop().create_future()
        self._task = asyncio.create_task(self._run())
        try:
            await asyncio.shield(self._ready)
        except asyncio.CancelledError:
            self.disconnect()
            raise
        except Exception as e:
            self.disconnect()
            raise GatewayConnectError(
                f"MCP session initialization failed: {str(e) or type(e).__name__}") from e
        logger.info("MCP session initialized: %s", self.server_info.get("name", "gateway"))

    def disconnect(self):
        """End the session. The process is left to the owner."""
        if self._ready is not None and not self._ready.done():
            self._ready.set_exception(GatewayConnectError("Gateway client disconnected"))
        self._shutdown()
        stdin = self.process.stdin
        if stdin is not None:
            try:
                stdin.close()
            except Exception as e:
                logger.debug("Closing gateway stdin: %s", e)

    def _shutdown(self):
        self._done.set()
        if self._scope is not None:
            self._scope.cancel()

    async def _run(self):
        if self._done.is_set():
            return
        read_writer, read_stream = anyio.create_memory_object_stream(0)
        write_stream, write_reader = anyio.create_memory_object_stream(0)
        try:
            async with anyio.create_task_group() as tg:
                self._scope = tg.cancel_scope
                tg.start_soon(self._pump_stdout, read_writer)
                tg.start_soon(self._pump_stdin, write_reader)
                async with ClientSession(
                    read_stream,
                    write_stream,
                    message_handler=self._on_message,
                    client_info=types.Implementation(**MCP_CLIENT_INFO),
                ) as session:
                    with anyio.fail_after(self.request_timeout):
                        init = await session.initialize()
                    self.server_info = init.serverInfo.model_dump(exclude_none=True)
                    self.session = session
                    await self.refresh_tools()
                    if not self._ready.done():
                        self._ready.set_result(None)
                    await self._done.wait()
                tg.cancel_scope.cancel()
        except Exception as e:
            cause = _unwrap(e)
            if not self._ready.done():
                self._ready.set_exception(cause)
            else:
                logger.warning("MCP session ended with an error: %s", cause)
        finally:
            self.session = None
            self._done.set()
            if not self._ready.done():
                self._ready.set_exception(GatewayConnectError(CLOSED_MESSAGE))

    async def _pump_stdout(self, read_writer):
        stdout = self.process.stdout
        async with read_writer:
            while True:
                raw = await stdout.readline()
                if not raw:
                    break
                line = raw.decode("utf-8", errors="replace").strip()
                if not line.startswith("{"):
                    if line:
                        logger.debug("Skipping non-JSON line from gateway: %s", line[:150])
                    continue
                try:
                    message = types.JSONRPCMessage.model_validate_json(line)
                except ValidationError as e:
                    logger.warning("Failed to parse gateway message: %s (%s)", line[:200], e)
                    continue
                try:
                    await read_writer.send(SessionMessage(message))
                except (anyio.BrokenResourceError, anyio.ClosedResourceError):
                    return
        logger.info(CLOSED_MESSAGE)
        self._shutdown()

    async def _pump_stdin(self, write_reader):
        stdin = self.process.stdin
        async with write_reader:
            async for session_message in write_reader:
                data = session_message.message.model_dump_json(by_alias=True, exclude_none=True)
                try:
                    stdin.write((data + "\n").encode("utf-8"))
                    await stdin.drain()
                except (BrokenPipeError, ConnectionResetError) as e:
                    logger.warning("Gateway stdin closed: %s", e)
                    self._shutdown()
                    return

    async def _on_message(self, message):
        if isinstance(message, Exception):
            logger.warning("MCP transport error: %s", message)
        elif isinstance(message, types.ServerNotification) and isinstance(
                message.root, types.ToolListChangedNotification):
            logger.info("Gateway tool list changed, refreshing")
            self._refresh_task = asyncio.create_task(self.refresh_tools())

    # ── Tools ──

    async def refresh_tools(self) -> list[dict]:
        try:
            result = await self._request("tools/list", lambda s: s.list_tools())
        except GatewayToolError as e:
            logger.error("Failed to list tools: %s", e)
            self.tools = []
            return self.tools
        self.tools = [tool.model_dump(mode="json", exclude_none=True) for tool in result.tools]
        logger.info("Discovered %d MCP tools: %s", len(self.tools),
                    ", ".join(t.get("name", "?") for t in self.tools))
        return self.tools

    async def call_tool(self, name: str, arguments: dict) -> Any:
        if not self.is_connected:
            raise GatewayToolError("MCP client not connected or session not initialized")
        result = await self._request("tools/call", lambda s: s.call_tool(name, arguments))
        payload = result.model_dump(mode="json", exclude_none=True)
        if result.isError:
            texts = [c.get("text", "") for c in payload.get("content") or []
                     if c.get("type") == "text"]
            raise GatewayToolError("\n".join(t for t in texts if t) or f"Tool {name} reported an error")
        return payload

    async def _request(self, method: str, make_call: Callable[[ClientSession], Awaitable]):
        """Run one session call, bounded by the request timeout and the stream closing."""
        session = self.session
        if session is None or self._done.is_set():
            raise GatewayToolError(f"Cannot send {method}: gateway not connected")
        call = asyncio.ensure_future(make_call(session))
        closed = asyncio.ensure_future(self._done.wait())
        try:
            done, _ = await asyncio.wait({call, closed}, timeout=self.request_timeout,
                                         return_when=asyncio.FIRST_COMPLETED)
        finally:
            for fut in (call, closed):
                if not fut.done():
                    fut.cancel()
        if call in done:
            try:
                return call.result()
            except McpError as e:
                raise GatewayToolError(f'calling "{method}": {e.error.message}') from e
            except (anyio.BrokenResourceError, anyio.ClosedResourceError) as e:
                raise GatewayToolError(CLOSED_MESSAGE) from e
        if closed in done:
            raise GatewayToolError(CLOSED_MESSAGE)
        raise GatewayToolError(f"Request timeout: {method}")

    def function_schemas(self) -> list[dict]:
        """Discovered tools as OpenAI-style function definitions."""
        return [
            {
                "type": "function",
                "function": {
                    "name": tool["name"],
                    "description": tool.get("description") or "",
                    "parameters": tool.get("inputSchema") or {"type": "object", "properties": {}},
                },
            }
            for tool in self.tools if tool.get("name")
        ]

    def tools_prompt(self) -> str:
        """Tool documentation block for the system prompt, in the fenced-JSON convention."""
        if not self.tools:
            return ""
        docs = []
        for tool in self.tools:
            desc = f"### {tool.get('name')}"
            if tool.get("description"):
                desc += f"\n{tool['description']}"
            if tool.get("inputSchema"):
                desc += f"\nInput schema: {json.dumps(tool['inputSchema'], indent=2)}"
            docs.append(desc)
        return (
            "## Available Tools\n"
            "You have access to these tools:\n\n" + "\n\n".join(docs) + "\n\n"
            "## How to Use Tools\n"
            "To call a tool, respond with a JSON code block in exactly this format:\n\n"
            "```json\n"
            '{"tool_call": {"name": "tool_name", "arguments": {...}}}\n'
            "```\n\n"
            "Rules:\n"
            "1. Describing a tool is not calling it; include the JSON code block.\n"
            "2. You may include text before or after the block, and several blocks in one reply.\n"
            "3. The arguments must match the tool's input schema.\n"
            "After the tools run you will receive their results and should give your final answer."
        )
