"""
Fakes for gateway subprocesses, their pipes, and the completion client.
"""

import asyncio
import json

from inference.streaming import CompletionResult

class FakeStream:
    """asyncio.StreamReader stand-in fed line by line from the test."""

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()

    def feed_line(self, text: str):
        self._queue.put_nowait(text.encode() + b"\n")

    def feed_eof(self):
        self._queue.put_nowait(b"")

    async def readline(self) -> bytes:
        return await self._queue.get()

class FakeStdin:
    """Captures writes and hands each JSON-RPC request to a responder."""

    def __init__(self, on_message=None):
        self.written: list[dict] = []
        self.closed = False
        self._on_message = on_message

    def write(self, data: bytes):
        for line in data.decode().splitlines():
            if line.strip():
                msg = json.loads(line)
                self.written.append(msg)
                if self._on_message:
                    self._on_message(msg)

    async def drain(self):
        pass

    def close(self):
        self.closed = True

class FakeProcess:
    """Subprocess stand-in speaking MCP over fake pipes.

    `tools` are returned from tools/list; `tool_results` maps a tool name to
    the tools/call result (or an Exception to answer with a JSON-RPC error).
    """

    def __init__(self, tools=None, tool_results=None, ready_line="Start stdio server",
                 exit_code=None, ignore_sigterm=False):
        self.stdout = FakeStream()
        self.stderr = FakeStream()
        self.stdin = FakeStdin(self._respond)
        self.tools = tools if tools is not None else []
        self.tool_results = tool_results or {}
        self.returncode = exit_code
        self.ignore_sigterm = ignore_sigterm
        self.terminated = False
        self.killed = False
        self.pid = 4242
        self._exited = asyncio.Event()
        if exit_code is not None:
            self._exited.set()
        if ready_line:
            self.stderr.feed_line(ready_line)

    def _respond(self, msg: dict):
        if "id" not in msg:
            return
        method = msg["method"]
        if method == "initialize":
            result = {
                "protocolVersion": msg["params"]["protocolVersion"],
                "capabilities": {"tools": {"listChanged": True}},
                "serverInfo": {"name": "fake-gateway", "version": "0.1.0"},
            }
        elif method == "tools/list":
            result = {"tools": [{"inputSchema": {"type": "object"}, **t} for t in self.tools]}
        elif method == "tools/call":
            outcome = self.tool_results.get(msg["params"]["name"])
            if isinstance(outcome, Exception):
                self.stdout.feed_line(json.dumps({
                    "jsonrpc": "2.0", "id": msg["id"],
                    "error": {"code": -32000, "message": str(outcome)},
                }))
                return
            result = outcome if outcome is not None else {
                "content": [{"type": "text", "text": f"ran {msg['params']['name']}"}]
            }
        else:
            result = {}
        self.stdout.feed_line(json.dumps({"jsonrpc": "2.0", "id": msg["id"], "result": result}))

    def exit(self, code: int):
        self.returncode = code
        self._exited.set()

    def terminate(self):
        self.terminated = True
        if not self.ignore_sigterm:
            self.exit(-15)

    def kill(self):
        self.killed = True
        self.exit(-9)

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode


class ScriptedCompletion:
    """Completion client stand-in replaying canned (chunks, usage[, native_calls[, timings]]) responses."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    async def complete(self, messages, model, max_context=None, on_chunk=None,
                       request_id=None, cache_prompt=False, tools=None):
        self.calls.append({"messages": messages, "model": model,
                           "cache_prompt": cache_prompt, "tools": tools})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        chunks, usage, *rest = response
        for chunk in chunks:
            if on_chunk:
                await on_chunk(chunk)
        return CompletionResult(content="".join(chunks), token_usage=usage,
                                tool_calls=rest[0] if rest else [],
                                timings=rest[1] if len(rest) > 1 else None)
