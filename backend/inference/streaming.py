"""
Streaming completion client for the local llama.cpp chat endpoint.

Sends one /v1/chat/completions request with stream=true and consumes the
Server-Sent-Events response:

    data: {"choices":[{"delta":{"content":"Hel"}}]}
    data: {"choices":[{"delta":{"content":"lo"}}]}
    data: {"choices":[{"finish_reason":"stop"}],"usage":{...},"timings":{...}}
    data: [DONE]

Delta text is forwarded to the caller's on_chunk callback as soon as it
arrives. The latest usage and timings objects win.

When tool definitions are sent, native function calls arrive as
delta.tool_calls fragments keyed by index; the argument string is split
across fragments and concatenated here.

The request runs in its own task, registered in the CancellationRegistry under
"<request_id>-ai-call" so it can be aborted from outside.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

import httpx

from config import AI_CALL_SUFFIX, COMPLETION_TIMEOUT, INFERENCE_URL
from errors import (
    CompletionHTTPError,
    CompletionTimeoutError,
    CompletionTransportError,
    RequestCancelled,
)
from inference.tokens import TokenUsage
from orchestration.cancellation import CancellationRegistry, TaskHandle

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[str], Awaitable[None]]

TIMEOUT_MESSAGE = (
    "Request timeout - the model took too long to process the request. "
    "Large inputs and vision models can be slow; try reducing the input or "
    "image size, or using a faster model."
)


@dataclass
class CompletionResult:
    content: str = ""
    usage: Optional[dict] = None
    timings: Optional[dict] = None
    finish_reason: Optional[str] = None
    tool_calls: list[dict] = field(default_factory=list)
    chunk_count: int = 0
    elapsed_seconds: float = 0.0
    token_usage: TokenUsage = field(default_factory=TokenUsage)


class StreamingCompletionClient:
    """One streaming completion per call; optional shared httpx client."""

    def __init__(self, url: str = INFERENCE_URL, timeout: float = COMPLETION_TIMEOUT,
                 registry: Optional[CancellationRegistry] = None,
                 http_client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self.timeout = timeout
        self.registry = registry
        self._http = http_client

    @staticmethod
    def build_payload(messages: list[dict], model: str, max_context: Optional[int] = None,
                      cache_prompt: bool = False, tools: Optional[list[dict]] = None) -> dict:
        payload = {
            "model": model,
            "messages": messages,
            "stream": True,
        }
        if max_context:
            # One configured ceiling bounds both generation and the context window
            payload["max_tokens"] = max_context
            payload["n_ctx"] = max_context
        if cache_prompt:
            payload["cache_prompt"] = True
        if tools:
            payload["tools"] = tools
        return payload

    async def complete(
        self,
        messages: list[dict],
        model: str,
        max_context: Optional[int] = None,
        on_chunk: Optional[ChunkCallback] = None,
        request_id: Optional[str] = None,
        cache_prompt: bool = False,
        tools: Optional[list[dict]] = None,
    ) -> CompletionResult:
        """Run one streaming completion and return the accumulated result.

        Raises:
            CompletionHTTPError: non-2xx status (body embedded in the message).
            CompletionTransportError: connection or stream failure.
            CompletionTimeoutError: no complete response within the timeout.
            RequestCancelled: aborted through the cancellation registry.
        """
        payload = self.build_payload(messages, model, max_context, cache_prompt, tools)
        has_image = any(
            isinstance(m.get("content"), list)
            and any(isinstance(p, dict) and p.get("type") == "image_url" for p in m["content"])
            for m in messages
        )
        logger.info("[AI Call] POST %s model=%s messages=%d image=%s tools=%d",
                    self.url, model, len(messages), has_image, len(tools or []))

        task = asyncio.create_task(self._stream(payload, on_chunk, request_id))
        handle = TaskHandle(task)
        key = None
        if self.registry is not None and request_id:
            key = self.registry.register(request_id, handle, AI_CALL_SUFFIX)

        try:
            return await asyncio.wait_for(task, timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.error("[AI Call] Timed out after %ss", self.timeout)
            raise CompletionTimeoutError(TIMEOUT_MESSAGE)
        except asyncio.CancelledError:
            if request_id and self.registry is not None and self.registry.is_cancelled(request_id):
                logger.info("[AI Call] Request %s aborted", request_id)
                raise RequestCancelled(f"Request {request_id} was aborted")
            raise
        finally:
            if key is not None:
                self.registry.unregister(key, handle)

    async def _stream(self, payload: dict, on_chunk: Optional[ChunkCallback],
                      request_id: Optional[str]) -> CompletionResult:
        t0 = time.time()
        result = CompletionResult()
        client = self._http or httpx.AsyncClient(timeout=httpx.Timeout(self.timeout))
        try:
            async with client.stream("POST", self.url, json=payload) as resp:
                if resp.status_code < 200 or resp.status_code >= 300:
                    body = (await resp.aread()).decode("utf-8", errors="replace")
                    logger.error("[AI Call] HTTP %d: %s", resp.status_code, body[:500])
                    raise CompletionHTTPError(resp.status_code, body)

                async for line in resp.aiter_lines():
                    done = await self._handle_line(line, result, on_chunk, request_id)
                    if done:
                        break
        except httpx.TimeoutException as e:
            raise CompletionTimeoutError(TIMEOUT_MESSAGE) from e
        except httpx.HTTPError as e:
            logger.error("[AI Call] Transport error: %s", e)
            raise CompletionTransportError(f"Model API request failed: {e}") from e
        finally:
            if self._http is None:
                await client.aclose()

        result.elapsed_seconds = round(time.time() - t0, 3)
        result.token_usage = TokenUsage.from_payload(result.usage, result.timings)
        logger.info("[AI Call] Stream ended: %d chunks, %d chars, finish=%s",
                    result.chunk_count, len(result.content), result.finish_reason)
        return result

    async def _handle_line(self, line: str, result: CompletionResult,
                           on_chunk: Optional[ChunkCallback],
                           request_id: Optional[str]) -> bool:
        """Process one SSE line. Returns True when the stream is finished."""
        if not line.strip() or not line.startswith("data: "):
            return False
        data_str = line[6:].strip()
        if data_str == "[DONE]":
            return True
        try:
            data = json.loads(data_str)
        except json.JSONDecodeError:
            logger.warning("[AI Call] Unparseable SSE line: %s", line[:200])
            return False
        if not isinstance(data, dict):
            logger.warning("[AI Call] Skipping non-object SSE payload: %s", line[:200])
            return False

        choices = data.get("choices") or []
        choice = choices[0] if choices and isinstance(choices[0], dict) else {}
        delta = choice.get("delta") or {}
        content = delta.get("content") or ""
        if content:
            result.content += content
            result.chunk_count += 1
            if on_chunk and not (request_id and self.registry is not None
                                 and self.registry.is_cancelled(request_id)):
                await on_chunk(content)
        for fragment in delta.get("tool_calls") or []:
            _merge_tool_call(result.tool_calls, fragment)

        if data.get("usage"):
            result.usage = data["usage"]
        if data.get("timings"):
            result.timings = data["timings"]
        if choice.get("finish_reason"):
            result.finish_reason = choice["finish_reason"]
        return False


def _merge_tool_call(calls: list[dict], fragment: dict):
    if not isinstance(fragment, dict):
        return
    index = fragment.get("index", len(calls))
    while len(calls) <= index:
        calls.append({"id": None, "name": "", "arguments": ""})
    call = calls[index]
    if fragment.get("id"):
        call["id"] = fragment["id"]
    function = fragment.get("function") or {}
    if function.get("name"):
        call["name"] += function["name"]
    if function.get("arguments"):
        call["arguments"] += function["arguments"]
