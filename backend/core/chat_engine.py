"""
ChatEngine — drives one chat turn end to end.

Flow:
  1. Lease the shared tool gateway with the requested tool set (if any)
  2. Assemble system prompt + truncated history + current turn under budget
  3. Phase one: streaming completion, chunks forwarded as they arrive
  4. Take native tool calls, else parse fenced ones; execute them sequentially
  5. Phase two: follow-up completion with the tool outcomes
  6. Report summed token usage with the last phase's timings

Every terminal condition produces exactly one caller-visible event:
`error` (classified failure) or `aborted` (cancellation). Registry entries
for the request are cleared however the turn ends.
"""

import logging
import time
from typing import Awaitable, Callable, Optional

from config import DEFAULT_MODEL, NATIVE_TOOL_CALLS
from errors import RequestCancelled
from gateway.manager import GatewayManager
from inference.streaming import StreamingCompletionClient
from inference.tokens import TokenUsage, estimate_tokens
from orchestration.budget import BREAKDOWN_TOOL_RESULTS, ContextBudgetManager
from orchestration.cancellation import CancellationRegistry
from orchestration.context_errors import classify_failure
from orchestration.prefix_cache import ConversationPrefixCache
from orchestration.tool_calls import format_tool_calls, parse_tool_calls, tool_calls_from_native
from orchestration.tool_executor import build_follow_up, execute_tool_calls

logger = logging.getLogger(__name__)

Emit = Callable[[dict], Awaitable[None]]


class ChatEngine:
    def __init__(
        self,
        gateway: Optional[GatewayManager] = None,
        completion: Optional[StreamingCompletionClient] = None,
        budget: Optional[ContextBudgetManager] = None,
        prefix_cache: Optional[ConversationPrefixCache] = None,
        registry: Optional[CancellationRegistry] = None,
        default_model: str = DEFAULT_MODEL,
        native_tool_calls: bool = NATIVE_TOOL_CALLS,
    ):
        self.registry = registry or CancellationRegistry()
        self.gateway = gateway or GatewayManager()
        self.completion = completion or StreamingCompletionClient(registry=self.registry)
        self.budget = budget or ContextBudgetManager()
        self.prefix_cache = prefix_cache or ConversationPrefixCache()
        self.default_model = default_model
        self.native_tool_calls = native_tool_calls

    def abort(self, request_id: str) -> int:
        """Abort every in-flight operation of a request."""
        return self.registry.cancel(request_id)

    def _check_cancelled(self, request_id: str):
        if self.registry.is_cancelled(request_id):
            raise RequestCancelled(f"Request {request_id} was aborted")

    async def handle_chat(self, request, emit: Emit) -> Optional[str]:
        """Run one turn. Returns the final response text, or None on error/abort."""
        rid = request.request_id
        max_context = request.max_context or self.budget.default_context
        model = request.model or self.default_model
        breakdown: dict[str, int] = {}
        first_chunk_sent = False
        t0 = time.time()

        async def send(event: dict):
            await emit({"request_id": rid, **event})

        async def on_chunk(text: str):
            nonlocal first_chunk_sent
            if not first_chunk_sent:
                first_chunk_sent = True
                await send({"type": "first_chunk", "timestamp": time.time()})
            await send({"type": "chunk", "chunk": text})

        async def on_status(status: str, details: str = ""):
            await send({"type": "status", "status": status, "details": details})

        if not self.registry.begin(rid):
            logger.warning("[Chat] %s: request id already in flight, rejecting", rid)
            await send({"type": "error", "message": f"Request id {rid} is already in flight"})
            return None

        logger.info("[Chat] %s: model=%s max_context=%d tools=%s",
                    rid, model, max_context, ",".join(request.requested_tools) or "none")
        try:
            self._check_cancelled(rid)
            if request.requested_tools and self.gateway.needs_restart(
                    request.requested_tools, request.privileged_tools):
                await on_status("Starting tool gateway...", "First start may take a while")

            async with self.gateway.lease(request.requested_tools, request.privileged_tools) as handle:
                tool_docs = handle.client.tools_prompt() if handle else ""
                functions = handle.client.function_schemas() if handle and self.native_tool_calls else None
                ctx = self.budget.build(request, tool_docs)
                breakdown = ctx.breakdown
                agent_id = request.agent.id if request.agent else None
                cache = self.prefix_cache.lookup(agent_id, request.project_path,
                                                 request.container_id, ctx.messages[1:])
                self._check_cancelled(rid)

                await on_status("Generating response...")
                first = await self.completion.complete(
                    ctx.messages, model, max_context, on_chunk, rid,
                    cache_prompt=cache.hit, tools=functions)
                self._check_cancelled(rid)
                usage = first.token_usage
                timings = first.timings
                content = first.content

                calls = []
                if handle:
                    calls = tool_calls_from_native(first.tool_calls) or parse_tool_calls(first.content)
                if calls:
                    logger.info("[Chat] %s: %d tool call(s) requested", rid, len(calls))
                    results = await execute_tool_calls(calls, handle.client, on_status)
                    self._check_cancelled(rid)

                    follow_up = build_follow_up(ctx.messages, first.content or format_tool_calls(calls), results)
                    breakdown[BREAKDOWN_TOOL_RESULTS] = estimate_tokens(follow_up[-1]["content"])
                    await on_status("Generating final response...")
                    second = await self.completion.complete(
                        follow_up, model, max_context, on_chunk, rid, cache_prompt=True)
                    self._check_cancelled(rid)
                    usage = usage + second.token_usage
                    timings = second.timings
                    content = second.content

            await send({"type": "response", "content": "", "was_streamed": True})
            await send(self._usage_event(usage, max_context, cache.cache_key, timings))
            logger.info("[Chat] %s: done in %.1fs (%d tokens)", rid, time.time() - t0, usage.total_tokens)
            return content

        except RequestCancelled:
            logger.info("[Chat] %s: aborted", rid)
            await send({"type": "aborted"})
            return None
        except Exception as e:
            text = str(e) or type(e).__name__
            logger.error("[Chat] %s failed: %s", rid, text)
            report = classify_failure(text, breakdown, max_context)
            await send({"type": "error", "message": report.message, "report": report.to_dict()})
            return None
        finally:
            self.registry.clear(rid)

    @staticmethod
    def _usage_event(usage: TokenUsage, max_context: int, cache_key: str,
                     timings: Optional[dict] = None) -> dict:
        percent = round(usage.total_tokens / max_context * 100, 1) if max_context else 0.0
        return {
            "type": "token_usage",
            **usage.to_dict(),
            "max_context": max_context,
            "usage_percent": percent,
            "cache_key": cache_key,
            "timings": timings,
        }
