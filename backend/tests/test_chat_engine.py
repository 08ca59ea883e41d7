"""
Tests for the ChatEngine turn loop: one phase, two phases, failures and abort.
"""

import asyncio
import json

import httpx
import pytest

from core import ChatEngine
from errors import CompletionHTTPError
from fakes import ScriptedCompletion
from gateway.manager import GatewayManager
from inference.streaming import StreamingCompletionClient
from inference.tokens import TokenUsage
from models import ChatRequest
from orchestration.cancellation import CancellationRegistry

TOOL_REPLY = (
    "I'll search for that.\n"
    "```json\n"
    '{"tool_call": {"name": "search", "arguments": {"query": "relay"}}}\n'
    "```"
)


def _gateway(fake_process_factory, tmp_path):
    spawn, spawned = fake_process_factory
    spawn.options["tools"] = [{"name": "search", "description": "Search things"}]
    manager = GatewayManager(
        command=["gw"], config_dir=tmp_path, spawn=spawn,
        poll_interval=0.01, stop_grace=0.05, request_timeout=1.0,
    )
    return manager, spawn, spawned


def _collector():
    events = []

    async def emit(event):
        events.append(event)

    return events, emit


def _types(events):
    return [e["type"] for e in events]


class TestSinglePhase:

    @pytest.mark.asyncio
    async def test_plain_answer(self, fake_process_factory, tmp_path):
        gateway, _, spawned = _gateway(fake_process_factory, tmp_path)
        completion = ScriptedCompletion([(["Hello", " there"], TokenUsage(100, 20, 120))])
        engine = ChatEngine(gateway=gateway, completion=completion)
        events, emit = _collector()

        content = await engine.handle_chat(ChatRequest(request_id="r1", prompt="hi", max_context=1000), emit)

        assert content == "Hello there"
        types = _types(events)
        assert types.count("first_chunk") == 1
        assert [e["chunk"] for e in events if e["type"] == "chunk"] == ["Hello", " there"]
        assert types.index("first_chunk") < types.index("chunk")
        assert types[-2:] == ["response", "token_usage"]
        usage = events[-1]
        assert usage["total_tokens"] == 120
        assert usage["max_context"] == 1000
        assert usage["usage_percent"] == 12.0
        assert usage["cache_key"]
        assert all(e["request_id"] == "r1" for e in events)
        assert spawned == []
        assert engine.registry.active_requests() == []

    @pytest.mark.asyncio
    async def test_tool_block_ignored_without_tools(self, fake_process_factory, tmp_path):
        """The parser only runs when tools are enabled for the turn."""
        gateway, _, _ = _gateway(fake_process_factory, tmp_path)
        completion = ScriptedCompletion([([TOOL_REPLY], TokenUsage(10, 5, 15))])
        engine = ChatEngine(gateway=gateway, completion=completion)
        events, emit = _collector()

        await engine.handle_chat(ChatRequest(prompt="hi"), emit)
        assert len(completion.calls) == 1

    @pytest.mark.asyncio
    async def test_repeat_conversation_sets_cache_prompt(self, fake_process_factory, tmp_path):
        gateway, _, _ = _gateway(fake_process_factory, tmp_path)
        completion = ScriptedCompletion([(["a"], TokenUsage()), (["b"], TokenUsage())])
        engine = ChatEngine(gateway=gateway, completion=completion)
        events, emit = _collector()

        await engine.handle_chat(ChatRequest(prompt="same"), emit)
        await engine.handle_chat(ChatRequest(prompt="same"), emit)

        assert [c["cache_prompt"] for c in completion.calls] == [False, True]
        keys = [e["cache_key"] for e in events if e["type"] == "token_usage"]
        assert keys[0] == keys[1]


class TestTwoPhase:

    @pytest.mark.asyncio
    async def test_tools_then_final_answer(self, fake_process_factory, tmp_path):
        gateway, _, spawned = _gateway(fake_process_factory, tmp_path)
        completion = ScriptedCompletion([
            ([TOOL_REPLY], TokenUsage(100, 20, 120)),
            (["Relay is a chat engine."], TokenUsage(150, 30, 180)),
        ])
        engine = ChatEngine(gateway=gateway, completion=completion)
        events, emit = _collector()
        request = ChatRequest(prompt="what is relay?", requested_tools=["search"])

        content = await engine.handle_chat(request, emit)

        assert content == "Relay is a chat engine."
        assert len(spawned) == 1
        first_messages = completion.calls[0]["messages"]
        assert "### search" in first_messages[0]["content"]

        second_messages = completion.calls[1]["messages"]
        assert len(second_messages) == len(first_messages) + 2
        assert second_messages[-2] == {"role": "assistant", "content": TOOL_REPLY}
        assert "### Tool: search\nResult:\nran search" in second_messages[-1]["content"]
        assert completion.calls[1]["cache_prompt"] is True

        statuses = [e["status"] for e in events if e["type"] == "status"]
        assert "Executing tool: search" in statuses
        usage = events[-1]
        assert (usage["prompt_tokens"], usage["completion_tokens"], usage["total_tokens"]) == (250, 50, 300)
        assert _types(events).count("first_chunk") == 1
        await gateway.teardown()

    @pytest.mark.asyncio
    async def test_second_phase_timings_reported(self, fake_process_factory, tmp_path):
        gateway, _, _ = _gateway(fake_process_factory, tmp_path)
        completion = ScriptedCompletion([
            ([TOOL_REPLY], TokenUsage(100, 20, 120), [], {"prompt_ms": 900.0, "predicted_n": 20}),
            (["Answer."], TokenUsage(150, 30, 180), [], {"prompt_ms": 80.0, "predicted_n": 30}),
        ])
        engine = ChatEngine(gateway=gateway, completion=completion)
        events, emit = _collector()

        await engine.handle_chat(ChatRequest(prompt="q", requested_tools=["search"]), emit)

        usage = events[-1]
        assert usage["type"] == "token_usage"
        assert usage["timings"] == {"prompt_ms": 80.0, "predicted_n": 30}
        await gateway.teardown()

    @pytest.mark.asyncio
    async def test_native_function_calls(self, fake_process_factory, tmp_path):
        """Structured tool_calls win over the text; the transcript gets a fenced rendering."""
        gateway, _, _ = _gateway(fake_process_factory, tmp_path)
        native = [{"id": "call_1", "name": "search", "arguments": '{"query": "relay"}'}]
        completion = ScriptedCompletion([
            ([], TokenUsage(100, 10, 110), native),
            (["Found it."], TokenUsage(130, 5, 135)),
        ])
        engine = ChatEngine(gateway=gateway, completion=completion, native_tool_calls=True)
        events, emit = _collector()

        content = await engine.handle_chat(
            ChatRequest(prompt="look up relay", requested_tools=["search"]), emit)

        assert content == "Found it."
        functions = completion.calls[0]["tools"]
        assert functions[0]["type"] == "function"
        assert functions[0]["function"]["name"] == "search"
        assert completion.calls[1]["tools"] is None
        assistant_turn = completion.calls[1]["messages"][-2]
        assert assistant_turn["role"] == "assistant"
        assert '"name": "search"' in assistant_turn["content"]
        assert "ran search" in completion.calls[1]["messages"][-1]["content"]
        assert events[-1]["total_tokens"] == 245
        await gateway.teardown()

    @pytest.mark.asyncio
    async def test_fenced_fallback_when_native_enabled(self, fake_process_factory, tmp_path):
        """Endpoints that ignore the tools field still get their fenced calls executed."""
        gateway, _, _ = _gateway(fake_process_factory, tmp_path)
        completion = ScriptedCompletion([
            ([TOOL_REPLY], TokenUsage(100, 20, 120)),
            (["Done."], TokenUsage(10, 2, 12)),
        ])
        engine = ChatEngine(gateway=gateway, completion=completion, native_tool_calls=True)
        events, emit = _collector()

        content = await engine.handle_chat(
            ChatRequest(prompt="what is relay?", requested_tools=["search"]), emit)

        assert content == "Done."
        assert completion.calls[1]["messages"][-2]["content"] == TOOL_REPLY
        await gateway.teardown()

    @pytest.mark.asyncio
    async def test_tool_failure_reaches_model(self, fake_process_factory, tmp_path):
        gateway, spawn, _ = _gateway(fake_process_factory, tmp_path)
        spawn.options["tool_results"] = {"search": RuntimeError("search backend down")}
        completion = ScriptedCompletion([
            ([TOOL_REPLY], TokenUsage(1, 1, 2)),
            (["Sorry, search failed."], TokenUsage(1, 1, 2)),
        ])
        engine = ChatEngine(gateway=gateway, completion=completion)
        events, emit = _collector()

        await engine.handle_chat(ChatRequest(prompt="q", requested_tools=["search"]), emit)

        summary = completion.calls[1]["messages"][-1]["content"]
        assert "### Tool: search\nError:" in summary
        assert "search backend down" in summary
        assert "error" not in _types(events)
        await gateway.teardown()


class TestFailures:

    @pytest.mark.asyncio
    async def test_context_size_error_report(self, fake_process_factory, tmp_path):
        gateway, _, _ = _gateway(fake_process_factory, tmp_path)
        body = json.dumps({"error": {"message": "the request exceeds the available context size",
                                     "n_prompt_tokens": 9000, "n_ctx": 8000}})
        completion = ScriptedCompletion([CompletionHTTPError(400, body)])
        engine = ChatEngine(gateway=gateway, completion=completion)
        events, emit = _collector()

        content = await engine.handle_chat(ChatRequest(request_id="r2", prompt="big", max_context=8000), emit)

        assert content is None
        errors = [e for e in events if e["type"] == "error"]
        assert len(errors) == 1
        report = errors[0]["report"]
        assert report["kind"] == "context_size"
        assert report["recommended_context"] >= 13500
        assert "Current Prompt" in report["breakdown"]
        assert "response" not in _types(events)
        assert engine.registry.active_requests() == []

    @pytest.mark.asyncio
    async def test_gateway_start_failure_is_one_error(self, fake_process_factory, tmp_path):
        gateway, spawn, _ = _gateway(fake_process_factory, tmp_path)
        spawn.options.update(ready_line="boom", exit_code=3)
        completion = ScriptedCompletion([])
        engine = ChatEngine(gateway=gateway, completion=completion)
        events, emit = _collector()

        await engine.handle_chat(ChatRequest(prompt="q", requested_tools=["search"]), emit)

        assert _types(events).count("error") == 1
        assert events[-1]["message"].startswith("Failed to process request:")
        assert completion.calls == []


class TestAbort:

    @pytest.mark.asyncio
    async def test_abort_mid_stream(self, fake_process_factory, tmp_path):
        """Abort stops chunk delivery, emits one aborted event and clears the registry."""
        gateway, _, _ = _gateway(fake_process_factory, tmp_path)
        registry = CancellationRegistry()

        async def body():
            yield b'data: {"choices":[{"delta":{"content":"partial"}}]}\n\n'
            await asyncio.sleep(0.05)
            yield b'data: {"choices":[{"delta":{"content":" more"}}]}\n\n'
            await asyncio.sleep(10)

        http = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200, content=body())))
        completion = StreamingCompletionClient(url="http://inference.test/v1/chat/completions",
                                               registry=registry, http_client=http)
        engine = ChatEngine(gateway=gateway, completion=completion, registry=registry)
        events = []

        async def emit(event):
            events.append(event)
            if event["type"] == "chunk":
                engine.abort("r3")

        content = await engine.handle_chat(ChatRequest(request_id="r3", prompt="go"), emit)

        assert content is None
        assert [e["chunk"] for e in events if e["type"] == "chunk"] == ["partial"]
        assert _types(events).count("aborted") == 1
        assert "error" not in _types(events)
        assert registry.active_requests() == []
        assert not registry.is_cancelled("r3")

    @pytest.mark.asyncio
    async def test_abort_of_unknown_id_is_not_remembered(self, fake_process_factory, tmp_path):
        gateway, _, _ = _gateway(fake_process_factory, tmp_path)
        completion = ScriptedCompletion([(["fine"], TokenUsage(1, 1, 2))])
        engine = ChatEngine(gateway=gateway, completion=completion)

        assert engine.abort("r4") == 0
        events, emit = _collector()
        content = await engine.handle_chat(ChatRequest(request_id="r4", prompt="go"), emit)

        assert content == "fine"
        assert "aborted" not in _types(events)


class TestDuplicateIds:

    @pytest.mark.asyncio
    async def test_second_request_with_same_id_is_rejected(self, fake_process_factory, tmp_path):
        """The running request keeps its registry state; the duplicate gets one error."""
        gateway, _, _ = _gateway(fake_process_factory, tmp_path)
        release = asyncio.Event()

        class GatedCompletion(ScriptedCompletion):
            async def complete(self, *args, **kwargs):
                await release.wait()
                return await super().complete(*args, **kwargs)

        completion = GatedCompletion([(["first"], TokenUsage(1, 1, 2))])
        engine = ChatEngine(gateway=gateway, completion=completion)
        first_events, first_emit = _collector()
        first = asyncio.create_task(
            engine.handle_chat(ChatRequest(request_id="dup", prompt="one"), first_emit))
        await asyncio.sleep(0.01)

        second_events, second_emit = _collector()
        assert await engine.handle_chat(ChatRequest(request_id="dup", prompt="two"), second_emit) is None
        assert _types(second_events) == ["error"]
        assert engine.registry.is_active("dup")

        release.set()
        assert await first == "first"
        assert _types(first_events)[-1] == "token_usage"
        assert not engine.registry.is_active("dup")
