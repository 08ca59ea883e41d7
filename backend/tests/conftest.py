"""
Test fixtures for the Relay test suite.
"""

import json
import os
import sys
from pathlib import Path

import pytest

# Add backend to path
BACKEND_DIR = Path(__file__).parent.parent
sys.path.insert(0, str(BACKEND_DIR))

# Set up a minimal profile before importing anything that reads config
os.environ["RELAY_PROFILE_PATH"] = str(BACKEND_DIR.parent / "profile.yaml.example")

from fakes import FakeProcess  # noqa: E402


@pytest.fixture
def fake_process_factory():
    """Returns (spawn, spawned) where spawn mimics asyncio.create_subprocess_exec."""
    spawned: list[tuple[tuple, FakeProcess]] = []
    options: dict = {}

    async def spawn(*args, **kwargs):
        proc = FakeProcess(**options)
        spawned.append((args, proc))
        return proc

    spawn.options = options
    return spawn, spawned


@pytest.fixture
def sse_lines():
    """Build an SSE body from delta strings plus a final usage frame."""
    def _build(deltas, usage=None, timings=None, finish="stop"):
        lines = []
        for d in deltas:
            lines.append("data: " + json.dumps({"choices": [{"delta": {"content": d}}]}))
        final = {"choices": [{"delta": {}, "finish_reason": finish}]}
        if usage:
            final["usage"] = usage
        if timings:
            final["timings"] = timings
        lines.append("data: " + json.dumps(final))
        lines.append("data: [DONE]")
        return "\n\n".join(lines) + "\n\n"
    return _build
