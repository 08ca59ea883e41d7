"""
GatewayManager — lifecycle of the single shared tool-gateway subprocess.

One gateway serves every chat request. It is (re)started only when a request
asks for a different enabled or privileged tool set; otherwise the running
instance is reused.

State machine:
  STOPPED -> STARTING -> READY | FAILED
  READY -> STOPPING -> STOPPED   (teardown, restart, or the process exiting)

Restarts are single-flight behind an asyncio.Lock. Requests hold a lease for
as long as they use the gateway; a restart waits until every lease on the old
instance has been released before tearing it down.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Iterable, Optional

from config import (
    GATEWAY_COMMAND,
    GATEWAY_CONFIG_DIR,
    GATEWAY_POLL_INTERVAL,
    GATEWAY_PROGRESS_PHRASES,
    GATEWAY_READY_PHRASES,
    GATEWAY_READY_SENTINEL,
    GATEWAY_READY_TIMEOUT,
    GATEWAY_REQUEST_TIMEOUT,
    GATEWAY_STOP_GRACE,
)
from errors import GatewayConnectError, GatewayStartError
from gateway.client import GatewayClient
from gateway.registry_override import override_args, remove_override, write_override

logger = logging.getLogger(__name__)

_STREAM_LIMIT = 16 * 1024 * 1024   # tools/list responses can be large single lines
_STDERR_BUFFER_MAX = 64 * 1024
_PROGRESS_LOG_EVERY = 10.0


class GatewayState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    READY = "ready"
    FAILED = "failed"
    STOPPING = "stopping"


@dataclass
class GatewayHandle:
    process: object
    client: GatewayClient
    config_path: Optional[Path]
    enabled_tools: frozenset
    privileged_tools: frozenset
    stderr_task: Optional[asyncio.Task] = field(default=None, repr=False)
    exit_task: Optional[asyncio.Task] = field(default=None, repr=False)


class _StderrMonitor:
    """Consumes gateway stderr into a diagnostic buffer and flags readiness."""

    def __init__(self, stream, sentinel: str, ready_phrases: Iterable[str],
                 progress_phrases: Iterable[str]):
        self.stream = stream
        self.markers = [m for m in (sentinel, *ready_phrases) if m]
        self.progress_phrases = [p for p in progress_phrases if p]
        self.ready = asyncio.Event()
        self.buffer = ""

    async def run(self):
        if self.stream is None:
            return
        while True:
            raw = await self.stream.readline()
            if not raw:
                return
            line = raw.decode("utf-8", errors="replace")
            self.buffer = (self.buffer + line)[-_STDERR_BUFFER_MAX:]
            if not self.ready.is_set() and any(m in line for m in self.markers):
                logger.info("Tool gateway is ready")
                self.ready.set()
            if any(p in line for p in self.progress_phrases):
                logger.info("Tool gateway: pulling images (first run may take a while)...")


class GatewayManager:
    def __init__(
        self,
        command: Optional[list[str]] = None,
        config_dir: Path = GATEWAY_CONFIG_DIR,
        ready_sentinel: str = GATEWAY_READY_SENTINEL,
        ready_phrases: Iterable[str] = GATEWAY_READY_PHRASES,
        progress_phrases: Iterable[str] = GATEWAY_PROGRESS_PHRASES,
        ready_timeout: float = GATEWAY_READY_TIMEOUT,
        poll_interval: float = GATEWAY_POLL_INTERVAL,
        stop_grace: float = GATEWAY_STOP_GRACE,
        request_timeout: float = GATEWAY_REQUEST_TIMEOUT,
        spawn: Optional[Callable[..., Awaitable]] = None,
        client_factory: Callable[..., GatewayClient] = GatewayClient,
    ):
        self.command = list(command or GATEWAY_COMMAND)
        self.config_dir = config_dir
        self.ready_sentinel = ready_sentinel
        self.ready_phrases = tuple(ready_phrases)
        self.progress_phrases = tuple(progress_phrases)
        self.ready_timeout = ready_timeout
        self.poll_interval = poll_interval
        self.stop_grace = stop_grace
        self.request_timeout = request_timeout
        self._spawn = spawn or asyncio.create_subprocess_exec
        self._client_factory = client_factory

        self.state = GatewayState.STOPPED
        self._handle: Optional[GatewayHandle] = None
        self._lock = asyncio.Lock()
        self._leases = 0
        self._idle = asyncio.Event()
        self._idle.set()
        self._broadcast = None

    def set_broadcast(self, broadcast_fn):
        """Set the async callable that receives tool-list events."""
        self._broadcast = broadcast_fn

    @property
    def handle(self) -> Optional[GatewayHandle]:
        return self._handle

    @property
    def active_leases(self) -> int:
        return self._leases

    def needs_restart(self, tools: Iterable[str], privileged: Iterable[str] = ()) -> bool:
        handle = self._handle
        if handle is None:
            return True
        return (frozenset(tools) != handle.enabled_tools
                or frozenset(privileged) != handle.privileged_tools)

    # ── Public API ──

    async def ensure(self, tools: Iterable[str], privileged: Iterable[str] = ()) -> GatewayHandle:
        """Return a gateway running exactly `tools`, restarting if the sets differ."""
        async with self._lock:
            return await self._ensure_locked(frozenset(tools), frozenset(privileged))

    @asynccontextmanager
    async def lease(self, tools: Iterable[str], privileged: Iterable[str] = ()):
        """Hold the gateway for the duration of a request.

        Yields None when no tools are requested; the gateway is left alone.
        """
        tools = frozenset(tools)
        if not tools:
            yield None
            return
        async with self._lock:
            handle = await self._ensure_locked(tools, frozenset(privileged))
            self._leases += 1
            self._idle.clear()
        try:
            yield handle
        finally:
            self._leases -= 1
            if self._leases <= 0:
                self._leases = 0
                self._idle.set()

    async def teardown(self):
        """Stop the gateway now, regardless of leases. Used on shutdown."""
        async with self._lock:
            handle = self._handle
            if handle is not None:
                await self._stop(handle)

    def current_tools(self) -> list[dict]:
        if self._handle is None:
            return []
        return list(self._handle.client.tools)

    async def refresh_tools(self) -> list[dict]:
        handle = self._handle
        if handle is None:
            return []
        tools = await handle.client.refresh_tools()
        await self._publish_tools(tools)
        return tools

    # ── Start / Stop ──

    async def _ensure_locked(self, tools: frozenset, privileged: frozenset) -> GatewayHandle:
        if self._handle is not None and not self.needs_restart(tools, privileged):
            return self._handle

        if self._handle is not None:
            logger.info("Tool set changed, restarting gateway (waiting on %d lease(s))", self._leases)
            await self._idle.wait()
            await self._stop(self._handle)

        handle = await self._start(tools, privileged)
        self._handle = handle
        self.state = GatewayState.READY
        await self._publish_tools(handle.client.tools)
        return handle

    def _build_args(self, tools: frozenset, config_path: Optional[Path]) -> list[str]:
        args = list(self.command)
        for name in sorted(tools):
            args += ["--servers", name]
        return args + override_args(config_path)

    async def _start(self, tools: frozenset, privileged: frozenset) -> GatewayHandle:
        self.state = GatewayState.STARTING
        enabled_privileged = tools & privileged
        config_path = write_override(enabled_privileged, self.config_dir) if enabled_privileged else None
        args = self._build_args(tools, config_path)
        logger.info("Starting tool gateway: %s", " ".join(args))

        try:
            process = await self._spawn(
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=_STREAM_LIMIT,
            )
        except OSError as e:
            remove_override(config_path)
            self.state = GatewayState.FAILED
            raise GatewayStartError(f"Failed to spawn tool gateway: {e}") from e

        monitor = _StderrMonitor(process.stderr, self.ready_sentinel,
                                 self.ready_phrases, self.progress_phrases)
        stderr_task = asyncio.create_task(monitor.run())

        logger.info("Waiting for tool gateway to be ready (up to %ss)...", self.ready_timeout)
        waited = 0.0
        next_log = _PROGRESS_LOG_EVERY
        while waited < self.ready_timeout and process.returncode is None and not monitor.ready.is_set():
            await asyncio.sleep(self.poll_interval)
            waited += self.poll_interval
            if waited >= next_log:
                logger.info("Still waiting for tool gateway... (%ds elapsed)", int(waited))
                next_log += _PROGRESS_LOG_EVERY

        if process.returncode is not None:
            # Let the monitor drain what the process wrote before exiting
            await asyncio.wait([stderr_task], timeout=self.stop_grace)
            stderr_task.cancel()
            remove_override(config_path)
            self.state = GatewayState.FAILED
            msg = (f"Tool gateway exited during startup (code: {process.returncode})\n"
                   f"Stderr: {monitor.buffer}")
            logger.error(msg)
            raise GatewayStartError(msg, stderr=monitor.buffer, exit_code=process.returncode)

        if not monitor.ready.is_set():
            await self._kill(process)
            stderr_task.cancel()
            remove_override(config_path)
            self.state = GatewayState.FAILED
            msg = (f"Tool gateway failed to become ready after {self.ready_timeout}s\n"
                   f"Stderr: {monitor.buffer}")
            logger.error(msg)
            raise GatewayStartError(msg, stderr=monitor.buffer)

        logger.info("Tool gateway ready after %.1fs", waited)

        client = self._client_factory(process, self.request_timeout)
        try:
            await client.connect()
        except Exception as e:
            logger.error("Failed to connect to tool gateway: %s", e)
            await self._kill(process)
            stderr_task.cancel()
            remove_override(config_path)
            self.state = GatewayState.FAILED
            raise GatewayConnectError(f"Failed to connect to tool gateway: {e}") from e

        handle = GatewayHandle(
            process=process,
            client=client,
            config_path=config_path,
            enabled_tools=tools,
            privileged_tools=privileged,
            stderr_task=stderr_task,
        )
        handle.exit_task = asyncio.create_task(self._watch_exit(handle))
        return handle

    async def _watch_exit(self, handle: GatewayHandle):
        code = await handle.process.wait()
        if self._handle is not handle:
            return
        logger.warning("Tool gateway exited with code %s", code)
        self._handle = None
        self.state = GatewayState.STOPPED
        handle.client.disconnect()
        if handle.stderr_task:
            handle.stderr_task.cancel()
        remove_override(handle.config_path)
        await self._publish_tools([])

    async def _stop(self, handle: GatewayHandle):
        logger.info("Stopping tool gateway...")
        self.state = GatewayState.STOPPING
        if self._handle is handle:
            self._handle = None
        if handle.exit_task and not handle.exit_task.done():
            handle.exit_task.cancel()
        handle.client.disconnect()
        await self._kill(handle.process)
        if handle.stderr_task:
            handle.stderr_task.cancel()
        remove_override(handle.config_path)
        self.state = GatewayState.STOPPED
        logger.info("Tool gateway stopped")

    async def _kill(self, process):
        """SIGTERM, wait out the grace period, then SIGKILL."""
        if process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=self.stop_grace)
        except asyncio.TimeoutError:
            if process.returncode is None:
                logger.warning("Tool gateway ignored SIGTERM, killing")
                try:
                    process.kill()
                except ProcessLookupError:
                    return
                await process.wait()

    async def _publish_tools(self, tools: list[dict]):
        if not self._broadcast:
            return
        try:
            await self._broadcast({"type": "tools", "tools": list(tools)})
        except Exception as e:
            logger.warning("Failed to broadcast tool list: %s", e)
