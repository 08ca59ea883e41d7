"""
CancellationRegistry — per-request abort handles.

Every in-flight network call or child process belonging to a chat request is
registered under the request id (optionally with a "-<suffix>" for
sub-operations, e.g. "<id>-ai-call"). Aborting a request cancels every handle
whose key equals the id or starts with "<id>-".

The shared tool gateway is never registered here: it outlives individual
requests.
"""

import asyncio
import logging
from typing import Optional

from config import PROCESS_KILL_GRACE

logger = logging.getLogger(__name__)


class CancellableHandle:
    """Something that can be aborted on demand."""

    def cancel(self):
        raise NotImplementedError


class TaskHandle(CancellableHandle):
    """Wraps an asyncio task driving a network request."""

    def __init__(self, task: asyncio.Task):
        self.task = task

    def cancel(self):
        if not self.task.done():
            self.task.cancel()


class ProcessHandle(CancellableHandle):
    """Wraps an asyncio subprocess: SIGTERM first, SIGKILL after a grace period."""

    def __init__(self, process, grace: float = PROCESS_KILL_GRACE):
        self.process = process
        self.grace = grace
        self._killer: Optional[asyncio.Task] = None

    def cancel(self):
        if self.process.returncode is not None:
            return
        try:
            self.process.terminate()
        except ProcessLookupError:
            return
        self._killer = asyncio.create_task(self._force_kill())

    async def _force_kill(self):
        try:
            await asyncio.wait_for(self.process.wait(), timeout=self.grace)
        except asyncio.TimeoutError:
            if self.process.returncode is None:
                logger.info("Process %s ignored SIGTERM, killing", getattr(self.process, "pid", "?"))
                try:
                    self.process.kill()
                except ProcessLookupError:
                    pass


class CancellationRegistry:
    """Maps request ids to the handles that can abort their work.

    Only ids that are in flight (begun and not yet cleared, or holding
    handles) can be marked cancelled, so aborting a finished or unknown id
    leaves nothing behind.
    """

    def __init__(self):
        self._entries: dict[str, list[CancellableHandle]] = {}
        self._cancelled: set[str] = set()
        self._active: set[str] = set()

    def begin(self, request_id: str) -> bool:
        """Mark a request in flight. False if that id is already in flight."""
        if request_id in self._active:
            return False
        self._active.add(request_id)
        self._cancelled.discard(request_id)
        return True

    def is_active(self, request_id: str) -> bool:
        return request_id in self._active

    @staticmethod
    def make_key(request_id: str, suffix: Optional[str] = None) -> str:
        return f"{request_id}-{suffix}" if suffix else request_id

    def register(self, request_id: str, handle: CancellableHandle,
                 suffix: Optional[str] = None) -> str:
        key = self.make_key(request_id, suffix)
        self._entries.setdefault(key, []).append(handle)
        return key

    def unregister(self, key: str, handle: CancellableHandle):
        handles = self._entries.get(key)
        if not handles:
            return
        if handle in handles:
            handles.remove(handle)
        if not handles:
            del self._entries[key]

    def keys_for(self, request_id: str) -> list[str]:
        prefix = f"{request_id}-"
        return [k for k in self._entries if k == request_id or k.startswith(prefix)]

    def cancel(self, request_id: str) -> int:
        """Abort everything registered for a request. Returns the handle count."""
        keys = self.keys_for(request_id)
        if request_id not in self._active and not keys:
            logger.info("No request %s in flight, nothing to abort", request_id)
            return 0
        self._cancelled.add(request_id)
        count = 0
        for key in keys:
            for handle in self._entries.pop(key, []):
                try:
                    handle.cancel()
                    count += 1
                except Exception as e:
                    logger.warning("Failed to cancel %s: %s", key, e)
        if count:
            logger.info("Aborted request %s (%d handle(s))", request_id, count)
        else:
            logger.info("Request %s marked aborted before any work was registered", request_id)
        return count

    def is_cancelled(self, request_id: str) -> bool:
        return request_id in self._cancelled

    def clear(self, request_id: str):
        """Drop all entries and flags once a request has finished."""
        for key in self.keys_for(request_id):
            self._entries.pop(key, None)
        self._cancelled.discard(request_id)
        self._active.discard(request_id)

    def active_requests(self) -> list[str]:
        return list(self._entries.keys())
