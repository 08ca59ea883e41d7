"""
Conversation prefix cache.

Identifies repeated conversation starts per (agent, project, container) so the
inference server can be told to reuse its prompt cache. Entries expire after a
TTL and the table is trimmed to the most recently used entries.
"""

import json
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from config import CACHE_MAX_ENTRIES, CACHE_PREFIX_TURNS, CACHE_TTL_SECONDS

logger = logging.getLogger(__name__)

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    sign = "-" if value < 0 else ""
    value = abs(value)
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return sign + "".join(reversed(digits))


def hash_conversation_prefix(turns: list[dict], prefix_length: int = CACHE_PREFIX_TURNS) -> str:
    """Stable 32-bit rolling hash of the first `prefix_length` turns."""
    prefix = turns[:prefix_length]
    prefix_str = json.dumps(prefix, separators=(",", ":"), ensure_ascii=False)
    h = 0
    for ch in prefix_str:
        h = (h * 31 + ord(ch)) & 0xFFFFFFFF
    if h & 0x80000000:
        h -= 0x100000000
    return _to_base36(h)


@dataclass
class CacheEntry:
    prefix_hash: str
    cache_key: str
    last_used: float


@dataclass
class CacheLookup:
    cache_key: str
    prefix_hash: str
    hit: bool


class ConversationPrefixCache:
    def __init__(self, ttl_seconds: float = CACHE_TTL_SECONDS,
                 max_entries: int = CACHE_MAX_ENTRIES,
                 prefix_turns: int = CACHE_PREFIX_TURNS,
                 clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self.prefix_turns = prefix_turns
        self._clock = clock
        self._entries: dict[tuple[str, str, str], CacheEntry] = {}

    @staticmethod
    def composite_key(agent_id: Optional[str], project_path: Optional[str],
                      container_id: Optional[str]) -> tuple[str, str, str]:
        return (agent_id or "global", project_path or "none", container_id or "none")

    def lookup(self, agent_id: Optional[str], project_path: Optional[str],
               container_id: Optional[str], turns: list[dict]) -> CacheLookup:
        key = self.composite_key(agent_id, project_path, container_id)
        prefix_hash = hash_conversation_prefix(turns, self.prefix_turns)
        now = self._clock()

        cached = self._entries.get(key)
        if cached and cached.prefix_hash == prefix_hash and (now - cached.last_used) < self.ttl_seconds:
            cached.last_used = now
            return CacheLookup(cached.cache_key, prefix_hash, hit=True)

        cache_key = f"{'-'.join(key)}-{prefix_hash}-{int(now * 1000)}"
        self._entries[key] = CacheEntry(prefix_hash, cache_key, now)
        self._evict(now)
        return CacheLookup(cache_key, prefix_hash, hit=False)

    def get_cache_key(self, agent_id: Optional[str], project_path: Optional[str],
                      container_id: Optional[str], turns: list[dict]) -> str:
        return self.lookup(agent_id, project_path, container_id, turns).cache_key

    def _evict(self, now: float):
        expired = [k for k, e in self._entries.items() if (now - e.last_used) >= self.ttl_seconds]
        for k in expired:
            del self._entries[k]
        if len(self._entries) <= self.max_entries:
            return
        ordered = sorted(self._entries.items(), key=lambda kv: kv[1].last_used, reverse=True)
        self._entries = dict(ordered[:self.max_entries])
        logger.debug("Prefix cache trimmed to %d entries", len(self._entries))

    def __len__(self):
        return len(self._entries)
