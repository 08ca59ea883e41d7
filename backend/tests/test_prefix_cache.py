"""
Tests for the conversation prefix cache.
"""

from orchestration.prefix_cache import ConversationPrefixCache, hash_conversation_prefix


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


TURNS = [
    {"role": "system", "content": "You are helpful."},
    {"role": "user", "content": "hello"},
    {"role": "assistant", "content": "hi!"},
]


class TestPrefixHash:

    def test_only_prefix_matters(self):
        a = hash_conversation_prefix(TURNS + [{"role": "user", "content": "one"}])
        b = hash_conversation_prefix(TURNS + [{"role": "user", "content": "two"}])
        assert a == b

    def test_different_prefix_differs(self):
        changed = [dict(TURNS[0], content="You are terse.")] + TURNS[1:]
        assert hash_conversation_prefix(changed) != hash_conversation_prefix(TURNS)

    def test_base36_output(self):
        h = hash_conversation_prefix(TURNS)
        assert h.lstrip("-").isalnum()
        assert h == h.lower()


class TestCacheKeys:

    def test_repeat_within_ttl_reuses_key(self):
        clock = FakeClock()
        cache = ConversationPrefixCache(ttl_seconds=3600, clock=clock)
        first = cache.lookup("agent", "/proj", "c1", TURNS)
        clock.now += 60
        second = cache.lookup("agent", "/proj", "c1", TURNS)

        assert not first.hit
        assert second.hit
        assert second.cache_key == first.cache_key

    def test_miss_key_format(self):
        cache = ConversationPrefixCache(clock=FakeClock(12.5))
        result = cache.lookup(None, None, None, TURNS)
        assert result.cache_key == f"global-none-none-{result.prefix_hash}-12500"

    def test_expired_entry_mints_new_key(self):
        clock = FakeClock()
        cache = ConversationPrefixCache(ttl_seconds=10, clock=clock)
        first = cache.get_cache_key("a", None, None, TURNS)
        clock.now += 11
        second = cache.get_cache_key("a", None, None, TURNS)
        assert first != second

    def test_eviction_keeps_most_recent(self):
        clock = FakeClock()
        cache = ConversationPrefixCache(max_entries=3, clock=clock)
        for i in range(5):
            clock.now += 1
            cache.lookup(f"agent{i}", None, None, TURNS)

        assert len(cache) == 3
        clock.now += 1
        assert cache.lookup("agent4", None, None, TURNS).hit
        assert not cache.lookup("agent0", None, None, TURNS).hit
