"""分析结果缓存测试。"""
import pytest

from netpilot.core.exceptions import ValidationError
from netpilot.services.analysis_cache import AnalysisCache, generate_fingerprint, normalize_message


class FakeTime:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestAnalysisCache:
    def test_roundtrip_within_ttl(self):
        t = FakeTime()
        cache = AnalysisCache(default_ttl=60, clock=t)
        cache.set("fp", "分析结果")
        t.now += 59
        assert cache.get("fp") == "分析结果"

    def test_expired_entry_is_absent(self):
        t = FakeTime()
        cache = AnalysisCache(default_ttl=60, clock=t)
        cache.set("fp", "分析结果")
        t.now += 60
        assert cache.get("fp") is None
        assert cache.get_stats()["size"] == 0

    def test_per_entry_ttl(self):
        t = FakeTime()
        cache = AnalysisCache(default_ttl=60, clock=t)
        cache.set("short", "a", ttl=5)
        cache.set("long", "b")
        t.now += 10
        assert cache.has("short") is False
        assert cache.has("long") is True

    def test_lru_eviction_when_full(self):
        t = FakeTime()
        cache = AnalysisCache(max_size=2, clock=t)
        cache.set("a", "1")
        cache.set("b", "2")
        cache.get("a")  # a 变为最近使用
        cache.set("c", "3")

        assert cache.has("a")
        assert not cache.has("b")
        assert cache.has("c")

    def test_expired_entry_evicted_before_lru(self):
        t = FakeTime()
        cache = AnalysisCache(max_size=2, clock=t)
        cache.set("old", "1")
        cache.set("short", "2", ttl=1)
        t.now += 2
        cache.set("new", "3")

        assert cache.has("old")
        assert cache.has("new")
        assert cache.get_stats()["size"] == 2

    def test_overwrite_does_not_evict(self):
        cache = AnalysisCache(max_size=2)
        cache.set("a", "1")
        cache.set("b", "2")
        cache.set("a", "updated")
        assert cache.get("a") == "updated"
        assert cache.has("b")

    def test_stats_track_hits_and_misses(self):
        cache = AnalysisCache()
        cache.set("a", "1")
        cache.get("a")
        cache.get("a")
        cache.get("missing")

        stats = cache.get_stats()
        assert stats["hit_count"] == 2
        assert stats["miss_count"] == 1
        assert stats["hit_rate"] == pytest.approx(2 / 3)

    def test_cleanup_and_clear(self):
        t = FakeTime()
        cache = AnalysisCache(default_ttl=10, clock=t)
        cache.set("a", "1")
        cache.set("b", "2", ttl=100)
        t.now += 20
        assert cache.cleanup() == 1
        assert cache.delete("b") is True
        assert cache.delete("b") is False

        cache.set("c", "3")
        cache.clear()
        assert cache.get_stats()["size"] == 0
        assert cache.get_stats()["hit_count"] == 0

    @pytest.mark.parametrize("max_size", [0, -1])
    def test_max_size_must_be_positive(self, max_size):
        with pytest.raises(ValidationError):
            AnalysisCache(max_size=max_size)

    def test_single_slot_cache_evicts(self):
        cache = AnalysisCache(max_size=1)
        cache.set("a", "1")
        cache.set("b", "2")
        assert not cache.has("a")
        assert cache.get("b") == "2"

    @pytest.mark.asyncio
    async def test_start_stop_sweep_loop(self):
        cache = AnalysisCache(sweep_interval=3600)
        await cache.start()
        await cache.stop()
        await cache.stop()


class TestFingerprint:
    def test_dynamic_parts_normalized(self):
        msg = "Login failed from 192.168.1.10:8291 at 2026-03-01T12:00:00Z session 0123456789abcdef0123"
        normalized = normalize_message(msg)
        assert "192.168.1.10" not in normalized
        assert "<IP>" in normalized
        assert "<TIMESTAMP>" in normalized
        assert "<SESSION>" in normalized

    def test_same_fault_same_fingerprint(self, make_event):
        a = make_event(message="Ping to 10.0.0.1 failed at 1760000000")
        b = make_event(message="Ping to 10.0.0.2 failed at 1760000999")
        assert generate_fingerprint(a) == generate_fingerprint(b)

    def test_different_rule_different_fingerprint(self, make_event):
        a = make_event(rule_id="r1")
        b = make_event(rule_id="r2")
        assert generate_fingerprint(a) != generate_fingerprint(b)
