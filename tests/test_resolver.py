"""Tests for reference resolution and its cache."""

import pytest

from exbridge.db.models import Counterparty
from exbridge.mapping.resolver import ReferenceResolver
from exbridge.utils.cache import MemoryCache
from exbridge.utils.exceptions import DependencyNotReadyError


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


class TestMemoryCache:
    """Test the TTL cache."""

    def test_expiry(self):
        """Test entries disappear after their TTL."""
        clock = FakeClock()
        cache = MemoryCache(clock=clock)
        cache.set("k", "v", ttl=10)

        assert cache.get("k") == "v"
        clock.now += 10
        assert cache.get("k") is None
        assert cache.get("k", "default") == "default"

    def test_remember(self):
        """Test the factory runs once while the value is cached."""
        cache = MemoryCache()
        calls = []

        def factory():
            calls.append(1)
            return 42

        assert cache.remember("k", 60, factory) == 42
        assert cache.remember("k", 60, factory) == 42
        assert len(calls) == 1

    def test_none_is_not_remembered(self):
        """Test a missing value is looked up again next time."""
        cache = MemoryCache()
        values = iter([None, 7])

        assert cache.remember("k", 60, lambda: next(values)) is None
        assert cache.remember("k", 60, lambda: next(values)) == 7

    def test_forget(self):
        """Test forgetting a key, present or not."""
        cache = MemoryCache()
        cache.set("k", "v", ttl=60)
        cache.forget("k")
        cache.forget("missing")
        assert cache.get("k") is None

    def test_exists(self):
        """Test exists sees stored falsy values but not expired ones."""
        clock = FakeClock()
        cache = MemoryCache(clock=clock)
        cache.set("empty", {}, ttl=5)

        assert cache.exists("empty")
        assert not cache.exists("missing")
        clock.now += 5
        assert not cache.exists("empty")

    def test_writes_sweep_expired_entries(self):
        """Test keys never read again are dropped by a later write."""
        clock = FakeClock()
        cache = MemoryCache(clock=clock, sweep_interval=60)
        for i in range(100):
            cache.set(f"counterparties:guid:cp-{i}", i, ttl=10)
        cache.set("long", "kept", ttl=3600)
        assert len(cache) == 101

        clock.now += 30
        cache.set("early", 1, ttl=10)
        assert len(cache) == 102

        clock.now += 30
        cache.set("late", 2, ttl=10)

        assert len(cache) == 2
        assert cache.get("long") == "kept"
        assert cache.get("late") == 2

    def test_purge_expired(self):
        """Test an explicit purge reports how many entries it dropped."""
        clock = FakeClock()
        cache = MemoryCache(clock=clock)
        cache.set("a", 1, ttl=5)
        cache.set("b", 2, ttl=50)

        clock.now += 5
        assert cache.purge_expired() == 1
        assert len(cache) == 1


class TestReferenceResolver:
    """Test lookups of synced entities."""

    @pytest.fixture
    def counterparty(self, test_session):
        entity = Counterparty(guid_1c="cp-1", b24_id=42, name="ООО Ромашка")
        test_session.add(entity)
        test_session.flush()
        return entity

    def test_find_id(self, test_session, counterparty):
        """Test GUID lookups return the primary key or None."""
        resolver = ReferenceResolver(test_session)

        assert resolver.find_id(Counterparty, "cp-1") == counterparty.id
        assert resolver.find_id(Counterparty, "unknown") is None
        assert resolver.find_id(Counterparty, None) is None

    def test_require_id(self, test_session, counterparty):
        """Test a missing required reference is a dependency failure."""
        resolver = ReferenceResolver(test_session)

        assert resolver.require_id(Counterparty, "cp-1") == counterparty.id
        with pytest.raises(DependencyNotReadyError, match="Counterparty cp-2 is not synced yet"):
            resolver.require_id(Counterparty, "cp-2")

    def test_guid_for_b24_id(self, test_session, counterparty):
        """Test Bitrix24 ids resolve to GUIDs, as int or string."""
        resolver = ReferenceResolver(test_session)

        assert resolver.guid_for_b24_id(Counterparty, 42) == "cp-1"
        assert resolver.guid_for_b24_id(Counterparty, "42") == "cp-1"

    def test_unknown_b24_id(self, test_session, counterparty):
        """Test unresolvable ids raise with the given label."""
        resolver = ReferenceResolver(test_session)

        with pytest.raises(DependencyNotReadyError, match="Company with Bitrix24 id 43 is not synced yet"):
            resolver.guid_for_b24_id(Counterparty, 43, "Company")
        with pytest.raises(DependencyNotReadyError, match="reference is missing"):
            resolver.guid_for_b24_id(Counterparty, None)

    def test_b24_id_for_guid(self, test_session, counterparty):
        """Test GUIDs resolve back to Bitrix24 ids, including newly linked ones."""
        resolver = ReferenceResolver(test_session)
        assert resolver.b24_id_for_guid(Counterparty, "cp-1") == 42

        test_session.add(Counterparty(guid_1c="cp-2", b24_id=43, name="ООО Лютик"))
        test_session.add(Counterparty(guid_1c="cp-3", name="ООО Василек"))
        test_session.flush()

        assert resolver.b24_id_for_guid(Counterparty, "cp-2") == 43
        with pytest.raises(DependencyNotReadyError, match="Counterparty cp-3 has no Bitrix24 record yet"):
            resolver.b24_id_for_guid(Counterparty, "cp-3")

    def test_stale_index_is_rebuilt_on_miss(self, test_session, counterparty):
        """Test an entity synced after the index was cached is still found."""
        resolver = ReferenceResolver(test_session)
        assert resolver.b24_index(Counterparty) == {42: "cp-1"}

        test_session.add(Counterparty(guid_1c="cp-2", b24_id=43, name="ООО Лютик"))
        test_session.flush()

        assert resolver.guid_for_b24_id(Counterparty, 43) == "cp-2"

    def test_invalidate(self, test_session, counterparty):
        """Test invalidation drops cached lookups."""
        cache = MemoryCache()
        resolver = ReferenceResolver(test_session, cache=cache)
        resolver.find_id(Counterparty, "cp-1")
        resolver.b24_index(Counterparty)

        resolver.invalidate(Counterparty, "cp-1")

        assert cache.get("counterparties:b24_index") is None
        assert cache.get("counterparties:guid:cp-1") is None
