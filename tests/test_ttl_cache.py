import pytest

from bloodalert.clock import ManualScheduler
from bloodalert.ttl_cache import TtlCache

from conftest import make_record


def test_empty_cache_has_nothing() -> None:
    clock = ManualScheduler()
    cache = TtlCache(120, clock.now)

    assert cache.get() is None
    assert not cache.is_valid()
    assert cache.age() is None


def test_entry_valid_strictly_before_ttl() -> None:
    clock = ManualScheduler(start=50.0)
    cache = TtlCache(120, clock.now, name="urgent")
    cache.put([make_record("A"), make_record("B")])

    clock.advance(119.75)
    payload = cache.get()
    assert payload is not None
    assert [r.id for r in payload] == ["A", "B"]

    clock.advance(0.25)
    assert cache.get() is None

    clock.advance(5)
    assert cache.get() is None
    assert cache.age() == pytest.approx(125.0)


def test_put_replaces_whole_entry_and_resets_age() -> None:
    clock = ManualScheduler()
    cache = TtlCache(10, clock.now)
    cache.put([make_record("old")])

    clock.advance(30)
    assert not cache.is_valid()

    cache.put([make_record("new1"), make_record("new2")])

    assert [r.id for r in cache.get() or ()] == ["new1", "new2"]
    assert cache.age() == 0.0


def test_empty_payload_is_still_a_valid_entry() -> None:
    clock = ManualScheduler()
    cache = TtlCache(10, clock.now)
    cache.put([])

    assert cache.get() == ()
    assert cache.is_valid()


def test_ttl_must_be_positive() -> None:
    with pytest.raises(ValueError):
        TtlCache(0, lambda: 0.0)
