from __future__ import annotations

import time

from common.expiring import ExpiringMap


def test_entry_visible_until_deadline_then_hidden(clock):
    m = ExpiringMap(clock=clock)
    m.set("a", 1, ttl=10.0)

    clock.advance(10.0)
    assert m.get("a") == 1  # exactly at the deadline it is still live

    clock.advance(0.001)
    assert m.get("a") is None
    assert "a" not in m
    assert len(m) == 0


def test_entries_without_deadline_never_expire(clock):
    m = ExpiringMap(clock=clock)
    m.set("forever", "x")
    clock.advance(10**9)
    assert m.get("forever") == "x"


def test_sweep_removes_only_expired(clock):
    m = ExpiringMap(clock=clock)
    m.set("short", 1, ttl=1.0)
    m.set("long", 2, ttl=100.0)
    clock.advance(5.0)

    assert m.sweep() == 1
    assert m.items() == [("long", 2)]
    assert m.sweep() == 0


def test_update_is_read_modify_write(clock):
    m = ExpiringMap(clock=clock)

    def bump(v):
        n = (v or 0) + 1
        return n, clock() + 5.0

    assert m.update("k", bump) == 1
    assert m.update("k", bump) == 2
    assert m.deadline("k") == clock() + 5.0


def test_modify_keeps_deadline_and_skips_missing(clock):
    m = ExpiringMap(clock=clock)
    m.set("k", [1], ttl=10.0)
    deadline = m.deadline("k")

    assert m.modify("k", lambda v: v + [2]) == [1, 2]
    assert m.deadline("k") == deadline
    assert m.modify("missing", lambda v: v) is None


def test_pop_ignores_expired_value(clock):
    m = ExpiringMap(clock=clock)
    m.set("k", "v", ttl=1.0)
    clock.advance(2.0)
    assert m.pop("k", "default") == "default"


def test_background_sweeper_removes_expired_entries():
    m = ExpiringMap()
    m.set("k", "v", ttl=0.01)
    m.start_sweeper(0.02)
    try:
        deadline = time.monotonic() + 2.0
        while m._entries and time.monotonic() < deadline:
            time.sleep(0.02)
    finally:
        m.stop_sweeper()
    assert m._entries == {}
