from __future__ import annotations

import time

import pytest

from common.config import Settings
from common.errors import InvalidStateError
from state.flow import FlowStateStore


def _store(clock) -> FlowStateStore:
    return FlowStateStore(timeout=300.0, sweep_interval=600.0, clock=clock)


def test_state_present_immediately_and_gone_after_timeout_via_lookup(clock):
    store = _store(clock)
    store.set_state("u1", "creating_contact", {"message": "hey"})
    assert store.has_state("u1")

    clock.advance(300.001)
    # no sweep has run; lookups alone must already agree
    assert store.has_state("u1") is False
    assert store.get_state("u1") is None


def test_state_gone_after_timeout_via_sweep(clock):
    store = _store(clock)
    store.set_state("u1", "creating_contact")

    clock.advance(301.0)
    assert store.cleanup() == 1
    assert store.has_state("u1") is False


def test_set_state_replaces_payload_and_restarts_deadline(clock):
    store = _store(clock)
    store.set_state("u1", "creating_contact", {"message": "hey"})
    clock.advance(200.0)
    store.set_state("u1", "selecting_personality", {"contactName": "Sam"})

    clock.advance(200.0)
    flow = store.get_state("u1")
    assert flow is not None
    assert flow.state == "selecting_personality"
    assert flow.data == {"contactName": "Sam"}


def test_clear_state(clock):
    store = _store(clock)
    store.set_state("u1", "selecting_contact")
    store.clear_state("u1")
    assert store.has_state("u1") is False
    store.clear_state("u1")  # clearing twice is harmless


def test_update_state_data_merges_without_extending_deadline(clock):
    store = _store(clock)
    store.set_state("u1", "creating_contact", {"message": "hey"})
    clock.advance(250.0)

    flow = store.update_state_data("u1", contactName="Sam")
    assert flow is not None
    assert flow.data == {"message": "hey", "contactName": "Sam"}

    clock.advance(51.0)
    assert store.has_state("u1") is False
    assert store.update_state_data("u1", x=1) is None


def test_is_in_state_and_require_state(clock):
    store = _store(clock)
    with pytest.raises(InvalidStateError):
        store.require_state("u1")

    store.set_state("u1", "selecting_contact")
    assert store.is_in_state("u1", "selecting_contact")
    assert store.is_in_state("u1", "creating_contact") is False
    assert store.require_state("u1").state == "selecting_contact"


def test_all_states_reports_age(clock):
    store = _store(clock)
    store.set_state("u1", "a")
    clock.advance(10.0)
    store.set_state("u2", "b")
    clock.advance(5.0)

    ages = {info.identity: (info.state, info.age) for info in store.all_states()}
    assert ages == {"u1": ("a", 15.0), "u2": ("b", 5.0)}


def test_periodic_sweep_runs_in_background():
    store = FlowStateStore(timeout=0.01, sweep_interval=0.02)
    store.set_state("u1", "a")
    store.start()
    try:
        deadline = time.monotonic() + 2.0
        while store._states._entries and time.monotonic() < deadline:
            time.sleep(0.02)
    finally:
        store.stop()
    assert store._states._entries == {}


def test_from_settings_uses_configured_timeout(clock):
    settings = Settings(flow_state_timeout_seconds=30.0, flow_state_sweep_seconds=60.0)
    store = FlowStateStore.from_settings(settings, clock=clock)
    assert store.timeout == 30.0

    store.set_state("u1", "awaiting_name")
    clock.advance(30.5)
    assert store.has_state("u1") is False
