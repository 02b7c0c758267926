"""Unit tests for the SQLite state store: sequences, transactions, timeline and idempotency."""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest

from ultimamilla.core.config import get_settings
from ultimamilla.services.state_store import StateStore


def test_concurrent_sequence_generation_is_unique(state):
    with ThreadPoolExecutor(max_workers=12) as pool:
        values = list(pool.map(lambda _: state.next_sequence("route_number:2603"), range(200)))

    assert len(values) == 200
    assert sorted(values) == list(range(1, 201))


def test_sequences_are_independent_per_key(state):
    assert state.next_sequence("route_number:2603") == 1
    assert state.next_sequence("route_number:2603") == 2
    assert state.next_sequence("route_number:2604") == 1


def test_failed_transaction_rolls_back_every_write(state):
    with pytest.raises(RuntimeError):
        with state.transaction():
            state.next_sequence("route")
            state.record_event("route", "RTA-000001", "route_created", "bodega", {})
            raise RuntimeError("boom")

    assert state.next_sequence("route") == 1
    assert state.list_timeline("route", "RTA-000001") == []


def test_nested_failure_only_undoes_inner_block(state):
    with state.transaction():
        state.record_event("route", "RTA-000001", "outer", "bodega", {})
        with pytest.raises(ValueError):
            with state.transaction():
                state.record_event("route", "RTA-000001", "inner", "bodega", {})
                raise ValueError("inner failure")

    events = state.list_timeline("route", "RTA-000001")
    assert [event["event_type"] for event in events] == ["outer"]


def test_timeline_is_newest_first_and_filtered(state):
    state.record_event("dispatch", "DSP-000001", "dispatch_created", "sync", {"folio_num": 1})
    state.record_event("dispatch", "DSP-000001", "dispatch_assigned", "bodega", {"route_id": "RTA-000001"})
    state.record_event("dispatch", "DSP-000002", "dispatch_created", "sync", {"folio_num": 2})

    events = state.list_timeline("dispatch", "DSP-000001")
    assert [event["event_type"] for event in events] == ["dispatch_assigned", "dispatch_created"]
    assert events[0]["actor"] == "bodega"
    assert events[0]["details"] == {"route_id": "RTA-000001"}
    assert events[0]["event_id"].startswith("EVT-")


def test_idempotency_roundtrip_and_overwrite(state):
    assert state.get_idempotent("create_route:abc") is None
    state.set_idempotent("create_route:abc", {"id": "RTA-000001"})
    state.set_idempotent("create_route:abc", {"id": "RTA-000002"})
    assert state.get_idempotent("create_route:abc") == {"id": "RTA-000002"}


def test_reset_operational_data_clears_sequences(state):
    state.next_sequence("dispatch")
    state.set_idempotent("k", {"ok": True})
    state.reset_operational_data()

    assert state.next_sequence("dispatch") == 1
    assert state.get_idempotent("k") is None


def test_timeline_retention_is_per_entity(tmp_path, monkeypatch):
    monkeypatch.setenv("TIMELINE_RETENTION", "100")
    get_settings.cache_clear()
    try:
        store = StateStore(db_path=str(tmp_path / "retention.db"))
    finally:
        get_settings.cache_clear()

    store.record_event("route", "RTA-000001", "route_started", "chofer1", {"patente": "AB1234"})
    for folio in range(120):
        store.record_event("dispatch", f"DSP-{folio:06d}", "dispatch_created", "sync", {"folio_num": folio})

    started = store.list_timeline("route", "RTA-000001")
    assert [event["event_type"] for event in started] == ["route_started"]
    assert started[0]["actor"] == "chofer1"

    for step in range(130):
        store.record_event("dispatch", "DSP-999999", "dispatch_note", "bodega", {"step": step})

    busy = store.list_timeline("dispatch", "DSP-999999", limit=500)
    assert len(busy) == 100
    assert busy[0]["details"] == {"step": 129}
    assert busy[-1]["details"] == {"step": 30}
    assert len(store.list_timeline("dispatch", "DSP-000000")) == 1
