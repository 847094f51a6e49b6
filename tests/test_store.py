"""
Tests for ProgramStore: wholesale refresh and incremental event patches.
"""
import asyncio

import pytest

from platto.remote import DataServiceError
from platto.schema import ChangeEvent, Stage
from platto.store import ProgramStore
from conftest import FakeDataService, make_record


def loaded_store(*records) -> ProgramStore:
    store = ProgramStore(FakeDataService(list(records)))
    asyncio.run(store.refresh())
    return store


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# refresh()
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_refresh_loads_in_service_order():
    """Test refresh keeps the service order"""
    store = loaded_store(make_record(3), make_record(1), make_record(2))
    assert [p.id for p in store.list()] == [3, 1, 2]
    assert len(store) == 3
    assert 1 in store
    assert store.loaded


def test_refresh_failure_keeps_previous_cache():
    """Test a failed refresh keeps the cache"""
    service = FakeDataService([make_record(1), make_record(2)])
    store = ProgramStore(service)
    asyncio.run(store.refresh())
    before = store.list()

    service.rows.clear()
    service.fetch_error = DataServiceError("network", "connection reset")
    with pytest.raises(DataServiceError):
        asyncio.run(store.refresh())

    assert store.list() == before


def test_unreadable_row_fails_refresh_as_bad_record():
    """One bad row fails the load and keeps the previous cache"""
    service = FakeDataService([make_record(1)])
    store = ProgramStore(service)
    asyncio.run(store.refresh())

    service.rows[2] = make_record(2, first_air_date="2025/08/01")
    with pytest.raises(DataServiceError) as exc:
        asyncio.run(store.refresh())
    assert exc.value.code == "bad_record"
    assert [p.id for p in store.list()] == [1]


def test_refresh_replaces_everything():
    """Test refresh replaces rather than merges"""
    service = FakeDataService([make_record(1), make_record(2)])
    store = ProgramStore(service)
    asyncio.run(store.refresh())

    del service.rows[1]
    service.rows[5] = make_record(5)
    asyncio.run(store.refresh())
    assert {p.id for p in store.list()} == {2, 5}


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# apply_event()
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestCreated:

    def test_inserts_at_front(self):
        """Test new programs go to the front"""
        store = loaded_store(make_record(1), make_record(2))
        assert store.apply_event(ChangeEvent.created("programs", make_record(9)))
        assert [p.id for p in store.list()] == [9, 1, 2]

    def test_duplicate_is_idempotent(self):
        """Test a repeated CREATED changes nothing"""
        store = loaded_store(make_record(1))
        event = ChangeEvent.created("programs", make_record(9, title="new"))
        assert store.apply_event(event)
        once = store.list()
        assert not store.apply_event(event)
        assert store.list() == once
        assert len(store) == 2


class TestUpdated:

    def test_replaces_changed_program(self):
        """Test a real change replaces the program in place"""
        store = loaded_store(make_record(1), make_record(2))
        assert store.apply_event(ChangeEvent.updated("programs", make_record(2, status="編集中")))
        assert store.get(2).status is Stage.EDITING
        # Position is kept
        assert [p.id for p in store.list()] == [1, 2]

    def test_noop_echo_keeps_identity(self):
        """Test a timestamp-only echo keeps the same object"""
        store = loaded_store(make_record(1))
        original = store.get(1)
        echo = make_record(1, updated_at="2030-01-01T00:00:00+00:00")
        assert not store.apply_event(ChangeEvent.updated("programs", echo))
        assert store.get(1) is original

    def test_unknown_id_ignored(self):
        """Test updates for unknown ids are dropped"""
        store = loaded_store(make_record(1))
        assert not store.apply_event(ChangeEvent.updated("programs", make_record(42)))
        assert 42 not in store


class TestDeleted:

    def test_removes_program(self):
        """Test delete removes the program"""
        store = loaded_store(make_record(1), make_record(2))
        assert store.apply_event(ChangeEvent.deleted("programs", {"id": 1}))
        assert [p.id for p in store.list()] == [2]

    def test_repeat_delete_is_idempotent(self):
        """Test a repeated DELETED changes nothing"""
        store = loaded_store(make_record(1), make_record(2))
        event = ChangeEvent.deleted("programs", {"id": 1})
        store.apply_event(event)
        once = store.list()
        assert not store.apply_event(event)
        assert store.list() == once
