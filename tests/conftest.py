"""Shared test fixtures for the board tests."""

import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

# Ensure the repo root (platto/, board_server.py) is importable
sys.path.insert(0, str(Path(__file__).parent.parent))

from platto.remote import DataService, DataServiceError, SqliteDataService
from platto.schema import ChangeEvent


def make_record(
    id: int,
    status: str = "収録準備中",
    title: str = "",
    program_id: Optional[str] = None,
    **extra,
) -> Dict[str, Any]:
    """A programs-table row with sensible defaults."""
    record = {
        "id": id,
        "program_id": program_id or f"{id:03d}",
        "title": title or f"Program {id}",
        "subtitle": None,
        "status": status,
        "first_air_date": None,
        "pr_completed": False,
        "created_at": f"2025-01-{id:02d}T00:00:00+00:00",
        "updated_at": f"2025-01-{id:02d}T00:00:00+00:00",
    }
    record.update(extra)
    return record


class FakeDataService(DataService):
    """
    In-memory data service with knobs for the awkward cases.

    echo        - emit a change event for each write (the hosted feed)
    fail_with   - exception raised by the next update
    fetch_error - exception raised by every fetch_all until cleared
    """

    def __init__(self, records: List[Dict[str, Any]] = (), echo: bool = True):
        super().__init__()
        self.rows: Dict[int, Dict[str, Any]] = {r["id"]: dict(r) for r in records}
        self.echo = echo
        self.fail_with: Optional[Exception] = None
        self.fetch_error: Optional[Exception] = None
        self.updates: list = []
        self.fetch_count = 0

    def fetch_all(self, table, order_by="created_at", ascending=False):
        self.fetch_count += 1
        if self.fetch_error:
            raise self.fetch_error
        return [dict(r) for r in self.rows.values()]

    def create(self, table, record):
        new_id = max(self.rows, default=0) + 1
        row = make_record(new_id, **record)
        self.rows[new_id] = row
        if self.echo:
            self._emit(ChangeEvent.created(table, row))
        return dict(row)

    def update(self, table, row_id, changes):
        self.updates.append((row_id, dict(changes)))
        if self.fail_with is not None:
            error, self.fail_with = self.fail_with, None
            raise error
        if row_id not in self.rows:
            raise DataServiceError("not_found", f"Row {row_id} not found")
        row = self.rows[row_id]
        row.update(changes)
        if self.echo:
            self._emit(ChangeEvent.updated(table, row))
        return dict(row)

    def delete(self, table, row_id):
        old = self.rows.pop(row_id, None)
        if old is not None and self.echo:
            self._emit(ChangeEvent.deleted(table, old))


@pytest.fixture
def sqlite_service(tmp_path):
    return SqliteDataService(str(tmp_path / "board.db"))


@pytest.fixture
def seeded_sqlite(sqlite_service):
    """SQLite service with three programs spread over the board."""
    sqlite_service.create("programs", {"program_id": "016", "title": "Ueno", "status": "編集中"})
    sqlite_service.create("programs", {"program_id": "017", "title": "Asakusa", "status": "日程調整中"})
    sqlite_service.create("programs", {"program_id": "018", "title": "War and Creation", "status": "収録準備中"})
    return sqlite_service
