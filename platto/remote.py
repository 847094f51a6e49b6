"""
Remote data service adapters.

The board never owns data: programs live in a table store that exposes CRUD
plus a per-table change feed. Two adapters share one subscriber registry:

  SqliteDataService - local single-file backend; every committed write is
                      echoed to subscribers as a ChangeEvent
  RestDataService   - hosted REST table API (/rest/v1/<table>); change
                      events arrive through database webhooks

All methods are blocking. The session runs them off the event loop.
"""
import json
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import requests

from .schema import DATE_FIELDS, ChangeEvent, Program, parse_date

logger = logging.getLogger(__name__)

EventCallback = Callable[[ChangeEvent], None]


class DataServiceError(Exception):
    """Transport or policy failure reported by the data service."""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message

    def __str__(self) -> str:
        return f"{self.message} ({self.code})"


class DataService:
    """Base adapter: subscriber registry and the CRUD contract."""

    def __init__(self):
        self._subscribers: Dict[str, List[EventCallback]] = {}
        self._sub_lock = threading.Lock()

    # ── Change feed ──────────────────────────────────────────────────────────

    def subscribe(self, table: str, on_event: EventCallback) -> Callable[[], None]:
        """Register a callback for a table's changes. Returns an unsubscribe callable."""
        with self._sub_lock:
            self._subscribers.setdefault(table, []).append(on_event)
        logger.info(f"Subscribed to {table} changes")

        def unsubscribe() -> None:
            with self._sub_lock:
                callbacks = self._subscribers.get(table, [])
                if on_event in callbacks:
                    callbacks.remove(on_event)
                    logger.info(f"Unsubscribed from {table} changes")

        return unsubscribe

    def subscriber_count(self, table: str) -> int:
        with self._sub_lock:
            return len(self._subscribers.get(table, []))

    def _emit(self, event: ChangeEvent) -> None:
        """Deliver an event to every subscriber of its table."""
        with self._sub_lock:
            callbacks = list(self._subscribers.get(event.table, []))
        for callback in callbacks:
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Error in {event.table} change callback: {e}")

    def set_access_token(self, token: Optional[str]) -> None:
        """Signed-in user's token. Backends without per-user auth ignore it."""
        pass

    # ── CRUD contract ────────────────────────────────────────────────────────

    def fetch_all(self, table: str, order_by: str = "created_at", ascending: bool = False) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def create(self, table: str, record: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    def update(self, table: str, row_id: int, changes: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    def delete(self, table: str, row_id: int) -> None:
        raise NotImplementedError


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# SQLite backend
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def _connect(db_path: str) -> sqlite3.Connection:
    """Open a connection with WAL mode."""
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


PROGRAM_COLUMNS = [
    "program_id", "title", "subtitle", "status",
    "first_air_date", "re_air_date", "filming_date", "complete_date",
    "cast1", "cast2", "script_url", "pr_80text", "pr_200text",
    "pr_completed", "pr_due_date", "notes",
]


class SqliteDataService(DataService):
    """Single-file table store with an in-process change feed."""

    TABLE = "programs"

    def __init__(self, db_path: str = None):
        super().__init__()
        if db_path is None:
            db_path = str(Path.home() / ".local" / "share" / "platto" / "board.db")
        self.db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _init_schema(self):
        """Create tables if they don't exist."""
        with _connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS programs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    program_id TEXT NOT NULL UNIQUE,
                    title TEXT NOT NULL,
                    subtitle TEXT,
                    status TEXT NOT NULL DEFAULT '日程調整中',
                    first_air_date TEXT,
                    re_air_date TEXT,
                    filming_date TEXT,
                    complete_date TEXT,
                    cast1 TEXT,
                    cast2 TEXT,
                    script_url TEXT,
                    pr_80text TEXT,
                    pr_200text TEXT,
                    pr_completed INTEGER DEFAULT 0,
                    pr_due_date TEXT,
                    notes TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_programs_status ON programs(status)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_programs_air ON programs(first_air_date)")
            conn.commit()

    def _check_table(self, table: str) -> None:
        if table != self.TABLE:
            raise DataServiceError("unknown_table", f"Table {table!r} does not exist")

    def _check_columns(self, record: Dict[str, Any]) -> None:
        unknown = set(record) - set(PROGRAM_COLUMNS)
        if unknown:
            raise DataServiceError(
                "invalid_column",
                f"Unknown columns: {', '.join(sorted(unknown))}",
            )

    def _to_row(self, record: Dict[str, Any]) -> Dict[str, Any]:
        """Normalize values through the Program schema (stages, dates)."""
        row = dict(record)
        for name in DATE_FIELDS:
            if name in row:
                parsed = parse_date(row[name])
                row[name] = parsed.isoformat() if parsed else None
        if "pr_completed" in row:
            row["pr_completed"] = 1 if row["pr_completed"] else 0
        if "status" in row:
            probe = Program.from_dict({"id": 0, "status": row["status"]})
            if probe.status is None:
                raise ValueError("status must not be empty")
            row["status"] = probe.status.value
        return row

    def _row_to_record(self, row: sqlite3.Row) -> Dict[str, Any]:
        data = dict(row)
        data["pr_completed"] = bool(data.get("pr_completed", 0))
        return data

    def _get_row(self, conn: sqlite3.Connection, row_id: int) -> Optional[Dict[str, Any]]:
        row = conn.execute("SELECT * FROM programs WHERE id = ?", (row_id,)).fetchone()
        return self._row_to_record(row) if row else None

    def fetch_all(self, table: str, order_by: str = "created_at", ascending: bool = False) -> List[Dict[str, Any]]:
        """All rows, newest first unless told otherwise."""
        self._check_table(table)
        if order_by not in PROGRAM_COLUMNS + ["id", "created_at", "updated_at"]:
            raise DataServiceError("invalid_column", f"Cannot order by {order_by!r}")
        direction = "ASC" if ascending else "DESC"
        try:
            with _connect(self.db_path) as conn:
                rows = conn.execute(
                    f"SELECT * FROM programs ORDER BY {order_by} {direction}, id {direction}"
                ).fetchall()
        except sqlite3.Error as e:
            raise DataServiceError("storage", str(e)) from e
        return [self._row_to_record(r) for r in rows]

    def create(self, table: str, record: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a row and echo a CREATED event."""
        self._check_table(table)
        self._check_columns(record)
        try:
            row = self._to_row(record)
        except ValueError as e:
            raise DataServiceError("invalid_value", str(e)) from e
        now = _now()
        row["created_at"] = now
        row["updated_at"] = now
        columns = list(row)
        try:
            with _connect(self.db_path) as conn:
                cursor = conn.execute(
                    f"INSERT INTO programs ({', '.join(columns)}) "
                    f"VALUES ({', '.join('?' for _ in columns)})",
                    [row[c] for c in columns],
                )
                created = self._get_row(conn, cursor.lastrowid)
                conn.commit()
        except sqlite3.IntegrityError as e:
            raise DataServiceError("conflict", str(e)) from e
        except sqlite3.Error as e:
            raise DataServiceError("storage", str(e)) from e

        self._emit(ChangeEvent.created(table, created))
        return created

    def update(self, table: str, row_id: int, changes: Dict[str, Any]) -> Dict[str, Any]:
        """Patch a row and echo an UPDATED event. Missing row → not_found."""
        self._check_table(table)
        self._check_columns(changes)
        if not changes:
            raise DataServiceError("invalid_value", "No fields to update")
        try:
            row = self._to_row(changes)
        except ValueError as e:
            raise DataServiceError("invalid_value", str(e)) from e
        row["updated_at"] = _now()
        assignments = ", ".join(f"{c} = ?" for c in row)
        try:
            with _connect(self.db_path) as conn:
                cursor = conn.execute(
                    f"UPDATE programs SET {assignments} WHERE id = ?",
                    [*row.values(), row_id],
                )
                if cursor.rowcount == 0:
                    raise DataServiceError("not_found", f"Program {row_id} not found")
                updated = self._get_row(conn, row_id)
                conn.commit()
        except sqlite3.IntegrityError as e:
            raise DataServiceError("conflict", str(e)) from e
        except sqlite3.Error as e:
            raise DataServiceError("storage", str(e)) from e

        self._emit(ChangeEvent.updated(table, updated))
        return updated

    def delete(self, table: str, row_id: int) -> None:
        """Delete a row. Deleting a missing row is not an error and emits nothing."""
        self._check_table(table)
        try:
            with _connect(self.db_path) as conn:
                old = self._get_row(conn, row_id)
                if old is None:
                    return
                conn.execute("DELETE FROM programs WHERE id = ?", (row_id,))
                conn.commit()
        except sqlite3.Error as e:
            raise DataServiceError("storage", str(e)) from e

        self._emit(ChangeEvent.deleted(table, old))


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Hosted REST API
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class RestDataService(DataService):
    """
    Client for a hosted REST table API.

    Requests go to {base_url}/rest/v1/{table} with `apikey` and bearer auth.
    The service pushes row changes as database webhooks; the server hands
    those payloads to dispatch_webhook().
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        super().__init__()
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.access_token: Optional[str] = None
        self.http = session or requests.Session()

    def set_access_token(self, token: Optional[str]) -> None:
        """Use a signed-in user's token instead of the anon key (None reverts)."""
        self.access_token = token

    def _headers(self) -> Dict[str, str]:
        return {
            "apikey": self.api_key,
            "Authorization": f"Bearer {self.access_token or self.api_key}",
            "Content-Type": "application/json",
            "Prefer": "return=representation",
        }

    def _request(self, method: str, table: str, params: Dict[str, str] = None, body: Any = None) -> Any:
        url = f"{self.base_url}/rest/v1/{table}"
        try:
            r = self.http.request(
                method,
                url,
                params=params,
                data=json.dumps(body) if body is not None else None,
                headers=self._headers(),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.warning(f"{method} {table} failed: {e}")
            raise DataServiceError("network", str(e)) from e

        if not r.ok:
            raise self._error_from(r)
        if not r.content:
            return []
        try:
            return r.json()
        except ValueError as e:
            raise DataServiceError("bad_response", f"Invalid JSON from {url}") from e

    @staticmethod
    def _error_from(r: requests.Response) -> DataServiceError:
        """Map an error response body {code, message} to DataServiceError."""
        try:
            body = r.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        code = str(body.get("code") or r.status_code)
        message = body.get("message") or body.get("error") or r.reason or "Request failed"
        return DataServiceError(code, message)

    def fetch_all(self, table: str, order_by: str = "created_at", ascending: bool = False) -> List[Dict[str, Any]]:
        direction = "asc" if ascending else "desc"
        return self._request("GET", table, params={"select": "*", "order": f"{order_by}.{direction}"})

    def create(self, table: str, record: Dict[str, Any]) -> Dict[str, Any]:
        rows = self._request("POST", table, params={"select": "*"}, body=[record])
        if not rows:
            raise DataServiceError("bad_response", f"Insert into {table} returned no row")
        return rows[0]

    def update(self, table: str, row_id: int, changes: Dict[str, Any]) -> Dict[str, Any]:
        rows = self._request("PATCH", table, params={"id": f"eq.{row_id}", "select": "*"}, body=changes)
        if not rows:
            # Zero rows: missing, or hidden by a row-level policy
            raise DataServiceError("not_found", f"Row {row_id} in {table} not found")
        return rows[0]

    def delete(self, table: str, row_id: int) -> None:
        self._request("DELETE", table, params={"id": f"eq.{row_id}"})

    def dispatch_webhook(self, payload: Dict[str, Any], table: Optional[str] = None) -> ChangeEvent:
        """Turn a database webhook payload into a ChangeEvent and fan it out."""
        event = ChangeEvent.from_webhook(payload, table=table)
        self._emit(event)
        return event
