"""
Program schema, production stages and change events.

Stage lifecycle (board order):
  日程調整中 → ロケハン前 → 収録準備中 → 編集中 → 試写中 → MA中 → 完パケ納品 → 放送済み

キャスティング中 exists in the table but never appears on the board.
"""
from enum import Enum
from dataclasses import dataclass, field, fields
from datetime import date, datetime
from typing import Optional, List, Dict, Any


class Stage(Enum):
    """Production stages a program can occupy."""
    CASTING = "キャスティング中"          # Hidden from the board
    SCHEDULING = "日程調整中"
    LOCATION_SCOUTING = "ロケハン前"
    RECORDING_PREP = "収録準備中"
    EDITING = "編集中"
    PREVIEW = "試写中"
    AUDIO_MIX = "MA中"
    DELIVERED = "完パケ納品"
    AIRED = "放送済み"

    @classmethod
    def from_str(cls, value: str) -> "Stage":
        """Accept either the stored value or the enum name. Raises ValueError."""
        try:
            return cls(value)
        except ValueError:
            pass
        try:
            return cls[str(value).strip().upper()]
        except KeyError:
            raise ValueError(f"Unknown stage: {value!r}")

    @property
    def on_board(self) -> bool:
        return self is not Stage.CASTING


# Two rows of four columns, in display order
TOP_ROW_STAGES: List[Stage] = [
    Stage.SCHEDULING, Stage.LOCATION_SCOUTING, Stage.RECORDING_PREP, Stage.EDITING,
]
BOTTOM_ROW_STAGES: List[Stage] = [
    Stage.PREVIEW, Stage.AUDIO_MIX, Stage.DELIVERED, Stage.AIRED,
]
BOARD_STAGES: List[Stage] = TOP_ROW_STAGES + BOTTOM_ROW_STAGES

# Server-managed; never counts as a change
TIMESTAMP_FIELD = "updated_at"

DATE_FIELDS = ("first_air_date", "re_air_date", "filming_date", "complete_date", "pr_due_date")


def parse_date(value: Any) -> Optional[date]:
    """Parse 'YYYY-MM-DD' (or a full ISO timestamp) into a date. Empty → None."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


@dataclass
class Program:
    """A tracked production item. `id` and `program_id` never change after creation."""

    # Identifiers
    id: int
    program_id: str                  # Business identifier (e.g. "018")

    # Content
    title: str
    subtitle: Optional[str] = None
    status: Optional[Stage] = Stage.SCHEDULING   # None: row has no stage, kept off the board

    # Milestones
    first_air_date: Optional[date] = None
    re_air_date: Optional[date] = None
    filming_date: Optional[date] = None
    complete_date: Optional[date] = None    # MA / final delivery date

    # Cast
    cast1: Optional[str] = None
    cast2: Optional[str] = None

    # PR deliverables
    script_url: Optional[str] = None
    pr_80text: Optional[str] = None
    pr_200text: Optional[str] = None
    pr_completed: bool = False
    pr_due_date: Optional[date] = None

    notes: Optional[str] = None

    # Server-managed
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def with_status(self, status: Stage) -> "Program":
        """Copy with a different stage; the original is left untouched."""
        data = self.to_dict()
        data["status"] = status.value
        return Program.from_dict(data)

    def differs_from(self, other: "Program") -> bool:
        """True when any field other than the server timestamp differs."""
        mine, theirs = self.to_dict(), other.to_dict()
        return any(
            mine[key] != theirs[key]
            for key in mine
            if key != TIMESTAMP_FIELD
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the table's record shape."""
        data = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, Stage):
                value = value.value
            elif isinstance(value, date):
                value = value.isoformat()
            data[f.name] = value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Program":
        """Deserialize from a table record. Unknown keys are ignored."""
        if data.get("id") is None:
            raise ValueError("Program record has no id")
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        kwargs["id"] = int(data["id"])
        kwargs["program_id"] = str(data.get("program_id") or "")
        kwargs["title"] = data.get("title") or ""
        status = data.get("status")
        kwargs["status"] = Stage.from_str(status) if status else None
        kwargs["pr_completed"] = bool(data.get("pr_completed", False))
        for name in DATE_FIELDS:
            kwargs[name] = parse_date(data.get(name))
        return cls(**kwargs)


class EventKind(Enum):
    """Change feed event types, keyed by the webhook `type` value."""
    CREATED = "INSERT"
    UPDATED = "UPDATE"
    DELETED = "DELETE"


@dataclass
class ChangeEvent:
    """One create/update/delete notification from the remote table."""
    kind: EventKind
    table: str
    record: Optional[Dict[str, Any]] = None       # Row after the change (CREATED/UPDATED)
    old_record: Optional[Dict[str, Any]] = None   # Row before the change (DELETED)
    received_at: str = field(default_factory=lambda: datetime.now().astimezone().isoformat())

    @property
    def entity_id(self) -> Optional[int]:
        row = self.old_record if self.kind is EventKind.DELETED else self.record
        if not row or row.get("id") is None:
            return None
        return int(row["id"])

    @classmethod
    def created(cls, table: str, record: Dict[str, Any]) -> "ChangeEvent":
        return cls(EventKind.CREATED, table, record=dict(record))

    @classmethod
    def updated(cls, table: str, record: Dict[str, Any]) -> "ChangeEvent":
        return cls(EventKind.UPDATED, table, record=dict(record))

    @classmethod
    def deleted(cls, table: str, old_record: Dict[str, Any]) -> "ChangeEvent":
        return cls(EventKind.DELETED, table, old_record=dict(old_record))

    @classmethod
    def from_webhook(cls, payload: Dict[str, Any], table: Optional[str] = None) -> "ChangeEvent":
        """
        Build an event from a database webhook payload:
            {"type": "UPDATE", "table": "programs", "record": {...}, "old_record": {...}}

        Raises ValueError for unknown types or a payload without the row it needs.
        """
        try:
            kind = EventKind(str(payload.get("type", "")).upper())
        except ValueError:
            raise ValueError(f"Unknown change type: {payload.get('type')!r}")

        event = cls(
            kind=kind,
            table=payload.get("table") or table or "",
            record=payload.get("record"),
            old_record=payload.get("old_record"),
        )
        if event.entity_id is None:
            raise ValueError(f"{kind.name} payload carries no row id")
        return event

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.kind.value,
            "table": self.table,
            "record": self.record,
            "old_record": self.old_record,
            "received_at": self.received_at,
        }
