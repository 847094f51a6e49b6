"""
Board projection: stage columns derived from the current program list.

Pure functions; the session decides which list (overlay or store) to pass in.
"""
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Dict, List, Optional
from zoneinfo import ZoneInfo

from .schema import BOARD_STAGES, BOTTOM_ROW_STAGES, TOP_ROW_STAGES, Program, Stage

DEFAULT_TIMEZONE = "Asia/Tokyo"


def today_in(tz_name: str = DEFAULT_TIMEZONE) -> date:
    """Current calendar date in the given time zone, wherever the server runs."""
    return datetime.now(ZoneInfo(tz_name)).date()


def is_aired(program: Program, today: date) -> bool:
    """First air date strictly before today. Programs without one have not aired."""
    return program.first_air_date is not None and program.first_air_date < today


def matches_search(program: Program, query: str) -> bool:
    """Case-insensitive substring match on program_id, title and subtitle."""
    if not query:
        return True
    needle = query.lower()
    return any(
        needle in (value or "").lower()
        for value in (program.program_id, program.title, program.subtitle)
    )


@dataclass
class Board:
    """Projected board: ordered programs per stage plus header figures."""
    columns: Dict[Stage, List[Program]]
    aired_count: int = 0
    search: str = ""
    show_aired: bool = False
    today: Optional[date] = None
    pending_id: Optional[int] = None
    rows: List[List[Stage]] = field(default_factory=lambda: [TOP_ROW_STAGES, BOTTOM_ROW_STAGES])

    def column(self, stage: Stage) -> List[Program]:
        return self.columns.get(stage, [])

    def stage_of(self, program_id: int) -> Optional[Stage]:
        """Column the program currently shows in, or None if filtered out."""
        for stage, programs in self.columns.items():
            if any(p.id == program_id for p in programs):
                return stage
        return None

    @property
    def counts(self) -> Dict[Stage, int]:
        return {stage: len(programs) for stage, programs in self.columns.items()}

    def to_dict(self) -> dict:
        return {
            "rows": [[stage.value for stage in row] for row in self.rows],
            "columns": [
                {
                    "stage": stage.value,
                    "count": len(programs),
                    "programs": [p.to_dict() for p in programs],
                }
                for stage, programs in self.columns.items()
            ],
            "aired_count": self.aired_count,
            "search": self.search,
            "show_aired": self.show_aired,
            "today": self.today.isoformat() if self.today else None,
            "pending_id": self.pending_id,
        }


def project(
    programs: List[Program],
    search: str = "",
    show_aired: bool = False,
    today: Optional[date] = None,
    pending_id: Optional[int] = None,
) -> Board:
    """
    Group programs into the eight board columns.

    Filters, in order:
        1. the casting stage is never shown
        2. aired programs (first air date before today) only when show_aired
        3. search text
    Within a column the input order is kept.
    """
    if today is None:
        today = today_in()

    columns: Dict[Stage, List[Program]] = {stage: [] for stage in BOARD_STAGES}
    for program in programs:
        if program.status is None or not program.status.on_board:
            continue
        if not show_aired and is_aired(program, today):
            continue
        if not matches_search(program, search):
            continue
        columns[program.status].append(program)

    return Board(
        columns=columns,
        aired_count=sum(1 for p in programs if is_aired(p, today)),
        search=search,
        show_aired=show_aired,
        today=today,
        pending_id=pending_id,
    )
