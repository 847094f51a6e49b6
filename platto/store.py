"""
Program cache (server-confirmed view).

Refreshed wholesale from the data service and patched incrementally by
change events. Has no source of truth of its own.
"""
import asyncio
import logging
from collections import OrderedDict
from typing import List, Optional

from .remote import DataService, DataServiceError
from .schema import ChangeEvent, EventKind, Program

logger = logging.getLogger(__name__)


class ProgramStore:
    """In-memory id → Program mapping, kept in service order (newest first)."""

    def __init__(self, service: DataService, table: str = "programs"):
        self.service = service
        self.table = table
        self._programs: "OrderedDict[int, Program]" = OrderedDict()
        self.loaded = False

    def __len__(self) -> int:
        return len(self._programs)

    def __contains__(self, program_id: int) -> bool:
        return program_id in self._programs

    def get(self, program_id: int) -> Optional[Program]:
        return self._programs.get(program_id)

    def list(self) -> List[Program]:
        return list(self._programs.values())

    async def refresh(self) -> int:
        """
        Replace the whole cache with a fresh fetch.

        Any failure propagates and leaves the previous cache untouched. A row
        that cannot be read fails the whole load as DataServiceError("bad_record").
        Returns the number of programs loaded.
        """
        records = await asyncio.to_thread(self.service.fetch_all, self.table)
        try:
            programs = [Program.from_dict(r) for r in records]
        except (ValueError, TypeError, KeyError) as e:
            raise DataServiceError("bad_record", f"Unreadable row in {self.table}: {e}") from e

        self._programs = OrderedDict((p.id, p) for p in programs)
        self.loaded = True
        logger.info(f"Loaded {len(programs)} programs from {self.table}")
        return len(programs)

    def apply_event(self, event: ChangeEvent) -> bool:
        """
        Patch the cache with one change event. Returns True if the cache changed.

        Rules:
            CREATED → insert at the front, unless the id is already present
            UPDATED → replace only when a field other than updated_at differs
            DELETED → remove if present
        """
        if event.kind is EventKind.CREATED:
            program = Program.from_dict(event.record)
            if program.id in self._programs:
                logger.debug(f"Program {program.id} already present, skipping insert")
                return False
            self._programs[program.id] = program
            self._programs.move_to_end(program.id, last=False)
            return True

        if event.kind is EventKind.UPDATED:
            incoming = Program.from_dict(event.record)
            current = self._programs.get(incoming.id)
            if current is None:
                logger.debug(f"Update for unknown program {incoming.id}, ignored")
                return False
            if not current.differs_from(incoming):
                logger.debug(f"No changes detected for program {incoming.id}")
                return False
            self._programs[incoming.id] = incoming
            return True

        if event.kind is EventKind.DELETED:
            if self._programs.pop(event.entity_id, None) is None:
                logger.debug(f"Program {event.entity_id} already deleted")
                return False
            return True

        return False
