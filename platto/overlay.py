"""
Optimistic overlay and reconciliation policy.

Two states:
  Idle                              board reads the store directly
  Pending(program_id, stage, token) board reads store + one stage rewrite

Transitions:
  Idle    → Pending  begin(), when the user moves a card
  Pending → Idle     confirm(), when an UPDATED event shows the target stage
  Pending → Idle     fail(), when the mutation request rejects
  Pending → Pending  any other event (absorbed by the store only)

The mutation's own success response never ends Pending.
"""
import itertools
from dataclasses import dataclass
from typing import List, Optional

from .schema import ChangeEvent, EventKind, Program, Stage


class BoardBusy(Exception):
    """Raised when a move is attempted while another one is still pending."""
    pass


@dataclass(frozen=True)
class PendingMove:
    program_id: int
    target: Stage
    origin: Optional[Stage]   # None when the row had no stage
    token: int


class OptimisticOverlay:
    """At most one unconfirmed stage move, layered over the store."""

    def __init__(self):
        self.pending: Optional[PendingMove] = None
        self._tokens = itertools.count(1)

    @property
    def is_pending(self) -> bool:
        return self.pending is not None

    def begin(self, program: Program, target: Stage) -> PendingMove:
        """Idle → Pending. Raises BoardBusy if a move is already in flight."""
        if self.pending is not None:
            raise BoardBusy(
                f"Program {self.pending.program_id} is still moving to "
                f"{self.pending.target.value}"
            )
        self.pending = PendingMove(
            program_id=program.id,
            target=target,
            origin=program.status,
            token=next(self._tokens),
        )
        return self.pending

    def confirms(self, event: ChangeEvent) -> bool:
        """True if this event shows the authoritative row at the pending target."""
        if self.pending is None or event.kind is not EventKind.UPDATED:
            return False
        if event.entity_id != self.pending.program_id:
            return False
        try:
            stage = Stage.from_str(event.record.get("status"))
        except ValueError:
            return False
        return stage is self.pending.target

    def confirm(self, event: ChangeEvent) -> bool:
        """Pending → Idle on a confirming event. Returns True if the overlay cleared."""
        if not self.confirms(event):
            return False
        self.pending = None
        return True

    def fail(self, token: int) -> bool:
        """
        Pending → Idle after the mutation for `token` rejected.

        A late failure from an earlier move leaves a newer Pending alone.
        Returns True if the overlay cleared.
        """
        if self.pending is None or self.pending.token != token:
            return False
        self.pending = None
        return True

    def discard(self, token: Optional[int] = None) -> bool:
        """Drop the overlay unconditionally (or only if `token` still matches)."""
        if self.pending is None:
            return False
        if token is not None and self.pending.token != token:
            return False
        self.pending = None
        return True

    def view(self, programs: List[Program]) -> List[Program]:
        """Store list with the pending program's stage rewritten; unchanged when idle."""
        if self.pending is None:
            return programs
        return [
            p.with_status(self.pending.target) if p.id == self.pending.program_id else p
            for p in programs
        ]
