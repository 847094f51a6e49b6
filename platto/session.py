"""
Board session: store + overlay + change channel, scoped to a signed-in user.

One session per authenticated user. open() subscribes to the change feed and
starts the single reconciliation loop; close() tears both down. Moves are
applied to the overlay immediately and sent to the data service in the
background; the overlay is dropped when the change feed confirms the new
stage, or straight away when the request fails.
"""
import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Union

from .board import DEFAULT_TIMEZONE, Board, project, today_in
from .events import ChangeChannel
from .overlay import BoardBusy, OptimisticOverlay, PendingMove
from .remote import DataService, DataServiceError
from .schema import ChangeEvent, Program, Stage
from .store import ProgramStore

logger = logging.getLogger(__name__)


def _label(stage: Optional[Stage]) -> str:
    return stage.value if stage else "(no stage)"


@dataclass
class BoardError:
    """A failure surfaced to the user."""
    kind: str                      # "fetch" | "mutation"
    message: str
    program_id: Optional[int] = None
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "program_id": self.program_id,
            "timestamp": self.timestamp,
        }


class BoardSession:
    """Reconciles optimistic stage moves with the remote change feed."""

    def __init__(
        self,
        service: DataService,
        table: str = "programs",
        confirm_timeout: Optional[float] = None,
        timezone_name: str = DEFAULT_TIMEZONE,
        max_errors: int = 50,
    ):
        self.service = service
        self.table = table
        self.confirm_timeout = confirm_timeout
        self.timezone_name = timezone_name

        self.store = ProgramStore(service, table)
        self.overlay = OptimisticOverlay()
        self.channel = ChangeChannel()

        self.errors: deque = deque(maxlen=max_errors)
        self.fetch_error: Optional[str] = None
        self.subscribers: Dict[str, list] = {}  # event_type -> list of callbacks

        self.is_open = False
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._consumer: Optional[asyncio.Task] = None
        self._mutations: set = set()
        self._watchdogs: set = set()

    async def __aenter__(self) -> "BoardSession":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # ──────────────────────────────────────────
    # Lifecycle
    # ──────────────────────────────────────────

    async def open(self) -> None:
        """Subscribe, start the reconciliation loop, then load the board."""
        if self.is_open:
            return
        self.channel = ChangeChannel()
        self.channel.bind(asyncio.get_running_loop())
        # Subscribe before fetching so changes made during the fetch are queued
        self._unsubscribe = self.service.subscribe(self.table, self.channel.publish_threadsafe)
        self._consumer = asyncio.create_task(self._consume())
        self.is_open = True
        logger.info(f"Board session opened on {self.table}")

        try:
            await self.refresh()
        except DataServiceError as e:
            # Already recorded as fetch_error; the session stays subscribed
            logger.warning(f"Initial load failed: {e}")
        except BaseException:
            await self.close()
            raise

    async def close(self) -> None:
        """Unsubscribe and stop the loop. Requests already sent are awaited, not cancelled."""
        if not self.is_open:
            return
        self.is_open = False
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
        self.channel.close()

        if self._mutations:
            await asyncio.gather(*list(self._mutations), return_exceptions=True)
        for task in list(self._watchdogs):
            task.cancel()
        if self._watchdogs:
            await asyncio.gather(*self._watchdogs, return_exceptions=True)

        if self._consumer:
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
            self._consumer = None
        if self.overlay.discard():
            logger.info("Unconfirmed move dropped on close")
        logger.info(f"Board session closed on {self.table}")

    async def _consume(self) -> None:
        """The reconciliation loop: one event at a time, in arrival order."""
        while True:
            event = await self.channel.get()
            try:
                self.handle_event(event)
            except (ValueError, TypeError, KeyError) as e:
                logger.error(f"Dropping malformed {event.kind.name} event: {e}")
            finally:
                self.channel.task_done()

    async def settle(self) -> None:
        """Wait for in-flight requests and queued events to be processed."""
        while self._mutations:
            await asyncio.gather(*list(self._mutations), return_exceptions=True)
        await self.channel.join()

    # ──────────────────────────────────────────
    # Listeners
    # ──────────────────────────────────────────

    def subscribe(self, event_type: str, callback: Callable) -> None:
        """Register a callback: "board_changed", "move_confirmed" or "error"."""
        self.subscribers.setdefault(event_type, []).append(callback)

    def _emit(self, event_type: str, **kwargs) -> None:
        for callback in self.subscribers.get(event_type, []):
            try:
                callback(**kwargs)
            except Exception as e:
                logger.error(f"Error in {event_type} callback: {e}")

    def _surface(self, kind: str, message: str, program_id: Optional[int] = None) -> BoardError:
        error = BoardError(kind=kind, message=message, program_id=program_id)
        self.errors.append(error)
        logger.error(f"[{kind}] {message}")
        self._emit("error", error=error)
        return error

    def recent_errors(self) -> List[Dict[str, Any]]:
        return [e.to_dict() for e in self.errors]

    def clear_errors(self) -> None:
        self.errors.clear()

    # ──────────────────────────────────────────
    # Store + reconciliation
    # ──────────────────────────────────────────

    async def refresh(self) -> int:
        """
        Reload the store. On failure the previous cache stays, the error is
        recorded as a page-level fetch error, and the exception propagates.
        """
        try:
            count = await self.store.refresh()
        except Exception as e:
            self.fetch_error = str(e)
            self._surface("fetch", f"Failed to load programs: {e}")
            raise

        self.fetch_error = None
        pending = self.overlay.pending
        if pending is not None:
            current = self.store.get(pending.program_id)
            if current is not None and current.status is pending.target:
                self.overlay.discard(pending.token)
                logger.info(f"Reload shows program {pending.program_id} in {pending.target.value}, overlay cleared")
        self._emit("board_changed")
        return count

    def handle_event(self, event: ChangeEvent) -> bool:
        """Apply one change event to the store, then let the overlay reconcile."""
        if event.table != self.table:
            return False
        changed = self.store.apply_event(event)

        pending = self.overlay.pending
        if self.overlay.confirm(event):
            logger.info(
                f"Change feed confirmed program {pending.program_id} in {pending.target.value}"
            )
            self._emit("move_confirmed", program_id=pending.program_id, stage=pending.target)
            changed = True

        if changed:
            self._emit("board_changed")
        return changed

    def programs(self) -> List[Program]:
        """Current list: overlay while a move is pending, else the store."""
        return self.overlay.view(self.store.list())

    def board(self, search: str = "", show_aired: bool = False, today: Optional[date] = None) -> Board:
        pending = self.overlay.pending
        return project(
            self.programs(),
            search=search,
            show_aired=show_aired,
            today=today or today_in(self.timezone_name),
            pending_id=pending.program_id if pending else None,
        )

    # ──────────────────────────────────────────
    # Moves
    # ──────────────────────────────────────────

    async def move(self, program_id: int, stage: Union[Stage, str]) -> Optional[asyncio.Task]:
        """
        Move a card to another stage, optimistically.

        Returns the background request task, or None when there is nothing to
        do (unknown program, same stage). Raises ValueError for a stage that
        is not on the board and BoardBusy while another move is pending.
        """
        target = stage if isinstance(stage, Stage) else Stage.from_str(stage)
        if not target.on_board:
            raise ValueError(f"{target.value} is not a board stage")

        program = next((p for p in self.programs() if p.id == program_id), None)
        if program is None:
            logger.warning(f"Move ignored: program {program_id} not found")
            return None
        if program.status is target:
            return None

        pending = self.overlay.begin(program, target)
        logger.info(f"Optimistic move: program {program_id} {_label(pending.origin)} → {target.value}")
        self._emit("board_changed")

        task = asyncio.create_task(self._send_move(pending))
        self._mutations.add(task)
        task.add_done_callback(self._mutations.discard)
        return task

    async def _send_move(self, pending: PendingMove) -> bool:
        """Issue the stage update. Success waits for the change feed; failure rolls back."""
        try:
            await asyncio.to_thread(
                self.service.update,
                self.table,
                pending.program_id,
                {"status": pending.target.value},
            )
        except Exception as e:
            if self.overlay.fail(pending.token):
                logger.info(f"Rolled back program {pending.program_id} to {_label(pending.origin)}")
                self._emit("board_changed")
            self._surface("mutation", f"Failed to update status: {e}", pending.program_id)
            return False

        logger.info(f"Update for program {pending.program_id} accepted, waiting for change feed")
        if self.is_open and self.confirm_timeout is not None and self.overlay.pending is pending:
            watchdog = asyncio.create_task(self._await_confirmation(pending))
            self._watchdogs.add(watchdog)
            watchdog.add_done_callback(self._watchdogs.discard)
        return True

    async def _await_confirmation(self, pending: PendingMove) -> None:
        """Reload from the service if the change feed stays silent for too long."""
        await asyncio.sleep(self.confirm_timeout)
        if self.overlay.pending is None or self.overlay.pending.token != pending.token:
            return
        logger.warning(
            f"No change event for program {pending.program_id} after "
            f"{self.confirm_timeout}s, reloading"
        )
        try:
            await self.refresh()
        except Exception as e:
            logger.warning(f"Reload after missing confirmation failed: {e}")
        finally:
            if self.overlay.discard(pending.token):
                self._emit("board_changed")

    # ──────────────────────────────────────────
    # Pass-through edits (the change feed updates the store)
    # ──────────────────────────────────────────

    async def create_program(self, record: Dict[str, Any]) -> Program:
        try:
            row = await asyncio.to_thread(self.service.create, self.table, record)
        except DataServiceError as e:
            self._surface("mutation", f"Failed to add program: {e}")
            raise
        return Program.from_dict(row)

    async def update_program(self, program_id: int, changes: Dict[str, Any]) -> Program:
        if self.overlay.is_pending and self.overlay.pending.program_id == program_id:
            raise BoardBusy(f"Program {program_id} is still moving")
        try:
            row = await asyncio.to_thread(self.service.update, self.table, program_id, changes)
        except DataServiceError as e:
            self._surface("mutation", f"Failed to update program: {e}", program_id)
            raise
        return Program.from_dict(row)

    async def delete_program(self, program_id: int) -> None:
        try:
            await asyncio.to_thread(self.service.delete, self.table, program_id)
        except DataServiceError as e:
            self._surface("mutation", f"Failed to delete program: {e}", program_id)
            raise


class SessionGate:
    """
    Opens a BoardSession on sign-in and closes it on sign-out.

    Auth events use the hosted service's names (SIGNED_IN, SIGNED_OUT,
    TOKEN_REFRESHED, ...). At most one session exists at a time.
    """

    SIGN_IN_EVENTS = {"INITIAL_SESSION", "SIGNED_IN", "TOKEN_REFRESHED", "USER_UPDATED"}
    SIGN_OUT_EVENTS = {"SIGNED_OUT", "USER_DELETED"}

    def __init__(self, service: DataService, **session_kwargs):
        self.service = service
        self.session_kwargs = session_kwargs
        self.session: Optional[BoardSession] = None
        self.user: Optional[str] = None

    async def handle(self, event: str, user: Optional[str] = None, access_token: Optional[str] = None) -> Optional[BoardSession]:
        """Process one auth event. Returns the live session (or None when signed out)."""
        event = event.upper()
        if event in self.SIGN_OUT_EVENTS or (event in self.SIGN_IN_EVENTS and not user):
            await self.close()
            return None

        if event not in self.SIGN_IN_EVENTS:
            logger.debug(f"Ignoring auth event {event}")
            return self.session

        self.service.set_access_token(access_token)
        if self.session is not None and self.user == user:
            return self.session

        await self.close()
        logger.info(f"User {user} authenticated, opening board session")
        self.session = BoardSession(self.service, **self.session_kwargs)
        self.user = user
        await self.session.open()
        return self.session

    async def close(self) -> None:
        if self.session is None:
            return
        logger.info(f"Closing board session for {self.user}")
        session, self.session, self.user = self.session, None, None
        await session.close()
        self.service.set_access_token(None)
