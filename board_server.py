#!/usr/bin/env python3
"""
Platto Board Server
-------------------
Serves the production board as a JSON API. The board session (store,
optimistic overlay, change feed) runs on its own asyncio loop thread;
Flask handlers hand work to that loop and wait for the result.

Usage:
    python board_server.py
    python board_server.py --config config.yaml --port 3000

API:
    GET  /api/board?q=&aired=1        → projected board
    POST /api/programs/<id>/move      → JSON body: { status: "編集中" }
                                        202 once the card shows in its new column
    GET  /api/errors                  → surfaced failures (most recent last)
    POST /api/refresh                 → reload programs from the data service
    POST /api/hooks/<table>           → database webhook: { type, table, record, old_record }
    GET  /health
"""

import asyncio
import hmac
import logging
import os
import sys
import threading
from functools import wraps
from typing import Optional

from flask import Flask, jsonify, request

from platto.config import Config, ConfigError
from platto.overlay import BoardBusy
from platto.remote import DataService, DataServiceError, RestDataService
from platto.schema import ChangeEvent
from platto.session import BoardSession

logger = logging.getLogger("platto.server")

app = Flask(__name__)

# ── Auth ─────────────────────────────────────────────────────────────────────

API_SECRET = os.environ.get("PLATTO_API_SECRET", "")


def require_api_key(f):
    """Decorator: reject requests without a valid X-API-Key header."""
    @wraps(f)
    def decorated(*args, **kwargs):
        if not API_SECRET:
            return jsonify({"error": "API_SECRET not set"}), 503
        provided = request.headers.get("X-API-Key", "").strip()
        if not hmac.compare_digest(provided, API_SECRET):
            code = 401 if not provided else 403
            return jsonify({"error": "Unauthorized"}), code
        return f(*args, **kwargs)
    return decorated


# ── Session runtime ──────────────────────────────────────────────────────────


class BoardRuntime:
    """Runs one BoardSession on a dedicated event loop thread."""

    def __init__(self, service: DataService, call_timeout: float = 15.0, **session_kwargs):
        self.service = service
        self.call_timeout = call_timeout
        self.session_kwargs = session_kwargs
        self.session: Optional[BoardSession] = None
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._ready = threading.Event()

    def start(self) -> "BoardRuntime":
        self._thread = threading.Thread(target=self._run, name="board-loop", daemon=True)
        self._thread.start()
        self._ready.wait()
        self.call(self._open())
        return self

    def _run(self) -> None:
        self.loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self.loop)
        self._ready.set()
        self.loop.run_forever()
        self.loop.close()

    async def _open(self) -> None:
        self.session = BoardSession(self.service, **self.session_kwargs)
        await self.session.open()

    def call(self, coro):
        """Run a coroutine on the session loop and wait for its result."""
        future = asyncio.run_coroutine_threadsafe(coro, self.loop)
        return future.result(self.call_timeout)

    def stop(self) -> None:
        if self.loop is None:
            return
        if self.session is not None:
            self.call(self.session.close())
        self.loop.call_soon_threadsafe(self.loop.stop)
        self._thread.join(timeout=5)
        self.loop = None


_runtime: Optional[BoardRuntime] = None


def init_runtime(runtime: Optional[BoardRuntime]) -> None:
    global _runtime
    _runtime = runtime


def get_runtime() -> BoardRuntime:
    if _runtime is None:
        raise RuntimeError("Board runtime not started")
    return _runtime


async def _board_snapshot(session: BoardSession, search: str, show_aired: bool) -> dict:
    return session.board(search=search, show_aired=show_aired).to_dict()


async def _move(session: BoardSession, program_id: int, status: str) -> bool:
    task = await session.move(program_id, status)
    return task is not None


async def _refresh(session: BoardSession) -> int:
    return await session.refresh()


async def _ingest(session: BoardSession, event: ChangeEvent) -> None:
    session.channel.publish(event)


async def _program_exists(session: BoardSession, program_id: int) -> bool:
    return any(p.id == program_id for p in session.programs())


# ── Routes ───────────────────────────────────────────────────────────────────


@app.route("/api/board")
def api_board():
    runtime = get_runtime()
    session = runtime.session
    search = request.args.get("q", "").strip()
    show_aired = request.args.get("aired", "").lower() in ("1", "true", "yes", "on")

    if session.fetch_error and not session.store.loaded:
        return jsonify({"error": session.fetch_error}), 503

    board = runtime.call(_board_snapshot(session, search, show_aired))
    board["fetch_error"] = session.fetch_error
    return jsonify(board)


@app.route("/api/programs/<int:program_id>/move", methods=["POST"])
@require_api_key
def api_move(program_id):
    data = request.get_json(force=True, silent=True) or {}
    status = str(data.get("status", "")).strip()
    if not status:
        return jsonify({"error": "status is required"}), 400

    runtime = get_runtime()
    session = runtime.session
    try:
        moved = runtime.call(_move(session, program_id, status))
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except BoardBusy as e:
        return jsonify({"error": str(e)}), 409

    if not moved and not runtime.call(_program_exists(session, program_id)):
        return jsonify({"error": "Program not found"}), 404
    return jsonify({"program_id": program_id, "status": status, "moved": moved}), 202


@app.route("/api/errors")
def api_errors():
    session = get_runtime().session
    return jsonify({"errors": session.recent_errors(), "fetch_error": session.fetch_error})


@app.route("/api/refresh", methods=["POST"])
@require_api_key
def api_refresh():
    runtime = get_runtime()
    try:
        count = runtime.call(_refresh(runtime.session))
    except DataServiceError as e:
        return jsonify({"error": str(e), "code": e.code}), 502
    return jsonify({"count": count})


@app.route("/api/hooks/<table>", methods=["POST"])
@require_api_key
def api_webhook(table):
    """Database webhook: feed one row change into the session's change channel."""
    payload = request.get_json(force=True, silent=True)
    if not isinstance(payload, dict):
        return jsonify({"error": "JSON object body required"}), 400

    runtime = get_runtime()
    try:
        if isinstance(runtime.service, RestDataService):
            event = runtime.service.dispatch_webhook(payload, table=table)
        else:
            event = ChangeEvent.from_webhook(payload, table=table)
            runtime.call(_ingest(runtime.session, event))
    except ValueError as e:
        # Unrecognized change: fall back to a full reload
        logger.warning(f"Unrecognized webhook payload ({e}), reloading")
        try:
            runtime.call(_refresh(runtime.session))
        except DataServiceError as err:
            return jsonify({"error": str(err), "code": err.code}), 502
        return jsonify({"accepted": False, "reloaded": True}), 202

    return jsonify({"accepted": True, "type": event.kind.value, "id": event.entity_id}), 202


@app.route("/health")
def health():
    runtime = _runtime
    if runtime is None or runtime.session is None:
        return jsonify({"status": "starting"}), 503
    session = runtime.session
    pending = session.overlay.pending
    return jsonify({
        "status": "ok",
        "programs": len(session.store),
        "pending_id": pending.program_id if pending else None,
        "fetch_error": session.fetch_error,
    })


# ── Main ─────────────────────────────────────────────────────────────────────

if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Platto Board Server")
    parser.add_argument("--config", help="Path to config.yaml")
    parser.add_argument("--host", help="Bind address (use 0.0.0.0 to expose on network)")
    parser.add_argument("--port", type=int)
    parser.add_argument("--db", help="Path to board.db (overrides PLATTO_DB env var)")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [platto] %(levelname)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    if args.db:
        os.environ["PLATTO_DB"] = args.db

    try:
        cfg = Config.load(args.config)
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        sys.exit(1)

    host = args.host or cfg.host
    port = args.port or cfg.port

    runtime = BoardRuntime(
        cfg.build_service(),
        table=cfg.table,
        confirm_timeout=cfg.confirm_timeout,
        timezone_name=cfg.timezone,
    ).start()
    init_runtime(runtime)

    print(f"""
╔═══════════════════════════════════════╗
║  Platto Board Server                  ║
╠═══════════════════════════════════════╣
║  URL:     http://{host}:{port:<17}║
║  Backend: {cfg.backend:<28}║
║  Table:   {cfg.table:<28}║
╚═══════════════════════════════════════╝
""")

    try:
        app.run(host=host, port=port, debug=False, threaded=True)
    finally:
        runtime.stop()
