#!/usr/bin/env python3
"""
TeamHub Server
--------------
JSON API over the shared TeamHub caches: events, the task board and the
issue list. Every mutation goes through a TeamHub intent; every read is a
render of the live cache.

Usage:
    python hub_server.py
    python hub_server.py --config config/teamhub.yaml --port 8090

API:
    GET    /health                     → { status, db, ai, collections }
    GET    /api/<kind>?q=              → { records, count, stale, revision }
    POST   /api/<kind>                 → create (201)
    PATCH  /api/<kind>/<id>            → merge fields (full id only)
    DELETE /api/<kind>/<id>            → delete (full id only)
    POST   /api/<kind>/cleanup         → { selected, removed, failed }
    POST   /api/tasks/<id>/move        → { status } or { direction: advance|retreat }
    GET    /api/board                  → { columns, stats, text }
    GET    /api/events/calendar        → ?year=&month= or ?day=YYYY-MM-DD
    GET    /api/events/<id>/export     → { text }
    POST   /api/events/extract         → { text } → { draft } (never saved)
    GET    /api/<kind>/summary         → AI summary (events, tasks)
    POST   /api/issues/<id>/diagnose   → AI diagnostic steps
    POST   /api/issues/<id>/ping       → fire-and-forget team ping
    GET    /api/stats
    GET    /api/notices, DELETE /api/notices/<id>

Mutating routes require the X-API-Key header (secret from TEAMHUB_API_SECRET).
"""

import hmac
import logging
import sys
from datetime import date
from functools import wraps

from flask import Flask, current_app, jsonify, request

from pkg.hub import views
from pkg.hub.config import HubConfig
from pkg.hub.errors import AIError, ConfigError, HubError, NotFound, WriteError
from pkg.hub.schema import EVENTS, ISSUES, KINDS, TASKS, TaskStatus, parse_day
from pkg.hub.teamhub import TeamHub

logger = logging.getLogger(__name__)


# ── Auth ─────────────────────────────────────────────────────────────────────

def require_api_key(f):
    """Decorator: reject requests without a valid X-API-Key header."""
    @wraps(f)
    def decorated(*args, **kwargs):
        secret = current_app.config.get("API_SECRET", "")
        if not secret:
            return jsonify({"error": "API secret not set"}), 503
        provided = request.headers.get("X-API-Key", "").strip()
        if not hmac.compare_digest(provided, secret):
            code = 401 if not provided else 403
            return jsonify({"error": "Unauthorized"}), code
        return f(*args, **kwargs)
    return decorated


# ── Helpers ──────────────────────────────────────────────────────────────────

def _hub() -> TeamHub:
    return current_app.config["HUB"]


def _body() -> dict:
    data = request.get_json(force=True, silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise WriteError("Request body must be a JSON object")
    return data


def _check_kind(kind: str) -> None:
    if kind not in KINDS:
        raise NotFound(f"Unknown collection: {kind!r}. Available: {', '.join(KINDS)}")


def _records_for(kind: str, query: str = ""):
    records = _hub().collection(kind).records
    if kind == EVENTS:
        return views.search_events(records, query)
    if kind == ISSUES:
        return views.sort_issues(records)
    columns = views.board_columns(records)
    return [task for column in columns.values() for task in column]


# ── App factory ──────────────────────────────────────────────────────────────

def create_app(config: HubConfig = None, hub: TeamHub = None) -> Flask:
    """
    Build the Flask app. Pass a ready hub (tests) or a config to build one
    from. A config with problems yields an app that answers 503 on /api.
    """
    app = Flask(__name__)
    config = config or (hub.config if hub else HubConfig.load())
    app.config["API_SECRET"] = config.api_secret
    app.config["CONFIG_PROBLEM"] = ""

    if hub is None:
        try:
            hub = TeamHub.from_config(config)
        except ConfigError as e:
            logger.error(str(e))
            app.config["CONFIG_PROBLEM"] = str(e)
    app.config["HUB"] = hub

    @app.before_request
    def refuse_when_unconfigured():
        problem = current_app.config["CONFIG_PROBLEM"]
        if problem and request.path.startswith("/api"):
            return jsonify({"error": problem}), 503
        return None

    # ── Error mapping ────────────────────────────────────────────────────

    @app.errorhandler(NotFound)
    def not_found(e):
        return jsonify({"error": str(e)}), 404

    @app.errorhandler(AIError)
    def ai_failed(e):
        code = 503 if not _hub().assistant.configured else 502
        return jsonify({"error": str(e)}), code

    @app.errorhandler(HubError)
    def rejected(e):
        return jsonify({"error": str(e)}), 400

    # ── Health ───────────────────────────────────────────────────────────

    @app.route("/health")
    def health():
        hub = current_app.config["HUB"]
        if hub is None:
            return jsonify({"status": "unconfigured",
                            "error": current_app.config["CONFIG_PROBLEM"]}), 503
        collections = {
            kind: {
                "path": c.path,
                "count": len(c),
                "revision": c.revision,
                "stale": c.stale,
            }
            for kind, c in hub.collections.items()
        }
        return jsonify({
            "status": "ok",
            "db": hub.config.resolved_db_path,
            "ai": hub.assistant.configured,
            "collections": collections,
        })

    # ── Board and dashboards ─────────────────────────────────────────────

    @app.route("/api/board")
    def api_board():
        tasks = _hub().tasks.records
        columns = views.board_columns(tasks)
        return jsonify({
            "columns": {
                status.value: [t.to_dict() for t in column]
                for status, column in columns.items()
            },
            "stats": views.stats(TASKS, tasks),
            "text": views.render_board(tasks),
        })

    @app.route("/api/stats")
    def api_stats():
        return jsonify(_hub().stats())

    @app.route("/api/notices", methods=["GET"])
    def api_notices():
        return jsonify({"notices": [n.to_dict() for n in _hub().notices()]})

    @app.route("/api/notices/<int:notice_id>", methods=["DELETE"])
    def api_dismiss_notice(notice_id):
        return jsonify({"dismissed": _hub().notifier.dismiss(notice_id)})

    # ── Events ───────────────────────────────────────────────────────────

    @app.route("/api/events/calendar")
    def api_calendar():
        events = _hub().events.records
        day_arg = request.args.get("day")
        if day_arg:
            try:
                day = parse_day(day_arg)
            except ValueError as e:
                raise WriteError(str(e))
            on_day = views.events_on(events, day)
            return jsonify({
                "date": day.isoformat(),
                "events": [e.to_dict() for e in on_day],
                "text": views.render_day(events, day),
            })

        today = date.today()
        try:
            year = int(request.args.get("year", today.year))
            month = int(request.args.get("month", today.month))
        except ValueError:
            raise WriteError("year and month must be integers")
        if not 1 <= year <= 9999:
            raise WriteError("year must be between 1 and 9999")
        if not 1 <= month <= 12:
            raise WriteError("month must be between 1 and 12")
        grid = views.month_grid(events, year, month, today)
        return jsonify({
            "year": year,
            "month": month,
            "weeks": [[cell.to_dict() if cell else None for cell in week] for week in grid],
            "text": views.render_calendar(events, year, month, today),
        })

    @app.route("/api/events/<record_id>/export")
    def api_export_event(record_id):
        return jsonify({"text": _hub().export_event(record_id)})

    @app.route("/api/events/extract", methods=["POST"])
    @require_api_key
    def api_extract_event():
        draft = _hub().extract_event(str(_body().get("text", "")))
        return jsonify({"draft": draft or {}, "saved": False})

    # ── Tasks ────────────────────────────────────────────────────────────

    @app.route("/api/tasks/<record_id>/move", methods=["POST"])
    @require_api_key
    def api_move_task(record_id):
        data = _body()
        direction = str(data.get("direction", "")).strip().lower()
        hub = _hub()
        if direction == "advance":
            task = hub.advance_task(record_id)
        elif direction == "retreat":
            task = hub.retreat_task(record_id)
        elif direction:
            raise WriteError("direction must be 'advance' or 'retreat'")
        elif data.get("status"):
            task = hub.move_task(record_id, data["status"])
        else:
            raise WriteError(
                f"status is required. Allowed: {', '.join(s.value for s in TaskStatus)}"
            )
        return jsonify({"record": task.to_dict()})

    # ── Issues ───────────────────────────────────────────────────────────

    @app.route("/api/issues/<record_id>/diagnose", methods=["POST"])
    @require_api_key
    def api_diagnose_issue(record_id):
        return jsonify({"text": _hub().diagnose_issue(record_id) or ""})

    @app.route("/api/issues/<record_id>/ping", methods=["POST"])
    @require_api_key
    def api_ping_team(record_id):
        notice = _hub().ping_team(record_id)
        return jsonify({"notice": notice.to_dict()})

    # ── Generic collections ──────────────────────────────────────────────

    @app.route("/api/<kind>", methods=["GET"])
    def api_list(kind):
        _check_kind(kind)
        collection = _hub().collection(kind)
        records = _records_for(kind, request.args.get("q", ""))
        return jsonify({
            "kind": kind,
            "records": [r.to_dict() for r in records],
            "count": len(records),
            "revision": collection.revision,
            "stale": collection.stale,
        })

    @app.route("/api/<kind>", methods=["POST"])
    @require_api_key
    def api_create(kind):
        _check_kind(kind)
        hub = _hub()
        record_id = hub.create(kind, _body())
        record = hub.collection(kind).get(record_id)
        return jsonify({"id": record_id, "record": record.to_dict() if record else None}), 201

    @app.route("/api/<kind>/<record_id>", methods=["PATCH"])
    @require_api_key
    def api_update(kind, record_id):
        _check_kind(kind)
        record = _hub().update(kind, record_id, _body(), exact=True)
        return jsonify({"record": record.to_dict()})

    @app.route("/api/<kind>/<record_id>", methods=["DELETE"])
    @require_api_key
    def api_delete(kind, record_id):
        _check_kind(kind)
        return jsonify({"deleted": _hub().delete(kind, record_id, exact=True)})

    @app.route("/api/<kind>/cleanup", methods=["POST"])
    @require_api_key
    def api_cleanup(kind):
        _check_kind(kind)
        days = _body().get("days")
        if days is not None:
            try:
                days = int(days)
            except (TypeError, ValueError):
                raise WriteError("days must be an integer")
        report = _hub().cleanup(kind, days=days)
        return jsonify(report.to_dict())

    @app.route("/api/<kind>/summary")
    def api_summary(kind):
        _check_kind(kind)
        hub = _hub()
        if kind == EVENTS:
            text = hub.summarize_events(upcoming_only=request.args.get("all") is None)
        elif kind == TASKS:
            text = hub.summarize_board()
        else:
            raise WriteError("Summaries are available for events and tasks")
        return jsonify({"text": text or ""})

    return app


# ── Main ─────────────────────────────────────────────────────────────────────

def main(argv=None):
    import argparse

    parser = argparse.ArgumentParser(description="TeamHub Server")
    parser.add_argument("--config", help="Path to teamhub.yaml")
    parser.add_argument("--host", help="Bind address (use 0.0.0.0 to expose on network)")
    parser.add_argument("--port", type=int)
    parser.add_argument("--db", help="Path to the hub database (overrides config)")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [hub_server] %(levelname)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    try:
        config = HubConfig.load(args.config)
    except ConfigError as e:
        print(f"❌ {e}", file=sys.stderr)
        return 2
    if args.db:
        config.db_path = args.db
    host = args.host or config.server_host
    port = args.port or config.server_port

    app = create_app(config)
    hub = app.config["HUB"]

    print(f"""
╔═══════════════════════════════════════╗
║  TeamHub Server                       ║
╠═══════════════════════════════════════╣
║  URL:  http://{host}:{port:<20}║
║  DB:   {config.resolved_db_path:<31}║
║  AI:   {('on' if hub and hub.assistant.configured else 'off'):<31}║
╚═══════════════════════════════════════╝
""")

    try:
        app.run(host=host, port=port, debug=False, threaded=True)
    finally:
        if hub is not None:
            hub.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
