"""
dashboard/app.py
Flask JSON dashboard -- read-only view over the scan store.

Security properties:
  - debug=False enforced programmatically (cannot be overridden by env)
  - SECRET_KEY auto-generated if not set
  - Stacktraces never exposed to client
  - No write endpoints: scans, purges and config changes go through the CLI

Layering: dashboard -> database.repository only (no core / services imports)
"""

from __future__ import annotations

import secrets

from flask import Flask, abort, jsonify, request
from database.repository import SORT_KEYS, Repository
from utils.constants import STATS_DEFAULT_HOURS, STATS_MAX_LOOKBACK_HOURS
from utils.errors import PersistenceError

CONFIG_KEYS = ("scheduler", "retention", "priority")


def _int_arg(name: str, default: int, lo: int, hi: int) -> int:
    raw = request.args.get(name, default)
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be an integer") from None
    return max(lo, min(value, hi))


# -- Factory ------------------------------------------------------------------

def create_app(cfg: dict, repo: Repository) -> Flask:
    """
    Application factory.

    cfg keys:
      secret_key     str  -- optional, random when missing
      host           str
      port           int
    """
    app = Flask(__name__)

    secret = cfg.get("secret_key", "")
    if not secret or secret == "CHANGE_THIS_IN_PRODUCTION":
        secret = secrets.token_hex(32)

    app.config["SECRET_KEY"]           = secret
    app.config["DEBUG"]                = False   # HARD -- no env override
    app.config["TESTING"]              = False
    app.config["PROPAGATE_EXCEPTIONS"] = False
    app.config["TRAP_HTTP_EXCEPTIONS"] = False
    app.json.sort_keys = False

    # Error handlers (no stacktrace leakage)
    @app.errorhandler(400)
    def _e400(e):
        return jsonify({"error": "bad request"}), 400

    @app.errorhandler(404)
    def _e404(e):
        return jsonify({"error": "not found"}), 404

    @app.errorhandler(405)
    def _e405(e):
        return jsonify({"error": "method not allowed"}), 405

    @app.errorhandler(ValueError)
    def _bad_query(e):
        return jsonify({"error": str(e)}), 400

    @app.errorhandler(PersistenceError)
    def _db_error(e):
        app.logger.error(f"Database error: {e}")
        return jsonify({"error": "database unavailable"}), 503

    @app.errorhandler(500)
    def _e500(e):
        app.logger.exception("Internal server error")
        return jsonify({"error": "internal server error"}), 500

    # Routes
    @app.route("/")
    def index():
        return jsonify({
            "service": "lanwatch",
            "endpoints": [
                "/api/entries", "/api/entries/<ip>", "/api/entries/<ip>/history",
                "/api/stats", "/api/stats/history", "/api/runs", "/api/runs/<id>",
                "/api/database", "/api/config", "/health",
            ],
        })

    @app.route("/api/entries")
    def api_entries():
        limit = _int_arg("limit", 50, 1, 500)
        offset = _int_arg("offset", 0, 0, 10**9)
        items, total = repo.query_entries(
            status=request.args.get("status") or None,
            ip=request.args.get("ip") or None,
            search=request.args.get("search") or None,
            sort_by=request.args.get("sort_by", "ip"),
            sort_order=request.args.get("sort_order", "asc"),
            limit=limit,
            offset=offset,
        )
        return jsonify({
            "items": [e.to_dict() for e in items],
            "total": total,
            "limit": limit,
            "offset": offset,
            "sort_keys": list(SORT_KEYS),
        })

    @app.route("/api/entries/<ip>")
    def api_entry(ip: str):
        entry = repo.get_entry(ip)
        if entry is None:
            abort(404)
        return jsonify(entry.to_dict())

    @app.route("/api/entries/<ip>/history")
    def api_entry_history(ip: str):
        limit = _int_arg("limit", 100, 1, 1000)
        return jsonify([h.to_dict() for h in repo.history_for(ip, limit)])

    @app.route("/api/stats")
    def api_stats():
        return jsonify(repo.stats())

    @app.route("/api/stats/history")
    def api_stats_history():
        hours = _int_arg("hours", STATS_DEFAULT_HOURS, 1, STATS_MAX_LOOKBACK_HOURS)
        return jsonify({"hours": hours, "series": repo.historical_series(hours)})

    @app.route("/api/runs")
    def api_runs():
        limit = _int_arg("limit", 50, 1, 200)
        return jsonify([r.to_dict() for r in repo.list_runs(limit)])

    @app.route("/api/runs/<int:run_id>")
    def api_run_detail(run_id: int):
        run = repo.get_run(run_id)
        if run is None:
            abort(404)
        return jsonify(run.to_dict())

    @app.route("/api/database")
    def api_database():
        return jsonify(repo.database_stats())

    @app.route("/api/config")
    def api_config():
        return jsonify({key: repo.get_setting(key) for key in CONFIG_KEYS})

    @app.route("/health")
    def health():
        running = repo.running_runs()
        return jsonify({
            "status": "ok",
            "scan_running": bool(running),
        })

    return app


# -- Server runner ------------------------------------------------------------

def run_dashboard(cfg: dict, repo: Repository) -> None:
    app = create_app(cfg, repo)
    host = cfg.get("host", "127.0.0.1")
    port = cfg.get("port", 5000)
    print(f"[*] Dashboard API at http://{host}:{port}")
    app.run(host=host, port=port, debug=False, use_reloader=False)
