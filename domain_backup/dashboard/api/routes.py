"""API route handlers for backup status and export.

    GET  /api/status               - Engine state, rules, disk usage
    GET  /api/backups              - Archives on disk (optional ?rule=)
    POST /api/backups/persist      - Request a forced persist cycle
    POST /api/backups/consolidate  - Export a standalone copy of an archive
    GET  /api/config               - Loaded configuration
"""

import logging
from datetime import datetime

from flask import Blueprint, jsonify, request

from domain_backup.backup.archive_names import rule_prefix

logger = logging.getLogger(__name__)

api = Blueprint("api", __name__, url_prefix="/api")

# These are set by app.py at init time via init_routes()
_backup_manager = None
_config = None
_ws_handler = None

CONSOLIDATE_TIMEOUT = 60


def init_routes(backup_manager, config: dict, ws_handler):
    """Wire up shared application state into the route handlers."""
    global _backup_manager, _config, _ws_handler
    _backup_manager = backup_manager
    _config = config
    _ws_handler = ws_handler


# ------------------------------------------------------------------
# GET /api/status
# ------------------------------------------------------------------

@api.route("/status", methods=["GET"])
def get_status():
    if not _backup_manager:
        return jsonify({"error": "Backup manager not available"}), 503

    status = _backup_manager.get_status()
    status["timestamp"] = datetime.now().isoformat()
    status["websocket_clients"] = _ws_handler.client_count if _ws_handler else 0
    return jsonify(status)


# ------------------------------------------------------------------
# GET /api/backups
# ------------------------------------------------------------------

@api.route("/backups", methods=["GET"])
def get_backups():
    """List archives, newest first.

    ``?rule=`` accepts either a rule name ("Daily") or its prefix ("daily-").
    """
    if not _backup_manager:
        return jsonify({"backups": [], "total": 0})

    rule = request.args.get("rule")
    prefix = None
    if rule:
        prefix = rule if rule.endswith("-") else rule_prefix(rule)

    try:
        backups = _backup_manager.get_backups(rule_prefix=prefix)
    except Exception as exc:
        logger.exception("Error listing backups")
        return jsonify({"error": f"Could not list backups: {exc}"}), 500

    return jsonify({
        "backups": [b.to_dict() for b in backups],
        "total": len(backups),
    })


# ------------------------------------------------------------------
# POST /api/backups/persist
# ------------------------------------------------------------------

@api.route("/backups/persist", methods=["POST"])
def persist_now():
    """Force a backup of every rule at the worker's next tick."""
    if not _backup_manager:
        return jsonify({"error": "Backup manager not available"}), 503

    _backup_manager.request_persist()
    return jsonify({"requested": True, "running": _backup_manager.is_running}), 202


# ------------------------------------------------------------------
# POST /api/backups/consolidate
# ------------------------------------------------------------------

@api.route("/backups/consolidate", methods=["POST"])
def consolidate_backup():
    """Export a standalone copy. Body: {"filename": str}"""
    data = request.get_json(silent=True) or {}

    if not _backup_manager:
        return jsonify({"error": "Backup manager not available"}), 503

    filename = data.get("filename")
    if not isinstance(filename, str) or not filename:
        return jsonify({"error": "filename is required"}), 400

    known = {b.filename for b in _backup_manager.get_backups()}
    if filename not in known:
        return jsonify({"error": f"Backup {filename} not found"}), 404

    try:
        future = _backup_manager.submit(_backup_manager.consolidate, filename)
        path = future.result(timeout=CONSOLIDATE_TIMEOUT)
    except Exception as exc:
        logger.exception("Error consolidating %s", filename)
        return jsonify({"error": f"Consolidation failed: {exc}"}), 500

    if path is None:
        return jsonify({"error": f"Consolidation of {filename} failed"}), 500

    if _ws_handler:
        _ws_handler.broadcast("backup_consolidated", {"filename": filename, "path": path})

    return jsonify({"filename": filename, "path": path})


# ------------------------------------------------------------------
# GET /api/config
# ------------------------------------------------------------------

@api.route("/config", methods=["GET"])
def get_config():
    """Return current configuration."""
    return jsonify(_config or {})
