"""Flask application exposing backup status and export.

Serves the REST API and WebSocket endpoint:

    GET  /api/status
    GET  /api/backups
    POST /api/backups/persist
    POST /api/backups/consolidate
    GET  /api/config
    WS   /ws/live
"""

import logging
import os

from flask import Flask
from flask_sock import Sock

from domain_backup import settings
from domain_backup.backup.backup_manager import BackupManager
from domain_backup.dashboard.api.routes import api, init_routes
from domain_backup.dashboard.websocket_handler import WebSocketHandler

logger = logging.getLogger(__name__)


def build_backup_manager(config: dict) -> BackupManager:
    """Construct a BackupManager from a loaded config dict."""
    return BackupManager(
        backup_directory=settings.backup_directory(config),
        settings=config,
        persist_interval=settings.persist_interval(config),
        min_free_bytes=settings.min_free_bytes(config),
    )


def create_app(
    config_path: str = None,
    backup_manager: BackupManager = None,
    config: dict = None,
) -> Flask:
    """Application factory.

    Accepts a pre-built BackupManager (for testing or when the host owns
    it) or constructs one from config. Engine events are forwarded to
    /ws/live clients unless the manager already has a callback.
    """
    if config is None:
        config = settings.load_settings(config_path)

    if backup_manager is None:
        backup_manager = build_backup_manager(config)

    ws_handler = WebSocketHandler()
    if backup_manager.on_event is None:
        backup_manager.on_event = ws_handler.broadcast

    app = Flask(__name__)
    sock = Sock(app)

    init_routes(
        backup_manager=backup_manager,
        config=config,
        ws_handler=ws_handler,
    )
    app.register_blueprint(api)

    # WebSocket: /ws/live
    @sock.route("/ws/live")
    def ws_live(ws):
        ws_handler.register(ws)
        try:
            while True:
                # Keep connection alive; client can send pings
                data = ws.receive(timeout=60)
                if data is None:
                    break
        except Exception:
            logger.debug("Live feed connection closed", exc_info=True)
        finally:
            ws_handler.unregister(ws)

    # Store references for test access
    app.backup_manager = backup_manager
    app.ws_handler = ws_handler

    return app


def main():
    import argparse

    parser = argparse.ArgumentParser(description="Domain Backup - Status API")
    parser.add_argument(
        "-c", "--config",
        default=settings.DEFAULT_CONFIG_PATH,
        help="Path to config.json",
    )
    parser.add_argument(
        "--host",
        default=None,
        help="Host to bind to (default: dashboard.host or 127.0.0.1)",
    )
    parser.add_argument(
        "--port",
        default=None,
        type=int,
        help="Port to listen on (default: dashboard.port or 5000)",
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    config = settings.load_settings(args.config)
    dash_cfg = config.get("dashboard", {})
    host = args.host or dash_cfg.get("host", "127.0.0.1")
    port = args.port or dash_cfg.get("port", 5000)

    app = create_app(config=config)
    app.backup_manager.start()
    logger.info("Status API starting on http://%s:%d", host, port)
    try:
        app.run(host=host, port=port, debug=False)
    finally:
        app.backup_manager.shutdown()


if __name__ == "__main__":
    main()
