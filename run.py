"""Unified launcher for the domain content backup engine.

Starts the backup persist worker and, unless disabled, the status API in
a single process. The worker runs in its own background thread while the
Flask API runs on the main thread.

Usage:
    python run.py
    python run.py --config config/config.json --port 5000
    python run.py --no-dashboard
"""

import argparse
import logging
import os
import signal
import threading

from domain_backup import settings
from domain_backup.contributors.content_directory import ContentDirectoryContributor
from domain_backup.dashboard.app import build_backup_manager, create_app

logger = logging.getLogger("domain_backup")


def main():
    parser = argparse.ArgumentParser(
        description="Domain Content Backup",
    )
    parser.add_argument(
        "-c", "--config",
        default=settings.DEFAULT_CONFIG_PATH,
        help="Path to config.json (default: config/config.json)",
    )
    parser.add_argument(
        "--host",
        default=None,
        help="Status API host (default: dashboard.host or 127.0.0.1)",
    )
    parser.add_argument(
        "--port",
        default=None,
        type=int,
        help="Status API port (default: dashboard.port or 5000)",
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )
    parser.add_argument(
        "--no-dashboard",
        action="store_true",
        help="Run only the backup worker (no status API)",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    try:
        config = settings.load_settings(args.config)
    except ValueError as exc:
        parser.error(str(exc))

    manager = build_backup_manager(config)
    content_dir = settings.content_directory(config)
    if content_dir:
        manager.register(ContentDirectoryContributor(content_dir))
        logger.info("Backing up content directory %s", content_dir)

    stop_event = threading.Event()

    def handle_signal(signum, frame):
        logger.info("Received signal %s, shutting down...", signum)
        stop_event.set()
        if not args.no_dashboard:
            # Unwind app.run() so the final persist below still runs
            raise SystemExit(0)

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    # Worker only
    if args.no_dashboard:
        logger.info("Starting backup worker (no status API)...")
        manager.start()
        try:
            while not stop_event.is_set():
                stop_event.wait(timeout=1.0)
        finally:
            manager.shutdown()
        return

    dash_cfg = config.get("dashboard", {})
    host = args.host or dash_cfg.get("host", "127.0.0.1")
    port = args.port or dash_cfg.get("port", 5000)

    logger.info("Starting Domain Content Backup...")
    logger.info("  Backups: %s", manager.backup_directory)
    logger.info("  Status API: http://%s:%d", host, port)

    app = create_app(backup_manager=manager, config=config)
    manager.start()
    try:
        app.run(host=host, port=port, debug=False)
    finally:
        manager.shutdown()
        logger.info("System stopped.")


if __name__ == "__main__":
    main()
