"""Live feed of backup engine events.

Connected /ws/live clients receive every event the backup manager emits
(``backup_created``, ``backup_pruned``, ``persist_complete``) as JSON::

    {"type": "backup_created", "data": {...}, "timestamp": "..."}
"""

import json
import logging
import threading
from datetime import datetime

logger = logging.getLogger(__name__)


class WebSocketHandler:
    """Client registry; its ``broadcast`` doubles as a BackupManager event callback."""

    def __init__(self):
        self._clients: list = []
        self._lock = threading.Lock()

    def register(self, ws):
        with self._lock:
            self._clients.append(ws)
            count = len(self._clients)
        logger.debug("Live feed client connected (%d total)", count)

    def unregister(self, ws):
        with self._lock:
            if ws in self._clients:
                self._clients.remove(ws)
            count = len(self._clients)
        logger.debug("Live feed client disconnected (%d remaining)", count)

    def broadcast(self, event_type: str, data: dict):
        message = json.dumps({
            "type": event_type,
            "data": data,
            "timestamp": datetime.now().isoformat(),
        })
        with self._lock:
            clients = list(self._clients)

        dead = []
        for ws in clients:
            try:
                ws.send(message)
            except Exception:
                dead.append(ws)

        if dead:
            with self._lock:
                self._clients = [c for c in self._clients if c not in dead]
            logger.debug("Dropped %d dead live feed client(s)", len(dead))

    @property
    def client_count(self) -> int:
        with self._lock:
            return len(self._clients)
