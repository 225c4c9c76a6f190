"""
Local notification list

Automations append a notification after a run that affected downloads. The
list is newest-first, capped at MAX_NOTIFICATIONS, and optionally mirrored to
a JSON file. Storage problems are logged and never raised to the caller.
"""

import json
import secrets
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from torbox_rules.logging import get_logger
from torbox_rules.models import utc_now

logger = get_logger(__name__)

MAX_NOTIFICATIONS = 200


def _is_valid(item: Any) -> bool:
    return (
        isinstance(item, dict)
        and all(isinstance(item.get(key), str) for key in ('id', 'title', 'message', 'created_at'))
    )


class NotificationCenter:
    """Append-only (capped) notification list"""

    def __init__(self, file_path: Optional[Path] = None, max_items: int = MAX_NOTIFICATIONS):
        """
        Args:
            file_path: JSON file to mirror notifications to (None keeps them in memory only)
            max_items: Maximum number of notifications kept
        """
        self.file_path = Path(file_path) if file_path else None
        self.max_items = max_items
        self._lock = threading.Lock()
        self._items: List[Dict[str, Any]] = self._read()

    def _read(self) -> List[Dict[str, Any]]:
        if self.file_path is None or not self.file_path.exists():
            return []
        try:
            data = json.loads(self.file_path.read_text(encoding='utf-8'))
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to read local notifications from {self.file_path}: {e}")
            return []
        if not isinstance(data, list):
            return []
        return [item for item in data if _is_valid(item)]

    def _write(self):
        if self.file_path is None:
            return
        try:
            self.file_path.parent.mkdir(parents=True, exist_ok=True)
            self.file_path.write_text(json.dumps(self._items, indent=2), encoding='utf-8')
        except OSError as e:
            logger.error(f"Failed to save local notifications to {self.file_path}: {e}")

    def append_notification(self, title: str, message: str) -> Dict[str, Any]:
        """Add a notification at the front of the list"""
        now = utc_now()
        notification = {
            'id': f"local-{int(now.timestamp() * 1000)}-{secrets.token_hex(3)}",
            'title': title,
            'message': message,
            'created_at': now.isoformat(),
            'read': False,
        }
        with self._lock:
            self._items = [notification] + self._items[:self.max_items - 1]
            self._write()
        logger.info(f"Notification: {title} - {message}")
        return notification

    def get_notifications(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [dict(item) for item in self._items]

    def unread_count(self) -> int:
        with self._lock:
            return sum(1 for item in self._items if not item.get('read'))

    def mark_all_read(self):
        with self._lock:
            for item in self._items:
                item['read'] = True
            self._write()

    def clear(self):
        with self._lock:
            self._items = []
            self._write()
