import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import List, Optional
from uuid import uuid4

from pawmarket.models import NotificationRecord, NotificationType
from pawmarket.services.push_sender import PushSender


class NotificationStore:
    def __init__(self, db_path: str, push_sender: Optional[PushSender] = None):
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = str(path)
        self._lock = Lock()
        self.push_sender = push_sender or PushSender()
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._lock:
            conn = self._connect()
            try:
                with conn:
                    conn.execute(
                        """
                        CREATE TABLE IF NOT EXISTS notifications (
                            id TEXT PRIMARY KEY,
                            user_id TEXT NOT NULL,
                            title TEXT NOT NULL,
                            message TEXT NOT NULL,
                            type TEXT NOT NULL,
                            reference TEXT,
                            is_read INTEGER NOT NULL DEFAULT 0,
                            created_at TEXT NOT NULL
                        )
                        """
                    )
                    conn.execute(
                        "CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications (user_id, created_at)"
                    )
                    conn.execute(
                        """
                        CREATE TABLE IF NOT EXISTS device_tokens (
                            user_id TEXT NOT NULL,
                            device_token TEXT NOT NULL,
                            platform TEXT NOT NULL,
                            PRIMARY KEY (user_id, device_token)
                        )
                        """
                    )
            finally:
                conn.close()

    def _row_to_record(self, row: sqlite3.Row) -> NotificationRecord:
        return NotificationRecord(
            id=row["id"],
            user_id=row["user_id"],
            title=row["title"],
            message=row["message"],
            type=row["type"],
            reference=row["reference"],
            read=bool(row["is_read"]),
            created_at=row["created_at"],
        )

    def register_device_token(self, user_id: str, device_token: str, platform: str = "android") -> None:
        if not device_token.strip():
            return
        with self._lock:
            conn = self._connect()
            try:
                with conn:
                    conn.execute(
                        "INSERT OR REPLACE INTO device_tokens (user_id, device_token, platform) VALUES (?, ?, ?)",
                        (user_id, device_token.strip(), platform),
                    )
            finally:
                conn.close()

    def device_tokens(self, user_id: str) -> List[str]:
        with self._lock:
            conn = self._connect()
            try:
                rows = conn.execute("SELECT device_token FROM device_tokens WHERE user_id = ?", (user_id,)).fetchall()
            finally:
                conn.close()
        return [row["device_token"] for row in rows]

    def _drop_tokens(self, user_id: str, tokens: List[str]) -> None:
        with self._lock:
            conn = self._connect()
            try:
                with conn:
                    conn.executemany(
                        "DELETE FROM device_tokens WHERE user_id = ? AND device_token = ?",
                        [(user_id, token) for token in tokens],
                    )
            finally:
                conn.close()

    def create(
        self,
        user_id: str,
        title: str,
        message: str,
        type: NotificationType = "system",
        reference: Optional[str] = None,
    ) -> NotificationRecord:
        record = NotificationRecord(
            id=f"ntf_{uuid4().hex[:10]}",
            user_id=user_id,
            title=title,
            message=message,
            type=type,
            reference=reference,
            read=False,
            created_at=datetime.now(timezone.utc).isoformat(),
        )
        with self._lock:
            conn = self._connect()
            try:
                with conn:
                    conn.execute(
                        """
                        INSERT INTO notifications (id, user_id, title, message, type, reference, is_read, created_at)
                        VALUES (?, ?, ?, ?, ?, ?, 0, ?)
                        """,
                        (record.id, user_id, title, message, record.type, reference, record.created_at),
                    )
            finally:
                conn.close()
        tokens = self.device_tokens(user_id)
        invalid_tokens = self.push_sender.send_notification(
            tokens=tokens,
            title=title,
            body=message,
            data={
                "notification_id": record.id,
                "type": record.type,
                "reference": reference or "",
            },
        )
        if invalid_tokens:
            self._drop_tokens(user_id, invalid_tokens)
        return record

    def list_for_user(self, user_id: str, unread_only: bool = False) -> List[NotificationRecord]:
        query = "SELECT * FROM notifications WHERE user_id = ?"
        if unread_only:
            query += " AND is_read = 0"
        query += " ORDER BY created_at DESC LIMIT 100"
        with self._lock:
            conn = self._connect()
            try:
                rows = conn.execute(query, (user_id,)).fetchall()
            finally:
                conn.close()
        return [self._row_to_record(row) for row in rows]

    def mark_read(self, user_id: str, notification_id: str) -> Optional[NotificationRecord]:
        with self._lock:
            conn = self._connect()
            try:
                with conn:
                    cursor = conn.execute(
                        "UPDATE notifications SET is_read = 1 WHERE id = ? AND user_id = ?",
                        (notification_id, user_id),
                    )
                    if cursor.rowcount == 0:
                        return None
                    row = conn.execute("SELECT * FROM notifications WHERE id = ?", (notification_id,)).fetchone()
            finally:
                conn.close()
        return self._row_to_record(row)
